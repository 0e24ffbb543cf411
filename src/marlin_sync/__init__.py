"""
Marlin Sync - local-first synchronization engine for repository-backed notes.
Notes live in a user's GitHub repository (one repository per space) and are
edited through a local SQLite cache that is reconciled with the remote in the
background.

This version uses synchronous operations with thread-based concurrency.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("marlin-sync")
except PackageNotFoundError:
    __version__ = "0.3.0"
