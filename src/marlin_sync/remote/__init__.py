"""Remote store adapters."""

from marlin_sync.remote.base import RemoteStore
from marlin_sync.remote.github import GitHubRemoteStore

__all__ = ["RemoteStore", "GitHubRemoteStore"]
