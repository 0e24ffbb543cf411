"""Storage layer for Marlin Sync."""

from marlin_sync.storage.local_store import LocalStore
from marlin_sync.storage.markdown_parser import MarkdownParser
from marlin_sync.storage.tag_index import TagIndex

__all__ = [
    "LocalStore",
    "MarkdownParser",
    "TagIndex",
]
