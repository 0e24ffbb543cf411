"""Hashtag index derived from local note bodies.

Not authoritative: it is rebuilt from whatever the local store holds,
synced or not. Change notifications only mark notes stale; the scan
happens on the next read, so a write never waits on tag extraction.
"""
import logging
import threading
from collections import Counter
from typing import Dict, List, Optional, Set

from marlin_sync.storage.local_store import LocalStore
from marlin_sync.utils import extract_hashtags

logger = logging.getLogger(__name__)


class TagIndex:
    """Per-space tag sets for editor autocomplete."""

    def __init__(self, store: LocalStore):
        """Initialize the index and subscribe to store changes.

        Args:
            store: The local store whose notes are scanned.
        """
        self.store = store
        self._lock = threading.Lock()
        # space -> note_id -> tags; a space absent here has never been scanned
        self._tags: Dict[str, Dict[str, List[str]]] = {}
        self._stale: Dict[str, Set[str]] = {}
        self._unsubscribe = store.add_change_listener(self._on_change)

    def all_tags(self, space: str) -> Set[str]:
        """Every hashtag used by an active note of the space."""
        by_note = self._current(space)
        return {tag for tags in by_note.values() for tag in tags}

    def tag_counts(self, space: str) -> Dict[str, int]:
        """Tag -> number of active notes using it, most used first."""
        counts: Counter = Counter()
        for tags in self._current(space).values():
            counts.update(tags)
        return dict(counts.most_common())

    def notes_with_tag(self, space: str, tag: str) -> List[str]:
        """IDs of active notes carrying ``tag`` (without the '#')."""
        tag = tag.lstrip("#")
        return sorted(
            note_id for note_id, tags in self._current(space).items() if tag in tags
        )

    def refresh(self, space: Optional[str] = None) -> None:
        """Drop cached results so the next read rescans."""
        with self._lock:
            if space is None:
                self._tags.clear()
                self._stale.clear()
            else:
                self._tags.pop(space, None)
                self._stale.pop(space, None)

    def close(self) -> None:
        """Stop listening to the store."""
        self._unsubscribe()

    def _on_change(self, space: str, note_ids: Set[str]) -> None:
        with self._lock:
            self._stale.setdefault(space, set()).update(note_ids)

    def _current(self, space: str) -> Dict[str, List[str]]:
        with self._lock:
            scanned = space in self._tags
            stale = self._stale.pop(space, set())

        if not scanned:
            notes = self.store.list_notes(space)
            by_note = {note.id: extract_hashtags(note.content) for note in notes}
            logger.debug("Indexed tags of %d notes in %s", len(notes), space)
            with self._lock:
                # Changes that arrived during the scan are rescanned next read
                self._tags[space] = by_note
                return dict(by_note)

        updates: Dict[str, Optional[List[str]]] = {}
        for note_id in stale:
            note = self.store.get_note(note_id)
            if note is None or note.deleted or note.space != space:
                updates[note_id] = None
            else:
                updates[note_id] = extract_hashtags(note.content)

        with self._lock:
            by_note = self._tags.setdefault(space, {})
            for note_id, tags in updates.items():
                if tags is None:
                    by_note.pop(note_id, None)
                else:
                    by_note[note_id] = tags
            return dict(by_note)
