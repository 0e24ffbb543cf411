"""Note operations for the editing surface.

Every operation completes against the local store before returning; the
remote is only reached later by the sync engine. When a scheduler is
attached, mutations ask it for a prompt background pass.
"""
import logging
from typing import Dict, List, Optional

from marlin_sync.exceptions import ErrorCode, NoteNotFoundError, ValidationError
from marlin_sync.models.schema import Note, SyncState
from marlin_sync.storage.local_store import LocalStore
from marlin_sync.storage.tag_index import TagIndex
from marlin_sync.utils import extract_hashtags, extract_title

logger = logging.getLogger(__name__)


class NoteService:
    """Create, edit, trash and query notes."""

    def __init__(
        self,
        store: LocalStore,
        tag_index: Optional[TagIndex] = None,
        scheduler=None,
    ):
        """Initialize the service.

        Args:
            store: The local note cache.
            tag_index: Index used for tag queries; one is created if omitted.
            scheduler: Optional AutoSyncScheduler to signal after mutations.
        """
        self.store = store
        self.tag_index = tag_index or TagIndex(store)
        self.scheduler = scheduler

    # =========================================================================
    # Mutations
    # =========================================================================

    def create_note(self, space: str, content: str, title: Optional[str] = None) -> Note:
        """Create a note. The title defaults to the body's leading heading."""
        self.store.require_space(space)
        note = Note(
            space=space,
            content=content,
            title=title if title is not None else (extract_title(content) or ""),
        )
        created = self.store.upsert_note(note)
        logger.debug("Created note %s in %s", created.id, space)
        self._signal(space)
        return created

    def update_note(self, note_id: str, content: str, title: Optional[str] = None) -> Note:
        """Replace a note's body (and title).

        Raises:
            NoteNotFoundError: If the note does not exist or is in the trash.
        """
        note = self.get_note(note_id)
        if title is None:
            title = extract_title(content) or note.title
        updated = self.store.upsert_note(
            note.model_copy(update={"content": content, "title": title})
        )
        self._signal(updated.space)
        return updated

    def trash_note(self, note_id: str) -> Note:
        """Move a note to the trash. Reversible with ``restore_note``."""
        note = self.store.mark_deleted(note_id)
        logger.debug("Trashed note %s", note_id)
        self._signal(note.space)
        return note

    def restore_note(self, note_id: str) -> Note:
        note = self.store.restore(note_id)
        logger.debug("Restored note %s", note_id)
        self._signal(note.space)
        return note

    def delete_permanently(self, note_id: str) -> Note:
        """Irreversibly delete a note.

        The note disappears from the remote on the next pass and is purged
        locally once the remote confirms.
        """
        note = self.store.request_purge(note_id)
        logger.info("Permanent delete requested for note %s", note_id)
        self._signal(note.space)
        return note

    def empty_trash(self, space: str) -> int:
        """Request permanent deletion of every trashed note in the space."""
        trashed = self.store.list_notes(space, only_deleted=True)
        for note in trashed:
            self.store.request_purge(note.id)
        if trashed:
            logger.info("Emptying trash of %s (%d notes)", space, len(trashed))
            self._signal(space)
        return len(trashed)

    def retry_note(self, note_id: str) -> Note:
        """Clear a note's sync error and ask for another attempt.

        Raises:
            ValidationError: If the note is not in the error state.
        """
        note = self.store.require_note(note_id)
        if note.sync_state != SyncState.ERROR:
            raise ValidationError(
                f"Note {note_id} is not in error state",
                field="sync_state",
                value=note.sync_state.value,
                code=ErrorCode.NOTE_VALIDATION_FAILED,
            )
        retried = self.store.set_sync_state(note_id, SyncState.PENDING)
        self._signal(note.space)
        return retried

    # =========================================================================
    # Queries
    # =========================================================================

    def get_note(self, note_id: str) -> Note:
        """Get an active note.

        Raises:
            NoteNotFoundError: If the note does not exist or is in the trash.
        """
        note = self.store.get_note(note_id)
        if note is None or note.deleted:
            raise NoteNotFoundError(note_id)
        return note

    def list_notes(self, space: str) -> List[Note]:
        return self.store.list_notes(space)

    def list_trash(self, space: str) -> List[Note]:
        return self.store.list_notes(space, only_deleted=True)

    def search_notes(self, space: str, query: str) -> List[Note]:
        """Case-insensitive match on title, body or tag of active notes."""
        if not query or not query.strip():
            return self.store.list_notes(space)
        needle = query.strip().lower()
        if needle.startswith("#"):
            return self.notes_by_tag(space, needle)

        matches = {note.id for note in self.store.search_notes(space, needle)}
        results = []
        for note in self.store.list_notes(space):
            if note.id in matches or any(
                needle in tag.lower() for tag in extract_hashtags(note.content)
            ):
                results.append(note)
        return results

    def notes_by_tag(self, space: str, tag: str) -> List[Note]:
        """Active notes carrying ``tag`` (case-insensitive, '#' optional)."""
        wanted = tag.lstrip("#").lower()
        tags = self.tag_index.tag_counts(space)
        matching = [t for t in tags if t.lower() == wanted]
        ids = set()
        for t in matching:
            ids.update(self.tag_index.notes_with_tag(space, t))
        return [note for note in self.store.list_notes(space) if note.id in ids]

    def all_tags(self, space: str) -> List[str]:
        """Tags of active notes, sorted."""
        return sorted(self.tag_index.all_tags(space))

    def status_counts(self, space: str) -> Dict[str, int]:
        """Active notes per sync state, plus ``total``."""
        notes = self.store.list_notes(space)
        counts = {state.value: 0 for state in SyncState}
        for note in notes:
            counts[note.sync_state.value] += 1
        counts["total"] = len(notes)
        return counts

    def _signal(self, space: str) -> None:
        if self.scheduler is not None:
            self.scheduler.request_sync(space)
