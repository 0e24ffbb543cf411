"""Tests for the note service."""
import pytest

from marlin_sync.exceptions import NoteNotFoundError, SpaceNotFoundError, ValidationError
from marlin_sync.models.schema import SyncState
from marlin_sync.services.note_service import NoteService
from tests.fakes import SPACE


class FakeScheduler:
    """Records sync requests instead of running passes."""

    def __init__(self):
        self.requests = []

    def request_sync(self, space=None):
        self.requests.append(space)


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def notes(store, space, scheduler):
    service = NoteService(store, scheduler=scheduler)
    yield service
    service.tag_index.close()


class TestMutations:
    """Local-first edits."""

    def test_create_takes_title_from_heading(self, notes, scheduler):
        note = notes.create_note(SPACE, "# Groceries\n- milk")

        assert note.title == "Groceries"
        assert note.sync_state == SyncState.PENDING
        assert scheduler.requests == [SPACE]

    def test_explicit_title_wins(self, notes):
        assert notes.create_note(SPACE, "# Heading", title="Custom").title == "Custom"

    def test_create_in_unknown_space(self, notes):
        with pytest.raises(SpaceNotFoundError):
            notes.create_note("nowhere", "text")

    def test_update(self, notes):
        note = notes.create_note(SPACE, "# One\nbody", title=None)

        updated = notes.update_note(note.id, "plain body")

        assert updated.content == "plain body"
        assert updated.title == "One"
        assert updated.revision == 2

    def test_update_trashed_note_rejected(self, notes):
        note = notes.create_note(SPACE, "x")
        notes.trash_note(note.id)

        with pytest.raises(NoteNotFoundError):
            notes.update_note(note.id, "y")

    def test_trash_restore_and_list(self, notes):
        note = notes.create_note(SPACE, "x")

        notes.trash_note(note.id)
        assert notes.list_notes(SPACE) == []
        assert [n.id for n in notes.list_trash(SPACE)] == [note.id]

        notes.restore_note(note.id)
        assert [n.id for n in notes.list_notes(SPACE)] == [note.id]

    def test_delete_permanently_waits_for_remote(self, notes, store):
        note = notes.create_note(SPACE, "x")

        notes.delete_permanently(note.id)

        assert store.get_note(note.id).purge_requested
        with pytest.raises(NoteNotFoundError):
            notes.get_note(note.id)

    def test_empty_trash(self, notes, store):
        a = notes.create_note(SPACE, "a")
        notes.create_note(SPACE, "b")
        notes.trash_note(a.id)

        assert notes.empty_trash(SPACE) == 1
        assert store.get_note(a.id).purge_requested

    def test_retry_only_from_error(self, notes, store):
        note = notes.create_note(SPACE, "x")
        with pytest.raises(ValidationError):
            notes.retry_note(note.id)

        store.set_sync_state(note.id, SyncState.ERROR, "gave up")
        retried = notes.retry_note(note.id)

        assert retried.sync_state == SyncState.PENDING
        assert retried.error_message is None

    def test_works_without_scheduler(self, store, space):
        service = NoteService(store)
        assert service.create_note(SPACE, "offline").content == "offline"


class TestQueries:
    """Search, tags and counts."""

    def test_search_by_text_title_and_tag(self, notes):
        milk = notes.create_note(SPACE, "buy milk #errands", title="Shopping")
        notes.create_note(SPACE, "unrelated", title="Other")

        assert [n.id for n in notes.search_notes(SPACE, "MILK")] == [milk.id]
        assert [n.id for n in notes.search_notes(SPACE, "shop")] == [milk.id]
        assert [n.id for n in notes.search_notes(SPACE, "errand")] == [milk.id]
        assert [n.id for n in notes.search_notes(SPACE, "#Errands")] == [milk.id]
        assert len(notes.search_notes(SPACE, "  ")) == 2

    def test_tags(self, notes):
        notes.create_note(SPACE, "#work #Plans")
        trashed = notes.create_note(SPACE, "#old")
        notes.trash_note(trashed.id)

        assert notes.all_tags(SPACE) == ["Plans", "work"]
        assert len(notes.notes_by_tag(SPACE, "plans")) == 1
        assert notes.notes_by_tag(SPACE, "old") == []

    def test_status_counts(self, notes, store):
        a = notes.create_note(SPACE, "a")
        notes.create_note(SPACE, "b")
        store.complete_push(a.id, "sha", a.revision)

        counts = notes.status_counts(SPACE)

        assert counts["synced"] == 1
        assert counts["pending"] == 1
        assert counts["total"] == 2
