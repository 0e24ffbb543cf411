"""Tests for the hashtag index."""
import pytest

from marlin_sync.storage.tag_index import TagIndex
from marlin_sync.utils import extract_hashtags
from tests.fakes import SPACE


@pytest.fixture
def tag_index(store):
    index = TagIndex(store)
    yield index
    index.close()


class TestExtractHashtags:
    """Hashtag extraction rules."""

    def test_basic_tags_in_order(self):
        assert extract_hashtags("#work and #home, then #work again") == ["work", "home"]

    def test_requires_start_or_whitespace(self):
        assert extract_hashtags("email me at a#b or see#this") == []
        assert extract_hashtags("line one\n#second-line") == ["second-line"]

    def test_headings_are_not_tags(self):
        assert extract_hashtags("## Heading\n# Title") == []

    def test_numbers_and_unicode(self):
        assert extract_hashtags("fixes #123 for #中文 and #v2") == ["中文", "v2"]


class TestTagIndex:
    """Lazy, change-driven indexing."""

    def test_all_tags_from_active_notes(self, tag_index, make_note, store):
        make_note(content="#alpha #beta")
        trashed = make_note(content="#gamma")
        store.mark_deleted(trashed.id)

        assert tag_index.all_tags(SPACE) == {"alpha", "beta"}

    def test_picks_up_edits_after_first_scan(self, tag_index, make_note, store):
        note = make_note(content="#alpha")
        assert tag_index.all_tags(SPACE) == {"alpha"}

        store.upsert_note(note.model_copy(update={"content": "#omega"}))
        make_note(content="#alpha again")

        assert tag_index.all_tags(SPACE) == {"alpha", "omega"}

    def test_trashing_removes_tags(self, tag_index, make_note, store):
        note = make_note(content="#temporary")
        assert tag_index.all_tags(SPACE) == {"temporary"}

        store.mark_deleted(note.id)

        assert tag_index.all_tags(SPACE) == set()

    def test_changes_before_first_read_are_not_lost(self, tag_index, make_note):
        make_note(content="#early")
        assert tag_index.all_tags(SPACE) == {"early"}

    def test_counts_and_lookup(self, tag_index, make_note):
        a = make_note(content="#shared #solo")
        b = make_note(content="#shared")

        assert tag_index.tag_counts(SPACE) == {"shared": 2, "solo": 1}
        assert tag_index.notes_with_tag(SPACE, "#shared") == sorted([a.id, b.id])
        assert tag_index.notes_with_tag(SPACE, "solo") == [a.id]

    def test_refresh_forces_rescan(self, tag_index, make_note):
        make_note(content="#one")
        assert tag_index.all_tags(SPACE) == {"one"}

        tag_index.refresh(SPACE)

        assert tag_index.all_tags(SPACE) == {"one"}

    def test_unknown_space_is_empty(self, tag_index):
        assert tag_index.all_tags("nowhere") == set()
