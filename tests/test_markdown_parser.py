"""Tests for the remote note file format."""
import datetime
from datetime import timezone

import pytest

from marlin_sync.models.schema import Note
from marlin_sync.storage.markdown_parser import MarkdownParser


@pytest.fixture
def parser():
    return MarkdownParser()


def at(hour):
    return datetime.datetime(2024, 5, 1, hour, 0, tzinfo=timezone.utc)


class TestRender:
    """Serializing notes."""

    def test_frontmatter_fields(self, parser):
        note = Note(
            space="work",
            title="Plan",
            content="Ship it #release",
            created_at=at(9),
            updated_at=at(10),
        )

        text = parser.render_note(note)

        assert text.startswith("---\n")
        assert "title: Plan" in text
        assert "- release" in text
        assert "deleted" not in text
        assert text.rstrip().endswith("Ship it #release")

    def test_trashed_note_carries_flag(self, parser):
        note = Note(space="work", content="gone", deleted=True, deleted_at=at(11))

        parsed = parser.parse_note(parser.render_note(note))

        assert parsed.deleted
        assert parsed.deleted_at == at(11)

    def test_render_parse_preserves_fields(self, parser):
        note = Note(space="work", title="T", content="line 1\n\nline 2", created_at=at(9), updated_at=at(10))

        parsed = parser.parse_note(parser.render_note(note))

        assert (parsed.title, parsed.content) == ("T", "line 1\n\nline 2")
        assert (parsed.created_at, parsed.updated_at) == (at(9), at(10))
        assert not parsed.deleted


class TestParse:
    """Reading files written by other clients."""

    def test_plain_body_uses_heading_as_title(self, parser):
        parsed = parser.parse_note("# Shopping\n- eggs")

        assert parsed.title == "Shopping"
        assert parsed.content == "# Shopping\n- eggs"
        assert parsed.updated_at == parsed.created_at

    def test_epoch_millis_and_date_fallback(self, parser):
        parsed = parser.parse_note("---\ndate: 1714554000000\n---\nbody")
        assert parsed.created_at == at(9)

    def test_malformed_frontmatter_degrades_to_body(self, parser):
        raw = "---\ntitle: [unclosed\n---\nbody"

        parsed = parser.parse_note(raw)

        assert parsed.content == raw
        assert parsed.title == ""

    def test_deleted_must_be_true(self, parser):
        parsed = parser.parse_note("---\ndeleted: 'yes'\n---\nbody")
        assert not parsed.deleted

    def test_bad_timestamp_is_ignored(self, parser):
        parsed = parser.parse_note("---\ncreated: not-a-date\nupdated: 2024-05-01T10:00:00+00:00\n---\nx")
        assert parsed.updated_at == at(10)
