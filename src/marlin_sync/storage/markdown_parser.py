"""Markdown parsing and serialization for remote note files.

A note is stored remotely as ``notes/<id>.md``: YAML frontmatter with the
note's metadata followed by the markdown body. Kept separate from the sync
engine so the file format is independently testable.
"""
import datetime
import logging
from dataclasses import dataclass
from datetime import timezone
from typing import Any, Dict, Optional

import frontmatter
import yaml

from marlin_sync.models.schema import Note, ensure_timezone_aware, utc_now
from marlin_sync.utils import extract_hashtags, extract_title

logger = logging.getLogger(__name__)


@dataclass
class ParsedNote:
    """Note fields recovered from a remote file."""

    title: str
    content: str
    created_at: datetime.datetime
    updated_at: datetime.datetime
    deleted: bool = False
    deleted_at: Optional[datetime.datetime] = None


def _parse_timestamp(value: Any) -> Optional[datetime.datetime]:
    """Accept ISO 8601 strings, datetimes, or epoch milliseconds."""
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        return ensure_timezone_aware(value)
    if isinstance(value, (int, float)):
        return datetime.datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return ensure_timezone_aware(datetime.datetime.fromisoformat(value))
        except ValueError:
            logger.warning("Unparseable timestamp in note frontmatter: %r", value)
    return None


class MarkdownParser:
    """Parses and serializes notes as markdown with frontmatter."""

    def render_note(self, note: Note) -> str:
        """Convert a note to the remote file format.

        Tags are derived from the body and written for readers of the raw
        repository; they are not read back.
        """
        metadata: Dict[str, Any] = {
            "created": note.created_at.isoformat(),
            "updated": note.updated_at.isoformat(),
        }
        if note.title:
            metadata["title"] = note.title
        tags = extract_hashtags(note.content)
        if tags:
            metadata["tags"] = tags
        if note.deleted:
            metadata["deleted"] = True
            if note.deleted_at:
                metadata["deletedAt"] = note.deleted_at.isoformat()

        post = frontmatter.Post(note.content, **metadata)
        return frontmatter.dumps(post) + "\n"

    def parse_note(self, raw: str) -> ParsedNote:
        """Parse a remote file.

        Files without frontmatter are accepted as a plain body. Malformed
        frontmatter degrades to the same thing rather than failing the pull.
        """
        try:
            post = frontmatter.loads(raw)
            metadata = post.metadata
            body = post.content
        except yaml.YAMLError as e:
            logger.warning("Malformed frontmatter, treating file as plain body: %s", e)
            metadata = {}
            body = raw

        title = metadata.get("title")
        if not isinstance(title, str) or not title.strip():
            title = extract_title(body) or ""

        created_at = (
            _parse_timestamp(metadata.get("created"))
            or _parse_timestamp(metadata.get("date"))
            or utc_now()
        )
        updated_at = _parse_timestamp(metadata.get("updated")) or created_at

        deleted = metadata.get("deleted") is True
        deleted_at = _parse_timestamp(metadata.get("deletedAt")) if deleted else None

        return ParsedNote(
            title=title,
            content=body,
            created_at=created_at,
            updated_at=updated_at,
            deleted=deleted,
            deleted_at=deleted_at,
        )
