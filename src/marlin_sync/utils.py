"""Utility functions for Marlin Sync."""
import hashlib
import re
from typing import List, Optional

# '#' at line start or after whitespace, then letters, digits, '_' or '-'.
# '##heading' never matches because the second character is '#'.
_HASHTAG_PATTERN = re.compile(r"(?:^|(?<=\s))#([\w\-]+)", re.UNICODE)


def extract_title(content: str) -> Optional[str]:
    """Return the text of a leading ``# `` heading, if the body starts with one.

    Examples:
        "# Groceries\\n- milk" -> "Groceries"
        "just text" -> None
    """
    first_line = content.split("\n", 1)[0]
    if first_line.startswith("# "):
        title = first_line[2:].strip()
        return title or None
    return None


def extract_hashtags(content: str) -> List[str]:
    """Extract unique hashtags (without '#') in order of first appearance.

    Matches ``#tag``, ``#work-note``, ``#中文``. Pure numbers such as
    ``#123`` are issue references, not tags, and are skipped.
    """
    seen = []
    for match in _HASHTAG_PATTERN.finditer(content):
        tag = match.group(1)
        if tag.isdigit() or tag in seen:
            continue
        seen.append(tag)
    return seen


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards so user input matches literally.

    Example:
        >>> escape_like_pattern("100%")
        '100\\\\%'
    """
    return value.translate(str.maketrans({"\\": "\\\\", "%": "\\%", "_": "\\_"}))


def git_blob_sha(data: bytes) -> str:
    """Compute the git blob SHA-1 of ``data``.

    This is the version token the repository host reports for a file, so a
    locally computed value can be compared with a remote one.
    """
    header = f"blob {len(data)}\0".encode("ascii")
    return hashlib.sha1(header + data).hexdigest()
