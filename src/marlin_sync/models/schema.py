"""Data models for Marlin Sync."""

import datetime
import os
import re
import threading
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

# Note IDs become remote file names, so keep them to a filesystem-safe alphabet
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]+$")


def validate_safe_path_component(value: str, field_name: str = "value") -> str:
    """Validate that a value is safe to use as a remote path component.

    Raises:
        ValueError: If the value is empty, contains separators or '..',
            or uses characters outside alphanumerics, '_' and '-'.
    """
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if ".." in value:
        raise ValueError(f"{field_name} cannot contain '..' (path traversal)")
    if "/" in value or "\\" in value:
        raise ValueError(f"{field_name} cannot contain path separators")
    if not SAFE_ID_PATTERN.match(value):
        raise ValueError(
            f"{field_name} contains invalid characters. "
            "Only alphanumeric characters, underscores and hyphens are allowed."
        )
    return value


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite drops tzinfo on the way back out, so every value read from the
    local store passes through here.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


_id_lock = threading.Lock()
_last_millis = 0
_sequence = 0


def generate_id() -> str:
    """Generate a time-ordered, globally unique note ID in UUIDv7 layout.

    The first 48 bits are the Unix time in milliseconds, so IDs sort by
    creation time. A 12-bit sequence breaks ties inside the same millisecond
    and 62 random bits keep IDs from different devices apart.
    """
    global _last_millis, _sequence

    with _id_lock:
        millis = int(utc_now().timestamp() * 1000)
        if millis <= _last_millis:
            _sequence = (_sequence + 1) & 0xFFF
            if _sequence == 0:
                _last_millis += 1
            millis = _last_millis
        else:
            _last_millis = millis
            _sequence = int.from_bytes(os.urandom(2), "big") & 0x3FF
        seq = _sequence

    rand = int.from_bytes(os.urandom(8), "big") & ((1 << 62) - 1)
    value = (millis & ((1 << 48) - 1)) << 80
    value |= 0x7 << 76
    value |= seq << 64
    value |= 0x2 << 62
    value |= rand
    hex_value = f"{value:032x}"
    return (
        f"{hex_value[:8]}-{hex_value[8:12]}-{hex_value[12:16]}-"
        f"{hex_value[16:20]}-{hex_value[20:]}"
    )


class SyncState(str, Enum):
    """Per-note sync display state kept in the local store."""

    SYNCED = "synced"  # Local matches the last known remote revision
    PENDING = "pending"  # Local edits not yet pushed
    SYNCING = "syncing"  # A push or delete is in flight
    ERROR = "error"  # Retries exhausted; still editable locally


class SyncPhase(str, Enum):
    """Where a note ended up during one sync pass."""

    CLEAN = "clean"
    PENDING_PUSH = "pending_push"
    PUSHING = "pushing"
    PUSHED = "pushed"
    PUSH_CONFLICT = "push_conflict"
    PENDING_PULL = "pending_pull"
    PULLING = "pulling"
    MERGED = "merged"
    PULL_CONFLICT = "pull_conflict"
    DELETED = "deleted"
    RESTORED = "restored"
    FAILED = "failed"
    SKIPPED = "skipped"


class SyncStatus(str, Enum):
    """Engine status as shown to the UI."""

    SYNCED = "synced"
    SYNCING = "syncing"
    ERROR = "error"


class NetworkStatus(str, Enum):
    """Connectivity classification from the rate-limit probe."""

    ONLINE = "online"
    LIMITED = "limited"
    OFFLINE = "offline"


class RateLimitInfo(BaseModel):
    """API quota snapshot. Process-wide and never persisted."""

    limit: int = Field(..., description="Calls allowed per window")
    remaining: int = Field(..., description="Calls left in the current window")
    reset: int = Field(..., description="Unix epoch seconds when the window resets")

    model_config = {"frozen": True}

    @property
    def reset_at(self) -> datetime.datetime:
        return datetime.datetime.fromtimestamp(self.reset, tz=timezone.utc)

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0


class Space(BaseModel):
    """A workspace bound 1:1 to one remote repository."""

    name: str = Field(..., description="Unique space name (no repository suffix)")
    repo_name: str = Field(..., description="Remote repository name")
    description: Optional[str] = Field(default=None, description="Display description")
    is_private: bool = Field(default=True, description="Repository visibility")
    owner: Optional[str] = Field(default=None, description="Owning account login")
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the local record last changed (UTC)"
    )
    last_synced_at: Optional[datetime.datetime] = Field(
        default=None, description="Completion time of the last successful pass"
    )

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("name", "repo_name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate that the name is not empty."""
        if not v.strip():
            raise ValueError("Space name cannot be empty")
        return v


class Note(BaseModel):
    """A single note document in a space."""

    id: str = Field(default_factory=generate_id, description="Immutable note ID")
    space: str = Field(..., description="Name of the space the note belongs to")
    title: str = Field(default="", description="Note title")
    content: str = Field(default="", description="Markdown body")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was last modified (UTC)"
    )
    deleted: bool = Field(default=False, description="In the trash")
    deleted_at: Optional[datetime.datetime] = Field(
        default=None, description="When the note was moved to the trash"
    )
    purge_requested: bool = Field(
        default=False, description="Permanent deletion was explicitly requested"
    )
    version_token: Optional[str] = Field(
        default=None,
        description="Remote content hash of the last synced revision; None if never synced",
    )
    sync_state: SyncState = Field(default=SyncState.PENDING)
    error_message: Optional[str] = Field(default=None)
    revision: int = Field(default=1, description="Bumped on every local mutation")
    synced_revision: int = Field(
        default=0, description="Local revision last confirmed by the remote"
    )

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate that the ID is safe for use as a remote file name."""
        return validate_safe_path_component(v, "Note ID")

    @property
    def dirty(self) -> bool:
        """True while local mutations have not been reflected remotely."""
        return self.revision > self.synced_revision

    @property
    def display_title(self) -> str:
        return self.title or "Untitled"


@dataclass
class SyncResult:
    """Summary of one sync pass for one space.

    Attributes:
        space: The space that was synchronized.
        pushed: Notes written to the remote.
        pulled: Notes created or overwritten from the remote.
        deleted: Notes purged after a confirmed remote delete (or remote removal).
        conflicted: Notes that needed a conflicted copy or had a delete overridden.
        failed: Notes that ended in a failure after retries.
        skipped: True when the pass did not run at all.
        suspended: True when quota exhaustion stopped the pass early.
        reason: Why the pass was skipped or suspended.
    """

    space: str
    pushed: int = 0
    pulled: int = 0
    deleted: int = 0
    conflicted: int = 0
    failed: int = 0
    skipped: bool = False
    suspended: bool = False
    reason: Optional[str] = None
    started_at: datetime.datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime.datetime] = None
    outcomes: Dict[str, SyncPhase] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> SyncStatus:
        return SyncStatus.ERROR if self.failed or self.errors else SyncStatus.SYNCED

    @property
    def changed(self) -> bool:
        return bool(self.pushed or self.pulled or self.deleted or self.conflicted)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "space": self.space,
            "status": self.status.value,
            "pushed": self.pushed,
            "pulled": self.pulled,
            "deleted": self.deleted,
            "conflicted": self.conflicted,
            "failed": self.failed,
            "skipped": self.skipped,
            "suspended": self.suspended,
            "reason": self.reason,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "errors": dict(self.errors),
        }
