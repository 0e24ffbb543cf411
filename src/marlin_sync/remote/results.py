"""Outcomes a remote store call can produce.

Adapters return one of these instead of raising for expected outcomes,
so callers dispatch on the variant with ``isinstance``. Every variant is
immutable.
"""
import datetime
from dataclasses import dataclass, field
from datetime import timezone
from typing import Dict, Optional, Tuple, Union


@dataclass(frozen=True)
class RemoteFile:
    """A fetched file and its current version token."""

    content: str
    version_token: str


@dataclass(frozen=True)
class Written:
    """A put succeeded; ``version_token`` identifies the new revision."""

    version_token: str


@dataclass(frozen=True)
class Deleted:
    """A delete succeeded."""


@dataclass(frozen=True)
class NotFound:
    """The file (or repository) does not exist remotely."""


@dataclass(frozen=True)
class VersionConflict:
    """The remote token did not match the expected one."""

    actual_token: Optional[str] = None


@dataclass(frozen=True)
class AlreadyExists:
    """A create found something already present."""


@dataclass(frozen=True)
class QuotaExceeded:
    """The API budget is spent until ``reset_epoch`` (seconds)."""

    reset_epoch: Optional[int] = None

    @property
    def reset_at(self) -> Optional[datetime.datetime]:
        if self.reset_epoch is None:
            return None
        return datetime.datetime.fromtimestamp(self.reset_epoch, tz=timezone.utc)


@dataclass(frozen=True)
class TransientError:
    """Timeout, connection failure or server error; worth retrying."""

    message: str = ""
    status_code: Optional[int] = None


@dataclass(frozen=True)
class Unauthenticated:
    """The credential is missing, expired or rejected."""


@dataclass(frozen=True)
class Listing:
    """Note ID -> version token for every note file in a space."""

    entries: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RepositoryInfo:
    """A remote repository backing a space."""

    name: str
    description: Optional[str] = None
    is_private: bool = True
    owner: Optional[str] = None
    updated_at: Optional[datetime.datetime] = None


@dataclass(frozen=True)
class Repositories:
    repositories: Tuple[RepositoryInfo, ...] = ()


# Failures any call may return
Failure = Union[QuotaExceeded, TransientError, Unauthenticated]

FetchResult = Union[RemoteFile, NotFound, Failure]
PutResult = Union[Written, VersionConflict, AlreadyExists, NotFound, Failure]
DeleteResult = Union[Deleted, VersionConflict, NotFound, Failure]
ListResult = Union[Listing, NotFound, Failure]
CreateRepositoryResult = Union[RepositoryInfo, AlreadyExists, Failure]
ListRepositoriesResult = Union[Repositories, Failure]

FAILURE_TYPES = (QuotaExceeded, TransientError, Unauthenticated)


def is_failure(result: object) -> bool:
    """True for outcomes that say nothing about the file itself."""
    return isinstance(result, FAILURE_TYPES)
