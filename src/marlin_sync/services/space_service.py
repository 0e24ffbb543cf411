"""Space management: naming, remote-first creation and discovery."""
import logging
import re
from typing import List, Optional

from marlin_sync.config import config
from marlin_sync.exceptions import (
    AlreadyExistsError,
    ErrorCode,
    QuotaExceededError,
    RemoteNotFoundError,
    SpaceNotFoundError,
    SyncError,
    TransientNetworkError,
    UnauthenticatedError,
    ValidationError,
)
from marlin_sync.models.schema import Space
from marlin_sync.remote.base import RemoteStore
from marlin_sync.remote.results import (
    AlreadyExists,
    NotFound,
    QuotaExceeded,
    Repositories,
    RepositoryInfo,
    TransientError,
    Unauthenticated,
)
from marlin_sync.storage.local_store import LocalStore

logger = logging.getLogger(__name__)

# Names that collide with application routes
RESERVED_KEYWORDS = frozenset({
    "api", "auth", "login", "new", "settings", "static",
    "pro", "privacy", "terms", "app", "debug", "_next",
})

# Repository names are limited to 100 characters; the suffix needs the rest
MAX_SPACE_NAME_LENGTH = 93

_SPACE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")


def validate_space_name(name: str) -> str:
    """Validate a proposed space name and return it trimmed.

    Raises:
        ValidationError: If the name is empty, reserved, too long or uses
            characters a repository name cannot contain.
    """
    trimmed = (name or "").strip()
    if not trimmed:
        raise ValidationError(
            "Space name is required", field="name", value=name,
            code=ErrorCode.SPACE_NAME_INVALID,
        )
    if trimmed.lower() in RESERVED_KEYWORDS:
        raise ValidationError(
            f'"{trimmed}" is a reserved keyword and cannot be used as a space name',
            field="name", value=name, code=ErrorCode.SPACE_NAME_RESERVED,
        )
    if not _SPACE_NAME_PATTERN.match(trimmed):
        raise ValidationError(
            "Space name can only contain letters, numbers, dots, hyphens, and underscores",
            field="name", value=name, code=ErrorCode.SPACE_NAME_INVALID,
        )
    if len(trimmed) > MAX_SPACE_NAME_LENGTH:
        raise ValidationError(
            f"Space name must be {MAX_SPACE_NAME_LENGTH} characters or less",
            field="name", value=name, code=ErrorCode.SPACE_NAME_INVALID,
        )
    return trimmed


def space_to_repo(space: str, suffix: Optional[str] = None) -> str:
    """``work`` -> ``work.marlin``; names already carrying the suffix are kept."""
    suffix = config.repo_suffix if suffix is None else suffix
    return space if space.endswith(suffix) else f"{space}{suffix}"


def repo_to_space(repo_name: str, suffix: Optional[str] = None) -> str:
    """``work.marlin`` -> ``work``."""
    suffix = config.repo_suffix if suffix is None else suffix
    if suffix and repo_name.endswith(suffix):
        return repo_name[: -len(suffix)]
    return repo_name


def _raise_for_failure(outcome: object, operation: str, space: Optional[str] = None) -> None:
    if isinstance(outcome, QuotaExceeded):
        raise QuotaExceededError(reset_at=outcome.reset_at, space=space)
    if isinstance(outcome, Unauthenticated):
        raise UnauthenticatedError()
    if isinstance(outcome, TransientError):
        raise TransientNetworkError(
            outcome.message or "Remote unavailable", operation=operation, space=space
        )
    if isinstance(outcome, NotFound):
        raise RemoteNotFoundError(
            "Remote account or repository not found", operation=operation, space=space
        )
    raise SyncError(
        f"Unexpected remote outcome {type(outcome).__name__}",
        operation=operation,
        space=space,
    )


class SpaceService:
    """Creates and discovers spaces. The remote repository always comes first."""

    def __init__(self, store: LocalStore, remote: RemoteStore, suffix: Optional[str] = None):
        self.store = store
        self.remote = remote
        self.suffix = config.repo_suffix if suffix is None else suffix

    def create_space(
        self, name: str, description: Optional[str] = None, private: bool = True
    ) -> Space:
        """Create the remote repository, then record the space locally.

        Raises:
            ValidationError: If the name is invalid.
            AlreadyExistsError: If the repository already exists; nothing is
                stored locally.
            SyncError: For any other remote failure.
        """
        name = validate_space_name(name)
        outcome = self.remote.create_repository(name, description=description, private=private)
        if isinstance(outcome, AlreadyExists):
            raise AlreadyExistsError(
                f"Space '{name}' already exists", space=name
            )
        if not isinstance(outcome, RepositoryInfo):
            _raise_for_failure(outcome, "create_space", name)

        space = self.store.put_space(self._to_space(outcome, description, private))
        logger.info("Created space %s (%s)", space.name, space.repo_name)
        return space

    def refresh_spaces(self) -> List[Space]:
        """Discover the remote repositories that back spaces and cache them."""
        outcome = self.remote.list_repositories()
        if not isinstance(outcome, Repositories):
            _raise_for_failure(outcome, "refresh_spaces")
        spaces = [self.store.put_space(self._to_space(repo)) for repo in outcome.repositories]
        logger.info("Discovered %d spaces", len(spaces))
        return spaces

    def list_spaces(self) -> List[Space]:
        """Cached spaces, usable offline."""
        return self.store.list_spaces()

    def get_space(self, name: str) -> Space:
        space = self.store.get_space(name)
        if space is None:
            raise SpaceNotFoundError(name)
        return space

    def forget_space(self, name: str) -> int:
        """Remove a space and its notes from the local cache only."""
        removed = self.store.delete_space(name)
        logger.info("Forgot space %s (%d cached notes)", name, removed)
        return removed

    def _to_space(
        self,
        repo: RepositoryInfo,
        description: Optional[str] = None,
        private: Optional[bool] = None,
    ) -> Space:
        return Space(
            name=repo_to_space(repo.name, self.suffix),
            repo_name=repo.name,
            description=repo.description if repo.description else description,
            is_private=repo.is_private if private is None else private,
            owner=repo.owner,
        )
