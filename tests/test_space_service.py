"""Tests for space naming, creation and discovery."""
import pytest

from marlin_sync.exceptions import (
    AlreadyExistsError,
    ErrorCode,
    QuotaExceededError,
    RemoteNotFoundError,
    SpaceNotFoundError,
    TransientNetworkError,
    UnauthenticatedError,
    ValidationError,
)
from marlin_sync.remote.results import (
    NotFound,
    QuotaExceeded,
    RepositoryInfo,
    TransientError,
    Unauthenticated,
)
from marlin_sync.services.space_service import (
    MAX_SPACE_NAME_LENGTH,
    SpaceService,
    repo_to_space,
    space_to_repo,
    validate_space_name,
)


@pytest.fixture
def spaces(store, remote):
    return SpaceService(store, remote, suffix=".marlin")


class TestNaming:
    """Name validation and repository mapping."""

    def test_valid_name_is_trimmed(self):
        assert validate_space_name("  my-notes_2.0 ") == "my-notes_2.0"

    @pytest.mark.parametrize("name", ["", "   ", "has space", "slash/name", "émoji"])
    def test_invalid_names(self, name):
        with pytest.raises(ValidationError) as exc_info:
            validate_space_name(name)
        assert exc_info.value.code == ErrorCode.SPACE_NAME_INVALID

    @pytest.mark.parametrize("name", ["api", "Settings", "_next"])
    def test_reserved_names(self, name):
        with pytest.raises(ValidationError) as exc_info:
            validate_space_name(name)
        assert exc_info.value.code == ErrorCode.SPACE_NAME_RESERVED

    def test_length_limit(self):
        assert validate_space_name("a" * MAX_SPACE_NAME_LENGTH)
        with pytest.raises(ValidationError):
            validate_space_name("a" * (MAX_SPACE_NAME_LENGTH + 1))

    def test_repo_mapping(self):
        assert space_to_repo("work", ".marlin") == "work.marlin"
        assert space_to_repo("work.marlin", ".marlin") == "work.marlin"
        assert repo_to_space("work.marlin", ".marlin") == "work"
        assert repo_to_space("dotfiles", ".marlin") == "dotfiles"


class TestCreateSpace:
    """Remote-first creation."""

    def test_creates_remote_then_local(self, spaces, remote, store):
        space = spaces.create_space("journal", description="Daily", private=False)

        assert "journal" in remote.repos
        assert space.repo_name == "journal.marlin"
        assert space.description == "Daily"
        assert space.is_private is False
        assert store.get_space("journal") is not None

    def test_existing_repository_stores_nothing(self, spaces, remote, store):
        remote.create_repository("journal")

        with pytest.raises(AlreadyExistsError):
            spaces.create_space("journal")

        assert store.get_space("journal") is None

    def test_invalid_name_never_reaches_remote(self, spaces, remote):
        with pytest.raises(ValidationError):
            spaces.create_space("login")
        assert remote.count("create_repository") == 0

    @pytest.mark.parametrize(
        "outcome, error",
        [
            (QuotaExceeded(reset_epoch=1700000000), QuotaExceededError),
            (Unauthenticated(), UnauthenticatedError),
            (TransientError(message="502"), TransientNetworkError),
            (NotFound(), RemoteNotFoundError),
        ],
    )
    def test_remote_failures_raise(self, spaces, remote, store, outcome, error):
        remote.fail_next("create_repository", outcome)

        with pytest.raises(error):
            spaces.create_space("journal")

        assert store.get_space("journal") is None


class TestDiscovery:
    """Listing and caching spaces."""

    def test_refresh_caches_remote_spaces(self, spaces, remote, store):
        remote.create_repository("home", description="Personal")

        found = spaces.refresh_spaces()

        assert sorted(s.name for s in found) == ["home", "work"]
        assert store.get_space("home").description == "Personal"
        assert sorted(s.name for s in spaces.list_spaces()) == ["home", "work"]

    def test_refresh_while_offline_keeps_cache(self, spaces, remote):
        spaces.refresh_spaces()
        remote.fail_next("list_repositories", TransientError(message="offline"))

        with pytest.raises(TransientNetworkError):
            spaces.refresh_spaces()

        assert [s.name for s in spaces.list_spaces()] == ["work"]

    def test_get_and_forget(self, spaces, make_note):
        make_note()

        assert spaces.get_space("work").repo_name == "work.marlin"
        assert spaces.forget_space("work") == 1
        with pytest.raises(SpaceNotFoundError):
            spaces.get_space("work")

    def test_repository_info_wins_over_arguments(self, spaces, remote):
        remote.fail_next(
            "create_repository",
            RepositoryInfo(name="notes.marlin", description="From host", is_private=True, owner="octocat"),
        )

        space = spaces.create_space("notes", description="Local", private=True)

        assert space.name == "notes"
        assert space.description == "From host"
        assert space.owner == "octocat"
