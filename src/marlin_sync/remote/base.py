"""Remote store contract.

The sync engine treats the remote as a key-addressed, versioned blob
store: one repository per space, one file per note. Writes are
conditional on a version token, the only concurrency control the remote
offers.
"""
from abc import ABC, abstractmethod
from typing import Optional

from marlin_sync.models.schema import RateLimitInfo
from marlin_sync.remote.results import (
    CreateRepositoryResult,
    DeleteResult,
    FetchResult,
    ListRepositoriesResult,
    ListResult,
    PutResult,
)


class RemoteStore(ABC):
    """Abstract remote adapter. Expected outcomes are returned, not raised."""

    @abstractmethod
    def fetch(self, space: str, note_id: str) -> FetchResult:
        """Read a note file.

        Returns:
            RemoteFile, or NotFound if the file does not exist.
        """

    @abstractmethod
    def put(
        self,
        space: str,
        note_id: str,
        content: str,
        expected_token: Optional[str],
    ) -> PutResult:
        """Write a note file.

        With ``expected_token`` the write succeeds only if the remote is
        still at that token (else VersionConflict, or NotFound if the file
        vanished). Without it the write is a create and returns
        AlreadyExists if a file is present.
        """

    @abstractmethod
    def delete(self, space: str, note_id: str, expected_token: str) -> DeleteResult:
        """Delete a note file if it is still at ``expected_token``."""

    @abstractmethod
    def list(self, space: str) -> ListResult:
        """Note ID -> version token for every note file of the space."""

    @abstractmethod
    def rate_limit(self) -> Optional[RateLimitInfo]:
        """Probe the quota endpoint.

        Returns:
            The current budget, or None when the probe fails.

        Raises:
            UnauthenticatedError: If the credential is missing or rejected.
        """

    @abstractmethod
    def create_repository(
        self, space: str, description: Optional[str] = None, private: bool = True
    ) -> CreateRepositoryResult:
        """Create the repository backing a space."""

    @abstractmethod
    def list_repositories(self) -> ListRepositoriesResult:
        """Repositories that back spaces."""

    def close(self) -> None:
        """Release transport resources."""
