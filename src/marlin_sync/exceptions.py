"""Error types for Marlin Sync.

Local failures (missing notes or spaces, invalid input, storage) and remote
failures that have to abort a caller. Expected remote outcomes are result
variants in ``marlin_sync.remote.results``, not exceptions.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_VALIDATION_FAILED = 1002

    # Space errors (2xxx)
    SPACE_NOT_FOUND = 2001
    SPACE_ALREADY_EXISTS = 2002
    SPACE_NAME_INVALID = 2003
    SPACE_NAME_RESERVED = 2004

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002

    # Remote / sync errors (5xxx)
    SYNC_FAILED = 5001
    SYNC_TRANSIENT = 5002
    SYNC_REMOTE_NOT_FOUND = 5004
    SYNC_QUOTA_EXCEEDED = 5005
    SYNC_UNAUTHENTICATED = 5006

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001


class MarlinError(Exception):
    """Base exception for all Marlin Sync errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NoteNotFoundError(MarlinError):
    """Raised when a note cannot be found in the local store."""

    def __init__(self, note_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Note with ID '{note_id}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id},
        )
        self.note_id = note_id


class SpaceNotFoundError(MarlinError):
    """Raised when a space is not known locally."""

    def __init__(self, space: str, message: Optional[str] = None):
        super().__init__(
            message or f"Space '{space}' not found",
            code=ErrorCode.SPACE_NOT_FOUND,
            details={"space": space},
        )
        self.space = space


class ValidationError(MarlinError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class StorageError(MarlinError):
    """Raised for local storage errors.

    Fatal to the mutation that raised it; other notes are unaffected.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        note_id: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if note_id:
            details["note_id"] = note_id
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.note_id = note_id
        self.original_error = original_error


class SyncError(MarlinError):
    """Raised for remote synchronization errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        space: Optional[str] = None,
        code: ErrorCode = ErrorCode.SYNC_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if space:
            details["space"] = space
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.space = space
        self.original_error = original_error


class TransientNetworkError(SyncError):
    """A timeout, transport failure or 5xx. Retryable."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs: Any):
        super().__init__(
            message, operation=operation, code=ErrorCode.SYNC_TRANSIENT, **kwargs
        )


class RemoteNotFoundError(SyncError):
    """The remote entity does not exist (any more)."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs: Any):
        super().__init__(
            message, operation=operation, code=ErrorCode.SYNC_REMOTE_NOT_FOUND, **kwargs
        )


class QuotaExceededError(SyncError):
    """The API rate limit is exhausted. Suspends the whole pass."""

    def __init__(
        self,
        message: str = "API rate limit exhausted",
        reset_at: Optional[datetime] = None,
        space: Optional[str] = None,
    ):
        super().__init__(message, space=space, code=ErrorCode.SYNC_QUOTA_EXCEEDED)
        self.reset_at = reset_at
        if reset_at:
            self.details["reset_at"] = reset_at.isoformat()


class AlreadyExistsError(SyncError):
    """A remote resource exists where a create was requested."""

    def __init__(self, message: str, space: Optional[str] = None):
        super().__init__(
            message,
            operation="create",
            space=space,
            code=ErrorCode.SPACE_ALREADY_EXISTS,
        )


class UnauthenticatedError(SyncError):
    """No usable credential. Halts remote activity until re-authentication."""

    def __init__(self, message: str = "Not authenticated with the remote"):
        super().__init__(message, code=ErrorCode.SYNC_UNAUTHENTICATED)
