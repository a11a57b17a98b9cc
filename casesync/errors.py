"""
Sync Error Types
================

Shared exception hierarchy for the sync engine.

Every remote failure is converted into one of these at the Remote Access
Layer boundary, so the orchestrator only has to look at ``kind`` to decide
which status to report.
"""

from typing import Optional


class ErrorKind:
    """String constants for the error taxonomy"""
    UNCONFIGURED = "unconfigured"
    UNINITIALIZED = "uninitialized"
    AUTH_ERROR = "auth_error"
    AUTHORIZATION_DENIED = "authorization_denied"
    TIMEOUT = "timeout"
    NETWORK = "network"
    UNKNOWN = "unknown"


POLICY_HINT = "Apply the latest backend policy script from the settings screen, then sync again."


class SyncError(Exception):
    """Base class for all sync failures."""

    kind = ErrorKind.UNKNOWN
    retryable = False

    def __init__(
        self, message: str, *, table: Optional[str] = None, code: Optional[str] = None, status: Optional[int] = None
    ):
        super().__init__(message)
        self.message = message
        self.table = table
        self.code = code
        # HTTP status of the failed response; None for transport failures
        self.status = status


class UnconfiguredError(SyncError):
    """Backend URL/key missing or the backend is unreachable."""
    kind = ErrorKind.UNCONFIGURED


class UninitializedError(SyncError):
    """Expected tables are missing; the backend has not been provisioned."""
    kind = ErrorKind.UNINITIALIZED


class SessionExpiredError(SyncError):
    """The auth session is invalid and could not be refreshed."""
    kind = ErrorKind.AUTH_ERROR


class AuthorizationDeniedError(SyncError):
    """Row-level policy rejected the operation."""
    kind = ErrorKind.AUTHORIZATION_DENIED

    @property
    def hint(self) -> str:
        return POLICY_HINT


class SyncTimeoutError(SyncError):
    """A remote call exceeded its timeout."""
    kind = ErrorKind.TIMEOUT
    retryable = True


class NetworkError(SyncError):
    """Transient transport failure (connection reset, 5xx, rate limit)."""
    kind = ErrorKind.NETWORK
    retryable = True


class UnknownSyncError(SyncError):
    """Anything the classifier could not place."""
    kind = ErrorKind.UNKNOWN


class SyncInvariantError(SyncError):
    """Local flatten/merge/reconstruct produced an inconsistent result."""
    kind = ErrorKind.UNKNOWN


class BatchPushError(SyncError):
    """
    A write batch failed.

    Batches before ``batch_index`` are committed remotely; batches after it
    were never sent.
    """

    def __init__(self, table: str, batch_index: int, total_batches: int, cause: SyncError):
        message = f"Push halted at batch {batch_index}/{total_batches} of table {table}: {cause.message}"
        super().__init__(message, table=table, code=cause.code, status=cause.status)
        self.batch_index = batch_index
        self.total_batches = total_batches
        self.cause = cause
        self.kind = cause.kind
        self.retryable = cause.retryable


class InvalidTransitionError(Exception):
    """Raised when a document is moved between attachment states illegally."""


class InvalidBackupError(SyncError):
    """A backup file is unreadable, empty, or holds records that cannot be restored."""
    kind = ErrorKind.UNKNOWN


class SyncInProgressError(Exception):
    """A local edit was attempted while a sync pass holds the document."""


class RecordNotFoundError(LookupError):
    """The requested record is not in the local document."""
