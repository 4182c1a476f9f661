"""
Sync engine error taxonomy

Every error that can end up in a run's error list derives from SyncError and
carries a machine-readable code. Retryable errors are retried per batch by the
engine; everything else either fails the run or is attributed to one record.
"""
from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for all sync engine errors"""

    code = "sync_error"
    retryable = False

    def __init__(self, message: str = "", record_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.record_id = record_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the run error shape {code, message, recordId?}"""
        data = {"code": self.code, "message": self.message or str(self)}
        if self.record_id is not None:
            data["recordId"] = self.record_id
        return data


class RateLimitError(SyncError):
    """Platform rejected the call because of rate limiting"""

    code = "rate_limited"
    retryable = True

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class SyncTimeoutError(SyncError, TimeoutError):
    """Connector call exceeded SYNC_TIMEOUT"""

    code = "timeout"
    retryable = True


class AuthenticationError(SyncError):
    """Credentials were rejected; requires operator re-authentication"""

    code = "authentication_failed"


class ConnectorError(SyncError):
    """Any other remote failure reported by a platform"""

    code = "connector_error"

    def __init__(
        self,
        message: str = "",
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None
    ):
        super().__init__(message)
        self.status_code = status_code
        if retryable is None:
            retryable = status_code is not None and status_code >= 500
        self.retryable = retryable


class StoreWriteError(SyncError):
    """Canonical store rejected a write"""

    code = "store_write_failed"
    retryable = True


class RecordValidationError(SyncError):
    """A single record failed validation and was skipped"""

    code = "validation_failed"


class ConflictUnresolvedError(SyncError):
    """A resolution policy could not produce a decision for a record"""

    code = "conflict_unresolved"


class ConfigurationError(SyncError, ValueError):
    """Invalid job, schema, transform or strategy configuration"""

    code = "configuration_error"


class InvalidTransitionError(SyncError):
    """Illegal state change of a job or run"""

    code = "invalid_transition"


class ScheduleConflictError(SyncError):
    """An exclusive schedule overlaps an existing job"""

    code = "schedule_conflict"


class JobNotFoundError(SyncError, KeyError):
    code = "job_not_found"


class RunNotFoundError(SyncError, KeyError):
    code = "run_not_found"


class SnapshotNotFoundError(SyncError, KeyError):
    code = "snapshot_not_found"


def is_retryable(error: Exception) -> bool:
    """
    Check if an error should be retried by the batch retry loop.

    Args:
        error: The exception to check

    Returns:
        True for rate limits, timeouts, 5xx connector errors and store write failures
    """
    if isinstance(error, SyncError):
        return bool(error.retryable)
    # Transport-level failures that escaped connector translation
    return isinstance(error, (ConnectionError, TimeoutError))


def error_to_dict(error: Exception, record_id: Optional[str] = None) -> Dict[str, Any]:
    """Convert any exception to a run error entry"""
    if isinstance(error, SyncError):
        data = error.to_dict()
        if record_id is not None:
            data["recordId"] = record_id
        return data

    data = {"code": "internal_error", "message": f"{type(error).__name__}: {error}"}
    if record_id is not None:
        data["recordId"] = record_id
    return data
