from enum import Enum
from typing import List, Optional


class ErrorCategory(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    SERVER_ERROR = "server_error"
    GIST_ERROR = "gist_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    QUEUE_EXHAUSTED = "queue_exhausted"
    CONFLICT = "conflict"
    UNKNOWN = "unknown"


TRANSIENT_CATEGORIES = frozenset({
    ErrorCategory.NETWORK,
    ErrorCategory.TIMEOUT,
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.SERVER_ERROR,
    ErrorCategory.GIST_ERROR,
})


class SyncError(Exception):
    """Base exception for sync operations."""
    pass


class SyncInProgress(SyncError):
    """A sync was requested while another one is running."""
    pass


class ClassifiedError(SyncError):
    """
    Error with a known category, produced once at the boundary where it happened.

    RetryPolicy fills in retry_attempts, operation_type and recovery_actions
    when it gives up on an operation.
    """
    category = ErrorCategory.UNKNOWN
    retryable = False

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        http_status: Optional[int] = None,
        retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category
        if retryable is not None:
            self.retryable = retryable
        self.http_status = http_status
        self.retry_after = retry_after
        self.user_message: Optional[str] = None
        self.recovery_actions: List[str] = []
        self.retry_attempts = 0
        self.operation_type: Optional[str] = None

    @property
    def is_retryable(self) -> bool:
        return self.retryable

    def __repr__(self):
        return f"{type(self).__name__}({self.message!r}, category={self.category.value}, http_status={self.http_status})"


class InvalidArgument(ClassifiedError):
    category = ErrorCategory.VALIDATION


class NotFound(ClassifiedError):
    category = ErrorCategory.NOT_FOUND


class PermissionDenied(ClassifiedError):
    category = ErrorCategory.PERMISSION


class AuthenticationFailed(ClassifiedError):
    category = ErrorCategory.AUTHENTICATION


class RateLimited(ClassifiedError):
    category = ErrorCategory.RATE_LIMIT
    retryable = True


class RemoteHTTPError(ClassifiedError):
    """Non-2xx response without a more specific mapping."""
    pass


class QuotaExceeded(ClassifiedError):
    category = ErrorCategory.QUOTA_EXCEEDED


class QueueExhausted(ClassifiedError):
    category = ErrorCategory.QUEUE_EXHAUSTED


class ConflictUnresolved(ClassifiedError):
    category = ErrorCategory.CONFLICT
