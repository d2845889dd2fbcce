import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx

from .config import settings
from .errors import ClassifiedError, ErrorCategory
from .models import utc_now_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_PHRASES = ("rate limit",)
UNAVAILABLE_PHRASES = ("temporarily unavailable", "service unavailable")
SERVER_ERROR_STATUSES = (500, 502, 503, 504)


@dataclass
class Classification:
    category: ErrorCategory
    user_message: str
    recovery_actions: List[str]
    retryable: bool


GUIDANCE: Dict[ErrorCategory, tuple] = {
    ErrorCategory.NETWORK: (
        "Connection Problem",
        "Unable to connect to the internet. Please check your network connection and try again.",
        ["Check your internet connection", "Wait a moment and try again"],
    ),
    ErrorCategory.TIMEOUT: (
        "Request Timed Out",
        "The request timed out. This might be due to a slow connection or server issues.",
        ["Check your internet connection speed", "Try again in a few moments",
         "Contact support if the problem persists"],
    ),
    ErrorCategory.AUTHENTICATION: (
        "Authentication Error",
        "Authentication failed. Your access token may be invalid or expired.",
        ["Check your GitHub access token", "Generate a new access token if needed",
         "Ensure the token has gist permissions"],
    ),
    ErrorCategory.RATE_LIMIT: (
        "Rate Limited",
        "Too many requests. GitHub has temporarily limited your access.",
        ["Wait a few minutes before trying again", "Reduce the frequency of sync operations",
         "Check your GitHub API rate limit status"],
    ),
    ErrorCategory.PERMISSION: (
        "Access Denied",
        "Access denied. You may not have permission to access this gist.",
        ["Check that the gist ID is correct", "Ensure the gist is public or you have access",
         "Verify your access token permissions"],
    ),
    ErrorCategory.NOT_FOUND: (
        "Gist Not Found",
        "The gist was not found. It may have been deleted or the ID is incorrect.",
        ["Double-check the gist ID", "Ensure the gist still exists on GitHub",
         "Create a new gist if the original was deleted"],
    ),
    ErrorCategory.VALIDATION: (
        "Data Error",
        "The data format is invalid. There may be an issue with your audiobook data.",
        ["Check your audiobook data for errors", "Try exporting and re-importing your data"],
    ),
    ErrorCategory.SERVER_ERROR: (
        "Server Error",
        "GitHub is experiencing technical difficulties. Please try again later.",
        ["Wait a few minutes and try again", "Check GitHub status page for known issues",
         "Use offline mode until service is restored"],
    ),
    ErrorCategory.GIST_ERROR: (
        "Gist Error",
        "There was a problem with your gist. Please check your gist configuration.",
        ["Verify your gist ID is correct", "Check that the gist exists and is accessible",
         "Try creating a new gist if needed"],
    ),
    ErrorCategory.QUOTA_EXCEEDED: (
        "Storage Full",
        "Local storage is full. Old cache data has been cleaned up.",
        ["Try the operation again", "Remove unused audiobooks to reduce library size"],
    ),
    ErrorCategory.QUEUE_EXHAUSTED: (
        "Change Not Synced",
        "A change could not be synced after several attempts and was dropped from the queue.",
        ["Run a manual sync", "Check the audiobook is still in your library"],
    ),
    ErrorCategory.CONFLICT: (
        "Sync Conflict",
        "Your library was changed on another device. Choose which version to keep.",
        ["Keep this device's version", "Keep the other device's version", "Merge both versions"],
    ),
    ErrorCategory.UNKNOWN: (
        "Unexpected Error",
        "An unexpected error occurred. Please try again or contact support if the problem persists.",
        ["Try the operation again", "Check the logs for more details",
         "Contact support with error details"],
    ),
}


def _status_category(status: int, message: str) -> Optional[tuple]:
    if status == 401:
        return ErrorCategory.AUTHENTICATION, False
    if status == 403:
        if "rate limit" in message.lower():
            return ErrorCategory.RATE_LIMIT, True
        return ErrorCategory.PERMISSION, False
    if status == 404:
        return ErrorCategory.NOT_FOUND, False
    if status == 408:
        return ErrorCategory.TIMEOUT, True
    if status == 422:
        return ErrorCategory.VALIDATION, False
    if status == 429:
        return ErrorCategory.RATE_LIMIT, True
    if status in SERVER_ERROR_STATUSES:
        return ErrorCategory.SERVER_ERROR, True
    return None


class ErrorClassifier:
    """Pure mapping from an exception to {category, user message, recovery actions, retryable}."""

    def categorize(self, error: BaseException) -> tuple:
        # Connectivity failures
        if isinstance(error, (httpx.ConnectError, httpx.NetworkError, ConnectionError)):
            return ErrorCategory.NETWORK, True
        # Abort / deadline
        if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
            return ErrorCategory.TIMEOUT, True

        message = str(error)
        if isinstance(error, ClassifiedError):
            if error.http_status is not None:
                mapped = _status_category(error.http_status, message)
                if mapped:
                    return mapped
            if error.category is not ErrorCategory.UNKNOWN:
                return error.category, error.retryable

        lowered = message.lower()
        if any(p in lowered for p in RATE_LIMIT_PHRASES):
            return ErrorCategory.RATE_LIMIT, True
        if any(p in lowered for p in UNAVAILABLE_PHRASES):
            return ErrorCategory.GIST_ERROR, True
        return ErrorCategory.UNKNOWN, False

    def classify(self, error: BaseException) -> Classification:
        category, retryable = self.categorize(error)
        _, user_message, actions = GUIDANCE[category]
        return Classification(category, user_message, list(actions), retryable)

    def should_retry(self, error: BaseException) -> bool:
        return self.categorize(error)[1]

    @staticmethod
    def title_for(category: ErrorCategory) -> str:
        return GUIDANCE[category][0]


@dataclass
class RetryTracking:
    attempts: int
    last_error: BaseException
    operation_type: str
    start_time: float = field(default_factory=time.time)


class RetryPolicy:
    def __init__(
        self,
        classifier: Optional[ErrorClassifier] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
    ):
        self.classifier = classifier or ErrorClassifier()
        self.max_retries = settings.RETRY_MAX_RETRIES if max_retries is None else max_retries
        self.base_delay = settings.RETRY_BASE_DELAY_SECONDS if base_delay is None else base_delay
        self.max_delay = settings.RETRY_MAX_DELAY_SECONDS if max_delay is None else max_delay
        self.retry_attempts: Dict[str, RetryTracking] = {}

    def calculate_delay(self, attempt: int, base_delay: Optional[float] = None) -> float:
        """Exponential backoff with +/-25% jitter, capped at max_delay. attempt is 1-based."""
        base = self.base_delay if base_delay is None else base_delay
        delay = base * (2 ** max(attempt - 1, 0))
        jitter = delay * 0.25 * (random.random() * 2 - 1)
        return max(0.0, min(delay + jitter, self.max_delay))

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        operation_type: str = "operation",
        operation_id: Optional[str] = None,
    ) -> T:
        max_retries = self.max_retries if max_retries is None else max_retries
        base_delay = self.base_delay if base_delay is None else base_delay
        operation_id = operation_id or f"{operation_type}-{uuid.uuid4().hex[:12]}"

        attempt = 0
        while True:
            try:
                result = await operation()
                self.retry_attempts.pop(operation_id, None)
                return result
            except Exception as e:
                attempt += 1
                tracked = self.retry_attempts.get(operation_id)
                self.retry_attempts[operation_id] = RetryTracking(
                    attempts=attempt,
                    last_error=e,
                    operation_type=operation_type,
                    start_time=tracked.start_time if tracked else time.time(),
                )

                if attempt > max_retries or not self.classifier.should_retry(e):
                    self.retry_attempts.pop(operation_id, None)
                    enhanced = self.enhance_error(e, attempt - 1, operation_type)
                    if enhanced is e:
                        raise
                    raise enhanced from e

                delay = self.calculate_delay(attempt, base_delay)
                retry_after = getattr(e, "retry_after", None)
                if retry_after:
                    delay = min(max(delay, retry_after), self.max_delay)
                logger.warning(
                    f"{operation_type} failed (attempt {attempt}/{max_retries}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)

    def enhance_error(self, error: BaseException, attempts: int, operation_type: str) -> ClassifiedError:
        info = self.classifier.classify(error)
        if isinstance(error, ClassifiedError):
            enhanced = error
        else:
            enhanced = ClassifiedError(str(error) or info.user_message)
        enhanced.category = info.category
        enhanced.retryable = info.retryable
        enhanced.user_message = info.user_message
        enhanced.recovery_actions = info.recovery_actions
        enhanced.retry_attempts = attempts
        enhanced.operation_type = operation_type
        return enhanced

    def format_error_for_user(self, error: BaseException) -> Dict[str, Any]:
        info = self.classifier.classify(error)
        return {
            "title": self.classifier.title_for(info.category),
            "message": info.user_message,
            "category": info.category.value,
            "recoveryActions": info.recovery_actions,
            "technicalDetails": str(error),
            "canRetry": info.retryable,
            "timestamp": utc_now_iso(),
        }

    def get_retry_stats(self) -> Dict[str, Any]:
        now = time.time()
        return {
            "activeRetries": len(self.retry_attempts),
            "operations": [
                {
                    "operationId": op_id,
                    "attempts": info.attempts,
                    "operationType": info.operation_type,
                    "lastError": str(info.last_error),
                    "duration": now - info.start_time,
                }
                for op_id, info in self.retry_attempts.items()
            ],
        }

    def clear_retry_tracking(self):
        self.retry_attempts.clear()
