"""Error taxonomy and classification for crawl task execution.

Every failure a task can end with maps to a ``FailureReason`` that is
persisted on the task record, so the UI can tell "log in again" apart from
"try again later". Retryable kinds are retried once with a fresh browser
context by the scheduler; everything else is terminal.
"""

from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from pydantic import BaseModel, Field


class ErrorSeverity(str, Enum):
    """Error severity levels for prioritized handling."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ErrorCategory(str, Enum):
    """Error categories for targeted recovery strategies."""
    VALIDATION = "validation"
    CONFLICT = "conflict"
    AUTHENTICATION = "authentication"
    NAVIGATION = "navigation"
    BROWSER = "browser"
    TIMEOUT = "timeout"
    STORAGE = "storage"
    CANCELLATION = "cancellation"
    UNKNOWN = "unknown"


class RecoveryStrategy(str, Enum):
    """What the scheduler should do after a failure."""
    RETRY_FRESH_CONTEXT = "retry_fresh_context"
    REFRESH_SESSION = "refresh_session"
    REJECT = "reject"
    FAIL = "fail"


class FailureReason(str, Enum):
    """Reason persisted on a failed task record."""
    VALIDATION_ERROR = "ValidationError"
    DUPLICATE_ACTIVE_TASK = "DuplicateActiveTask"
    NO_AUTH_STATE = "NoAuthState"
    AUTH_EXPIRED = "AuthExpired"
    NAVIGATION_TIMEOUT = "NavigationTimeout"
    SELECTOR_TIMEOUT = "SelectorTimeout"
    CONTEXT_CRASHED = "ContextCrashed"
    TASK_TIMEOUT = "TaskTimeout"
    ORPHANED = "Orphaned"
    USER_CANCELLED = "UserCancelled"
    STORAGE_ERROR = "StorageError"
    UNKNOWN = "Unknown"


class ErrorContext(BaseModel):
    """Detailed error context for debugging and recovery."""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    task_id: Optional[str] = None
    task_type: Optional[str] = None
    target_id: Optional[str] = None
    url: Optional[str] = None
    selector: Optional[str] = None
    traceback: Optional[str] = None
    attempt_number: int = 1
    max_attempts: int = 1


class EnhancedError(Exception):
    """Base enhanced error with context and recovery information."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        recovery_strategy: RecoveryStrategy = RecoveryStrategy.FAIL,
        context: Optional[ErrorContext] = None,
        cause: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.recovery_strategy = recovery_strategy
        self.context = context or ErrorContext()
        self.cause = cause

        if not self.context.traceback and cause:
            self.context.traceback = ''.join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "recovery_strategy": self.recovery_strategy.value,
            "context": self.context.model_dump(mode="json"),
            "cause": str(self.cause) if self.cause else None
        }


class CrawlError(EnhancedError):
    """An error with a persisted failure reason."""

    reason: FailureReason = FailureReason.UNKNOWN
    category: ErrorCategory = ErrorCategory.UNKNOWN
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    recovery_strategy: RecoveryStrategy = RecoveryStrategy.FAIL

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", type(self).category)
        kwargs.setdefault("severity", type(self).severity)
        kwargs.setdefault("recovery_strategy", type(self).recovery_strategy)
        super().__init__(message, **kwargs)

    @property
    def retryable(self) -> bool:
        return self.recovery_strategy == RecoveryStrategy.RETRY_FRESH_CONTEXT


class ValidationError(CrawlError):
    """Malformed task submission; never enters the task lifecycle."""
    reason = FailureReason.VALIDATION_ERROR
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.LOW
    recovery_strategy = RecoveryStrategy.REJECT


class DuplicateActiveTask(CrawlError):
    """Another task for the same target is queued or running."""
    reason = FailureReason.DUPLICATE_ACTIVE_TASK
    category = ErrorCategory.CONFLICT
    severity = ErrorSeverity.LOW
    recovery_strategy = RecoveryStrategy.REJECT

    def __init__(self, message: str, *, active_task_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.active_task_id = active_task_id


class NoAuthState(CrawlError):
    """The target needs a login and no persisted auth state exists."""
    reason = FailureReason.NO_AUTH_STATE
    category = ErrorCategory.AUTHENTICATION
    severity = ErrorSeverity.HIGH
    recovery_strategy = RecoveryStrategy.REFRESH_SESSION


class AuthExpired(CrawlError):
    """Persisted auth state exists but the target no longer accepts it."""
    reason = FailureReason.AUTH_EXPIRED
    category = ErrorCategory.AUTHENTICATION
    severity = ErrorSeverity.HIGH
    recovery_strategy = RecoveryStrategy.REFRESH_SESSION


class NavigationTimeout(CrawlError):
    reason = FailureReason.NAVIGATION_TIMEOUT
    category = ErrorCategory.NAVIGATION
    recovery_strategy = RecoveryStrategy.RETRY_FRESH_CONTEXT


class SelectorTimeout(CrawlError):
    reason = FailureReason.SELECTOR_TIMEOUT
    category = ErrorCategory.TIMEOUT
    recovery_strategy = RecoveryStrategy.RETRY_FRESH_CONTEXT


class ContextCrashed(CrawlError):
    """Browser context died, or the page left the target domain."""
    reason = FailureReason.CONTEXT_CRASHED
    category = ErrorCategory.BROWSER
    severity = ErrorSeverity.HIGH
    recovery_strategy = RecoveryStrategy.RETRY_FRESH_CONTEXT


class TaskTimeout(CrawlError):
    """Hard per-task budget exceeded. Terminal."""
    reason = FailureReason.TASK_TIMEOUT
    category = ErrorCategory.TIMEOUT
    severity = ErrorSeverity.HIGH


class StorageFailure(CrawlError):
    reason = FailureReason.STORAGE_ERROR
    category = ErrorCategory.STORAGE
    severity = ErrorSeverity.CRITICAL


_CRASH_MARKERS = ("target closed", "target page, context or browser has been closed",
                  "browser has been closed", "crashed", "disconnected")


def failure_reason_of(error: BaseException) -> FailureReason:
    if isinstance(error, CrawlError):
        return error.reason
    return FailureReason.UNKNOWN


class ErrorHandler:
    """Classifies foreign exceptions and logs them by severity."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self.error_counts: Dict[str, int] = {}
        self.last_errors: Dict[str, datetime] = {}

    def classify(self, error: BaseException, context: Optional[ErrorContext] = None) -> EnhancedError:
        """Map an arbitrary exception onto the crawl error taxonomy."""
        if isinstance(error, EnhancedError):
            return error

        if isinstance(error, PlaywrightTimeoutError):
            return NavigationTimeout(str(error), context=context, cause=error)

        if isinstance(error, PlaywrightError):
            message = str(error).lower()
            if any(marker in message for marker in _CRASH_MARKERS):
                return ContextCrashed(str(error), context=context, cause=error)

        return EnhancedError(
            str(error) or type(error).__name__,
            category=ErrorCategory.UNKNOWN,
            context=context,
            cause=error
        )

    def handle_error(self, error: BaseException, context: Optional[ErrorContext] = None) -> EnhancedError:
        """Classify, log and count an error. Returns the classified error."""
        enhanced = self.classify(error, context)
        self._log_error(enhanced)
        self._update_error_stats(enhanced)
        return enhanced

    def _log_error(self, error: EnhancedError) -> None:
        log_message = f"[{error.category.value}] {error.message}"

        if error.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(log_message)
        elif error.severity == ErrorSeverity.HIGH:
            self.logger.error(log_message)
        elif error.severity == ErrorSeverity.MEDIUM:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

    def _update_error_stats(self, error: EnhancedError) -> None:
        key = f"{error.category.value}:{error.severity.value}"
        self.error_counts[key] = self.error_counts.get(key, 0) + 1
        self.last_errors[key] = datetime.now(timezone.utc)

    def get_error_stats(self) -> Dict[str, Any]:
        return {
            "error_counts": dict(self.error_counts),
            "recent_errors": {
                k: v.isoformat() for k, v in self.last_errors.items()
                if (datetime.now(timezone.utc) - v).total_seconds() < 3600
            }
        }
