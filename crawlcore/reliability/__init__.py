"""Error taxonomy and anti-detection support for crawl execution."""

from .errors import (
    AuthExpired,
    ContextCrashed,
    CrawlError,
    DuplicateActiveTask,
    EnhancedError,
    ErrorCategory,
    ErrorContext,
    ErrorHandler,
    ErrorSeverity,
    FailureReason,
    NavigationTimeout,
    NoAuthState,
    RecoveryStrategy,
    SelectorTimeout,
    StorageFailure,
    TaskTimeout,
    ValidationError,
    failure_reason_of,
)
from .stealth import STEALTH_LAUNCH_ARGS, BrowserProfile, StealthManager, UserAgentPool

__all__ = [
    "AuthExpired",
    "BrowserProfile",
    "ContextCrashed",
    "CrawlError",
    "DuplicateActiveTask",
    "EnhancedError",
    "ErrorCategory",
    "ErrorContext",
    "ErrorHandler",
    "ErrorSeverity",
    "FailureReason",
    "NavigationTimeout",
    "NoAuthState",
    "RecoveryStrategy",
    "STEALTH_LAUNCH_ARGS",
    "SelectorTimeout",
    "StealthManager",
    "StorageFailure",
    "TaskTimeout",
    "UserAgentPool",
    "ValidationError",
    "failure_reason_of",
]
