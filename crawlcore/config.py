"""Environment-backed configuration for the crawl service.

Sections are plain dataclasses with sensible defaults. ``CrawlConfig`` overlays
environment variables on top of them once, validates the result and caches it
behind ``get_config()``. Components receive the section they need through
their constructor, so tests build configs directly and never touch the
environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class DisplayCapability:
    """Whether the host can show a browser window, resolved once at startup."""
    has_display: bool = False
    headless_override: Optional[bool] = None

    @property
    def headless(self) -> bool:
        if self.headless_override is not None:
            return self.headless_override
        return not self.has_display

    @classmethod
    def detect(cls) -> "DisplayCapability":
        has_display = bool(os.getenv("DISPLAY") or os.getenv("WAYLAND_DISPLAY"))
        override = os.getenv("BROWSER_HEADLESS", "").lower()
        if override in ("true", "1", "yes", "on"):
            return cls(has_display=has_display, headless_override=True)
        if override in ("false", "0", "no", "off"):
            return cls(has_display=has_display, headless_override=False)
        return cls(has_display=has_display)


@dataclass
class SystemConfig:
    """Paths and basic service settings."""
    log_root: str = "/tmp/crawlcore/logs"
    data_root: str = "/tmp/crawlcore/data"
    service_port: int = 8000
    log_level: str = "INFO"


@dataclass
class SecurityConfig:
    api_key_required: bool = False
    api_key: str = ""


@dataclass
class SchedulerConfig:
    """Worker pool sizing, budgets and recovery settings."""
    max_concurrent_tasks: int = 2
    task_timeout_seconds: float = 600
    cancel_grace_seconds: float = 10
    max_task_retries: int = 1
    retry_delay_seconds: float = 2
    zombie_sweep_interval_seconds: float = 300


@dataclass
class BrowserConfig:
    """Browser launch and navigation settings."""
    display: DisplayCapability = field(default_factory=DisplayCapability)
    viewport_width: int = 1920
    viewport_height: int = 1080
    user_agent: Optional[str] = None
    navigation_timeout_ms: int = 30000
    selector_timeout_ms: int = 15000
    auth_state_path: str = "data/browser-state.json"
    block_heavy_resources: bool = False
    keep_browser_warm: bool = True

    @property
    def headless(self) -> bool:
        return self.display.headless


@dataclass
class ExtractionConfig:
    """Pagination limits and interception window."""
    timeline_max_scrolls: int = 50
    channel_max_scrolls: int = 20
    empty_scroll_limit: int = 3
    time_budget_seconds: float = 300
    intercept_window_seconds: float = 15
    intercept_max_entries: int = 500
    scroll_pause_min_ms: int = 1000
    scroll_pause_max_ms: int = 2500
    min_scroll_delta_px: int = 100
    scroll_factor: float = 1.5


@dataclass
class StorageConfig:
    backend: str = "memory"  # memory | redis
    redis_url: str = "redis://localhost:6379/0"


class CrawlConfig:
    """Aggregated configuration loaded from the environment."""

    def __init__(self, display: Optional[DisplayCapability] = None):
        self.system = SystemConfig()
        self.security = SecurityConfig()
        self.scheduler = SchedulerConfig()
        self.browser = BrowserConfig(display=display or DisplayCapability.detect())
        self.extraction = ExtractionConfig()
        self.storage = StorageConfig()

        self._load_from_environment()
        self._validate_configuration()

    def _load_from_environment(self) -> None:
        self.system.log_root = os.getenv("LOG_ROOT", self.system.log_root)
        self.system.data_root = os.getenv("DATA_ROOT", self.system.data_root)
        self.system.service_port = self._get_int_env("SERVICE_PORT", self.system.service_port)
        self.system.log_level = os.getenv("LOG_LEVEL", self.system.log_level).upper()

        self.security.api_key_required = self._get_bool_env("API_KEY_REQUIRED", self.security.api_key_required)
        self.security.api_key = os.getenv("CRAWLCORE_API_KEY", self.security.api_key)

        s = self.scheduler
        s.max_concurrent_tasks = self._get_int_env("MAX_CONCURRENT_TASKS", s.max_concurrent_tasks)
        s.task_timeout_seconds = self._get_float_env("TASK_TIMEOUT_SECONDS", s.task_timeout_seconds)
        s.cancel_grace_seconds = self._get_float_env("CANCEL_GRACE_SECONDS", s.cancel_grace_seconds)
        s.max_task_retries = self._get_int_env("MAX_TASK_RETRIES", s.max_task_retries)
        s.retry_delay_seconds = self._get_float_env("RETRY_DELAY_SECONDS", s.retry_delay_seconds)
        s.zombie_sweep_interval_seconds = self._get_float_env(
            "ZOMBIE_SWEEP_INTERVAL_SECONDS", s.zombie_sweep_interval_seconds
        )

        b = self.browser
        b.navigation_timeout_ms = self._get_int_env("NAVIGATION_TIMEOUT_MS", b.navigation_timeout_ms)
        b.selector_timeout_ms = self._get_int_env("SELECTOR_TIMEOUT_MS", b.selector_timeout_ms)
        b.auth_state_path = os.getenv("AUTH_STATE_PATH", b.auth_state_path)
        b.block_heavy_resources = self._get_bool_env("BLOCK_HEAVY_RESOURCES", b.block_heavy_resources)
        b.keep_browser_warm = self._get_bool_env("KEEP_BROWSER_WARM", b.keep_browser_warm)
        b.user_agent = os.getenv("BROWSER_USER_AGENT") or b.user_agent
        b.viewport_width = self._get_int_env("VIEWPORT_WIDTH", b.viewport_width)
        b.viewport_height = self._get_int_env("VIEWPORT_HEIGHT", b.viewport_height)

        e = self.extraction
        e.timeline_max_scrolls = self._get_int_env("TIMELINE_MAX_SCROLLS", e.timeline_max_scrolls)
        e.channel_max_scrolls = self._get_int_env("CHANNEL_MAX_SCROLLS", e.channel_max_scrolls)
        e.empty_scroll_limit = self._get_int_env("EMPTY_SCROLL_LIMIT", e.empty_scroll_limit)
        e.time_budget_seconds = self._get_float_env("EXTRACTION_TIME_BUDGET_SECONDS", e.time_budget_seconds)
        e.intercept_window_seconds = self._get_float_env("INTERCEPT_WINDOW_SECONDS", e.intercept_window_seconds)
        e.intercept_max_entries = self._get_int_env("INTERCEPT_MAX_ENTRIES", e.intercept_max_entries)
        e.scroll_pause_min_ms = self._get_int_env("SCROLL_PAUSE_MIN_MS", e.scroll_pause_min_ms)
        e.scroll_pause_max_ms = self._get_int_env("SCROLL_PAUSE_MAX_MS", e.scroll_pause_max_ms)
        e.min_scroll_delta_px = self._get_int_env("MIN_SCROLL_DELTA_PX", e.min_scroll_delta_px)

        self.storage.backend = os.getenv("STORAGE_BACKEND", self.storage.backend).lower()
        self.storage.redis_url = os.getenv("REDIS_URL", self.storage.redis_url)

    def _get_bool_env(self, key: str, default: bool) -> bool:
        value = os.getenv(key, "").lower()
        if value in ("true", "1", "yes", "on"):
            return True
        elif value in ("false", "0", "no", "off"):
            return False
        return default

    def _get_int_env(self, key: str, default: int) -> int:
        try:
            return int(os.getenv(key, str(default)))
        except ValueError:
            return default

    def _get_float_env(self, key: str, default: float) -> float:
        try:
            return float(os.getenv(key, str(default)))
        except ValueError:
            return default

    def _validate_configuration(self) -> None:
        if self.scheduler.max_concurrent_tasks < 1:
            raise ValueError("MAX_CONCURRENT_TASKS must be at least 1")

        if self.scheduler.max_task_retries < 0:
            raise ValueError("MAX_TASK_RETRIES cannot be negative")

        if self.extraction.scroll_pause_min_ms > self.extraction.scroll_pause_max_ms:
            raise ValueError("SCROLL_PAUSE_MIN_MS cannot exceed SCROLL_PAUSE_MAX_MS")

        if self.storage.backend not in ("memory", "redis"):
            raise ValueError("STORAGE_BACKEND must be 'memory' or 'redis'")

    def get_configuration_summary(self) -> Dict[str, Any]:
        """Configuration summary for logging/debugging."""
        return {
            "system": {
                "log_root": self.system.log_root,
                "data_root": self.system.data_root,
                "service_port": self.system.service_port,
            },
            "scheduler": {
                "max_concurrent_tasks": self.scheduler.max_concurrent_tasks,
                "task_timeout_seconds": self.scheduler.task_timeout_seconds,
                "cancel_grace_seconds": self.scheduler.cancel_grace_seconds,
            },
            "browser": {
                "headless": self.browser.headless,
                "has_display": self.browser.display.has_display,
                "navigation_timeout_ms": self.browser.navigation_timeout_ms,
                "auth_state_path": self.browser.auth_state_path,
            },
            "storage": {"backend": self.storage.backend},
        }


_config_instance: Optional[CrawlConfig] = None


def get_config() -> CrawlConfig:
    """Get or create the process-wide configuration instance."""
    global _config_instance

    if _config_instance is None:
        _config_instance = CrawlConfig()
    return _config_instance


def reset_config() -> None:
    """Reset the cached configuration (useful for testing)."""
    global _config_instance
    _config_instance = None
