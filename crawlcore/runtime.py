"""Browser process and per-task browsing contexts.

``BrowserRuntime`` owns the Playwright driver and one Chromium process.
``BrowserSessionManager`` hands out one isolated context per running task,
seeded from the persisted auth state, and guarantees the context is torn down
when the task ends or is cancelled.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .auth_state import AuthStateStore
from .config import BrowserConfig
from .extraction.selectors import ELEMENT_PRESENT_JS, LOGIN_URL_MARKERS
from .reliability.errors import AuthExpired, ContextCrashed, ErrorContext, NavigationTimeout, SelectorTimeout
from .reliability.stealth import STEALTH_LAUNCH_ARGS, StealthManager

KILL_TIMEOUT_SECONDS = 5.0


@dataclass
class SessionConfig:
    """Launch settings for ``BrowserSessionManager.create``."""
    headless: bool = True
    viewport_width: int = 1920
    viewport_height: int = 1080
    user_agent: Optional[str] = None
    timeout_ms: int = 30000

    @classmethod
    def from_browser_config(cls, config: BrowserConfig) -> "SessionConfig":
        return cls(
            headless=config.headless,
            viewport_width=config.viewport_width,
            viewport_height=config.viewport_height,
            user_agent=config.user_agent,
            timeout_ms=config.navigation_timeout_ms,
        )


@dataclass
class WaitPolicy:
    """How long and for what ``navigate_to_url`` waits."""
    wait_until: str = "domcontentloaded"
    content_selector: Optional[str] = None
    timeout_ms: Optional[int] = None
    selector_timeout_ms: Optional[int] = None


@dataclass
class ContextHandle:
    task_id: str
    context: BrowserContext
    page: Page
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BrowserRuntime:
    """Owns the Playwright process and a shared Chromium Browser."""

    def __init__(self, *, headless: bool, args: Optional[List[str]] = None,
                 logger: Optional[logging.Logger] = None,
                 kill_timeout_seconds: float = KILL_TIMEOUT_SECONDS) -> None:
        self._headless = headless
        self.kill_timeout_seconds = kill_timeout_seconds
        self._args = args or []
        self._logger = logger or logging.getLogger("crawlcore.browser")
        self._playwright = None
        self.browser: Optional[Browser] = None

    @property
    def is_running(self) -> bool:
        return self.browser is not None and self.browser.is_connected()

    async def start(self) -> None:
        if self.is_running:
            return
        self._logger.info("Starting Playwright runtime…")
        self._playwright = await async_playwright().start()
        self.browser = await self._playwright.chromium.launch(
            headless=self._headless,
            args=STEALTH_LAUNCH_ARGS + list(self._args),
            timeout=60000,
        )
        self._logger.info(f"Chromium launched (headless={self._headless})")

    async def stop(self) -> None:
        self._logger.info("Shutting down Playwright runtime…")
        if self.browser:
            try:
                await self.browser.close()
            except PlaywrightError as e:
                self._logger.warning(f"Error closing browser: {e}")
            self.browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

    async def kill(self) -> None:
        """Tear down the driver without waiting on the browser to cooperate."""
        self._logger.error("Force-terminating browser process")
        self.browser = None
        if self._playwright:
            playwright, self._playwright = self._playwright, None
            try:
                await asyncio.wait_for(playwright.stop(), timeout=self.kill_timeout_seconds)
            except asyncio.TimeoutError:
                self._logger.error(
                    f"Playwright driver did not stop within {self.kill_timeout_seconds}s; abandoning it"
                )


class BrowserSessionManager:
    """Creates, tracks and tears down per-task browsing contexts."""

    def __init__(self,
                 config: BrowserConfig,
                 auth_store: AuthStateStore,
                 *,
                 runtime: Optional[BrowserRuntime] = None,
                 stealth: Optional[StealthManager] = None,
                 logger: Optional[logging.Logger] = None):
        self.config = config
        self.auth_store = auth_store
        self.logger = (logger or logging.getLogger("crawlcore")).getChild("session")
        self.session_config = SessionConfig.from_browser_config(config)
        self.runtime = runtime
        self.stealth = stealth or StealthManager(
            user_agent=config.user_agent,
            viewport_width=config.viewport_width,
            viewport_height=config.viewport_height,
            block_heavy_resources=config.block_heavy_resources,
            logger=self.logger,
        )
        self._active_contexts: Dict[str, ContextHandle] = {}
        self._launch_lock = asyncio.Lock()

    async def create(self, session_config: Optional[SessionConfig] = None) -> BrowserRuntime:
        """Launch the browser, or reuse the warm one."""
        async with self._launch_lock:
            if session_config is not None:
                self.session_config = session_config
            if self.runtime is None:
                self.runtime = BrowserRuntime(headless=self.session_config.headless, logger=self.logger)
            if not self.runtime.is_running:
                await self.runtime.start()
            return self.runtime

    async def new_context(self, task_id: str, *, require_auth: bool = True) -> ContextHandle:
        """Open an isolated context seeded from the persisted auth state.

        Raises ``NoAuthState`` / ``AuthExpired`` before touching the browser when
        the target needs a login and the stored state cannot provide one.
        """
        if require_auth:
            state = self.auth_store.load_valid()
        else:
            state = self.auth_store.load()

        runtime = await self.create()
        options: Dict[str, Any] = self.stealth.build_profile().context_options()
        if state:
            options["storage_state"] = state

        context = await runtime.browser.new_context(**options)
        try:
            context.set_default_navigation_timeout(self.config.navigation_timeout_ms)
            context.set_default_timeout(self.config.selector_timeout_ms)
            await self.stealth.apply_stealth_to_context(context)
            page = await context.new_page()
        except BaseException:
            await context.close()
            raise

        handle = ContextHandle(task_id=task_id, context=context, page=page)
        self._active_contexts[task_id] = handle
        self.logger.debug(f"Created browser context for task {task_id}")
        return handle

    async def navigate_to_url(self, page: Page, url: str, policy: Optional[WaitPolicy] = None) -> None:
        """Navigate with a bounded wait; timeouts surface as crawl errors."""
        policy = policy or WaitPolicy()
        timeout = policy.timeout_ms or self.config.navigation_timeout_ms
        try:
            await page.goto(url, wait_until=policy.wait_until, timeout=timeout)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(
                f"Navigation to {url} exceeded {timeout}ms", context=ErrorContext(url=url), cause=e
            ) from e

        if policy.content_selector:
            await self.wait_for_content(page, policy.content_selector, policy.selector_timeout_ms)

    async def wait_for_content(self, page: Page, selector: str, timeout_ms: Optional[int] = None) -> None:
        timeout = timeout_ms or self.config.selector_timeout_ms
        try:
            await page.wait_for_selector(selector, timeout=timeout)
        except PlaywrightTimeoutError as e:
            raise SelectorTimeout(
                f"'{selector}' did not appear within {timeout}ms",
                context=ErrorContext(url=page.url, selector=selector),
                cause=e,
            ) from e

    def ensure_on_target(self, page: Page, hosts: Iterable[str]) -> None:
        host = (urlparse(page.url).hostname or "").lower()
        if not any(host == h or host.endswith("." + h) for h in hosts):
            raise ContextCrashed(f"Page left the target domain: {page.url}", context=ErrorContext(url=page.url))

    async def ensure_authenticated(self, page: Page, login_selector: str) -> None:
        """Raise ``AuthExpired`` if the target bounced the session to a login form."""
        if any(marker in page.url for marker in LOGIN_URL_MARKERS):
            raise AuthExpired(f"Redirected to login: {page.url}", context=ErrorContext(url=page.url))
        if await page.evaluate(ELEMENT_PRESENT_JS, login_selector):
            raise AuthExpired("Login form shown instead of content", context=ErrorContext(url=page.url))

    async def close_context(self, handle: ContextHandle, grace_seconds: Optional[float] = None) -> bool:
        """Close a context; past the grace period the browser process is killed.

        Returns True when the context closed on its own.
        """
        try:
            if grace_seconds is None:
                await handle.context.close()
            else:
                await asyncio.wait_for(handle.context.close(), timeout=grace_seconds)
            self.logger.debug(f"Closed browser context for task {handle.task_id}")
            return True
        except asyncio.TimeoutError:
            self.logger.error(f"Context for task {handle.task_id} did not close within {grace_seconds}s")
            await self.force_kill()
            return False
        except PlaywrightError as e:
            self.logger.warning(f"Error closing context for task {handle.task_id}: {e}")
            return False
        finally:
            self._active_contexts.pop(handle.task_id, None)

    async def force_kill(self) -> None:
        """Terminate the browser process; every open context dies with it."""
        dropped = len(self._active_contexts)
        self._active_contexts.clear()
        if self.runtime is not None:
            await self.runtime.kill()
        self.logger.warning(f"Browser process killed ({dropped} contexts dropped)")

    @asynccontextmanager
    async def context(self, task_id: str, *, require_auth: bool = True, close_timeout: Optional[float] = None):
        """Dedicated context for one task execution with guaranteed cleanup."""
        handle = await self.new_context(task_id, require_auth=require_auth)
        try:
            yield handle
        finally:
            await self.close_context(handle, close_timeout)
            if not self._active_contexts and not self.config.keep_browser_warm:
                await self.close()

    def get_active_context(self, task_id: str) -> Optional[ContextHandle]:
        return self._active_contexts.get(task_id)

    @property
    def active_context_count(self) -> int:
        return len(self._active_contexts)

    async def close(self) -> None:
        """Close every context, then the browser process."""
        handles = list(self._active_contexts.values())
        if handles:
            self.logger.warning(f"Closing {len(handles)} active contexts")
            await asyncio.gather(*(self.close_context(h) for h in handles), return_exceptions=True)
        if self.runtime is not None:
            await self.runtime.stop()

    def health_check(self) -> Dict[str, Any]:
        return {
            "browser_running": bool(self.runtime and self.runtime.is_running),
            "active_contexts": self.active_context_count,
            "headless": self.session_config.headless,
        }
