"""Anti-detection settings for the automated browser.

The target fingerprints sessions aggressively, so these flags and scripts are
part of getting any data at all: hide the automation-controlled flag, keep
background timers running, and pair a realistic viewport with a matching
desktop user agent.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from playwright.async_api import BrowserContext


STEALTH_LAUNCH_ARGS: List[str] = [
    '--disable-blink-features=AutomationControlled',
    '--disable-background-timer-throttling',
    '--disable-backgrounding-occluded-windows',
    '--disable-renderer-backgrounding',
    '--disable-gpu',
    '--disable-dev-shm-usage',
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--no-first-run',
    '--no-default-browser-check',
    '--disable-infobars',
    '--disable-extensions',
    '--disable-default-apps',
    '--disable-component-update',
    '--disable-features=Translate,TranslateUI',
    '--disable-ipc-flooding-protection',
    '--password-store=basic',
    '--use-mock-keychain',
    '--mute-audio',
]

# Pretend to be a regular desktop Chrome.
STEALTH_INIT_SCRIPT = """
    Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
    Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
    Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
    window.chrome = window.chrome || { runtime: {} };
    const originalQuery = window.navigator.permissions && window.navigator.permissions.query;
    if (originalQuery) {
        window.navigator.permissions.query = (parameters) => (
            parameters.name === 'notifications'
                ? Promise.resolve({ state: Notification.permission })
                : originalQuery(parameters)
        );
    }
"""

BLOCKED_RESOURCE_TYPES = ("font", "media")


@dataclass
class UserAgentPool:
    """Desktop Chrome user agents; only these pass as 1080p desktop sessions."""
    desktop_chrome: List[str] = field(default_factory=lambda: [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    ])

    def pick(self, rng: Optional[random.Random] = None) -> str:
        return (rng or random).choice(self.desktop_chrome)


@dataclass
class BrowserProfile:
    """Viewport and user agent pairing for one browsing context."""
    user_agent: str
    viewport_width: int = 1920
    viewport_height: int = 1080
    locale: str = "en-US"
    timezone_id: str = "America/New_York"

    def context_options(self) -> Dict[str, Any]:
        return {
            "user_agent": self.user_agent,
            "viewport": {"width": self.viewport_width, "height": self.viewport_height},
            "locale": self.locale,
            "timezone_id": self.timezone_id,
            "java_script_enabled": True,
            "extra_http_headers": {"Accept-Language": "en-US,en;q=0.9"},
        }


class StealthManager:
    """Builds browser profiles and applies init scripts to new contexts."""

    def __init__(self,
                 *,
                 user_agent: Optional[str] = None,
                 viewport_width: int = 1920,
                 viewport_height: int = 1080,
                 block_heavy_resources: bool = False,
                 logger: Optional[logging.Logger] = None):
        self.fixed_user_agent = user_agent
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.block_heavy_resources = block_heavy_resources
        self.user_agent_pool = UserAgentPool()
        self.logger = logger or logging.getLogger(__name__)

    def build_profile(self) -> BrowserProfile:
        return BrowserProfile(
            user_agent=self.fixed_user_agent or self.user_agent_pool.pick(),
            viewport_width=self.viewport_width,
            viewport_height=self.viewport_height,
        )

    async def apply_stealth_to_context(self, context: BrowserContext) -> None:
        await context.add_init_script(STEALTH_INIT_SCRIPT)
        if self.block_heavy_resources:
            await context.route("**/*", self._route_handler)

    @staticmethod
    async def _route_handler(route) -> None:
        # video.twimg.com must stay reachable for response interception.
        if route.request.resource_type in BLOCKED_RESOURCE_TYPES and "video.twimg.com" not in route.request.url:
            await route.abort()
        else:
            await route.continue_()
