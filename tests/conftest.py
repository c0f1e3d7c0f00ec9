"""Shared fixtures: in-process stand-ins for the Playwright objects we drive."""

import asyncio
import json
import time

import pytest

from crawlcore.auth_state import AuthStateStore
from crawlcore.config import BrowserConfig, DisplayCapability, ExtractionConfig, SchedulerConfig
from crawlcore.extraction.selectors import ELEMENT_PRESENT_JS, SCRAPE_CHANNEL_JS, SCRAPE_TIMELINE_JS, SCROLL_JS
from crawlcore.runtime import BrowserSessionManager
from crawlcore.storage import InMemoryStorageService
from crawlcore.workers import TaskScheduler


def make_post(n, **overrides):
    node = {
        "href": f"/someone/status/{1000 + n}",
        "text": f"post {n}",
        "author_name": "Some One",
        "author_href": "/someone",
        "author_avatar": None,
        "published_at": "2026-10-01T12:00:00.000Z",
        "reply": "1",
        "repost": "2",
        "like": "1.2K",
        "views": "3M",
        "images": [],
        "has_video": False,
        "video_poster": None,
        "social_context": "",
        "is_reply": False,
        "truncated": False,
    }
    node.update(overrides)
    return node


def make_video(n, **overrides):
    node = {
        "href": f"/watch?v=vid{n:08d}",
        "title": f"video {n}",
        "thumbnail": f"https://i.ytimg.com/vi/vid{n:08d}/hqdefault.jpg",
        "duration": "10:00",
        "metadata": [f"{n}K views", "2 days ago"],
        "class_name": "",
    }
    node.update(overrides)
    return node


class FakePage:
    """A scrollable feed: each scrape shows ``window`` nodes starting at the scroll offset."""

    def __init__(self, posts=None, videos=None, *, window=10, step=5, channel_name="Some Channel",
                 redirect_to=None, login_form=False, goto_error=None, selector_error=None):
        self.posts = posts or []
        self.videos = videos or []
        self.window = window
        self.step = step
        self.channel_name = channel_name
        self.redirect_to = redirect_to
        self.login_form = login_form
        self.goto_error = goto_error
        self.selector_error = selector_error
        self.offset = 0
        self.url = "about:blank"
        self.listeners = {}
        self.scrolls = 0

    async def goto(self, url, wait_until=None, timeout=None):
        if self.goto_error:
            raise self.goto_error
        self.url = self.redirect_to or url

    async def wait_for_selector(self, selector, timeout=None):
        if self.selector_error:
            raise self.selector_error

    def _visible(self, items):
        return items[self.offset:self.offset + self.window]

    async def evaluate(self, script, arg=None):
        if script == SCRAPE_TIMELINE_JS:
            return [dict(p) for p in self._visible(self.posts)]
        if script == SCRAPE_CHANNEL_JS:
            return {"channel_name": self.channel_name, "items": [dict(v) for v in self._visible(self.videos)]}
        if script == SCROLL_JS:
            self.scrolls += 1
            total = max(len(self.posts), len(self.videos))
            if self.offset + self.window >= total:
                return 0
            self.offset += self.step
            return 1620
        if script == ELEMENT_PRESENT_JS:
            return self.login_form
        raise AssertionError(f"unexpected script: {script[:40]}")

    def on(self, event, handler):
        self.listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event, handler):
        self.listeners.get(event, []).remove(handler)

    def emit_response(self, url):
        for handler in self.listeners.get("response", []):
            handler(type("Response", (), {"url": url})())


class FakeContext:
    def __init__(self, browser, options, page):
        self.browser = browser
        self.options = options
        self.page = page
        self.closed = False
        self.init_scripts = []
        self.close_delay = 0

    def set_default_navigation_timeout(self, timeout):
        self.navigation_timeout = timeout

    def set_default_timeout(self, timeout):
        self.default_timeout = timeout

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def route(self, pattern, handler):
        self.route_pattern = pattern

    async def new_page(self):
        return self.page

    async def storage_state(self):
        return self.options.get("storage_state") or {"cookies": [], "origins": []}

    async def close(self):
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.closed = True
        self.browser.open_contexts -= 1


class FakeBrowser:
    def __init__(self, page_factory):
        self.page_factory = page_factory
        self.contexts = []
        self.open_contexts = 0
        self.max_open_contexts = 0

    def is_connected(self):
        return True

    async def new_context(self, **options):
        context = FakeContext(self, options, self.page_factory())
        self.contexts.append(context)
        self.open_contexts += 1
        self.max_open_contexts = max(self.max_open_contexts, self.open_contexts)
        return context


class FakeRuntime:
    def __init__(self, page_factory=FakePage):
        self.browser = FakeBrowser(page_factory)
        self.started = False
        self.killed = False

    @property
    def is_running(self):
        return self.started

    async def start(self):
        self.started = True

    async def stop(self):
        self.started = False

    async def kill(self):
        self.killed = True
        self.started = False


def auth_state(expires=None):
    expires = expires if expires is not None else time.time() + 86400
    return {
        "cookies": [
            {"name": "auth_token", "value": "t", "domain": ".x.com", "path": "/", "expires": expires},
            {"name": "ct0", "value": "c", "domain": ".x.com", "path": "/", "expires": expires},
        ],
        "origins": [],
    }


@pytest.fixture
def extraction_config():
    return ExtractionConfig(scroll_pause_min_ms=0, scroll_pause_max_ms=0, time_budget_seconds=60)


@pytest.fixture
def browser_config(tmp_path):
    return BrowserConfig(
        display=DisplayCapability(has_display=False),
        auth_state_path=str(tmp_path / "browser-state.json"),
    )


@pytest.fixture
def scheduler_config():
    return SchedulerConfig(
        max_concurrent_tasks=2,
        task_timeout_seconds=30,
        cancel_grace_seconds=1,
        max_task_retries=1,
        retry_delay_seconds=0,
        zombie_sweep_interval_seconds=0,
    )


@pytest.fixture
def storage():
    return InMemoryStorageService()


@pytest.fixture
def auth_store(browser_config):
    return AuthStateStore(browser_config.auth_state_path)


@pytest.fixture
def seeded_auth(browser_config):
    with open(browser_config.auth_state_path, "w", encoding="utf-8") as f:
        json.dump(auth_state(), f)
    return browser_config.auth_state_path


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def session(browser_config, auth_store, runtime):
    return BrowserSessionManager(browser_config, auth_store, runtime=runtime)


@pytest.fixture
def make_scheduler(storage, session, scheduler_config, extraction_config, tmp_path):
    created = []

    def factory(**overrides):
        scheduler = TaskScheduler(
            storage=overrides.pop("storage", storage),
            session=overrides.pop("session", session),
            config=overrides.pop("config", scheduler_config),
            extraction_config=extraction_config,
            data_root=str(tmp_path / "data"),
            **overrides,
        )
        created.append(scheduler)
        return scheduler

    return factory
