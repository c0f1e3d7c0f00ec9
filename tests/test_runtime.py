import asyncio

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from crawlcore.reliability.errors import AuthExpired, ContextCrashed, NavigationTimeout, NoAuthState, SelectorTimeout
from crawlcore.reliability.stealth import STEALTH_INIT_SCRIPT
from crawlcore.runtime import BrowserRuntime, WaitPolicy

from .conftest import FakePage


class TestNewContext:

    @pytest.mark.asyncio
    async def test_auth_required_without_state(self, session, runtime):
        with pytest.raises(NoAuthState):
            await session.new_context("t1", require_auth=True)
        assert runtime.browser.contexts == []

    @pytest.mark.asyncio
    async def test_context_is_seeded_and_stealthed(self, session, runtime, seeded_auth):
        handle = await session.new_context("t1", require_auth=True)
        context = handle.context

        assert context.options["storage_state"]["cookies"][0]["name"] == "auth_token"
        assert context.options["viewport"] == {"width": 1920, "height": 1080}
        assert STEALTH_INIT_SCRIPT in context.init_scripts
        assert context.navigation_timeout == session.config.navigation_timeout_ms
        assert session.active_context_count == 1
        assert runtime.started

    @pytest.mark.asyncio
    async def test_context_without_auth_requirement(self, session, runtime):
        handle = await session.new_context("t1", require_auth=False)
        assert "storage_state" not in handle.context.options

    @pytest.mark.asyncio
    async def test_context_manager_always_closes(self, session, runtime, seeded_auth):
        with pytest.raises(RuntimeError):
            async with session.context("t1") as handle:
                raise RuntimeError("boom")
        assert handle.context.closed
        assert session.active_context_count == 0

    @pytest.mark.asyncio
    async def test_hung_close_kills_browser(self, session, runtime, seeded_auth):
        handle = await session.new_context("t1")
        handle.context.close_delay = 5

        closed = await session.close_context(handle, grace_seconds=0.05)

        assert closed is False
        assert runtime.killed
        assert session.active_context_count == 0


class TestNavigation:

    @pytest.mark.asyncio
    async def test_navigation_timeout(self, session):
        page = FakePage(goto_error=PlaywrightTimeoutError("Timeout 30000ms exceeded"))
        with pytest.raises(NavigationTimeout) as info:
            await session.navigate_to_url(page, "https://x.com/i/lists/1")
        assert info.value.retryable

    @pytest.mark.asyncio
    async def test_selector_timeout(self, session):
        page = FakePage(selector_error=PlaywrightTimeoutError("Timeout 15000ms exceeded"))
        with pytest.raises(SelectorTimeout):
            await session.navigate_to_url(page, "https://x.com/i/lists/1", WaitPolicy(content_selector="article"))

    @pytest.mark.asyncio
    async def test_login_redirect_is_auth_expired(self, session):
        page = FakePage(redirect_to="https://x.com/i/flow/login")
        await session.navigate_to_url(page, "https://x.com/i/lists/1")
        with pytest.raises(AuthExpired):
            await session.ensure_authenticated(page, "input[name=text]")

    @pytest.mark.asyncio
    async def test_login_form_is_auth_expired(self, session):
        page = FakePage(login_form=True)
        await session.navigate_to_url(page, "https://x.com/i/lists/1")
        with pytest.raises(AuthExpired):
            await session.ensure_authenticated(page, "input[name=text]")

    @pytest.mark.asyncio
    async def test_off_domain_is_context_crashed(self, session):
        page = FakePage(redirect_to="https://consent.example.com/")
        await session.navigate_to_url(page, "https://www.youtube.com/@chan/videos")
        with pytest.raises(ContextCrashed):
            session.ensure_on_target(page, ("youtube.com",))

        page = FakePage()
        await session.navigate_to_url(page, "https://www.youtube.com/@chan/videos")
        session.ensure_on_target(page, ("youtube.com",))


@pytest.mark.asyncio
async def test_close_tears_down_everything(session, runtime, seeded_auth):
    await session.new_context("a")
    await session.new_context("b")
    await session.close()
    assert runtime.browser.open_contexts == 0
    assert not runtime.started
    assert session.health_check()["browser_running"] is False


class HungDriver:
    def __init__(self):
        self.stop_called = False

    async def stop(self):
        self.stop_called = True
        await asyncio.sleep(60)


@pytest.mark.asyncio
async def test_kill_does_not_wait_on_a_hung_driver():
    runtime = BrowserRuntime(headless=True, kill_timeout_seconds=0.1)
    driver = HungDriver()
    runtime._playwright = driver

    await asyncio.wait_for(runtime.kill(), timeout=2)

    assert driver.stop_called
    assert runtime._playwright is None
    assert not runtime.is_running
