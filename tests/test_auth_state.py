import asyncio
import json
import time

import pytest

from crawlcore.auth_state import AuthStateStore
from crawlcore.reliability.errors import AuthExpired, NoAuthState

from .conftest import auth_state


def test_missing_file_is_no_auth_state(auth_store):
    assert auth_store.load() is None
    with pytest.raises(NoAuthState):
        auth_store.load_valid()


def test_unreadable_file_is_no_auth_state(auth_store):
    auth_store.path.write_text("{not json")
    with pytest.raises(NoAuthState):
        auth_store.load_valid()


def test_cookies_for_other_domains_do_not_count(auth_store):
    state = {"cookies": [{"name": "sid", "value": "1", "domain": ".example.com", "expires": -1}]}
    auth_store.path.write_text(json.dumps(state))
    with pytest.raises(NoAuthState):
        auth_store.load_valid()


def test_expired_session_cookies(auth_store):
    auth_store.path.write_text(json.dumps(auth_state(expires=time.time() - 60)))
    with pytest.raises(AuthExpired):
        auth_store.load_valid()


def test_valid_state_loads(auth_store, seeded_auth):
    state = auth_store.load_valid()
    assert {c["name"] for c in state["cookies"]} == {"auth_token", "ct0"}


@pytest.mark.asyncio
async def test_concurrent_saves_never_interleave(tmp_path):
    store = AuthStateStore(str(tmp_path / "nested" / "state.json"))
    states = [auth_state(expires=time.time() + 1000 + i) for i in range(10)]

    await asyncio.gather(*(store.save(s) for s in states))

    saved = store.load()
    assert saved in states
    assert not [p for p in store.path.parent.iterdir() if p.name.startswith(".auth-")]


@pytest.mark.asyncio
async def test_clear_and_status(auth_store, seeded_auth):
    status = auth_store.status()
    assert status["exists"] and status["valid"]
    assert status["cookie_count"] == 2

    assert await auth_store.clear() is True
    assert await auth_store.clear() is False

    status = auth_store.status()
    assert status["valid"] is False
    assert status["problem"] == "NoAuthState"
