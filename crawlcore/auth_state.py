"""Persisted login state (cookies + local storage) shared by all contexts.

The file is Playwright's ``storage_state`` JSON. It is read whenever a
context is created and rewritten wholesale after a task confirms the session
is still logged in. Writes go through one lock and an atomic rename, so two
tasks never interleave writes and readers never see a half-written file.
"""

from __future__ import annotations

import asyncio
import datetime
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from .reliability.errors import AuthExpired, NoAuthState

SESSION_COOKIES = ("auth_token", "ct0")
DEFAULT_AUTH_DOMAINS = ("x.com", "twitter.com")


def _cookie_matches(cookie: Dict[str, Any], domains: Iterable[str]) -> bool:
    domain = str(cookie.get("domain", "")).lstrip(".").lower()
    return any(domain == d or domain.endswith("." + d) for d in domains)


class AuthStateStore:
    """Load, validate, save and clear the persisted auth file."""

    def __init__(self,
                 path: str,
                 *,
                 domains: Iterable[str] = DEFAULT_AUTH_DOMAINS,
                 logger: Optional[logging.Logger] = None):
        self.path = Path(path)
        self.domains = tuple(domains)
        self.logger = logger or logging.getLogger(__name__)
        self._write_lock = asyncio.Lock()

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Optional[Dict[str, Any]]:
        """Return the raw state, or ``None`` if missing or unreadable."""
        if not self.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.logger.warning(f"Unreadable auth state at {self.path}: {e}")
            return None
        if not isinstance(state, dict) or not isinstance(state.get("cookies"), list):
            self.logger.warning(f"Auth state at {self.path} has no cookie list")
            return None
        state.setdefault("origins", [])
        return state

    def validate(self, state: Optional[Dict[str, Any]], *, now: Optional[float] = None) -> Dict[str, Any]:
        """Raise ``NoAuthState`` / ``AuthExpired`` unless ``state`` can seed a login."""
        if not state:
            raise NoAuthState(f"No auth state found at {self.path}")

        cookies = [c for c in state.get("cookies", []) if _cookie_matches(c, self.domains)]
        if not cookies:
            raise NoAuthState(f"Auth state has no cookies for {', '.join(self.domains)}")

        now = now if now is not None else datetime.datetime.now(datetime.timezone.utc).timestamp()
        session = [c for c in cookies if c.get("name") in SESSION_COOKIES]
        # expires == -1 marks a browser-session cookie
        if session and all(0 < float(c.get("expires", -1)) < now for c in session):
            raise AuthExpired("Session cookies in the auth state have expired")
        return state

    def load_valid(self) -> Dict[str, Any]:
        return self.validate(self.load())

    async def save(self, state: Dict[str, Any]) -> None:
        """Atomically replace the auth file with ``state``."""
        async with self._write_lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".auth-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(state, f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
            self.logger.info(f"Saved auth state ({len(state.get('cookies', []))} cookies) to {self.path}")

    async def save_from_context(self, context) -> None:
        state = await context.storage_state()
        await self.save(state)

    async def clear(self) -> bool:
        async with self._write_lock:
            if not self.exists():
                return False
            self.path.unlink()
            self.logger.info(f"Cleared auth state at {self.path}")
            return True

    def status(self) -> Dict[str, Any]:
        state = self.load()
        info: Dict[str, Any] = {
            "path": str(self.path),
            "exists": self.exists(),
            "cookie_count": len(state.get("cookies", [])) if state else 0,
            "saved_at": None,
            "valid": False,
            "problem": None,
        }
        if self.exists():
            info["saved_at"] = datetime.datetime.fromtimestamp(
                self.path.stat().st_mtime, tz=datetime.timezone.utc
            ).isoformat()
        try:
            self.validate(state)
            info["valid"] = True
        except (NoAuthState, AuthExpired) as e:
            info["problem"] = e.reason.value
        return info
