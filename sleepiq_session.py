"""Cache SleepIQ authentication state between runs.

A session is the set of cookies plus local/session storage entries captured
right after a successful login. Restoring it lets most runs skip the login
form entirely. Records older than 24 hours are discarded.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from sleepiq_models import BASE_URL, DEFAULT_SESSION_DIR

logger = logging.getLogger(__name__)

MAX_SESSION_AGE_MS = 24 * 60 * 60 * 1000
RESTORE_SETTLE_MS = 2000
LOGIN_MARKERS = ("login", "auth")

HAS_LOGIN_FORM_SCRIPT = """
() => ({
    url: window.location.href,
    hasLoginForm: !!document.querySelector('input[type="email"], input[type="password"]'),
})
"""


class SessionBackend(Protocol):
    """Keyed storage for serialized session records.

    Keys look like ``sessions/<username>``. ``FileSessionBackend`` is the only
    implementation shipped here; a remote object store fits the same three
    methods and can be handed to ``SessionStore`` unchanged.
    """

    def load(self, key: str) -> Optional[str]: ...

    def save(self, key: str, payload: str) -> None: ...

    def delete(self, key: str) -> None: ...


def session_key(username: str) -> str:
    return f"sessions/{username}"


@dataclass
class SessionRecord:
    cookies: List[Dict[str, Any]] = field(default_factory=list)
    local_storage: Dict[str, str] = field(default_factory=dict)
    session_storage: Dict[str, str] = field(default_factory=dict)
    origin_url: str = ""
    saved_at_ms: int = 0

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.saved_at_ms

    def is_expired(self, now_ms: int, max_age_ms: int = MAX_SESSION_AGE_MS) -> bool:
        return self.age_ms(now_ms) > max_age_ms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cookies": self.cookies,
            "localStorage": self.local_storage,
            "sessionStorage": self.session_storage,
            "originUrl": self.origin_url,
            "savedAtEpochMs": self.saved_at_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        """Build a record, accepting the older ``url``/``timestamp`` keys too."""

        if not isinstance(data, dict):
            raise ValueError("Session payload must be a JSON object")
        saved_at = data.get("savedAtEpochMs", data.get("timestamp"))
        if not isinstance(saved_at, (int, float)):
            raise ValueError("Session payload has no save timestamp")
        cookies = data.get("cookies") or []
        if not isinstance(cookies, list):
            raise ValueError("Session cookies must be a list")
        return cls(
            cookies=[dict(cookie) for cookie in cookies if isinstance(cookie, dict)],
            local_storage={str(k): str(v) for k, v in (data.get("localStorage") or {}).items()},
            session_storage={str(k): str(v) for k, v in (data.get("sessionStorage") or {}).items()},
            origin_url=str(data.get("originUrl") or data.get("url") or ""),
            saved_at_ms=int(saved_at),
        )


class FileSessionBackend:
    """Stores each session as ``<root>/sessions/<username>.json``."""

    def __init__(self, root: Path = DEFAULT_SESSION_DIR) -> None:
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        prefix, _, name = key.partition("/")
        safe_name = re.sub(r"[^A-Za-z0-9@._-]+", "_", name).strip("._") or "default"
        return self.root / prefix / f"{safe_name}.json"

    def load(self, key: str) -> Optional[str]:
        path = self.path_for(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def save(self, key: str, payload: str) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(payload, encoding="utf-8")

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass


def current_time_ms() -> int:
    return int(time.time() * 1000)


class SessionStore:
    """Persist, restore and clear the cached session for one username."""

    def __init__(
        self,
        backend: SessionBackend,
        username: str,
        clock: Callable[[], int] = current_time_ms,
        max_age_ms: int = MAX_SESSION_AGE_MS,
        base_url: str = BASE_URL,
    ) -> None:
        self.backend = backend
        self.key = session_key(username)
        self.clock = clock
        self.max_age_ms = max_age_ms
        self.base_url = base_url.rstrip("/")

    def load(self) -> Optional[SessionRecord]:
        payload = self.backend.load(self.key)
        if payload is None:
            return None
        return SessionRecord.from_dict(json.loads(payload))

    def exists(self) -> bool:
        try:
            return self.backend.load(self.key) is not None
        except Exception as exc:
            logger.debug("Could not check for a saved session: %s", exc)
            return False

    def restore(self, driver: Any) -> bool:
        """Replay a saved session into the browser.

        Returns False when there is nothing usable to replay; callers then
        log in from scratch. This method never raises.
        """

        try:
            record = self.load()
        except Exception as exc:
            logger.warning("Saved session is unreadable, discarding it: %s", exc)
            self.clear()
            return False
        if record is None:
            logger.debug("No saved session found")
            return False

        if record.is_expired(self.clock(), self.max_age_ms):
            logger.debug(
                "Saved session is %.1f hours old, discarding it",
                record.age_ms(self.clock()) / 3_600_000,
            )
            self.clear()
            return False

        try:
            # Cookies are domain scoped, so the site has to be open first.
            driver.goto(f"{self.base_url}/", wait_until="domcontentloaded")
            if record.cookies:
                restored = driver.add_cookies(record.cookies)
                logger.debug("Restored %d cookies", restored)
            driver.write_storage(record.local_storage, record.session_storage)
            origin = record.origin_url.rstrip("/")
            if origin and origin != self.base_url:
                driver.goto(record.origin_url)
            driver.wait(RESTORE_SETTLE_MS)
        except Exception as exc:
            logger.warning("Failed to restore saved session: %s", exc)
            self.clear()
            return False

        logger.info("Session restored")
        return True

    def save(self, driver: Any) -> None:
        try:
            local, session = driver.read_storage()
            record = SessionRecord(
                cookies=driver.cookies(),
                local_storage=local,
                session_storage=session,
                origin_url=driver.url,
                saved_at_ms=self.clock(),
            )
            self.backend.save(self.key, json.dumps(record.to_dict(), indent=2))
            logger.debug("Session saved under %s", self.key)
        except Exception as exc:
            logger.warning("Failed to save session: %s", exc)

    def clear(self) -> None:
        try:
            self.backend.delete(self.key)
            logger.debug("Session cleared")
        except Exception as exc:
            logger.warning("Failed to clear session: %s", exc)


def is_authenticated(driver: Any) -> bool:
    """Guess whether the current page belongs to a signed-in user.

    Absence of a login form and of a login/auth marker in the URL counts as
    signed in. A form-free error page would be misread as authenticated.
    """

    try:
        info = driver.evaluate(HAS_LOGIN_FORM_SCRIPT) or {}
    except Exception as exc:
        logger.warning("Error checking login status: %s", exc)
        return False
    url = str(info.get("url") or driver.url or "").lower()
    if any(marker in url for marker in LOGIN_MARKERS):
        return False
    return not info.get("hasLoginForm")
