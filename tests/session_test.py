"""
Session cache: persist, restore, expire and clear
"""

import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from fakes import DASHBOARD, LOGIN_PAGE, FakeDriver
from sleepiq_session import (
    HAS_LOGIN_FORM_SCRIPT,
    MAX_SESSION_AGE_MS,
    FileSessionBackend,
    SessionRecord,
    SessionStore,
    is_authenticated,
)

NOW = 1_700_000_000_000
COOKIE = {"name": "sid", "value": "abc", "domain": ".sleepnumber.com", "path": "/"}


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class TestSessionStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.backend = FileSessionBackend(Path(self.tmp.name))
        self.clock = Clock(NOW)
        self.store = SessionStore(self.backend, "sleeper@example.com", clock=self.clock)

    def tearDown(self):
        self.tmp.cleanup()

    def session_path(self):
        return Path(self.tmp.name) / "sessions" / "sleeper@example.com.json"

    def saved_driver(self):
        driver = FakeDriver(DASHBOARD)
        driver.cookie_jar = [dict(COOKIE)]
        driver.local_storage = {"token": "t-1"}
        driver.session_storage = {"tab": "sleep"}
        self.store.save(driver)
        return driver

    def test_save_writes_the_record(self):
        self.saved_driver()
        data = json.loads(self.session_path().read_text(encoding="utf-8"))
        self.assertEqual(data["cookies"], [COOKIE])
        self.assertEqual(data["localStorage"], {"token": "t-1"})
        self.assertEqual(data["sessionStorage"], {"tab": "sleep"})
        self.assertEqual(data["originUrl"], DASHBOARD)
        self.assertEqual(data["savedAtEpochMs"], NOW)
        self.assertTrue(self.store.exists())

    def test_restore_replays_cookies_and_storage(self):
        self.saved_driver()
        fresh = FakeDriver()
        self.clock.now = NOW + 60_000

        self.assertTrue(self.store.restore(fresh))

        self.assertEqual(
            fresh.called("goto")[0], ("goto", "https://sleepiq.sleepnumber.com/", "domcontentloaded")
        )
        self.assertEqual(fresh.called("add_cookies"), [("add_cookies", [COOKIE])])
        self.assertEqual(fresh.local_storage, {"token": "t-1"})
        self.assertEqual(fresh.session_storage, {"tab": "sleep"})
        self.assertEqual(fresh.url, DASHBOARD)

    def test_expired_record_is_rejected_and_cleared(self):
        """Scenario: a session saved 25 hours ago must not be used."""
        self.saved_driver()
        self.clock.now = NOW + 25 * 60 * 60 * 1000
        fresh = FakeDriver()

        self.assertFalse(self.store.restore(fresh))

        self.assertFalse(self.session_path().exists())
        self.assertEqual(fresh.called("add_cookies"), [])

    def test_record_at_exactly_max_age_is_still_valid(self):
        record = SessionRecord(saved_at_ms=NOW)
        self.assertFalse(record.is_expired(NOW + MAX_SESSION_AGE_MS))
        self.assertTrue(record.is_expired(NOW + MAX_SESSION_AGE_MS + 1))

    def test_missing_session(self):
        self.assertFalse(self.store.exists())
        self.assertFalse(self.store.restore(FakeDriver()))

    def test_unreadable_session_is_discarded(self):
        self.session_path().parent.mkdir(parents=True)
        self.session_path().write_text("{not json", encoding="utf-8")

        self.assertFalse(self.store.restore(FakeDriver()))
        self.assertFalse(self.session_path().exists())

    def test_browser_failure_during_restore(self):
        self.saved_driver()
        fresh = FakeDriver()
        fresh.add_cookies = MagicMock(side_effect=RuntimeError("context closed"))

        self.assertFalse(self.store.restore(fresh))
        self.assertFalse(self.session_path().exists())

    def test_save_failure_is_not_raised(self):
        driver = FakeDriver(DASHBOARD)
        driver.read_storage = MagicMock(side_effect=RuntimeError("page closed"))
        self.store.save(driver)
        self.assertFalse(self.session_path().exists())

    def test_clear_is_idempotent(self):
        self.saved_driver()
        self.store.clear()
        self.store.clear()
        self.assertFalse(self.store.exists())

    def test_legacy_keys(self):
        record = SessionRecord.from_dict(
            {"cookies": [COOKIE], "url": DASHBOARD, "timestamp": NOW}
        )
        self.assertEqual(record.origin_url, DASHBOARD)
        self.assertEqual(record.saved_at_ms, NOW)

    def test_record_without_timestamp_is_invalid(self):
        with self.assertRaises(ValueError):
            SessionRecord.from_dict({"cookies": []})


class MemoryBackend:
    def __init__(self):
        self.objects = {}

    def load(self, key):
        return self.objects.get(key)

    def save(self, key, payload):
        self.objects[key] = payload

    def delete(self, key):
        self.objects.pop(key, None)


class TestKeyedBackend(unittest.TestCase):
    def test_store_uses_any_keyed_backend(self):
        backend = MemoryBackend()
        store = SessionStore(backend, "sleeper@example.com", clock=Clock(NOW))
        driver = FakeDriver(DASHBOARD)
        driver.cookie_jar = [dict(COOKIE)]
        store.save(driver)

        self.assertEqual(list(backend.objects), ["sessions/sleeper@example.com"])
        self.assertTrue(store.restore(FakeDriver()))

        store.clear()
        self.assertEqual(backend.objects, {})


class TestIsAuthenticated(unittest.TestCase):
    def test_dashboard_without_form(self):
        driver = FakeDriver(DASHBOARD)
        driver.scripts[HAS_LOGIN_FORM_SCRIPT] = {"url": DASHBOARD, "hasLoginForm": False}
        self.assertTrue(is_authenticated(driver))

    def test_login_route(self):
        driver = FakeDriver(LOGIN_PAGE)
        driver.scripts[HAS_LOGIN_FORM_SCRIPT] = {"url": LOGIN_PAGE, "hasLoginForm": False}
        self.assertFalse(is_authenticated(driver))

    def test_login_form_present(self):
        driver = FakeDriver(DASHBOARD)
        driver.scripts[HAS_LOGIN_FORM_SCRIPT] = {"url": DASHBOARD, "hasLoginForm": True}
        self.assertFalse(is_authenticated(driver))

    def test_evaluation_error(self):
        driver = FakeDriver(DASHBOARD)
        driver.scripts[HAS_LOGIN_FORM_SCRIPT] = RuntimeError("execution context destroyed")
        self.assertFalse(is_authenticated(driver))


if __name__ == "__main__":
    unittest.main()
