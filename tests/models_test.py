"""
Configuration, credentials and output records
"""

import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from clear_session import clear_session, main as clear_session_main
from fakes import DASHBOARD, FakeDriver
from sleepiq_models import (
    ConfigurationError,
    Credentials,
    ScraperConfig,
    SleepRecord,
    empty_result,
    mask_secret,
)
from sleepiq_session import FileSessionBackend, SessionStore


class TestCredentials(unittest.TestCase):
    def test_password_is_masked(self):
        credentials = Credentials("sleeper@example.com", "hunter2")
        self.assertEqual(credentials.masked_password, "h******")
        self.assertNotIn("hunter2", repr(credentials))
        self.assertEqual(mask_secret(""), "")

    def test_validation(self):
        with self.assertRaises(ConfigurationError):
            Credentials("  ", "pw").validate()
        with self.assertRaises(ConfigurationError):
            Credentials("sleeper@example.com", "").validate()
        Credentials("sleeper@example.com", "pw").validate()


class TestScraperConfig(unittest.TestCase):
    def test_defaults(self):
        config = ScraperConfig.from_env({})
        self.assertTrue(config.headless)
        self.assertFalse(config.debug_capture)
        self.assertEqual(config.timeout_ms, 30000)
        self.assertEqual(config.session_dir, Path(".sleepiq"))

    def test_environment_overrides(self):
        config = ScraperConfig.from_env(
            {
                "HEADLESS": "false",
                "DEBUG_CAPTURE": "yes",
                "TIMEOUT": "45000",
                "SESSION_DIR": "/tmp/sessions",
                "DEBUG_DIR": "/tmp/debug",
            }
        )
        self.assertFalse(config.headless)
        self.assertTrue(config.debug_capture)
        self.assertEqual(config.timeout_ms, 45000)
        self.assertEqual(config.session_dir, Path("/tmp/sessions"))
        self.assertEqual(config.debug_dir, Path("/tmp/debug"))

    def test_invalid_values(self):
        with self.assertRaises(ConfigurationError):
            ScraperConfig.from_env({"TIMEOUT": "thirty"})
        with self.assertRaises(ConfigurationError):
            ScraperConfig(settle_ms=0).validate()
        with self.assertRaises(ConfigurationError):
            ScraperConfig(overall_timeout_ms=-1).validate()


class TestSleepRecord(unittest.TestCase):
    def test_output_keys_and_order(self):
        record = SleepRecord(current_score="80", general_message="Nice night.")
        record.note("sleeper control not found")
        output = record.to_output()
        self.assertEqual(
            list(output),
            [
                "30-average",
                "score",
                "all-time-best",
                "message",
                "heartRateMsg",
                "heartRateVariabilityMsg",
                "breathRateMsg",
            ],
        )
        self.assertEqual(output["score"], "80")
        self.assertEqual(output["30-average"], "")
        self.assertEqual(record.diagnostic["notes"], ["sleeper control not found"])

    def test_empty_result_has_both_sleepers(self):
        self.assertEqual(list(empty_result()), ["rafa", "miki"])


class TestClearSession(unittest.TestCase):
    def test_clears_existing_session(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = SessionStore(FileSessionBackend(Path(tmp)), "sleeper@example.com")
            store.save(FakeDriver(DASHBOARD))

            self.assertTrue(clear_session("sleeper@example.com", Path(tmp)))
            self.assertFalse(store.exists())
            self.assertFalse(clear_session("sleeper@example.com", Path(tmp)))

    def test_requires_username(self):
        with tempfile.TemporaryDirectory() as tmp:
            with patch.dict("os.environ", {}, clear=True), patch("clear_session.load_dotenv"):
                self.assertEqual(clear_session_main(["--session-dir", tmp]), 3)


if __name__ == "__main__":
    unittest.main()
