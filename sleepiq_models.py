"""Shared types and constants for the SleepIQ dashboard scraper.

Everything here is plain data so the result of a run can be serialized to
JSON by any caller (command line, HTTP handler or a test harness).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

BASE_URL = "https://sleepiq.sleepnumber.com"
LOGIN_ROUTE = "#/login"
DASHBOARD_ROUTE = "#/pages/sleep"
LOGIN_URL = f"{BASE_URL}/{LOGIN_ROUTE}"
DASHBOARD_URL = f"{BASE_URL}/{DASHBOARD_ROUTE}"

PROFILES: Tuple[str, str] = ("rafa", "miki")

DEFAULT_TIMEOUT_MS = 30000
DEFAULT_SETTLE_MS = 1500
DEFAULT_DEBUG_DIR = Path("debug")
DEFAULT_SESSION_DIR = Path(".sleepiq")
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Output label -> SleepRecord attribute. Order is the order of the JSON keys.
OUTPUT_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("30-average", "thirty_day_average"),
    ("score", "current_score"),
    ("all-time-best", "all_time_best"),
    ("message", "general_message"),
    ("heartRateMsg", "heart_rate_message"),
    ("heartRateVariabilityMsg", "heart_rate_variability_message"),
    ("breathRateMsg", "breath_rate_message"),
)

TRUTHY = ("1", "true", "yes", "on")


class ConfigurationError(RuntimeError):
    """Raised when credentials or scraper options are missing or invalid."""


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return ""
    return value[0] + "*" * (len(value) - 1)


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)

    @property
    def masked_password(self) -> str:
        return mask_secret(self.password)

    def validate(self) -> None:
        if not self.username or not self.username.strip():
            raise ConfigurationError("A SleepIQ username is required.")
        if not self.password:
            raise ConfigurationError("A SleepIQ password is required.")


@dataclass
class ScraperConfig:
    """Options for one scraper run.

    ``timeout_ms`` bounds every individual wait. ``overall_timeout_ms`` is an
    optional guard for the whole run (0 disables it); it is checked between
    steps because the per-step timeouts add up.
    """

    headless: bool = True
    debug_capture: bool = False
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    debug_dir: Path = DEFAULT_DEBUG_DIR
    session_dir: Path = DEFAULT_SESSION_DIR
    use_session_cache: bool = True
    overall_timeout_ms: int = 0
    settle_ms: int = DEFAULT_SETTLE_MS

    def validate(self) -> None:
        if self.timeout_ms <= 0:
            raise ConfigurationError(
                f"timeout_ms must be positive, received {self.timeout_ms!r}"
            )
        if self.settle_ms <= 0:
            raise ConfigurationError(
                f"settle_ms must be positive, received {self.settle_ms!r}"
            )
        if self.overall_timeout_ms < 0:
            raise ConfigurationError(
                "overall_timeout_ms cannot be negative "
                f"(received {self.overall_timeout_ms!r})"
            )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ScraperConfig":
        env = os.environ if environ is None else environ
        config = cls()
        config.headless = env.get("HEADLESS", "true").strip().lower() != "false"
        config.debug_capture = env.get("DEBUG_CAPTURE", "").strip().lower() in TRUTHY
        raw_timeout = env.get("TIMEOUT", "").strip()
        if raw_timeout:
            try:
                config.timeout_ms = int(raw_timeout)
            except ValueError as exc:
                raise ConfigurationError(
                    f"TIMEOUT must be an integer number of milliseconds, received {raw_timeout!r}"
                ) from exc
        if env.get("SESSION_DIR"):
            config.session_dir = Path(env["SESSION_DIR"])
        if env.get("DEBUG_DIR"):
            config.debug_dir = Path(env["DEBUG_DIR"])
        return config


@dataclass
class SleepRecord:
    """Scraped values for one sleeper. Missing values stay empty strings."""

    thirty_day_average: str = ""
    current_score: str = ""
    all_time_best: str = ""
    general_message: str = ""
    heart_rate_message: str = ""
    heart_rate_variability_message: str = ""
    breath_rate_message: str = ""
    diagnostic: Dict[str, object] = field(default_factory=dict)

    def note(self, message: str) -> None:
        notes: List[str] = self.diagnostic.setdefault("notes", [])  # type: ignore[assignment]
        notes.append(message)

    def to_output(self) -> Dict[str, str]:
        output: Dict[str, str] = {}
        for label, attribute in OUTPUT_FIELDS:
            value = getattr(self, attribute)
            output[label] = value if isinstance(value, str) else ""
        return output


def empty_result() -> Dict[str, SleepRecord]:
    return {profile: SleepRecord() for profile in PROFILES}
