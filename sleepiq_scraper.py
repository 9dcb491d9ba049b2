"""Scrape SleepIQ sleep scores and coaching messages for both sleepers.

This script signs into the SleepIQ web dashboard (reusing a cached session when
one is available), switches between the two sleepers on the bed and reads the
30-day average, current SleepIQ score, all-time best and the coaching messages
from the sleep-session and biosignals detail pages. The result is printed as
JSON with one object per sleeper.

Usage example:

    python sleepiq_scraper.py --username you@example.com --headed --debug

Credentials are read from the command line, the SLEEPIQ_USERNAME and
SLEEPIQ_PASSWORD environment variables (a .env file is honoured) or requested
interactively, so they do not need to live in shell history.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Callable, ContextManager, Dict, Iterable, Optional

from dotenv import load_dotenv
from playwright.sync_api import Error as PlaywrightError  # type: ignore[import-not-found]

from sleepiq_driver import launch_driver, save_debug_artifacts
from sleepiq_login import (
    AuthenticationError,
    LoginState,
    SessionContext,
    TwoFactorRequiredError,
    perform_login,
)
from sleepiq_messages import extract_biosignal_messages, extract_general_message
from sleepiq_metrics import METRIC_FIELDS, extract_metrics
from sleepiq_models import (
    DASHBOARD_ROUTE,
    DASHBOARD_URL,
    PROFILES,
    ConfigurationError,
    Credentials,
    ScraperConfig,
    SleepRecord,
    empty_result,
)
from sleepiq_session import FileSessionBackend, SessionStore, is_authenticated
from sleepiq_sleepers import select_sleeper

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIGURATION = 3
EXIT_TWO_FACTOR = 4

INTERSTITIAL_MARKERS = ("default-sleeper", "choose-sleeper", "select-sleeper", "defaultsleeper")
INTERSTITIAL_CONTROLS = (
    "button:not([disabled])",
    "[role='button']",
    "input[type='radio']",
    "a[href]",
)
DIAGNOSTICS_FILENAME = "diagnostics.json"
EXCERPT_LENGTH = 500

DriverFactory = Callable[[ScraperConfig], ContextManager[Any]]


class Deadline:
    """Overall time budget for a run. A budget of 0 never expires."""

    def __init__(self, budget_ms: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.budget_ms = budget_ms
        self.clock = clock
        self.started = clock()

    def expired(self) -> bool:
        if self.budget_ms <= 0:
            return False
        return (self.clock() - self.started) * 1000 >= self.budget_ms


def is_interstitial(url: str) -> bool:
    lowered = url.lower()
    return any(marker in lowered for marker in INTERSTITIAL_MARKERS)


def open_dashboard(driver: Any, config: ScraperConfig) -> None:
    """Make sure the summary dashboard is showing."""

    if is_interstitial(driver.url):
        dismiss_interstitial(driver, config)
    url = driver.url
    if DASHBOARD_ROUTE not in url or "/details/" in url:
        driver.goto(DASHBOARD_URL)
        driver.wait(config.settle_ms)
    if is_interstitial(driver.url):
        dismiss_interstitial(driver, config)


def dismiss_interstitial(driver: Any, config: ScraperConfig) -> None:
    logger.info("Dismissing the default sleeper prompt")
    clicked = driver.click_selector(INTERSTITIAL_CONTROLS)
    if not clicked:
        logger.debug("No actionable control found on %s", driver.url)
    driver.wait(config.settle_ms)
    if DASHBOARD_ROUTE not in driver.url:
        driver.goto(DASHBOARD_URL)
        driver.wait(config.settle_ms)


def establish_session(
    driver: Any,
    credentials: Credentials,
    config: ScraperConfig,
    store: Optional[SessionStore],
) -> SessionContext:
    """Get the browser onto the dashboard as a signed-in user.

    A cached session is tried first; a fresh login follows when there is none
    or it no longer works. Authentication errors propagate.
    """

    if store is not None and store.restore(driver):
        if is_authenticated(driver):
            open_dashboard(driver, config)
        if is_authenticated(driver):
            context = SessionContext()
            context.advance(LoginState.AUTHENTICATED, driver.url)
            logger.info("Using cached session")
            return context
        logger.info("Cached session is no longer valid, logging in again")
        store.clear()

    context = perform_login(driver, credentials, config)
    open_dashboard(driver, config)
    if store is not None:
        store.save(driver)
    context.current_url = driver.url
    return context


def capture(driver: Any, config: ScraperConfig, slug: str, reason: str) -> None:
    if not config.debug_capture:
        return
    try:
        save_debug_artifacts(driver, config.debug_dir, slug, reason)
    except Exception as exc:
        logger.debug("Debug capture failed: %s", exc)


def page_excerpt(driver: Any, limit: int = EXCERPT_LENGTH) -> str:
    try:
        return " ".join(driver.visible_text().split())[:limit]
    except Exception as exc:
        logger.debug("Could not read page text: %s", exc)
        return ""


def out_of_time(record: SleepRecord, deadline: Deadline, step: str) -> bool:
    if deadline.expired():
        logger.warning("Overall timeout reached before %s", step)
        record.note(f"overall timeout reached before {step}")
        return True
    return False


def scrape_profile(
    driver: Any, profile: str, config: ScraperConfig, deadline: Deadline
) -> SleepRecord:
    """Extract one sleeper's record. Never raises."""

    record = SleepRecord()
    record.diagnostic["profile"] = profile
    if out_of_time(record, deadline, "sleeper selection"):
        return record

    try:
        open_dashboard(driver, config)
        try:
            selected = select_sleeper(driver, profile, config.settle_ms)
        except Exception as exc:
            logger.warning("Selecting sleeper %s failed: %s", profile, exc)
            selected = False
        record.diagnostic["selected"] = selected
        if not selected:
            record.note("sleeper control not found; read the dashboard as shown")

        for name, value in extract_metrics(driver, config.timeout_ms).items():
            setattr(record, name, value)
        if not any(getattr(record, name) for name in METRIC_FIELDS):
            record.note("no metrics found on the dashboard")
            record.diagnostic["excerpt"] = page_excerpt(driver)
            capture(driver, config, profile, "no_metrics")

        if out_of_time(record, deadline, "the general message"):
            return record
        record.general_message = extract_general_message(driver, config.settle_ms)

        if out_of_time(record, deadline, "the biosignal messages"):
            return record
        for name, value in extract_biosignal_messages(driver, config.settle_ms).items():
            setattr(record, name, value)
    except Exception as exc:
        logger.warning("Extraction for %s failed: %s", profile, exc)
        record.note(f"extraction failed: {exc}")
        capture(driver, config, profile, "extraction_failed")
    finally:
        try:
            record.diagnostic["url"] = driver.url
        except Exception:
            record.diagnostic["url"] = ""
    return record


def write_diagnostics(debug_dir: Path, records: Dict[str, SleepRecord]) -> None:
    payload = {
        profile: {"values": record.to_output(), "diagnostic": record.diagnostic}
        for profile, record in records.items()
    }
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        path = debug_dir / DIAGNOSTICS_FILENAME
        path.write_text(json.dumps(payload, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
        logger.info("Debug saved: %s", path)
    except OSError as exc:
        logger.warning("Could not write diagnostics: %s", exc)


def scrape(
    credentials: Credentials,
    config: ScraperConfig,
    session_store: Optional[SessionStore] = None,
    driver_factory: DriverFactory = launch_driver,
    clock: Callable[[], float] = time.monotonic,
) -> Dict[str, SleepRecord]:
    """Run one extraction and return a ``SleepRecord`` per sleeper."""

    credentials.validate()
    config.validate()
    if session_store is None and config.use_session_cache:
        session_store = SessionStore(FileSessionBackend(config.session_dir), credentials.username)
    if not config.use_session_cache:
        session_store = None

    deadline = Deadline(config.overall_timeout_ms, clock)
    records = empty_result()
    with driver_factory(config) as driver:
        establish_session(driver, credentials, config, session_store)
        for profile in PROFILES:
            logger.info("Extracting sleep data for %s", profile)
            records[profile] = scrape_profile(driver, profile, config, deadline)
        if config.debug_capture:
            write_diagnostics(config.debug_dir, records)
    return records


def run(
    credentials: Credentials,
    config: ScraperConfig,
    session_store: Optional[SessionStore] = None,
    driver_factory: DriverFactory = launch_driver,
    clock: Callable[[], float] = time.monotonic,
) -> Dict[str, Dict[str, str]]:
    """Return ``{"rafa": {...}, "miki": {...}}`` with seven string fields each."""

    records = scrape(credentials, config, session_store, driver_factory, clock)
    return {profile: records[profile].to_output() for profile in PROFILES}


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Scrape SleepIQ scores and coaching messages for both sleepers."
    )
    parser.add_argument(
        "--username",
        help=(
            "SleepIQ username. If omitted, the script reads from the "
            "SLEEPIQ_USERNAME environment variable or prompts interactively."
        ),
    )
    parser.add_argument(
        "--password",
        help=(
            "SleepIQ password. If omitted, the script reads from the "
            "SLEEPIQ_PASSWORD environment variable or prompts interactively."
        ),
    )
    parser.add_argument(
        "--headless",
        action="store_true",
        help="Launch the browser in headless mode (default).",
    )
    parser.add_argument(
        "--headed",
        action="store_true",
        help="Launch the browser with a visible window for troubleshooting.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for any single page element or navigation (default: 30).",
    )
    parser.add_argument(
        "--overall-timeout",
        type=float,
        default=0.0,
        help="Stop extracting after this many seconds (0 = no limit).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Save screenshots, HTML and page text to the debug folder on failures.",
    )
    parser.add_argument("--debug-dir", help="Directory for debug artifacts (default: debug).")
    parser.add_argument("--session-dir", help="Directory for cached sessions (default: .sleepiq).")
    parser.add_argument(
        "--no-session-cache",
        action="store_true",
        help="Always log in from scratch and do not save the session.",
    )
    parser.add_argument("--output", help="Write the JSON result to this file instead of stdout.")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "warning"),
        choices=("debug", "info", "warning", "error"),
        help="Logging verbosity on stderr (default: warning).",
    )
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.headless and args.headed:
        parser.error("--headless and --headed cannot be used together")

    return args


def prompt_for_credentials(args: argparse.Namespace) -> Credentials:
    """Obtain credentials from args, env vars, or interactively."""

    username = (args.username or os.environ.get("SLEEPIQ_USERNAME") or "").strip()
    password = args.password or os.environ.get("SLEEPIQ_PASSWORD") or ""

    interactive = sys.stdin is not None and sys.stdin.isatty()
    if not username and interactive:
        username = input("SleepIQ username: ").strip()
    if not password and interactive:
        password = getpass.getpass("SleepIQ password: ")

    credentials = Credentials(username=username, password=password)
    credentials.validate()
    return credentials


def resolve_headless(args: argparse.Namespace, default: bool = True) -> bool:
    if args.headed:
        return False
    if args.headless:
        return True
    return default


def build_config(args: argparse.Namespace) -> ScraperConfig:
    config = ScraperConfig.from_env()
    config.headless = resolve_headless(args, config.headless)
    if args.timeout is not None:
        config.timeout_ms = int(args.timeout * 1000)
    config.overall_timeout_ms = int(args.overall_timeout * 1000)
    config.debug_capture = config.debug_capture or args.debug
    if args.debug_dir:
        config.debug_dir = Path(args.debug_dir)
    if args.session_dir:
        config.session_dir = Path(args.session_dir)
    if args.no_session_cache:
        config.use_session_cache = False
    config.validate()
    return config


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: Optional[Iterable[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        credentials = prompt_for_credentials(args)
        config = build_config(args)
        result = run(credentials, config)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIGURATION
    except TwoFactorRequiredError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_TWO_FACTOR
    except AuthenticationError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_FAILURE
    except PlaywrightError as exc:
        print(f"Browser automation failed: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    payload = json.dumps(result, indent=2, ensure_ascii=False)
    if args.output:
        destination = Path(args.output)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(payload + "\n", encoding="utf-8")
        print(f"Saved: {destination}", file=sys.stderr)
    else:
        print(payload)
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
