"""Delete the cached SleepIQ session for a username.

Usage example:

    python clear_session.py --username you@example.com

The next scraper run for that username logs in through the form again.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Iterable, Optional

from dotenv import load_dotenv

from sleepiq_models import DEFAULT_SESSION_DIR
from sleepiq_session import FileSessionBackend, SessionStore


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Clear the cached SleepIQ session.")
    parser.add_argument(
        "--username",
        help="SleepIQ username. Defaults to the SLEEPIQ_USERNAME environment variable.",
    )
    parser.add_argument(
        "--session-dir",
        help=f"Directory holding cached sessions (default: SESSION_DIR or {DEFAULT_SESSION_DIR}).",
    )
    return parser.parse_args(list(argv) if argv is not None else None)


def clear_session(username: str, session_dir: Path) -> bool:
    """Remove the session for ``username``. Returns False if there was none."""

    store = SessionStore(FileSessionBackend(session_dir), username)
    if not store.exists():
        return False
    store.clear()
    return True


def main(argv: Optional[Iterable[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    logging.basicConfig(level=logging.WARNING, stream=sys.stderr)

    username = (args.username or os.environ.get("SLEEPIQ_USERNAME") or "").strip()
    if not username:
        print("A SleepIQ username is required (--username or SLEEPIQ_USERNAME).", file=sys.stderr)
        return 3
    session_dir = Path(args.session_dir or os.environ.get("SESSION_DIR") or DEFAULT_SESSION_DIR)

    if clear_session(username, session_dir):
        print("Session cleared")
    else:
        print("No session found to clear")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
