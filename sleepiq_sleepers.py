"""Switch the SleepIQ dashboard between the two sleepers on the bed."""

from __future__ import annotations

import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)

SLEEPER_CONTROL_SELECTORS = (
    "[data-testid*='sleeper']",
    "[data-test*='sleeper']",
    "[role='combobox']",
    "[class*='sleeper']",
    "[aria-label*='sleeper' i]",
    "[aria-label*='user' i]",
)
SHORTCUT_SCOPE = "button, [role='button'], [role='tab'], a, [class*='sleeper'] *"
OPTION_SCOPE = "[role='option'], [role='menuitem'], li, button, a, [class*='option'], [class*='sleeper'] *"
OPEN_SETTLE_MS = 500

CONFIRM_SCRIPT = """
(name) => {
    const text = ((document.body && document.body.innerText) || '').toLowerCase();
    return text.includes(name.toLowerCase());
}
"""


def select_sleeper(driver: Any, profile: str, settle_ms: int) -> bool:
    """Make ``profile`` the active sleeper.

    Returns False when no control for the sleeper can be found; callers keep
    using whatever the dashboard currently shows.
    """

    method = activate_sleeper(driver, profile)
    if method is None:
        logger.warning("No sleeper control found for %s; using the current dashboard", profile)
        return False
    logger.debug("Selected sleeper %s via %s", profile, method)
    driver.wait(settle_ms)
    if not confirm_sleeper(driver, profile):
        logger.debug("Sleeper %s selected but the name is not visible on the dashboard", profile)
    return True


def activate_sleeper(driver: Any, profile: str) -> Optional[str]:
    if driver.click_text([profile], exact=True, scope=SHORTCUT_SCOPE):
        return "shortcut"
    if driver.select_option_by_text(profile):
        return "select"
    opened = driver.click_selector(SLEEPER_CONTROL_SELECTORS)
    if opened:
        driver.wait(OPEN_SETTLE_MS)
        if driver.click_text([profile], exact=True, scope=OPTION_SCOPE):
            return f"dropdown ({opened})"
        logger.debug("Opened %s but found no %s option", opened, profile)
    return None


def confirm_sleeper(driver: Any, profile: str) -> bool:
    try:
        return bool(driver.evaluate(CONFIRM_SCRIPT, profile))
    except Exception as exc:
        logger.debug("Could not confirm sleeper %s: %s", profile, exc)
        return False
