"""Extract SleepIQ coaching messages from the dashboard detail pages.

Two detail pages carry longer coaching text than the summary dashboard:

* ``#/pages/sleep/details/sleep-session`` holds the general sleep message.
* ``#/pages/sleep/details/biosignals`` holds one message per biosignal tab
  (heart rate, heart rate variability, breath rate). Clicking a tab swaps the
  pane contents asynchronously, so every click is followed by a settle delay
  before the page is read again.

Each heuristic is a plain function over a ``PageSnapshot`` so it can be
exercised without a browser. Failures degrade to empty strings.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Pattern, Sequence

from sleepiq_driver import PageSnapshot, TextBlock
from sleepiq_models import DASHBOARD_ROUTE

logger = logging.getLogger(__name__)

SESSION_DETAIL = "sleep-session"
BIOSIGNALS_DETAIL = "biosignals"
DETAIL_ROUTE_PATTERN = re.compile(r"#/pages/sleep(?:/details/[\w-]+)?")
SENTENCE_ENDINGS = (".", "!", "?")
SENTENCE_STOP = re.compile(r"[.!?]+|\n")

ZERO_WIDTH = re.compile("[\u200b\u200c\u200d\u2060\ufeff]")
SPACE_VARIANTS = re.compile("[\u00a0\u1680\u2000-\u200a\u2028\u2029\u202f\u205f\u3000]")
WHITESPACE = re.compile(r"\s+")

SESSION_MESSAGE_LOCATORS = (
    "[data-testid*='coaching-message']",
    "[data-testid*='session-message']",
    "[class*='coaching-message']",
    "[class*='session-message']",
    "[class*='insight-message']",
)
MESSAGE_HINT = re.compile(r"message|insight|coach|summary|description", re.IGNORECASE)
PRONOUNS = re.compile(r"\b(?:you|your|you're|yours|we|our|i|my)\b", re.IGNORECASE)
SLEEP_WORDS = re.compile(
    r"\b(?:sleep\w*|rest\w*|bed\w*|night\w*|wak\w*|nap\w*|dream\w*)\b", re.IGNORECASE
)
TIME_STAMP = re.compile(r"\b\d+h\s*\d+m\b|\b\d{1,2}:\d{2}\b", re.IGNORECASE)
SESSION_EXCLUDED_TERMS = (
    "30-day",
    "All-time",
    "Details",
    "Time in bed",
    "Sleep Number",
    "Exit at",
    "Did you know?",
    "Why your sleep matters",
    "Learn more",
)
CONTAINER_TERMS = ("Details", "Restful", "Restless")

SLEEP_MESSAGE_PATTERNS: List[Pattern[str]] = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"keep it up.*restless.*down",
        r"great.*sleep.*quality",
        r"excellent.*night.*sleep",
        r"try.*improve.*sleep",
        r"consider.*bedtime.*routine",
        r"your.*sleep.*was.*\w+.*average",
        r"sleep.*quality.*\w+.*usual",
    )
]

TAB_LABELS = {
    "heart_rate_message": "Heart Rate",
    "heart_rate_variability_message": "Heart Rate Variability",
    "breath_rate_message": "Breath Rate",
}
BIOSIGNAL_FIELDS = tuple(TAB_LABELS)
TAB_VOCABULARY = (
    "Heart Rate Variability",
    "Breath Rate",
    "Heart Rate",
    "Trends",
    "30-day",
    "BPM",
    "br/min",
)
CONTENT_AREA_SELECTORS = (
    "[role='tabpanel']",
    "[class*='tab-content']",
    "[class*='tabContent']",
    "[class*='tab-panel']",
    "[class*='details-content']",
    "main",
)
TAB_HEADER_SELECTORS = (
    "[role='tablist']",
    "[role='tab']",
    "[class*='tab-header']",
    "[class*='tabs']",
    "header",
    "nav",
)
BACK_SELECTORS = (
    "button[aria-label*='back' i]",
    "a[aria-label*='back' i]",
    "[data-testid*='back']",
    "[class*='back-button']",
    "[class*='backButton']",
)

BIOSIGNAL_TEMPLATES: Dict[str, List[Pattern[str]]] = {
    "heart_rate_message": [
        re.compile(p, re.IGNORECASE)
        for p in (
            r"resting heart rate",
            r"heart rate(?!\s+variability)\b.*\b(?:average|range|normal|steady|lower|higher)",
            r"cardiovascular health",
        )
    ],
    "heart_rate_variability_message": [
        re.compile(p, re.IGNORECASE)
        for p in (
            r"your heart rate variability was in the \w+ range",
            r"way to go, your hrv is in the \w+ range",
            r"\bhrv\b.*\b(?:range|indicates)",
            r"heart rate variability",
            r"recovery readiness",
        )
    ],
    "breath_rate_message": [
        re.compile(p, re.IGNORECASE)
        for p in (
            r"don't take it for granted! a breath rate around",
            r"breath(?:ing)? rate.*\baround your average",
            r"breath(?:ing)? rate.*\b(?:normal|range|average)",
            r"respiratory pattern",
        )
    ],
}


def normalize_message(text: Optional[str]) -> str:
    if not text:
        return ""
    cleaned = ZERO_WIDTH.sub("", text)
    cleaned = SPACE_VARIANTS.sub(" ", cleaned)
    return WHITESPACE.sub(" ", cleaned).strip()


def ends_like_sentence(text: str) -> bool:
    return text.endswith(SENTENCE_ENDINGS)


def build_detail_url(url: str, detail: str) -> str:
    """Point the current dashboard URL at one of its detail sub-views."""

    route = f"#/pages/sleep/details/{detail}"
    if DETAIL_ROUTE_PATTERN.search(url):
        return DETAIL_ROUTE_PATTERN.sub(route, url, count=1)
    base = url.split("#", 1)[0].rstrip("/")
    return f"{base}/{route}"


def on_detail_route(url: str, detail: str) -> bool:
    return f"/details/{detail}" in url


def expand_to_sentence(text: str, start: int, end: int) -> str:
    begin = max(text.rfind(mark, 0, start) for mark in (".", "!", "?", "\n")) + 1
    stop = SENTENCE_STOP.search(text, end)
    if stop is None:
        finish = len(text)
    elif stop.group() == "\n":
        finish = stop.start()
    else:
        finish = stop.end()
    return text[begin:finish].strip()


def match_templates(text: str, patterns: Sequence[Pattern[str]]) -> str:
    """Return the first full sentence in ``text`` matching one of ``patterns``."""

    for pattern in patterns:
        for match in pattern.finditer(text):
            sentence = normalize_message(expand_to_sentence(text, match.start(), match.end()))
            if sentence and ends_like_sentence(sentence):
                return sentence
    return ""


def is_session_message(text: str, child_text: str = "") -> bool:
    if not 20 <= len(text) <= 300 or not ends_like_sentence(text):
        return False
    if text[0].isdigit() or text.replace(" ", "").isdigit():
        return False
    if any(term in text for term in SESSION_EXCLUDED_TERMS):
        return False
    if TIME_STAMP.search(text):
        return False
    if any(term in child_text for term in CONTAINER_TERMS):
        return False
    return bool(PRONOUNS.search(text)) and bool(SLEEP_WORDS.search(text))


def session_message_from_locators(snapshot: PageSnapshot) -> str:
    for raw in snapshot.located:
        text = normalize_message(raw)
        if 0 < len(text) <= 300:
            return text
    return ""


def session_message_from_blocks(snapshot: PageSnapshot) -> str:
    visible = [block for block in snapshot.blocks if block.visible]
    # Message-like class names first, document order otherwise.
    visible.sort(key=lambda block: MESSAGE_HINT.search(block.hints) is None)
    for block in visible:
        text = normalize_message(block.text)
        if is_session_message(text, block.child_text):
            return text
    return ""


def session_message_from_templates(snapshot: PageSnapshot) -> str:
    return match_templates(snapshot.text, SLEEP_MESSAGE_PATTERNS)


SESSION_MESSAGE_STRATEGIES: Sequence[Callable[[PageSnapshot], str]] = (
    session_message_from_locators,
    session_message_from_blocks,
    session_message_from_templates,
)


def first_result(snapshot: PageSnapshot, strategies: Iterable[Callable[[PageSnapshot], str]]) -> str:
    for strategy in strategies:
        result = strategy(snapshot)
        if result:
            logger.debug("%s matched: %r", strategy.__name__, result)
            return result
    return ""


def find_session_message(snapshot: PageSnapshot) -> str:
    return first_result(snapshot, SESSION_MESSAGE_STRATEGIES)


def is_tab_message(block: TextBlock, scoped: bool) -> bool:
    """Whether ``block`` looks like the message of the active biosignal tab.

    When the page has a content area only blocks inside it qualify. Text
    mentioning a tab label or trend/unit words is rejected even if it reads
    like a sentence, since that is the tab header glued onto the message.
    """

    if not block.visible or (scoped and not block.in_content):
        return False
    text = normalize_message(block.text)
    if not 30 <= len(text) <= 500 or not text.endswith((".", "!")):
        return False
    if text.replace(" ", "").isdigit():
        return False
    return not any(term in text for term in TAB_VOCABULARY)


def find_tab_message(snapshot: PageSnapshot) -> str:
    for block in snapshot.blocks:
        if is_tab_message(block, snapshot.has_content_area):
            return normalize_message(block.text)
    return ""


def snapshot_tab(driver: Any) -> PageSnapshot:
    return driver.snapshot(
        content_selectors=CONTENT_AREA_SELECTORS,
        exclude_selectors=TAB_HEADER_SELECTORS,
        max_length=600,
    )


def open_detail_page(driver: Any, detail: str, settle_ms: int) -> Optional[str]:
    """Navigate to a detail view and return the URL to come back to.

    Returns None when the browser did not end up on the detail route.
    """

    original = driver.url
    if on_detail_route(original, detail):
        return original
    target = build_detail_url(original, detail)
    logger.debug("Opening %s", target)
    driver.set_cache_enabled(False)
    driver.goto(target)
    driver.wait(settle_ms)
    if not on_detail_route(driver.url, detail):
        logger.debug("Expected the %s page but landed on %s", detail, driver.url)
        if original and driver.url != original:
            driver.goto(original)
        return None
    return original


def return_to(driver: Any, original_url: str, settle_ms: int) -> None:
    if not original_url or driver.url == original_url:
        return
    if driver.click_selector(BACK_SELECTORS):
        driver.wait(settle_ms)
        current = driver.url
        if current == original_url or (DASHBOARD_ROUTE in current and "/details/" not in current):
            return
    logger.debug("Navigating back to %s", original_url)
    driver.goto(original_url)


def extract_general_message(driver: Any, settle_ms: int) -> str:
    """Coaching message from the sleep-session detail page, or ''."""

    try:
        original = open_detail_page(driver, SESSION_DETAIL, settle_ms * 2)
    except Exception as exc:
        logger.debug("Could not open the sleep session page: %s", exc)
        return ""
    if original is None:
        return ""

    message = ""
    try:
        snapshot = driver.snapshot(locators=SESSION_MESSAGE_LOCATORS, max_length=400)
        message = find_session_message(snapshot)
    except Exception as exc:
        logger.debug("General message extraction failed: %s", exc)
    finally:
        try:
            return_to(driver, original, settle_ms)
        except Exception as exc:
            logger.debug("Could not leave the sleep session page: %s", exc)
    if not message:
        logger.debug("No general sleep message found")
    return normalize_message(message)


def extract_tab_message(driver: Any, field_name: str, settle_ms: int) -> str:
    templates = BIOSIGNAL_TEMPLATES[field_name]
    label = TAB_LABELS[field_name]
    if not driver.click_text([label], exact=True):
        logger.debug("%s tab not found, matching page text instead", label)
        return match_templates(driver.visible_text(), templates)
    driver.wait(settle_ms)
    snapshot = snapshot_tab(driver)
    return find_tab_message(snapshot) or match_templates(snapshot.text, templates)


def extract_biosignal_messages(driver: Any, settle_ms: int) -> Dict[str, str]:
    """Heart rate, HRV and breath rate messages from the biosignals page."""

    results = {name: "" for name in BIOSIGNAL_FIELDS}
    try:
        original = open_detail_page(driver, BIOSIGNALS_DETAIL, settle_ms * 2)
    except Exception as exc:
        logger.debug("Could not open the biosignals page: %s", exc)
        return results
    if original is None:
        return results

    try:
        try:
            snapshot = snapshot_tab(driver)
            results["heart_rate_message"] = find_tab_message(snapshot) or match_templates(
                snapshot.text, BIOSIGNAL_TEMPLATES["heart_rate_message"]
            )
        except Exception as exc:
            logger.debug("Heart rate message extraction failed: %s", exc)
        for name in ("heart_rate_variability_message", "breath_rate_message"):
            try:
                results[name] = extract_tab_message(driver, name, settle_ms)
            except Exception as exc:
                logger.debug("%s extraction failed: %s", TAB_LABELS[name], exc)
    finally:
        try:
            return_to(driver, original, settle_ms)
        except Exception as exc:
            logger.debug("Could not leave the biosignals page: %s", exc)

    for name in BIOSIGNAL_FIELDS:
        results[name] = normalize_message(results[name])
        if not results[name]:
            logger.debug("No %s found", name.replace("_", " "))
    return results
