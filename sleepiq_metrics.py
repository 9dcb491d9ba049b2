"""Read the three SleepIQ scores from the sleep dashboard.

The dashboard shows a 30-day average, the current SleepIQ score and the
all-time best. None of them carry stable ids, so the values are located by
their labels in the rendered page text. A structural pass over elements whose
class or test id mentions a score runs first; where both passes find a value
the label-anchored one is kept.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, Optional, Pattern

from sleepiq_driver import TextBlock

logger = logging.getLogger(__name__)

METRIC_FIELDS = ("thirty_day_average", "current_score", "all_time_best")
NUMBER_AFTER_LABEL = r"[\s:\-]*(\d{1,3})(?!\d)"

LABEL_PATTERNS: Dict[str, Pattern[str]] = {
    "thirty_day_average": re.compile(
        r"30[\s-]*day\s*(?:avg\.?|average)" + NUMBER_AFTER_LABEL, re.IGNORECASE
    ),
    "current_score": re.compile(
        r"(?:sleep\s*iq\s*(?:\u00ae|\(r\))?|current|today'?s?)\s*score" + NUMBER_AFTER_LABEL,
        re.IGNORECASE,
    ),
    "all_time_best": re.compile(
        r"all[\s-]*time\s*(?:best|high)" + NUMBER_AFTER_LABEL, re.IGNORECASE
    ),
}

HINT_PATTERNS: Dict[str, Pattern[str]] = {
    "thirty_day_average": re.compile(r"thirty[\s_-]*day|30[\s_-]*day", re.IGNORECASE),
    "all_time_best": re.compile(r"all[\s_-]*time|best[\s_-]*score", re.IGNORECASE),
    "current_score": re.compile(r"sleep[\s_-]*(?:iq[\s_-]*)?score|score", re.IGNORECASE),
}

READY_SCRIPT = """
() => {
    const text = ((document.body && document.body.innerText) || '').toLowerCase();
    return text.includes('score') && (/30[\\s-]*day/.test(text) || /all[\\s-]*time/.test(text));
}
"""

READY_PATTERN = re.compile(r"30[\s-]*day|all[\s-]*time", re.IGNORECASE)
ISOLATED_SCORE = re.compile(r"^\d{2}$")


def empty_metrics() -> Dict[str, str]:
    return {name: "" for name in METRIC_FIELDS}


def metrics_ready(text: str) -> bool:
    return "score" in text.lower() and bool(READY_PATTERN.search(text))


def in_score_range(value: str) -> bool:
    return value.isascii() and value.isdecimal() and 0 <= int(value) <= 100


def first_labelled_value(pattern: Pattern[str], text: str) -> str:
    for match in pattern.finditer(text):
        value = match.group(1)
        if in_score_range(value):
            return str(int(value))
        logger.debug("Discarding out-of-range value %s after %r", value, match.group(0))
    return ""


def extract_metrics_from_text(text: str) -> Dict[str, str]:
    """Label-anchored pass over the visible page text."""

    return {name: first_labelled_value(pattern, text) for name, pattern in LABEL_PATTERNS.items()}


def extract_metrics_from_blocks(blocks: Iterable[TextBlock]) -> Dict[str, str]:
    """Structural pass: numeric elements whose attributes hint at a score."""

    found = empty_metrics()
    isolated: Optional[str] = None
    for block in blocks:
        text = block.text.strip()
        if not block.visible or not in_score_range(text):
            continue
        value = str(int(text))
        for name in ("thirty_day_average", "all_time_best", "current_score"):
            if not found[name] and HINT_PATTERNS[name].search(block.hints):
                found[name] = value
                break
        else:
            if isolated is None and block.leaf and ISOLATED_SCORE.match(text):
                isolated = value
    if not found["current_score"] and isolated is not None:
        found["current_score"] = isolated
    return found


def merge_metrics(structural: Dict[str, str], labelled: Dict[str, str]) -> Dict[str, str]:
    merged = empty_metrics()
    for name in METRIC_FIELDS:
        merged[name] = labelled.get(name) or structural.get(name) or ""
    return merged


def extract_metrics(driver: Any, timeout_ms: int) -> Dict[str, str]:
    """Return the dashboard scores as strings, empty where not found."""

    try:
        if not driver.wait_for_function(READY_SCRIPT, timeout_ms=timeout_ms):
            logger.debug("Dashboard metrics did not appear within %d ms", timeout_ms)
        snapshot = driver.snapshot(max_length=60)
    except Exception as exc:
        logger.debug("Could not read the dashboard: %s", exc)
        return empty_metrics()

    try:
        structural = extract_metrics_from_blocks(snapshot.blocks)
    except Exception as exc:
        logger.debug("Structural metric pass failed: %s", exc)
        structural = empty_metrics()
    labelled = extract_metrics_from_text(snapshot.text)
    for name in METRIC_FIELDS:
        if structural[name] and labelled[name] and structural[name] != labelled[name]:
            logger.debug(
                "%s: structural %s disagrees with label %s; keeping the label",
                name,
                structural[name],
                labelled[name],
            )
    metrics = merge_metrics(structural, labelled)
    missing = [name for name in METRIC_FIELDS if not metrics[name]]
    if missing:
        logger.debug("Metrics not found: %s", ", ".join(missing))
    return metrics
