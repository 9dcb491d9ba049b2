"""Playwright-backed browser handle used by the SleepIQ scraper.

The scraper core only talks to a small capability set (navigate, evaluate,
click, type, cookies, storage, screenshots and waits). ``PlaywrightDriver``
provides that set on top of a synchronous Playwright page, and
``launch_driver`` owns the browser for the duration of one run.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from playwright.sync_api import (  # type: ignore[import-not-found]
    Browser,
    Error as PlaywrightError,
    TimeoutError as PlaywrightTimeoutError,
    Page,
    sync_playwright,
)

from sleepiq_models import DEFAULT_TIMEOUT_MS, DEFAULT_USER_AGENT, ScraperConfig

logger = logging.getLogger(__name__)

BROWSER_ARGS = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--disable-features=PasswordManager,AutofillServerCommunication",
    "--disable-save-password-bubble",
)
VIEWPORT = {"width": 1280, "height": 720}
COOKIE_KEYS = ("name", "value", "url", "domain", "path", "expires", "httpOnly", "secure", "sameSite")
SAME_SITE_VALUES = {"strict": "Strict", "lax": "Lax", "none": "None"}

# Keeps the browser's autofill from pre-populating the login form.
DISABLE_AUTOFILL_SCRIPT = """
(() => {
    const scrub = () => {
        document.querySelectorAll('form').forEach((form) => {
            form.setAttribute('autocomplete', 'off');
        });
        document.querySelectorAll('input').forEach((input) => {
            input.setAttribute('autocomplete', 'new-password');
            input.setAttribute('data-form-type', 'other');
        });
    };
    document.addEventListener('DOMContentLoaded', () => {
        scrub();
        new MutationObserver(scrub).observe(document.body || document.documentElement, {
            childList: true,
            subtree: true,
        });
    });
})();
"""

SNAPSHOT_SCRIPT = """
(opts) => {
    const contentSelector = opts.contentSelectors.join(',');
    const excludeSelector = opts.excludeSelectors.join(',');
    const hasContentArea = !!(contentSelector && document.querySelector(contentSelector));
    const isVisible = (el) => {
        const rect = el.getBoundingClientRect();
        if (rect.width === 0 || rect.height === 0) return false;
        const style = window.getComputedStyle(el);
        return style.visibility !== 'hidden' && style.display !== 'none';
    };
    const blocks = [];
    const root = document.body || document.documentElement;
    root.querySelectorAll('*').forEach((el) => {
        if (['SCRIPT', 'STYLE', 'NOSCRIPT', 'SVG', 'PATH'].includes(el.tagName.toUpperCase())) return;
        const text = (el.textContent || '').trim();
        if (!text || text.length > opts.maxLength) return;
        const className = typeof el.className === 'string'
            ? el.className
            : (el.getAttribute && el.getAttribute('class')) || '';
        const hints = [
            className,
            el.getAttribute('data-testid') || '',
            el.getAttribute('data-test') || '',
            el.getAttribute('aria-label') || '',
        ].join(' ');
        const inContent = hasContentArea
            && !!el.closest(contentSelector)
            && !(excludeSelector && el.closest(excludeSelector));
        blocks.push({
            text,
            hints,
            tag: el.tagName.toLowerCase(),
            visible: isVisible(el),
            inContent,
            childText: Array.from(el.children).map((c) => (c.textContent || '').trim()).join(' '),
            leaf: el.children.length === 0,
        });
    });
    const located = [];
    opts.locators.forEach((selector) => {
        try {
            document.querySelectorAll(selector).forEach((el) => {
                const text = (el.textContent || '').trim();
                if (text) located.push(text);
            });
        } catch (err) {
            // Invalid selector on this page; skip it.
        }
    });
    return {
        url: window.location.href,
        text: root.innerText || '',
        hasContentArea,
        blocks,
        located,
    };
}
"""

CLICK_TEXT_SCRIPT = """
(opts) => {
    const wanted = opts.labels.map((label) => label.trim().toLowerCase());
    const isClickable = (el) => {
        if (!el || el.disabled) return false;
        const role = el.getAttribute && el.getAttribute('role');
        if (['BUTTON', 'A', 'OPTION'].includes(el.tagName)) return true;
        if (['button', 'tab', 'option', 'menuitem', 'link'].includes(role)) return true;
        if (el.onclick) return true;
        return window.getComputedStyle(el).cursor === 'pointer';
    };
    const elements = Array.from(document.querySelectorAll(opts.scope || '*'));
    for (const el of elements) {
        const text = (el.textContent || '').replace(/\\s+/g, ' ').trim().toLowerCase();
        const matched = opts.exact
            ? wanted.includes(text)
            : wanted.some((label) => label && text.includes(label));
        if (!matched) continue;
        if (!(el.offsetWidth > 0 && el.offsetHeight > 0)) continue;
        let target = el;
        let found = isClickable(el);
        for (let i = 0; !found && i < 5 && target.parentElement; i++) {
            target = target.parentElement;
            found = isClickable(target);
        }
        if (!found) {
            if (opts.requireClickable) continue;
            target = el;
        }
        target.click();
        return (el.textContent || '').trim();
    }
    return null;
}
"""

SELECT_OPTION_SCRIPT = """
(name) => {
    const wanted = name.trim().toLowerCase();
    for (const select of Array.from(document.querySelectorAll('select'))) {
        for (const option of Array.from(select.options)) {
            if ((option.textContent || '').trim().toLowerCase() === wanted) {
                select.value = option.value;
                select.dispatchEvent(new Event('input', { bubbles: true }));
                select.dispatchEvent(new Event('change', { bubbles: true }));
                return true;
            }
        }
    }
    return false;
}
"""

COMMIT_FIELD_SCRIPT = """
(el) => {
    el.dispatchEvent(new Event('input', { bubbles: true }));
    el.dispatchEvent(new Event('change', { bubbles: true }));
    el.dispatchEvent(new Event('blur', { bubbles: true }));
    if (typeof el.blur === 'function') el.blur();
    return el.value;
}
"""

READ_STORAGE_SCRIPT = """
() => {
    const dump = (storage) => {
        const data = {};
        for (let i = 0; i < storage.length; i++) {
            const key = storage.key(i);
            if (key !== null) data[key] = storage.getItem(key) || '';
        }
        return data;
    };
    return { localStorage: dump(window.localStorage), sessionStorage: dump(window.sessionStorage) };
}
"""

WRITE_STORAGE_SCRIPT = """
(data) => {
    let written = 0;
    const load = (storage, entries) => {
        Object.entries(entries || {}).forEach(([key, value]) => {
            try {
                storage.setItem(key, value);
                written += 1;
            } catch (err) {
                // Quota or access errors leave the entry out.
            }
        });
    };
    load(window.localStorage, data.localStorage);
    load(window.sessionStorage, data.sessionStorage);
    return written;
}
"""


@dataclass(frozen=True)
class TextBlock:
    """One element's text as seen in a page snapshot."""

    text: str
    hints: str = ""
    tag: str = ""
    visible: bool = True
    in_content: bool = False
    child_text: str = ""
    leaf: bool = False


@dataclass
class PageSnapshot:
    url: str = ""
    text: str = ""
    has_content_area: bool = False
    blocks: List[TextBlock] = field(default_factory=list)
    located: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PageSnapshot":
        blocks = [
            TextBlock(
                text=str(entry.get("text") or ""),
                hints=str(entry.get("hints") or ""),
                tag=str(entry.get("tag") or ""),
                visible=bool(entry.get("visible")),
                in_content=bool(entry.get("inContent")),
                child_text=str(entry.get("childText") or ""),
                leaf=bool(entry.get("leaf")),
            )
            for entry in data.get("blocks") or []
            if isinstance(entry, dict)
        ]
        return cls(
            url=str(data.get("url") or ""),
            text=str(data.get("text") or ""),
            has_content_area=bool(data.get("hasContentArea")),
            blocks=blocks,
            located=[str(item) for item in data.get("located") or []],
        )


def sanitize_filename(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned.strip("._-") or "page"


def normalize_cookie(cookie: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Reduce a stored cookie to the keys Playwright accepts."""

    if not cookie.get("name") or "value" not in cookie:
        return None
    cleaned = {key: cookie[key] for key in COOKIE_KEYS if key in cookie}
    if not cleaned.get("url") and not cleaned.get("domain"):
        return None
    if cleaned.get("domain") and not cleaned.get("path"):
        cleaned["path"] = "/"
    same_site = cleaned.get("sameSite")
    if same_site is not None:
        mapped = SAME_SITE_VALUES.get(str(same_site).lower())
        if mapped is None:
            cleaned.pop("sameSite")
        else:
            cleaned["sameSite"] = mapped
    expires = cleaned.get("expires")
    if expires is not None and not isinstance(expires, (int, float)):
        cleaned.pop("expires")
    return cleaned


class PlaywrightDriver:
    """Capability set over a single Playwright page."""

    def __init__(self, page: Page, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
        self.page = page
        self.timeout_ms = timeout_ms
        self._cdp = None

    @property
    def url(self) -> str:
        return self.page.url

    def goto(self, url: str, wait_until: str = "networkidle") -> bool:
        try:
            self.page.goto(url, wait_until=wait_until, timeout=self.timeout_ms)
            return True
        except PlaywrightTimeoutError:
            # Hash-routed pages often keep polling; the DOM is usually usable.
            logger.debug("Navigation to %s timed out waiting for %s", url, wait_until)
            return False

    def wait(self, milliseconds: int) -> None:
        if milliseconds > 0:
            self.page.wait_for_timeout(milliseconds)

    def evaluate(self, script: str, arg: Any = None) -> Any:
        return self.page.evaluate(script, arg)

    def wait_for_function(
        self, script: str, arg: Any = None, timeout_ms: Optional[int] = None, polling: int = 250
    ) -> bool:
        try:
            self.page.wait_for_function(
                script, arg=arg, timeout=timeout_ms or self.timeout_ms, polling=polling
            )
            return True
        except PlaywrightTimeoutError:
            return False

    def visible_text(self) -> str:
        text = self.page.evaluate("() => (document.body && document.body.innerText) || ''")
        return str(text or "")

    def content(self) -> str:
        return self.page.content()

    def snapshot(
        self,
        content_selectors: Sequence[str] = (),
        exclude_selectors: Sequence[str] = (),
        locators: Sequence[str] = (),
        max_length: int = 600,
    ) -> PageSnapshot:
        data = self.page.evaluate(
            SNAPSHOT_SCRIPT,
            {
                "contentSelectors": list(content_selectors),
                "excludeSelectors": list(exclude_selectors),
                "locators": list(locators),
                "maxLength": max_length,
            },
        )
        return PageSnapshot.from_dict(data if isinstance(data, dict) else {})

    def commit_field_value(self, selector: str, value: str) -> None:
        """Clear a field, type into it and make the SPA's form state notice."""

        field_locator = self.page.locator(selector).first
        field_locator.click(timeout=self.timeout_ms)
        field_locator.press("ControlOrMeta+A")
        field_locator.press("Delete")
        field_locator.press_sequentially(value, delay=30)
        handle = field_locator.element_handle()
        if handle is not None:
            self.page.evaluate(COMMIT_FIELD_SCRIPT, handle)

    def click_selector(self, selectors: Sequence[str], timeout_ms: int = 2000) -> Optional[str]:
        for selector in selectors:
            try:
                locator = self.page.locator(selector)
                if locator.count() == 0:
                    continue
                locator.first.click(timeout=timeout_ms)
                return selector
            except PlaywrightTimeoutError:
                continue
            except PlaywrightError as exc:
                logger.debug("Click on %s failed: %s", selector, exc)
                continue
        return None

    def click_text(
        self,
        labels: Sequence[str],
        exact: bool = True,
        require_clickable: bool = False,
        scope: str = "*",
    ) -> Optional[str]:
        try:
            clicked = self.page.evaluate(
                CLICK_TEXT_SCRIPT,
                {
                    "labels": list(labels),
                    "exact": exact,
                    "requireClickable": require_clickable,
                    "scope": scope,
                },
            )
        except PlaywrightError as exc:
            logger.debug("Text click for %s failed: %s", labels, exc)
            return None
        return str(clicked) if clicked else None

    def select_option_by_text(self, text: str) -> bool:
        try:
            return bool(self.page.evaluate(SELECT_OPTION_SCRIPT, text))
        except PlaywrightError as exc:
            logger.debug("Select option %s failed: %s", text, exc)
            return False

    def press(self, selector: str, key: str) -> bool:
        try:
            locator = self.page.locator(selector)
            if locator.count() == 0:
                return False
            locator.first.focus(timeout=self.timeout_ms)
            locator.first.press(key)
            return True
        except PlaywrightError as exc:
            logger.debug("Pressing %s on %s failed: %s", key, selector, exc)
            return False

    def cookies(self) -> List[Dict[str, Any]]:
        return [dict(cookie) for cookie in self.page.context.cookies()]

    def add_cookies(self, cookies: Sequence[Dict[str, Any]]) -> int:
        cleaned = [c for c in (normalize_cookie(dict(cookie)) for cookie in cookies) if c]
        if cleaned:
            self.page.context.add_cookies(cleaned)  # type: ignore[arg-type]
        return len(cleaned)

    def read_storage(self) -> Tuple[Dict[str, str], Dict[str, str]]:
        data = self.page.evaluate(READ_STORAGE_SCRIPT) or {}
        return dict(data.get("localStorage") or {}), dict(data.get("sessionStorage") or {})

    def write_storage(self, local: Dict[str, str], session: Dict[str, str]) -> int:
        written = self.page.evaluate(
            WRITE_STORAGE_SCRIPT, {"localStorage": local, "sessionStorage": session}
        )
        return int(written or 0)

    def set_cache_enabled(self, enabled: bool) -> bool:
        try:
            if self._cdp is None:
                self._cdp = self.page.context.new_cdp_session(self.page)
                self._cdp.send("Network.enable")
            self._cdp.send("Network.setCacheDisabled", {"cacheDisabled": not enabled})
            return True
        except PlaywrightError as exc:
            logger.debug("Could not change cache state: %s", exc)
            return False

    def screenshot(self, path: Path) -> bool:
        try:
            self.page.screenshot(path=str(path), full_page=True)
            return True
        except PlaywrightError as exc:
            logger.debug("Screenshot to %s failed: %s", path, exc)
            return False


def save_debug_artifacts(driver: Any, debug_dir: Path, slug: str, reason: str) -> List[Path]:
    """Write a screenshot, the HTML and the visible text of the current page."""

    saved: List[Path] = []
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("Could not create debug directory %s: %s", debug_dir, exc)
        return saved
    stem = f"{sanitize_filename(slug)}_{sanitize_filename(reason)}"
    screenshot = debug_dir / f"{stem}.png"
    if driver.screenshot(screenshot):
        saved.append(screenshot)
    for suffix, reader in ((".html", driver.content), (".txt", driver.visible_text)):
        path = debug_dir / f"{stem}{suffix}"
        try:
            path.write_text(reader(), encoding="utf-8")
            saved.append(path)
        except Exception as exc:
            logger.debug("Could not save %s: %s", path, exc)
    for path in saved:
        logger.info("Debug saved: %s", path)
    return saved


def close_quietly(page: Optional[Page], browser: Optional[Browser]) -> None:
    """Close the page, then the browser. Errors are logged, never raised."""

    for label, resource in (("page", page), ("browser", browser)):
        if resource is None:
            continue
        try:
            resource.close()
        except Exception as exc:
            logger.warning("Failed to close %s: %s", label, exc)


@contextmanager
def launch_driver(config: ScraperConfig) -> Iterator[PlaywrightDriver]:
    with sync_playwright() as playwright:
        browser = playwright.chromium.launch(headless=config.headless, args=list(BROWSER_ARGS))
        page: Optional[Page] = None
        try:
            context = browser.new_context(user_agent=DEFAULT_USER_AGENT, viewport=VIEWPORT)  # type: ignore[arg-type]
            context.add_init_script(DISABLE_AUTOFILL_SCRIPT)
            page = context.new_page()
            page.set_default_timeout(config.timeout_ms)
            page.set_default_navigation_timeout(config.timeout_ms)
            yield PlaywrightDriver(page, config.timeout_ms)
        finally:
            close_quietly(page, browser)
