"""In-memory stand-in for ``PlaywrightDriver`` used across the test modules."""

from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sleepiq_driver import PageSnapshot, TextBlock

DASHBOARD = "https://sleepiq.sleepnumber.com/#/pages/sleep"
SESSION_PAGE = DASHBOARD + "/details/sleep-session"
BIOSIGNALS_PAGE = DASHBOARD + "/details/biosignals"
LOGIN_PAGE = "https://sleepiq.sleepnumber.com/#/login"


def block(text, hints="", in_content=False, visible=True, child_text="", leaf=True):
    return TextBlock(
        text=text,
        hints=hints,
        visible=visible,
        in_content=in_content,
        child_text=child_text,
        leaf=leaf,
    )


class FakeDriver:
    """Records every call and serves canned pages.

    ``pages`` maps ``(route fragment, active tab)`` to a snapshot; the longest
    fragment contained in the current URL wins. ``clickable`` holds the
    lower-cased labels ``click_text`` can find and ``selectors`` the CSS
    selectors ``click_selector`` can click. ``actions`` runs a callback after
    a successful click on a label or selector.
    """

    def __init__(self, url: str = "about:blank") -> None:
        self.url = url
        self.calls: List[Tuple[Any, ...]] = []
        self.pages: Dict[Tuple[str, Optional[str]], PageSnapshot] = {}
        self.scripts: Dict[str, Any] = {}
        self.ready: Dict[str, bool] = {}
        self.routes: Dict[str, str] = {}
        self.clickable: set = set()
        self.tabs: set = set()
        self.selectors: set = set()
        self.options: set = set()
        self.actions: Dict[str, Callable[["FakeDriver"], None]] = {}
        self.active_tab: Optional[str] = None
        self.press_result = False
        self.cookie_jar: List[Dict[str, Any]] = []
        self.local_storage: Dict[str, str] = {}
        self.session_storage: Dict[str, str] = {}

    def called(self, name: str) -> List[Tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]

    def current_page(self) -> PageSnapshot:
        for tab in (self.active_tab, None):
            matches = [
                (route, snapshot)
                for (route, key_tab), snapshot in self.pages.items()
                if key_tab == tab and route in self.url
            ]
            if matches:
                return max(matches, key=lambda item: len(item[0]))[1]
        return PageSnapshot(url=self.url)

    def goto(self, url: str, wait_until: str = "networkidle") -> bool:
        self.calls.append(("goto", url, wait_until))
        self.url = self.routes.get(url, url)
        self.active_tab = None
        return True

    def wait(self, milliseconds: int) -> None:
        self.calls.append(("wait", milliseconds))

    def evaluate(self, script: str, arg: Any = None) -> Any:
        self.calls.append(("evaluate", script, arg))
        result = self.scripts.get(script)
        if isinstance(result, BaseException):
            raise result
        return result(arg) if callable(result) else result

    def wait_for_function(
        self, script: str, arg: Any = None, timeout_ms: Optional[int] = None, polling: int = 250
    ) -> bool:
        self.calls.append(("wait_for_function", script, arg))
        return self.ready.get(script, True)

    def visible_text(self) -> str:
        return self.current_page().text

    def content(self) -> str:
        return "<html><body>%s</body></html>" % self.current_page().text

    def snapshot(
        self,
        content_selectors: Sequence[str] = (),
        exclude_selectors: Sequence[str] = (),
        locators: Sequence[str] = (),
        max_length: int = 600,
    ) -> PageSnapshot:
        self.calls.append(("snapshot", self.url, self.active_tab))
        return self.current_page()

    def commit_field_value(self, selector: str, value: str) -> None:
        self.calls.append(("fill", selector, value))

    def _run_action(self, key: str) -> None:
        action = self.actions.get(key)
        if action is not None:
            action(self)

    def click_selector(self, selectors: Sequence[str], timeout_ms: int = 2000) -> Optional[str]:
        self.calls.append(("click_selector", tuple(selectors)))
        for selector in selectors:
            if selector in self.selectors:
                self._run_action(selector)
                return selector
        return None

    def click_text(
        self,
        labels: Sequence[str],
        exact: bool = True,
        require_clickable: bool = False,
        scope: str = "*",
    ) -> Optional[str]:
        self.calls.append(("click_text", tuple(labels), scope))
        for label in labels:
            key = label.lower()
            if key in self.clickable:
                if label in self.tabs:
                    self.active_tab = label
                self._run_action(key)
                return label
        return None

    def select_option_by_text(self, text: str) -> bool:
        self.calls.append(("select_option", text))
        if text.lower() in self.options:
            self._run_action(text.lower())
            return True
        return False

    def press(self, selector: str, key: str) -> bool:
        self.calls.append(("press", selector, key))
        return self.press_result

    def cookies(self) -> List[Dict[str, Any]]:
        return [dict(cookie) for cookie in self.cookie_jar]

    def add_cookies(self, cookies: Sequence[Dict[str, Any]]) -> int:
        self.calls.append(("add_cookies", list(cookies)))
        self.cookie_jar.extend(dict(cookie) for cookie in cookies)
        return len(cookies)

    def read_storage(self) -> Tuple[Dict[str, str], Dict[str, str]]:
        return dict(self.local_storage), dict(self.session_storage)

    def write_storage(self, local: Dict[str, str], session: Dict[str, str]) -> int:
        self.calls.append(("write_storage", dict(local), dict(session)))
        self.local_storage.update(local)
        self.session_storage.update(session)
        return len(local) + len(session)

    def set_cache_enabled(self, enabled: bool) -> bool:
        self.calls.append(("set_cache_enabled", enabled))
        return True

    def screenshot(self, path: Any) -> bool:
        return False


def factory_for(driver: FakeDriver, events: Optional[List[str]] = None):
    """Driver factory that hands out ``driver`` and records open/close."""

    @contextmanager
    def factory(config):
        if events is not None:
            events.append("open")
        try:
            yield driver
        finally:
            if events is not None:
                events.append("close")

    return factory
