"""Sign in to SleepIQ through its login form.

The SleepIQ single-page app does not reliably react to a synthetic click on
its login button, and a successful sign-in sometimes passes through an
intermediate auth route before the dashboard shows up. The login is therefore
modelled as a small state machine that tries several submit strategies and
classifies where the browser ended up.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Sequence, Tuple

from sleepiq_driver import save_debug_artifacts
from sleepiq_models import (
    DASHBOARD_ROUTE,
    DASHBOARD_URL,
    LOGIN_ROUTE,
    LOGIN_URL,
    Credentials,
    ScraperConfig,
)

logger = logging.getLogger(__name__)

EMAIL_SELECTOR = (
    "input[type='email'], input[name='email'], input[id*='email'], "
    "input[name*='username'], input#username"
)
PASSWORD_SELECTOR = (
    "input[type='password'], input[name='password'], input[id*='password']"
)
LOGIN_LABELS = ("Login", "Log in", "Sign in")
SUBMIT_SELECTORS = (
    "button[type='submit']",
    "input[type='submit']",
    "[data-testid*='login']",
    "[data-testid*='submit']",
    ".login-button",
    ".btn-login",
    ".login-btn",
    ".submit-btn",
)
AUTH_MARKERS = ("login", "auth", "signin", "sign-in")
TWO_FACTOR_TERMS = (
    "verification code",
    "verify your",
    "one-time",
    "one time code",
    "one-time passcode",
    "security code",
    "passcode",
    "two-factor",
    "two-step",
    "2-step",
    "2fa",
    "enter the code",
)
FORM_READY_POLL_MS = 250
POST_SUBMIT_SETTLE_MS = 2000
REDIRECT_WAIT_TOTAL_MS = 10000
REDIRECT_POLL_STEP_MS = 1000
INTERMEDIATE_POLL_TOTAL_MS = 15000
INTERMEDIATE_POLL_STEP_MS = 1000

FORM_READY_SCRIPT = """
(selectors) => {
    const email = document.querySelector(selectors.email);
    const password = document.querySelector(selectors.password);
    return !!(email && password && !email.disabled && !password.disabled);
}
"""

SUBMIT_FORM_SCRIPT = """
() => {
    const form = document.querySelector('form');
    if (!form) return false;
    if (typeof form.requestSubmit === 'function') {
        form.requestSubmit();
    } else {
        form.submit();
    }
    return true;
}
"""

LEFT_LOGIN_OR_ERROR_SCRIPT = """
(loginRoute) => {
    if (!window.location.href.includes(loginRoute)) return true;
    const candidates = document.querySelectorAll(
        '[role="alert"], .error, .error-message, [class*="error"], [class*="invalid"]'
    );
    return Array.from(candidates).some((el) =>
        (el.offsetWidth > 0 || el.offsetHeight > 0) && (el.textContent || '').trim().length > 0
    );
}
"""

LOGIN_FEEDBACK_SCRIPT = """
() => {
    const all = Array.from(document.querySelectorAll('body *'));
    const errorWords = ['invalid', 'incorrect', 'wrong', 'error', 'failed', 'try again'];
    const errorMessages = all.filter((el) => {
        if (el.children.length > 0) return false;
        const text = (el.textContent || '').trim();
        if (!text || text.length >= 200) return false;
        const lowered = text.toLowerCase();
        const classes = (typeof el.className === 'string' ? el.className : '').toLowerCase();
        return errorWords.some((word) => lowered.includes(word))
            || classes.includes('error') || classes.includes('invalid');
    }).map((el) => el.textContent.trim());
    const redText = all.filter((el) => {
        if (el.children.length > 0) return false;
        const text = (el.textContent || '').trim();
        if (!text || text.length >= 100) return false;
        const style = window.getComputedStyle(el);
        return style.color.includes('255, 0, 0') || style.color === 'red'
            || style.backgroundColor.includes('255, 0, 0');
    }).map((el) => el.textContent.trim());
    return {
        url: window.location.href,
        path: window.location.pathname + window.location.hash,
        hasLoginForm: !!document.querySelector('input[type="email"], input[type="password"]'),
        errorMessages,
        redText,
        pageText: (document.body && document.body.innerText) || '',
    };
}
"""


class LoginState(Enum):
    NOT_STARTED = "not_started"
    FORM_LOADED = "form_loaded"
    CREDENTIALS_ENTERED = "credentials_entered"
    SUBMITTED = "submitted"
    AUTHENTICATED = "authenticated"
    STILL_ON_LOGIN = "still_on_login"
    STUCK_ON_INTERMEDIATE_AUTH = "stuck_on_intermediate_auth"
    TWO_FACTOR_REQUIRED = "two_factor_required"


FAILURE_STATES = (
    LoginState.STILL_ON_LOGIN,
    LoginState.STUCK_ON_INTERMEDIATE_AUTH,
    LoginState.TWO_FACTOR_REQUIRED,
)


class AuthenticationError(RuntimeError):
    """Raised when the login form could not be used or did not let us in."""

    def __init__(
        self,
        message: str,
        state: LoginState = LoginState.STILL_ON_LOGIN,
        error_messages: Sequence[str] = (),
        red_text: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.state = state
        self.error_messages = list(error_messages)
        self.red_text = list(red_text)


class TwoFactorRequiredError(AuthenticationError):
    """Raised when SleepIQ asks for a verification code, which is unsupported."""


@dataclass
class LoginFeedback:
    url: str = ""
    path: str = ""
    has_login_form: bool = False
    error_messages: List[str] = field(default_factory=list)
    red_text: List[str] = field(default_factory=list)
    page_text: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "LoginFeedback":
        if not isinstance(data, dict):
            return cls()
        return cls(
            url=str(data.get("url") or ""),
            path=str(data.get("path") or ""),
            has_login_form=bool(data.get("hasLoginForm")),
            error_messages=unique_texts(data.get("errorMessages") or []),
            red_text=unique_texts(data.get("redText") or []),
            page_text=str(data.get("pageText") or ""),
        )


@dataclass
class SessionContext:
    """Where the browser is and how it got there."""

    current_url: str = ""
    authenticated: bool = False
    state: LoginState = LoginState.NOT_STARTED
    history: List[Tuple[LoginState, str]] = field(default_factory=list)

    def advance(self, state: LoginState, url: str = "") -> None:
        self.state = state
        if url:
            self.current_url = url
        self.authenticated = state is LoginState.AUTHENTICATED
        self.history.append((state, self.current_url))
        logger.debug("Login state -> %s (%s)", state.value, self.current_url)


def unique_texts(values: Sequence[Any]) -> List[str]:
    seen: List[str] = []
    for value in values:
        text = re.sub(r"\s+", " ", str(value)).strip()
        if text and text not in seen:
            seen.append(text)
    return seen


def is_login_route(path: str, login_route: str = LOGIN_ROUTE) -> bool:
    return login_route.lower() in path.lower()


def is_auth_route(path: str) -> bool:
    lowered = path.lower()
    return any(marker in lowered for marker in AUTH_MARKERS)


def mentions_two_factor(text: str) -> bool:
    lowered = text.lower()
    return any(term in lowered for term in TWO_FACTOR_TERMS)


def classify_feedback(feedback: LoginFeedback, login_route: str = LOGIN_ROUTE) -> LoginState:
    """First pass over the page reached after submitting.

    Returns STUCK_ON_INTERMEDIATE_AUTH for an auth route that still shows a
    form; the caller polls that case before giving up.
    """

    location = feedback.path or feedback.url
    if feedback.has_login_form and is_login_route(location, login_route):
        return LoginState.STILL_ON_LOGIN
    if feedback.has_login_form and is_auth_route(location):
        return LoginState.STUCK_ON_INTERMEDIATE_AUTH
    return LoginState.AUTHENTICATED


def describe_failure(state: LoginState, feedback: LoginFeedback) -> str:
    headline = {
        LoginState.STILL_ON_LOGIN: "Login failed (still on the login page)",
        LoginState.STUCK_ON_INTERMEDIATE_AUTH: (
            f"Login failed (stuck on intermediate auth page {feedback.path or feedback.url})"
        ),
        LoginState.TWO_FACTOR_REQUIRED: (
            "Login requires a verification code; two-factor authentication is not supported"
        ),
    }.get(state, "Login failed")
    parts = [headline]
    if feedback.error_messages:
        parts.append(f"Error messages: {', '.join(feedback.error_messages)}")
    if feedback.red_text:
        parts.append(f"Red text found: {', '.join(feedback.red_text)}")
    if not feedback.error_messages and not feedback.red_text and state is not LoginState.TWO_FACTOR_REQUIRED:
        parts.append("No visible error messages. Check credentials or possible 2FA requirement.")
    return " - ".join(parts)


class LoginStateMachine:
    def __init__(
        self,
        driver: Any,
        credentials: Credentials,
        config: ScraperConfig,
        login_url: str = LOGIN_URL,
        dashboard_url: str = DASHBOARD_URL,
        login_route: str = LOGIN_ROUTE,
        dashboard_route: str = DASHBOARD_ROUTE,
    ) -> None:
        self.driver = driver
        self.credentials = credentials
        self.config = config
        self.login_url = login_url
        self.dashboard_url = dashboard_url
        self.login_route = login_route
        self.dashboard_route = dashboard_route
        self.context = SessionContext()

    def run(self) -> SessionContext:
        logger.info("Logging in to SleepIQ as %s", self.credentials.username)
        self.load_form()
        self.enter_credentials()
        self.submit()
        feedback = self.await_outcome()
        state = classify_feedback(feedback, self.login_route)
        if state is LoginState.STUCK_ON_INTERMEDIATE_AUTH:
            state, feedback = self.wait_out_intermediate(feedback)
        elif state is LoginState.STILL_ON_LOGIN and mentions_two_factor(feedback.page_text):
            state = LoginState.TWO_FACTOR_REQUIRED
        if state in FAILURE_STATES:
            self.fail(state, feedback)
        self.context.advance(LoginState.AUTHENTICATED, self.driver.url)
        self.land_on_dashboard()
        logger.info("Login successful")
        return self.context

    def load_form(self) -> None:
        self.driver.goto(self.login_url)
        ready = self.driver.wait_for_function(
            FORM_READY_SCRIPT,
            {"email": EMAIL_SELECTOR, "password": PASSWORD_SELECTOR},
            timeout_ms=self.config.timeout_ms,
            polling=FORM_READY_POLL_MS,
        )
        if not ready:
            feedback = self.collect_feedback()
            self.capture("login_form_missing")
            raise AuthenticationError(
                "Could not find enabled email and password fields on the login page.",
                state=LoginState.STILL_ON_LOGIN,
                error_messages=feedback.error_messages,
                red_text=feedback.red_text,
            )
        self.context.advance(LoginState.FORM_LOADED, self.driver.url)

    def enter_credentials(self) -> None:
        logger.debug(
            "Entering credentials for %s (password %s)",
            self.credentials.username,
            self.credentials.masked_password,
        )
        self.driver.commit_field_value(EMAIL_SELECTOR, self.credentials.username)
        self.driver.commit_field_value(PASSWORD_SELECTOR, self.credentials.password)
        self.context.advance(LoginState.CREDENTIALS_ENTERED, self.driver.url)

    def submit(self) -> str:
        strategies = (
            ("login_label", lambda: self.driver.click_text(LOGIN_LABELS, exact=True, require_clickable=True)),
            ("submit_selector", lambda: self.driver.click_selector(SUBMIT_SELECTORS)),
            ("enter_key", lambda: self.driver.press(PASSWORD_SELECTOR, "Enter")),
            ("form_submit", lambda: self.driver.evaluate(SUBMIT_FORM_SCRIPT)),
        )
        for name, strategy in strategies:
            try:
                outcome = strategy()
            except Exception as exc:
                logger.debug("Submit strategy %s failed: %s", name, exc)
                continue
            if outcome:
                logger.debug("Login form submitted via %s", name)
                self.context.advance(LoginState.SUBMITTED, self.driver.url)
                return name
        feedback = self.collect_feedback()
        self.capture("login_submit_failed")
        raise AuthenticationError(
            "Could not submit the login form.",
            state=LoginState.STILL_ON_LOGIN,
            error_messages=feedback.error_messages,
            red_text=feedback.red_text,
        )

    def await_outcome(self) -> LoginFeedback:
        self.driver.wait_for_function(
            LEFT_LOGIN_OR_ERROR_SCRIPT,
            self.login_route,
            timeout_ms=self.config.timeout_ms,
        )
        self.driver.wait(POST_SUBMIT_SETTLE_MS)
        feedback = self.collect_feedback()
        waited = 0
        while self.awaiting_redirect(feedback) and waited < REDIRECT_WAIT_TOTAL_MS:
            self.driver.wait(REDIRECT_POLL_STEP_MS)
            waited += REDIRECT_POLL_STEP_MS
            feedback = self.collect_feedback()
        logger.debug(
            "After submit: path=%s form=%s errors=%s red=%s",
            feedback.path,
            feedback.has_login_form,
            feedback.error_messages,
            feedback.red_text,
        )
        return feedback

    def awaiting_redirect(self, feedback: LoginFeedback) -> bool:
        """Still on the login form with nothing on the page saying why."""

        return (
            classify_feedback(feedback, self.login_route) is LoginState.STILL_ON_LOGIN
            and not feedback.error_messages
            and not feedback.red_text
            and not mentions_two_factor(feedback.page_text)
        )

    def wait_out_intermediate(self, feedback: LoginFeedback) -> Tuple[LoginState, LoginFeedback]:
        """Poll an intermediate auth page until it clears or time runs out."""

        stuck_path = feedback.path or feedback.url
        logger.debug("Waiting on intermediate auth page %s", stuck_path)
        waited = 0
        while waited < INTERMEDIATE_POLL_TOTAL_MS:
            self.driver.wait(INTERMEDIATE_POLL_STEP_MS)
            waited += INTERMEDIATE_POLL_STEP_MS
            feedback = self.collect_feedback()
            current = feedback.path or feedback.url
            if current != stuck_path or not feedback.has_login_form:
                state = classify_feedback(feedback, self.login_route)
                if state is not LoginState.STUCK_ON_INTERMEDIATE_AUTH:
                    return state, feedback
                stuck_path = current
        if mentions_two_factor(feedback.page_text):
            return LoginState.TWO_FACTOR_REQUIRED, feedback
        return LoginState.STUCK_ON_INTERMEDIATE_AUTH, feedback

    def land_on_dashboard(self) -> None:
        if self.dashboard_route not in self.driver.url:
            self.driver.goto(self.dashboard_url)
        self.context.current_url = self.driver.url

    def collect_feedback(self) -> LoginFeedback:
        try:
            return LoginFeedback.from_dict(self.driver.evaluate(LOGIN_FEEDBACK_SCRIPT))
        except Exception as exc:
            logger.debug("Could not inspect the login page: %s", exc)
            return LoginFeedback(url=self.driver.url, path=self.driver.url)

    def capture(self, reason: str) -> None:
        if self.config.debug_capture:
            save_debug_artifacts(self.driver, self.config.debug_dir, "login", reason)

    def fail(self, state: LoginState, feedback: LoginFeedback) -> None:
        self.context.advance(state, feedback.url or self.driver.url)
        self.capture(state.value)
        message = describe_failure(state, feedback)
        error_cls = TwoFactorRequiredError if state is LoginState.TWO_FACTOR_REQUIRED else AuthenticationError
        raise error_cls(
            message,
            state=state,
            error_messages=feedback.error_messages,
            red_text=feedback.red_text,
        )


def perform_login(driver: Any, credentials: Credentials, config: ScraperConfig) -> SessionContext:
    return LoginStateMachine(driver, credentials, config).run()
