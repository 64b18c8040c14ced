"""Login sequencer for the portal's multi-step sign-in form.

This module provides the LoginSequencer class that drives the portal login
as a forward-only state machine: entity id entry, credential entry,
submission, navigation confirmation and dashboard confirmation. Each step
waits for its element with a bounded timeout, and the whole flow is retried
from the start a fixed number of times before the failure is surfaced.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from playwright.async_api import ElementHandle, Error as PlaywrightError, Page

from .browser_factory import ReadyCondition, navigate, poll_until
from .errors import (
    ControlInteractionError,
    ElementNotFoundError,
    LoginFailedError,
    LoginNotConfirmedError,
    LoginStepError,
    NavigationTimeoutError,
    NoSubmitControlError,
)
from .locators import CONTINUE_PATTERNS, SUBMIT_PATTERNS, ControlLocator, continue_locator, submit_locator
from ..models.capture import LOGIN_STATE_ORDER, Credentials, LoginState

logger = logging.getLogger(__name__)

DEFAULT_DASHBOARD_KEYWORDS = ["dashboard", "analytics", "bookings", "dispatch", "log out", "logout"]


class LoginConfig:
    """Selectors, patterns and timeouts for the login flow."""

    def __init__(
        self,
        entity_selector: str = "input[name='companyId']",
        username_selector: str = "input[name='username']",
        password_selector: str = "input[name='password']",
        continue_patterns: Optional[Sequence[str]] = None,
        submit_patterns: Optional[Sequence[str]] = None,
        dashboard_keywords: Optional[Sequence[str]] = None,
        login_url_marker: str = "login",
        element_timeout_ms: int = 20000,
        navigation_timeout_ms: int = 60000,
        confirm_timeout_ms: int = 120000,
        dashboard_timeout_ms: int = 30000,
        max_attempts: int = 3,
        retry_delay_ms: int = 2000,
        type_delay_ms: int = 50,
        poll_interval_ms: int = 500,
    ):
        """Initialize login configuration.

        Args:
            entity_selector: CSS selector for the company / entity id input
            username_selector: CSS selector for the username input
            password_selector: CSS selector for the password input
            continue_patterns: Label patterns for the button after the entity id
            submit_patterns: Label patterns for the final submit button
            dashboard_keywords: Lowercase substrings that only appear once logged in
            login_url_marker: URL substring that identifies the login route
            element_timeout_ms: Per-element wait bound
            navigation_timeout_ms: Bound on loading the login page
            confirm_timeout_ms: Bound on the post-submit navigation wait
            dashboard_timeout_ms: Bound on the dashboard content wait
            max_attempts: Whole-flow attempts before giving up
            retry_delay_ms: Pause between attempts
            type_delay_ms: Per-keystroke delay when typing credentials
            poll_interval_ms: Poll interval for confirmation predicates
        """
        self.entity_selector = entity_selector
        self.username_selector = username_selector
        self.password_selector = password_selector
        self.continue_patterns = list(continue_patterns or CONTINUE_PATTERNS)
        self.submit_patterns = list(submit_patterns or SUBMIT_PATTERNS)
        self.dashboard_keywords = [k.lower() for k in (dashboard_keywords or DEFAULT_DASHBOARD_KEYWORDS)]
        self.login_url_marker = login_url_marker.lower()
        self.element_timeout_ms = element_timeout_ms
        self.navigation_timeout_ms = navigation_timeout_ms
        self.confirm_timeout_ms = confirm_timeout_ms
        self.dashboard_timeout_ms = dashboard_timeout_ms
        self.max_attempts = max_attempts
        self.retry_delay_ms = retry_delay_ms
        self.type_delay_ms = type_delay_ms
        self.poll_interval_ms = poll_interval_ms


@dataclass
class LoginResult:
    """Result of a successful login."""
    state: LoginState
    attempts: int
    history: List[LoginState] = field(default_factory=list)
    duration_ms: float = 0.0


class LoginSequencer:
    """Drives the portal login state machine against one page."""

    def __init__(self, page: Page, credentials: Credentials, config: Optional[LoginConfig] = None):
        self.page = page
        self.credentials = credentials
        self.config = config or LoginConfig()
        self.state = LoginState.START
        self.history: List[LoginState] = []
        self.attempts_used = 0
        self._submit_url: Optional[str] = None

    def _transition(self, new_state: LoginState) -> None:
        if new_state != LoginState.FAILED:
            current = LOGIN_STATE_ORDER.index(self.state)
            target = LOGIN_STATE_ORDER.index(new_state)
            if target <= current:
                raise RuntimeError(f"Illegal login transition {self.state.value} -> {new_state.value}")

        logger.info(f"Login: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    async def login(self) -> LoginResult:
        """Run the login flow, retrying from the start on step failures.

        Returns:
            LoginResult in the DASHBOARD_CONFIRMED state

        Raises:
            LoginFailedError: After max_attempts failed attempts
        """
        start_time = datetime.utcnow()
        last_error: Optional[LoginStepError] = None

        for attempt in range(1, self.config.max_attempts + 1):
            self.attempts_used = attempt
            self.state = LoginState.START
            self.history.append(LoginState.START)
            logger.info(f"Login attempt {attempt}/{self.config.max_attempts}")

            try:
                await self._run_attempt()
                duration = (datetime.utcnow() - start_time).total_seconds() * 1000
                logger.info(f"Logged in on attempt {attempt}")
                return LoginResult(
                    state=self.state,
                    attempts=attempt,
                    history=list(self.history),
                    duration_ms=duration,
                )

            except LoginStepError as e:
                last_error = e
                failed_in = self.state
                self._transition(LoginState.FAILED)
                logger.warning(
                    f"Login attempt {attempt}/{self.config.max_attempts} failed in state "
                    f"{failed_in.value}: {e}"
                )
                if attempt < self.config.max_attempts and self.config.retry_delay_ms > 0:
                    await asyncio.sleep(self.config.retry_delay_ms / 1000.0)

        logger.error(f"Login failed after {self.config.max_attempts} attempts")
        raise LoginFailedError(self.config.max_attempts, last_error)

    async def _run_attempt(self) -> None:
        try:
            await navigate(
                self.page,
                self.credentials.portal_url,
                ready=ReadyCondition.DOMCONTENTLOADED,
                timeout_ms=self.config.navigation_timeout_ms,
            )
        except NavigationTimeoutError as e:
            raise NavigationTimeoutError(e.url, e.timeout_ms, state=LoginState.START) from e

        await self._enter_entity()
        await self._enter_credentials()
        await self._submit()
        await self._confirm_navigation()
        await self._confirm_dashboard()

    async def _wait_actionable(self, selector: str) -> ElementHandle:
        try:
            handle = await self.page.wait_for_selector(
                selector, state="visible", timeout=self.config.element_timeout_ms
            )
        except PlaywrightError as e:
            raise ElementNotFoundError(self.state, selector, self.config.element_timeout_ms) from e
        if handle is None:
            raise ElementNotFoundError(self.state, selector, self.config.element_timeout_ms)
        return handle

    async def _type(self, selector: str, value: str) -> None:
        try:
            await self.page.type(
                selector, value,
                delay=self.config.type_delay_ms,
                timeout=self.config.element_timeout_ms,
            )
        except PlaywrightError as e:
            raise ElementNotFoundError(self.state, selector, self.config.element_timeout_ms) from e

    async def _locate(self, locator: ControlLocator, control: str) -> Optional[ElementHandle]:
        try:
            return await locator.locate(self.page)
        except PlaywrightError as e:
            raise ControlInteractionError(self.state, control, e) from e

    async def _click(self, button: ElementHandle, control: str) -> None:
        try:
            await button.click(timeout=self.config.element_timeout_ms)
        except PlaywrightError as e:
            raise ControlInteractionError(self.state, control, e) from e

    async def _enter_entity(self) -> None:
        await self._wait_actionable(self.config.entity_selector)
        logger.info("Entering company ID")
        await self._type(self.config.entity_selector, self.credentials.entity_id)

        button = await self._locate(continue_locator(self.config.continue_patterns), "continue control")
        if button is not None:
            await self._click(button, "continue control")
        else:
            logger.debug("No continue control, pressing Enter")
            try:
                await self.page.press(self.config.entity_selector, "Enter")
            except PlaywrightError as e:
                raise ControlInteractionError(self.state, self.config.entity_selector, e) from e

        self._transition(LoginState.ENTITY_ENTERED)

    async def _enter_credentials(self) -> None:
        await self._wait_actionable(self.config.username_selector)
        await self._wait_actionable(self.config.password_selector)

        logger.info("Entering username and password")
        await self._type(self.config.username_selector, self.credentials.username)
        await self._type(self.config.password_selector, self.credentials.password.get_secret_value())

        self._transition(LoginState.CREDENTIALS_ENTERED)

    async def _submit(self) -> None:
        button = await self._locate(submit_locator(self.config.submit_patterns), "submit control")
        if button is None:
            raise NoSubmitControlError(self.state)

        self._submit_url = self.page.url
        logger.info("Submitting login form")
        await self._click(button, "submit control")

        self._transition(LoginState.SUBMITTED)

    def _navigated(self) -> bool:
        url = self.page.url or ""
        return url != self._submit_url and self.config.login_url_marker not in url.lower()

    async def _dashboard_visible(self) -> bool:
        try:
            text = await self.page.inner_text("body", timeout=self.config.poll_interval_ms)
        except Exception as e:
            logger.debug(f"Dashboard content not readable yet: {e}")
            return False
        text = (text or "").lower()
        return any(keyword in text for keyword in self.config.dashboard_keywords)

    async def _confirm_navigation(self) -> None:
        async def navigated_or_dashboard() -> bool:
            return self._navigated() or await self._dashboard_visible()

        logger.info("Waiting for post-login navigation")
        if not await poll_until(
            navigated_or_dashboard,
            self.config.confirm_timeout_ms,
            self.config.poll_interval_ms,
        ):
            raise LoginNotConfirmedError(self.state, self.config.confirm_timeout_ms)

        self._transition(LoginState.NAVIGATION_CONFIRMED)

    async def _confirm_dashboard(self) -> None:
        logger.info("Waiting for dashboard content")
        if not await poll_until(
            self._dashboard_visible,
            self.config.dashboard_timeout_ms,
            self.config.poll_interval_ms,
        ):
            raise LoginNotConfirmedError(self.state, self.config.dashboard_timeout_ms)

        self._transition(LoginState.DASHBOARD_CONFIRMED)
