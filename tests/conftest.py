"""Shared test fixtures and browser fakes for pbi-capture tests.

No real browser is launched by the suite. The fakes below implement just
enough of the Playwright page, frame, context and session surface for the
login, discovery, observation and run-driver code paths.
"""

import sys
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pbi_capture.capture.browser_factory import BrowserMode, navigate
from pbi_capture.capture.login import LoginConfig
from pbi_capture.capture.sink import PersistenceSink
from pbi_capture.models.capture import CapturedEvent, Credentials, EventDirection


PORTAL_URL = "https://portal.example.test/#/login"
DASHBOARD_URL = "https://portal.example.test/#/dashboard"
ANALYTICS_URL = "https://analytics.example.test"
REPORT_URL = "https://app.powerbi.com/reportEmbed?reportId=abc"
QUERY_URL = "https://wabi-north-europe.analysis.windows.net/public/reports/querydata?synchronous=true"

ENV_KEYS = [
    "PBI_CAPTURE_ENTITY_ID", "PBI_CAPTURE_USERNAME", "PBI_CAPTURE_PASSWORD",
    "PBI_CAPTURE_PORTAL_URL", "PBI_CAPTURE_ANALYTICS_URL", "PBI_CAPTURE_HEADFUL",
    "PBI_CAPTURE_DEVTOOLS", "PBI_CAPTURE_BROWSER", "PBI_CAPTURE_LOGIN_ATTEMPTS",
    "PBI_CAPTURE_DISCOVERY_ATTEMPTS", "PBI_CAPTURE_POLICY", "PBI_CAPTURE_WAIT_WINDOW_MS",
    "PBI_CAPTURE_MAX_CYCLES", "PBI_CAPTURE_CYCLE_DELAY_MS", "PBI_CAPTURE_ESCALATE",
    "PBI_CAPTURE_BACKEND", "PBI_CAPTURE_CAPTURE_PATTERNS", "PBI_CAPTURE_REPORT_PATTERNS",
    "PBI_CAPTURE_OUTPUT_FILE", "PBI_CAPTURE_VERBOSE", "PBI_CAPTURE_QUIET",
    "COMPANY_ID", "USERNAME", "PASSWORD", "PORTAL_URL", "ANALYTICS_URL",
]


class FakeRequest:
    def __init__(self, url: str, method: str = "POST", headers: Optional[Dict[str, str]] = None,
                 post_data: Optional[str] = None):
        self.url = url
        self.method = method
        self.headers = headers or {}
        self.post_data = post_data


class FakeResponse:
    def __init__(self, request: FakeRequest, status: int = 200, body: str = "{}",
                 headers: Optional[Dict[str, str]] = None, fail_body: bool = False):
        self.request = request
        self.url = request.url
        self.status = status
        self.headers = headers if headers is not None else {"content-type": "application/json"}
        self._body = body
        self._fail_body = fail_body

    async def text(self) -> str:
        if self._fail_body:
            raise RuntimeError("body unavailable")
        return self._body


class FakeElement:
    """Clickable element with a label and optional click side effect.

    ``failures`` maps a method name to errors raised by its next calls, one
    per call, before the method starts behaving normally.
    """

    def __init__(self, label: str = "", attrs: Optional[Dict[str, str]] = None, on_click=None,
                 failures: Optional[Dict[str, List[Exception]]] = None):
        self.label = label
        self.attrs = attrs or {}
        self.on_click = on_click
        self.failures = failures or {}
        self.clicks = 0

    def _maybe_fail(self, method: str) -> None:
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    async def inner_text(self) -> str:
        self._maybe_fail("inner_text")
        return self.label

    async def get_attribute(self, name: str) -> Optional[str]:
        self._maybe_fail("get_attribute")
        return self.attrs.get(name)

    async def click(self, timeout: Optional[int] = None) -> None:
        self._maybe_fail("click")
        self.clicks += 1
        if self.on_click:
            self.on_click()


class FakeFrame:
    def __init__(self, url: str, page: "FakePage"):
        self.url = url
        self.page = page


class FakeContext:
    def __init__(self, frame_sessions: bool = True):
        self.pages: List["FakePage"] = []
        self.cdp_sessions: List[Any] = []
        self.cdp_targets: List[Any] = []
        self.frame_sessions = frame_sessions

    async def new_page(self) -> "FakePage":
        return FakePage(context=self)

    async def new_cdp_session(self, target):
        if isinstance(target, FakeFrame) and not self.frame_sessions:
            raise PlaywrightError("This frame does not have a separate CDP session")
        session = FakeCdpSession()
        self.cdp_sessions.append(session)
        self.cdp_targets.append(target)
        return session


class FakeCdpSession:
    """Emitter with the send/on/remove_listener/detach surface of a CDP session."""

    def __init__(self):
        self._handlers = defaultdict(list)
        self.sent: List[tuple] = []
        self.bodies: Dict[str, Dict[str, Any]] = {}
        self.detached = False

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None):
        self.sent.append((method, params))
        if method == "Network.getResponseBody":
            return self.bodies.get(params["requestId"], {"body": "", "base64Encoded": False})
        return {}

    def on(self, event: str, handler) -> None:
        self._handlers[event].append(handler)

    def remove_listener(self, event: str, handler) -> None:
        self._handlers[event].remove(handler)

    def emit(self, event: str, params: Dict[str, Any]) -> None:
        for handler in list(self._handlers[event]):
            handler(params)

    async def detach(self) -> None:
        self.detached = True


class FakePage:
    """Event emitter with the page methods the capture code calls."""

    def __init__(self, url: str = "about:blank", context: Optional[FakeContext] = None):
        self.url = url
        self.context = context or FakeContext()
        self.context.pages.append(self)
        self.main_frame = FakeFrame(url, self)
        self._frames: List[FakeFrame] = []
        self._handlers = defaultdict(list)
        self.goto_calls: List[tuple] = []
        self.goto_error: Optional[Exception] = None
        self.closed = False

    @property
    def frames(self) -> List[FakeFrame]:
        return [self.main_frame] + list(self._frames)

    def add_frame(self, url: str) -> FakeFrame:
        frame = FakeFrame(url, self)
        self._frames.append(frame)
        return frame

    def on(self, event: str, handler) -> None:
        self._handlers[event].append(handler)

    def remove_listener(self, event: str, handler) -> None:
        self._handlers[event].remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._handlers[event])

    def emit(self, event: str, payload) -> None:
        for handler in list(self._handlers[event]):
            handler(payload)

    def emit_query(self, body: str = '{"queries": []}', auth: str = "Bearer token") -> FakeRequest:
        request = FakeRequest(
            QUERY_URL,
            headers={"Authorization": auth, "Content-Type": "application/json", "Cookie": "secret"},
            post_data=body,
        )
        self.emit("request", request)
        return request

    async def goto(self, url: str, wait_until: Optional[str] = None, timeout: Optional[int] = None):
        self.goto_calls.append((url, wait_until))
        if self.goto_error is not None:
            raise self.goto_error
        self.url = url
        self.main_frame.url = url

    async def close(self) -> None:
        self.closed = True


class FakePortalPage(FakePage):
    """Portal login page.

    The first ``failing_attempts`` loads render no company id input, so
    those attempts fail with an element timeout. Later loads render the
    full form; clicking the submit button routes to the dashboard.
    """

    ENTITY = "input[name='companyId']"
    USERNAME = "input[name='username']"
    PASSWORD = "input[name='password']"
    SUBMIT = "button[type='submit'], input[type='submit']"

    def __init__(self, failing_attempts: int = 0, with_submit: bool = True,
                 dashboard_text: str = "Welcome to the Dashboard", context: Optional[FakeContext] = None):
        super().__init__(context=context)
        self.failing_attempts = failing_attempts
        self.with_submit = with_submit
        self.dashboard_text = dashboard_text
        self.loads = 0
        self.typed: Dict[str, str] = {}
        self.pressed: List[tuple] = []
        self.body_text = "Sign in to continue"
        self.continue_button = FakeElement("Continue")
        self.submit_button = FakeElement("Log In", on_click=self._route_to_dashboard)

    def _route_to_dashboard(self) -> None:
        self.url = DASHBOARD_URL
        self.body_text = self.dashboard_text

    @property
    def rendered(self) -> bool:
        return self.loads > self.failing_attempts

    async def goto(self, url: str, wait_until: Optional[str] = None, timeout: Optional[int] = None):
        await super().goto(url, wait_until, timeout)
        self.loads += 1
        self.typed = {}
        self.body_text = "Sign in to continue"

    async def wait_for_selector(self, selector: str, state: Optional[str] = None,
                                timeout: Optional[int] = None):
        if not self.rendered:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
        return FakeElement(attrs={"name": selector})

    async def type(self, selector: str, value: str, delay: Optional[int] = None,
                   timeout: Optional[int] = None) -> None:
        self.typed[selector] = value

    async def press(self, selector: str, key: str) -> None:
        self.pressed.append((selector, key))

    async def query_selector(self, selector: str):
        if selector == self.SUBMIT and self.with_submit and self.typed.get(self.PASSWORD):
            return self.submit_button
        return None

    async def query_selector_all(self, selector: str):
        if self.typed.get(self.PASSWORD):
            return [self.submit_button] if self.with_submit else []
        return [self.continue_button]

    async def inner_text(self, selector: str, timeout: Optional[int] = None) -> str:
        return self.body_text


class FakeAnalyticsPage(FakePage):
    """Analytics page whose report frame appears on a given discovery read.

    When the frame appears the page emits ``queries_on_render`` matching
    requests, as the embedded report would.
    """

    def __init__(self, context: Optional[FakeContext] = None, report_after: Optional[int] = 1,
                 queries_on_render: int = 2):
        super().__init__(context=context)
        self.report_after = report_after
        self.queries_on_render = queries_on_render
        self.frame_reads = 0
        self._rendered = False

    @property
    def frames(self) -> List[FakeFrame]:
        self.frame_reads += 1
        if self.report_after is not None and self.frame_reads >= self.report_after and not self._rendered:
            self._rendered = True
            self.add_frame(REPORT_URL)
            for i in range(self.queries_on_render):
                self.emit_query(body=f'{{"query": {i}}}')
        return [self.main_frame] + list(self._frames)


class FakeSession:
    """BrowserSession stand-in that counts close calls."""

    def __init__(self, mode: BrowserMode, portal_page: FakePortalPage, analytics_factory):
        self.mode = mode
        self.context = portal_page.context
        self.primary_page = portal_page
        self._analytics_factory = analytics_factory
        self.pages = [portal_page]
        self.close_calls = 0
        self.open_error: Optional[Exception] = None

    async def open_context(self):
        if self.open_error is not None:
            raise self.open_error
        page = self._analytics_factory(self.context, self.mode)
        self.pages.append(page)
        return page

    async def navigate(self, page, url, ready="domcontentloaded", timeout_ms=30000, **kwargs):
        await navigate(page, url, ready=ready, timeout_ms=timeout_ms, **kwargs)

    async def close(self) -> None:
        self.close_calls += 1

    @property
    def is_closed(self) -> bool:
        return self.close_calls > 0


class FakeFactory:
    """BrowserFactory stand-in recording launch modes and sessions."""

    def __init__(self, failing_attempts: int = 0, report_after=1, queries_on_render: int = 2,
                 queries_by_mode: Optional[Dict[BrowserMode, int]] = None, with_submit: bool = True,
                 analytics_goto_error: Optional[Exception] = None, frame_sessions: bool = True):
        self.failing_attempts = failing_attempts
        self.report_after = report_after
        self.queries_on_render = queries_on_render
        self.queries_by_mode = queries_by_mode or {}
        self.with_submit = with_submit
        self.analytics_goto_error = analytics_goto_error
        self.frame_sessions = frame_sessions
        self.modes: List[BrowserMode] = []
        self.sessions: List[FakeSession] = []
        self.open_error: Optional[Exception] = None

    def _analytics_page(self, context: FakeContext, mode: BrowserMode) -> FakeAnalyticsPage:
        page = FakeAnalyticsPage(
            context=context,
            report_after=self.report_after,
            queries_on_render=self.queries_by_mode.get(mode, self.queries_on_render),
        )
        page.goto_error = self.analytics_goto_error
        return page

    async def launch(self, mode: BrowserMode = BrowserMode.HEADLESS) -> FakeSession:
        self.modes.append(mode)
        portal = FakePortalPage(failing_attempts=self.failing_attempts, with_submit=self.with_submit)
        portal.context.frame_sessions = self.frame_sessions
        session = FakeSession(mode, portal, self._analytics_page)
        session.open_error = self.open_error
        self.sessions.append(session)
        return session

    @property
    def total_close_calls(self) -> int:
        return sum(session.close_calls for session in self.sessions)


class RecordingSink(PersistenceSink):
    """PersistenceSink that remembers every batch it was asked to write."""

    def __init__(self, output_path, fail: bool = False, **kwargs):
        super().__init__(output_path, **kwargs)
        self.fail = fail
        self.batches: List[List[CapturedEvent]] = []

    async def persist(self, events):
        self.batches.append(list(events))
        if self.fail:
            from pbi_capture.capture.errors import PersistenceError
            raise PersistenceError(self.output_path, OSError("disk full"))
        return await super().persist(events)


@pytest.fixture
def credentials():
    """Credentials pointing at the fake portal."""
    return Credentials(
        entity_id="ACME01",
        username="operator",
        password="hunter2-secret",
        portal_url=PORTAL_URL,
        analytics_url=ANALYTICS_URL,
    )


@pytest.fixture
def fast_login_config():
    """Login configuration without real waits."""
    return LoginConfig(
        element_timeout_ms=10,
        navigation_timeout_ms=100,
        confirm_timeout_ms=50,
        dashboard_timeout_ms=50,
        retry_delay_ms=0,
        type_delay_ms=0,
        poll_interval_ms=1,
    )


@pytest.fixture
def sample_event():
    """A captured query request with a fixed timestamp."""
    return CapturedEvent(
        direction=EventDirection.REQUEST,
        url=QUERY_URL,
        method="POST",
        headers={"authorization": "Bearer abc", "content-type": "application/json"},
        authorization="Bearer abc",
        body='{"queries": [{"Query": {"Commands": []}}]}',
        source="analytics",
        timestamp=datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every configuration variable for the duration of a test.

    Each key is set then deleted so monkeypatch restores the original
    state even for keys later written by load_dotenv.
    """
    for key in ENV_KEYS:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    return monkeypatch
