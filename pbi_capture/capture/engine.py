"""Main capture engine that drives a complete capture run.

This module provides the CaptureEngine class that coordinates the browser
factory, login sequencer, target discovery, network observer, capture policy
and persistence sink. A run logs in, opens the analytics page with network
observation armed, discovers embedded report surfaces, waits according to
the capture policy and writes the buffered events exactly once at the end.
If the policy asks for a relaunch in a more observable mode the whole run is
repeated once in that mode.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from playwright.async_api import Error as PlaywrightError

from .browser_factory import BrowserConfig, BrowserFactory, BrowserMode, BrowserSession, ReadyCondition
from .discovery import DEFAULT_REPORT_PATTERNS, TargetDiscovery, UrlMatcher
from .errors import LoginFailedError, NavigationTimeoutError, PersistenceError
from .login import LoginConfig, LoginSequencer
from .network_observer import DEFAULT_CAPTURE_PATTERNS, CaptureBuffer, NetworkObserver, UrlFilter
from .policy import (
    DEFAULT_CYCLE_DELAY_MS,
    DEFAULT_FIXED_WINDOW_MS,
    DEFAULT_MAX_CYCLES,
    CapturePolicy,
    PolicyKind,
    Relaunch,
    create_policy,
)
from .sink import DEFAULT_OUTPUT_FILE, PersistenceSink
from ..models.capture import Credentials, DiscoveredTarget, RunOutcome, RunResult

logger = logging.getLogger(__name__)


class CaptureEngineConfig:
    """Configuration for the capture engine."""

    def __init__(
        self,
        # Browser
        browser_config: Optional[BrowserConfig] = None,
        initial_mode: BrowserMode = BrowserMode.HEADLESS,

        # Login
        login_config: Optional[LoginConfig] = None,

        # Analytics page
        analytics_ready: str = ReadyCondition.NETWORKIDLE,
        analytics_timeout_ms: int = 60000,
        analytics_quiet_ms: int = 500,

        # Discovery
        discovery_max_attempts: int = 10,
        discovery_delay_ms: int = 3000,
        report_patterns: Optional[Sequence[str]] = None,

        # Capture
        capture_patterns: Optional[Sequence[str]] = None,
        listener_backend: str = "page",
        capture_response_bodies: bool = True,
        max_body_bytes: int = 5_000_000,

        # Policy
        policy: str = PolicyKind.CYCLIC,
        wait_window_ms: Optional[int] = None,
        fixed_window_ms: int = DEFAULT_FIXED_WINDOW_MS,
        max_cycles: int = DEFAULT_MAX_CYCLES,
        cycle_delay_ms: int = DEFAULT_CYCLE_DELAY_MS,
        escalate: bool = True,

        # Output
        output_file: Path = Path(DEFAULT_OUTPUT_FILE),
        write_empty_artifact: bool = True,
    ):
        """Initialize capture engine configuration.

        Args:
            browser_config: Browser launch configuration
            initial_mode: Mode of the first launch
            login_config: Login selectors and timeouts
            analytics_ready: Ready condition for the analytics page
            analytics_timeout_ms: Navigation bound for the analytics page
            analytics_quiet_ms: Network silence required for the quiescent condition
            discovery_max_attempts: Discovery attempt budget
            discovery_delay_ms: Pause between discovery attempts
            report_patterns: URL patterns identifying report surfaces
            capture_patterns: URL substrings of traffic worth buffering
            listener_backend: "page" or "cdp"
            capture_response_bodies: Buffer response bodies of matching traffic
            max_body_bytes: Largest response body kept
            policy: PolicyKind.FIXED or PolicyKind.CYCLIC
            wait_window_ms: Override of the monitoring window
            fixed_window_ms: Fixed policy window
            max_cycles: Cyclic policy cycle budget
            cycle_delay_ms: Cyclic policy cycle length
            escalate: Allow one headful relaunch after an empty headless run
            output_file: Artifact path
            write_empty_artifact: Write an empty array when nothing was captured
        """
        self.browser_config = browser_config or BrowserConfig()
        self.initial_mode = initial_mode
        self.login_config = login_config or LoginConfig()

        self.analytics_ready = analytics_ready
        self.analytics_timeout_ms = analytics_timeout_ms
        self.analytics_quiet_ms = analytics_quiet_ms

        self.discovery_max_attempts = discovery_max_attempts
        self.discovery_delay_ms = discovery_delay_ms
        self.report_patterns = list(report_patterns or DEFAULT_REPORT_PATTERNS)

        self.capture_patterns = list(capture_patterns or DEFAULT_CAPTURE_PATTERNS)
        self.listener_backend = listener_backend
        self.capture_response_bodies = capture_response_bodies
        self.max_body_bytes = max_body_bytes

        self.policy = policy
        self.wait_window_ms = wait_window_ms
        self.fixed_window_ms = fixed_window_ms
        self.max_cycles = max_cycles
        self.cycle_delay_ms = cycle_delay_ms
        self.escalate = escalate

        self.output_file = Path(output_file)
        self.write_empty_artifact = write_empty_artifact

    def create_policy(self) -> CapturePolicy:
        return create_policy(
            self.policy,
            wait_window_ms=self.wait_window_ms,
            fixed_window_ms=self.fixed_window_ms,
            max_cycles=self.max_cycles,
            cycle_delay_ms=self.cycle_delay_ms,
            escalate=self.escalate,
        )


class CaptureEngine:
    """Runs the login, discovery, capture and persistence sequence."""

    def __init__(
        self,
        credentials: Credentials,
        config: Optional[CaptureEngineConfig] = None,
        browser_factory: Optional[BrowserFactory] = None,
        sink: Optional[PersistenceSink] = None,
    ):
        """Initialize capture engine.

        Args:
            credentials: Portal credentials and URLs
            config: Engine configuration (uses defaults if None)
            browser_factory: Factory used to launch sessions
            sink: Artifact writer
        """
        self.credentials = credentials
        self.config = config or CaptureEngineConfig()
        self.browser_factory = browser_factory or BrowserFactory(self.config.browser_config)
        self.sink = sink or PersistenceSink(self.config.output_file, self.config.write_empty_artifact)
        self.policy = self.config.create_policy()
        self.buffer = CaptureBuffer()

    async def run(self) -> RunResult:
        """Perform a complete capture run.

        Returns:
            RunResult describing the outcome. Login failure is reported as
            RunOutcome.LOGIN_FAILED rather than raised.

        Raises:
            PersistenceError: If the artifact could not be written
        """
        result = RunResult(outcome=RunOutcome.CAPTURE_EMPTY, headless=self.config.initial_mode.headless)
        logger.info(f"Starting capture run (policy={self.policy!r})")

        try:
            await self._drive(result)

        except LoginFailedError as e:
            logger.error(f"{e}")
            result.outcome = RunOutcome.LOGIN_FAILED
            result.error = str(e)

        except Exception as e:
            logger.error(f"Capture run failed: {e}")
            result.error = str(e)
            try:
                await self._persist(result)
            except PersistenceError as persist_error:
                logger.error(f"{persist_error}")
            raise

        await self._persist(result)

        logger.info(
            f"Capture run finished: outcome={result.outcome.value}, "
            f"events={result.events_captured}, escalated={result.escalated}"
        )
        return result

    async def _drive(self, result: RunResult) -> None:
        mode = self.config.initial_mode
        escalated = False

        while True:
            self.buffer = CaptureBuffer()
            result.headless = mode.headless
            signal = await self._run_once(mode, escalated, result)

            if isinstance(signal, Relaunch) and not escalated:
                escalated = True
                result.escalated = True
                logger.warning(f"Relaunching capture run in {signal.mode.value} mode")
                mode = signal.mode
                continue
            break

        if self.buffer.is_empty():
            result.outcome = RunOutcome.CAPTURE_EMPTY
            logger.warning("Capture finished without any report query traffic")
        else:
            result.outcome = RunOutcome.CAPTURE_SUCCEEDED

    async def _run_once(self, mode: BrowserMode, escalated: bool, result: RunResult) -> Optional[Relaunch]:
        session = await self.browser_factory.launch(mode)
        observer = NetworkObserver(
            self.buffer,
            UrlFilter(self.config.capture_patterns),
            backend=self.config.listener_backend,
            capture_response_bodies=self.config.capture_response_bodies,
            max_body_bytes=self.config.max_body_bytes,
        )

        try:
            sequencer = LoginSequencer(session.primary_page, self.credentials, self.config.login_config)
            try:
                await sequencer.login()
            finally:
                result.login_attempts += sequencer.attempts_used

            analytics_page = await session.open_context()
            await observer.attach(analytics_page, "analytics")

            logger.info(f"Navigating to analytics: {self.credentials.analytics_url}")
            try:
                await session.navigate(
                    analytics_page,
                    self.credentials.analytics_url,
                    ready=self.config.analytics_ready,
                    timeout_ms=self.config.analytics_timeout_ms,
                    quiet_ms=self.config.analytics_quiet_ms,
                )
            except NavigationTimeoutError as e:
                logger.warning(f"Analytics page did not settle ({e}); monitoring anyway")

            targets = await self._discover(analytics_page)
            result.targets = targets
            if not targets:
                result.notices.append(RunOutcome.DISCOVERY_TIMED_OUT)
            await self._attach_targets(observer, targets)

            report = await self.policy.wait(self.buffer)
            logger.info(
                f"Capture wait ended after {report.cycles} cycle(s) "
                f"(early_exit={report.early_exit}, events={report.events})"
            )
            return self.policy.decide(self.buffer, mode, escalated)

        finally:
            await observer.detach_all()
            result.listeners.extend(observer.get_stats())
            await session.close()

    async def _discover(self, page) -> List[DiscoveredTarget]:
        discovery = TargetDiscovery(
            max_attempts=self.config.discovery_max_attempts,
            inter_attempt_delay_ms=self.config.discovery_delay_ms,
        )
        return await discovery.find_targets(page, UrlMatcher(self.config.report_patterns))

    async def _attach_targets(self, observer: NetworkObserver, targets: List[DiscoveredTarget]) -> None:
        for target in targets:
            if target.kind == "frame" and observer.attaches_frames:
                await self._attach_frame(observer, target)
                continue
            page = target.handle if target.kind == "page" else getattr(target.handle, "page", None)
            if page is None:
                logger.debug(f"No page behind surface {target.identifier}; skipping")
                continue
            if observer.is_observing(page):
                logger.debug(f"Surface {target.identifier} already observed through its page")
                continue
            await observer.attach(page, target.identifier)

    async def _attach_frame(self, observer: NetworkObserver, target: DiscoveredTarget) -> None:
        if observer.is_observing(target.handle):
            return
        try:
            await observer.attach(target.handle, target.identifier)
        except PlaywrightError as e:
            # In-process frames have no session of their own; the page session sees their traffic
            logger.debug(f"Frame {target.identifier} shares its page's DevTools session: {e}")

    async def _persist(self, result: RunResult) -> None:
        events = self.buffer.snapshot()
        result.events_captured = len(events)
        result.artifact_path = await self.sink.persist(events)
        result.finished_at = datetime.now(timezone.utc)


def create_capture_engine(
    credentials: Credentials,
    headless: bool = True,
    policy: str = PolicyKind.CYCLIC,
    output_file: Optional[Path] = None,
    **kwargs
) -> CaptureEngine:
    """Create capture engine with common configuration.

    Args:
        credentials: Portal credentials and URLs
        headless: Start in headless mode
        policy: Capture policy kind
        output_file: Artifact path
        **kwargs: Additional CaptureEngineConfig options
    """
    config = CaptureEngineConfig(
        initial_mode=BrowserMode.HEADLESS if headless else BrowserMode.HEADFUL,
        policy=policy,
        output_file=output_file or Path(DEFAULT_OUTPUT_FILE),
        **kwargs
    )
    return CaptureEngine(credentials, config)
