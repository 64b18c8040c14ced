"""Browser factory for launching and tearing down capture sessions.

This module provides the BrowserFactory class that launches one Playwright
browser per capture run in either headless or headful mode, and the
BrowserSession it returns. A session owns exactly one browser process, one
browser context and the pages opened inside it; closing it is idempotent
and safe on every exit path.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
    TimeoutError as PlaywrightTimeoutError,
)

from .errors import NavigationTimeoutError

logger = logging.getLogger(__name__)

Predicate = Callable[[], Union[bool, Awaitable[bool]]]


class BrowserEngineType:
    """Supported browser engine types."""
    CHROMIUM = "chromium"
    FIREFOX = "firefox"
    WEBKIT = "webkit"


class BrowserMode(str, Enum):
    """How observable the launched browser is."""
    HEADLESS = "headless"
    HEADFUL = "headful"

    @property
    def headless(self) -> bool:
        return self == BrowserMode.HEADLESS


class ReadyCondition:
    """Conditions a navigation can wait for before it counts as ready."""
    DOMCONTENTLOADED = "domcontentloaded"
    LOAD = "load"
    NETWORKIDLE = "networkidle"
    QUIESCENT = "quiescent"
    PREDICATE = "predicate"


class BrowserConfig:
    """Configuration for browser launch and context setup."""

    def __init__(
        self,
        engine: str = BrowserEngineType.CHROMIUM,
        slow_mo: int = 0,
        devtools: bool = False,
        viewport: Optional[Dict[str, int]] = None,
        user_agent: Optional[str] = None,
        ignore_https_errors: bool = False,
        locale: Optional[str] = None,
        launch_args: Optional[List[str]] = None,
        **kwargs
    ):
        """Initialize browser configuration.

        Args:
            engine: Browser engine to use (chromium, firefox, webkit)
            slow_mo: Slow down operations by specified milliseconds
            devtools: Open DevTools automatically when headful
            viewport: Viewport size dict with 'width' and 'height'
            user_agent: Custom User-Agent string
            ignore_https_errors: Ignore SSL/TLS certificate errors
            locale: Locale for the browser context
            launch_args: Extra command line arguments for the browser
        """
        self.engine = engine
        self.slow_mo = slow_mo
        self.devtools = devtools
        self.viewport = viewport or {'width': 1920, 'height': 1080}
        self.user_agent = user_agent
        self.ignore_https_errors = ignore_https_errors
        self.locale = locale
        self.launch_args = (
            list(launch_args) if launch_args is not None
            else ["--no-sandbox", "--disable-setuid-sandbox"]
        )
        self.extra_options = kwargs

    def to_browser_options(self, mode: BrowserMode) -> Dict[str, Any]:
        """Convert to Playwright browser launch options."""
        options = {
            'headless': mode.headless,
            'slow_mo': self.slow_mo,
        }

        if self.launch_args and self.engine == BrowserEngineType.CHROMIUM:
            options['args'] = self.launch_args

        if self.devtools and not mode.headless:
            options['devtools'] = True

        options.update(self.extra_options)
        return options

    def to_context_options(self) -> Dict[str, Any]:
        """Convert to Playwright browser context options."""
        options = {}

        if self.viewport:
            options['viewport'] = self.viewport

        if self.user_agent:
            options['user_agent'] = self.user_agent

        if self.ignore_https_errors:
            options['ignore_https_errors'] = self.ignore_https_errors

        if self.locale:
            options['locale'] = self.locale

        return options


async def poll_until(
    predicate: Predicate,
    timeout_ms: int,
    interval_ms: int = 250,
) -> bool:
    """Poll a sync or async predicate until it holds or the timeout passes.

    Returns:
        True if the predicate held before the deadline, False otherwise
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000.0

    while True:
        result = predicate()
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            result = await result
        if result:
            return True
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(interval_ms / 1000.0)


class _InflightTracker:
    """Counts in-flight requests on a page to detect network quiescence."""

    def __init__(self, page: Page):
        self.page = page
        self.inflight = 0
        self._last_activity = 0.0

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    def _on_request(self, request) -> None:
        self.inflight += 1
        self._last_activity = self._now()

    def _on_done(self, request) -> None:
        self.inflight = max(0, self.inflight - 1)
        self._last_activity = self._now()

    def start(self) -> None:
        self._last_activity = self._now()
        self.page.on("request", self._on_request)
        self.page.on("requestfinished", self._on_done)
        self.page.on("requestfailed", self._on_done)

    def stop(self) -> None:
        for event, handler in (
            ("request", self._on_request),
            ("requestfinished", self._on_done),
            ("requestfailed", self._on_done),
        ):
            try:
                self.page.remove_listener(event, handler)
            except Exception as e:
                logger.debug(f"Failed to remove quiescence listener: {e}")

    def quiet_for(self, quiet_ms: int) -> bool:
        return self.inflight == 0 and (self._now() - self._last_activity) * 1000 >= quiet_ms


async def navigate(
    page: Page,
    url: str,
    ready: str = ReadyCondition.DOMCONTENTLOADED,
    timeout_ms: int = 30000,
    predicate: Optional[Union[str, Predicate]] = None,
    quiet_ms: int = 500,
    poll_interval_ms: int = 250,
) -> None:
    """Navigate a page and wait for the chosen ready condition.

    Args:
        page: Page to navigate
        url: Destination URL
        ready: One of the ReadyCondition values
        timeout_ms: Bound on the whole navigation including the ready wait
        predicate: JavaScript expression or Python callable for PREDICATE
        quiet_ms: Required network silence for QUIESCENT
        poll_interval_ms: Poll interval for Python predicates and quiescence

    Raises:
        NavigationTimeoutError: If the ready condition is not reached in time
    """
    logger.debug(f"Navigating to {url} (ready={ready}, timeout={timeout_ms}ms)")

    try:
        if ready in (ReadyCondition.DOMCONTENTLOADED, ReadyCondition.LOAD, ReadyCondition.NETWORKIDLE):
            await page.goto(url, wait_until=ready, timeout=timeout_ms)

        elif ready == ReadyCondition.QUIESCENT:
            tracker = _InflightTracker(page)
            tracker.start()
            try:
                await page.goto(url, wait_until="commit", timeout=timeout_ms)
                if not await poll_until(lambda: tracker.quiet_for(quiet_ms), timeout_ms, poll_interval_ms):
                    raise NavigationTimeoutError(url, timeout_ms)
            finally:
                tracker.stop()

        elif ready == ReadyCondition.PREDICATE:
            if predicate is None:
                raise ValueError("predicate required for predicate ready condition")
            await page.goto(url, wait_until="commit", timeout=timeout_ms)
            if isinstance(predicate, str):
                await page.wait_for_function(predicate, timeout=timeout_ms)
            elif not await poll_until(predicate, timeout_ms, poll_interval_ms):
                raise NavigationTimeoutError(url, timeout_ms)

        else:
            raise ValueError(f"Unknown ready condition: {ready}")

    except PlaywrightTimeoutError as e:
        logger.warning(f"Navigation to {url} timed out: {e}")
        raise NavigationTimeoutError(url, timeout_ms) from e

    logger.debug(f"Navigation ready: {url}")


class BrowserSession:
    """One browser process plus the pages opened in its single context."""

    def __init__(
        self,
        playwright: Playwright,
        browser: Browser,
        context: BrowserContext,
        primary_page: Page,
        mode: BrowserMode,
    ):
        self.playwright = playwright
        self.browser = browser
        self.context = context
        self.primary_page = primary_page
        self.mode = mode
        self.pages: List[Page] = [primary_page]
        self._closed = False

    async def open_context(self) -> Page:
        """Open another page in the session's browser context.

        Pages share the context's cookies, so a login performed on the
        primary page carries over.
        """
        if self._closed:
            raise RuntimeError("Browser session already closed")

        page = await self.context.new_page()
        self.pages.append(page)
        logger.debug(f"Opened page #{len(self.pages)} in session")
        return page

    async def navigate(self, page: Page, url: str, ready: str = ReadyCondition.DOMCONTENTLOADED,
                       timeout_ms: int = 30000, **kwargs) -> None:
        await navigate(page, url, ready=ready, timeout_ms=timeout_ms, **kwargs)

    async def close(self) -> None:
        """Close the browser and stop Playwright. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True

        logger.info(f"Closing browser session ({self.mode.value})")

        try:
            await self.context.close()
        except Exception as e:
            logger.warning(f"Error closing browser context: {e}")

        try:
            await self.browser.close()
        except Exception as e:
            logger.warning(f"Error closing browser: {e}")

        try:
            await self.playwright.stop()
        except Exception as e:
            logger.warning(f"Error stopping Playwright: {e}")

    @property
    def is_closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        return f"BrowserSession(mode={self.mode.value}, pages={len(self.pages)}, closed={self._closed})"


class BrowserFactory:
    """Launches browser sessions from a shared configuration."""

    def __init__(self, config: Optional[BrowserConfig] = None):
        self.config = config or BrowserConfig()
        self.sessions_launched = 0

    async def launch(self, mode: BrowserMode = BrowserMode.HEADLESS) -> BrowserSession:
        """Start Playwright, launch a browser and open its primary page.

        Raises:
            Exception: Any launch failure, after partial resources are released
        """
        logger.info(f"Launching {self.config.engine} browser ({mode.value})")

        playwright = await async_playwright().start()
        browser = None

        try:
            if self.config.engine == BrowserEngineType.FIREFOX:
                browser_type = playwright.firefox
            elif self.config.engine == BrowserEngineType.WEBKIT:
                browser_type = playwright.webkit
            else:
                browser_type = playwright.chromium

            browser = await browser_type.launch(**self.config.to_browser_options(mode))
            context = await browser.new_context(**self.config.to_context_options())
            page = await context.new_page()

        except Exception as e:
            logger.error(f"Failed to launch browser: {e}")
            if browser is not None:
                try:
                    await browser.close()
                except Exception as close_error:
                    logger.warning(f"Error closing browser after failed launch: {close_error}")
            await playwright.stop()
            raise

        self.sessions_launched += 1
        logger.info(f"Browser launched successfully (headless={mode.headless})")
        return BrowserSession(playwright, browser, context, page, mode)

    def __repr__(self) -> str:
        return f"BrowserFactory(engine={self.config.engine}, launched={self.sessions_launched})"
