"""Network observers that buffer report query traffic.

This module provides the CaptureBuffer shared by every listener of a run,
the URL filter that decides which traffic is relevant, and two listener
backends: one built on Playwright page events and one built on a Chromium
DevTools session. Listeners can be attached to several pages at once; all
of them append into the same ordered buffer. DevTools listeners can also be
attached to out-of-process frames, whose traffic the page session never sees.
"""

import asyncio
import base64
import logging
import threading
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Union

from playwright.async_api import Frame, Page, Request, Response

from ..models.capture import CapturedEvent, EventDirection, ListenerStats

logger = logging.getLogger(__name__)

DEFAULT_CAPTURE_PATTERNS = [
    "/public/query",
    "/public/reports/querydata",
    "pbidedicated.windows.net",
]

CAPTURED_HEADERS = {"authorization", "content-type", "activityid", "requestid"}
CAPTURED_HEADER_PREFIXES = ("x-ms-", "x-powerbi-")
TEXTUAL_CONTENT_TYPES = ("json", "text", "xml", "javascript")


class CaptureBuffer:
    """Append-only, insertion-ordered event buffer.

    Appends are serialized with a lock so listeners on several pages can
    write concurrently without losing or reordering events.
    """

    def __init__(self):
        self._events: List[CapturedEvent] = []
        self._lock = threading.Lock()

    def append(self, event: CapturedEvent) -> None:
        with self._lock:
            self._events.append(event)

    def snapshot(self) -> List[CapturedEvent]:
        """Copy of the events in observation order."""
        with self._lock:
            return list(self._events)

    def is_empty(self) -> bool:
        return len(self) == 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def __iter__(self) -> Iterator[CapturedEvent]:
        return iter(self.snapshot())

    def __repr__(self) -> str:
        return f"CaptureBuffer(events={len(self)})"


class UrlFilter:
    """Disjunction of case-insensitive URL substrings."""

    def __init__(self, patterns: Optional[Sequence[str]] = None):
        self.patterns = list(patterns or DEFAULT_CAPTURE_PATTERNS)
        self._lowered = [p.lower() for p in self.patterns]

    def __call__(self, url: str) -> bool:
        if not url:
            return False
        lowered = url.lower()
        return any(p in lowered for p in self._lowered)

    def __repr__(self) -> str:
        return f"UrlFilter({self.patterns})"


def select_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Keep only headers needed to understand or replay a query."""
    selected = {}
    for name, value in (headers or {}).items():
        lowered = name.lower()
        if lowered in CAPTURED_HEADERS or lowered.startswith(CAPTURED_HEADER_PREFIXES):
            selected[lowered] = value
    return selected


def is_textual(content_type: Optional[str]) -> bool:
    if not content_type:
        return True
    content_type = content_type.lower()
    return any(t in content_type for t in TEXTUAL_CONTENT_TYPES)


class BaseListener:
    """Shared bookkeeping for one attachment to one page."""

    backend = "base"

    def __init__(
        self,
        target: Any,
        buffer: CaptureBuffer,
        url_filter: UrlFilter,
        label: str,
        capture_response_bodies: bool = True,
        max_body_bytes: int = 5_000_000,
    ):
        self.target = target
        self.buffer = buffer
        self.url_filter = url_filter
        self.label = label
        self.capture_response_bodies = capture_response_bodies
        self.max_body_bytes = max_body_bytes
        self.stats = ListenerStats(label=label)
        self._pending: Set[asyncio.Task] = set()
        self._attached = False

    @property
    def attached(self) -> bool:
        return self._attached

    def _observe(self, method: Optional[str], url: str) -> bool:
        """Count an observed request and report whether it is relevant."""
        self.stats.observed += 1
        if self.url_filter(url):
            self.stats.matched += 1
            return True
        self.stats.discarded += 1
        logger.debug(f"[{self.label}] ignored {method or ''} {url}")
        return False

    def _record_request(
        self,
        url: str,
        method: Optional[str],
        headers: Optional[Dict[str, str]],
        body: Optional[str],
    ) -> None:
        selected = select_headers(headers)
        event = CapturedEvent(
            direction=EventDirection.REQUEST,
            url=url,
            method=method,
            headers=selected,
            authorization=selected.get("authorization"),
            body=body,
            source=self.label,
        )
        self.buffer.append(event)
        logger.info(
            f"[{self.label}] captured query request {method} {url} "
            f"(auth={'yes' if event.authorization else 'no'}, body={'yes' if body else 'no'})"
        )

    def _record_response(
        self,
        url: str,
        method: Optional[str],
        status: Optional[int],
        headers: Optional[Dict[str, str]],
        body: Optional[str],
    ) -> None:
        self.buffer.append(CapturedEvent(
            direction=EventDirection.RESPONSE,
            url=url,
            method=method,
            status=status,
            headers=select_headers(headers),
            body=body,
            source=self.label,
        ))
        logger.debug(f"[{self.label}] captured response {status} {url}")

    def _schedule(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _flush(self, timeout_ms: int) -> None:
        if not self._pending:
            return
        done, pending = await asyncio.wait(set(self._pending), timeout=timeout_ms / 1000.0)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"[{self.label}] dropped {len(pending)} response bodies still loading at detach")

    async def start(self) -> None:
        raise NotImplementedError

    async def _remove_listeners(self) -> None:
        raise NotImplementedError

    async def _release(self) -> None:
        """Release backend resources once pending work is flushed."""
        pass

    async def detach(self, flush_timeout_ms: int = 5000) -> None:
        """Stop observing and wait for in-flight body reads to finish."""
        if not self._attached:
            return
        self._attached = False

        try:
            await self._remove_listeners()
        except Exception as e:
            logger.warning(f"[{self.label}] error removing listeners: {e}")

        await self._flush(flush_timeout_ms)

        try:
            await self._release()
        except Exception as e:
            logger.warning(f"[{self.label}] error releasing listener: {e}")

        logger.info(
            f"Detached listener [{self.label}]: observed={self.stats.observed} "
            f"matched={self.stats.matched} discarded={self.stats.discarded}"
        )

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(label={self.label!r}, attached={self._attached}, "
            f"matched={self.stats.matched})"
        )


class PageListener(BaseListener):
    """Listener built on Playwright request/response events."""

    backend = "page"

    async def start(self) -> None:
        self.target.on("request", self._on_request)
        self.target.on("response", self._on_response)
        self._attached = True
        logger.debug(f"Page listener [{self.label}] attached")

    async def _remove_listeners(self) -> None:
        self.target.remove_listener("request", self._on_request)
        self.target.remove_listener("response", self._on_response)

    def _on_request(self, request: Request) -> None:
        try:
            url = request.url
            method = request.method
            if not self._observe(method, url):
                return

            headers = {}
            try:
                headers = request.headers
            except Exception as e:
                logger.warning(f"Failed to extract request headers: {e}")

            body = None
            try:
                body = request.post_data
            except Exception as e:
                logger.debug(f"Failed to extract request body: {e}")

            self._record_request(url, method, headers, body)

        except Exception as e:
            logger.error(f"Error processing request: {e}")

    def _on_response(self, response: Response) -> None:
        if not self._attached or not self.url_filter(response.url):
            return
        self._schedule(self._process_response(response))

    async def _process_response(self, response: Response) -> None:
        try:
            headers = {}
            try:
                headers = response.headers
            except Exception as e:
                logger.warning(f"Failed to extract response headers: {e}")

            body = None
            if self.capture_response_bodies and is_textual(headers.get('content-type')):
                try:
                    text = await response.text()
                    if len(text.encode('utf-8')) <= self.max_body_bytes:
                        body = text
                    else:
                        logger.debug(f"Response body over {self.max_body_bytes} bytes skipped: {response.url}")
                except Exception as e:
                    self.stats.body_errors += 1
                    logger.debug(f"Failed to read response body: {e}")

            method = None
            try:
                method = response.request.method
            except Exception as e:
                logger.debug(f"Failed to read response request method: {e}")

            self._record_response(response.url, method, response.status, headers, body)

        except Exception as e:
            logger.error(f"Error processing response: {e}")


class CdpListener(BaseListener):
    """Listener built on a Chromium DevTools Network domain session."""

    backend = "cdp"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.session = None
        self._requests: Dict[str, Dict[str, Any]] = {}
        self._responses: Dict[str, Dict[str, Any]] = {}

    @property
    def in_flight(self) -> int:
        """Matched requests still waiting for loadingFinished or loadingFailed."""
        return len(self._requests)

    async def start(self) -> None:
        # Frames are attached through their owning page's context
        page = getattr(self.target, "page", self.target)
        self.session = await page.context.new_cdp_session(self.target)
        await self.session.send("Network.enable")
        self.session.on("Network.requestWillBeSent", self._on_request_will_be_sent)
        self.session.on("Network.responseReceived", self._on_response_received)
        self.session.on("Network.loadingFinished", self._on_loading_finished)
        self.session.on("Network.loadingFailed", self._on_loading_failed)
        self._attached = True
        logger.debug(f"CDP listener [{self.label}] attached")

    async def _remove_listeners(self) -> None:
        if self.session is None:
            return
        self.session.remove_listener("Network.requestWillBeSent", self._on_request_will_be_sent)
        self.session.remove_listener("Network.responseReceived", self._on_response_received)
        self.session.remove_listener("Network.loadingFinished", self._on_loading_finished)
        self.session.remove_listener("Network.loadingFailed", self._on_loading_failed)

    async def _release(self) -> None:
        if self.session is None:
            return
        try:
            await self.session.detach()
        except Exception as e:
            logger.debug(f"CDP session already detached: {e}")

    def _on_request_will_be_sent(self, params: Dict[str, Any]) -> None:
        try:
            request = params.get("request", {})
            url = request.get("url", "")
            method = request.get("method")
            if not self._observe(method, url):
                return
            self._requests[params.get("requestId")] = {"method": method}
            self._record_request(url, method, request.get("headers"), request.get("postData"))
        except Exception as e:
            logger.error(f"Error processing CDP request: {e}")

    def _on_response_received(self, params: Dict[str, Any]) -> None:
        response = params.get("response", {})
        request_id = params.get("requestId")
        if request_id not in self._requests or not self.url_filter(response.get("url", "")):
            return
        self._responses[request_id] = {
            "url": response.get("url"),
            "status": response.get("status"),
            "headers": response.get("headers") or {},
            "method": self._requests[request_id].get("method"),
        }

    def _on_loading_finished(self, params: Dict[str, Any]) -> None:
        request_id = params.get("requestId")
        info = self._responses.pop(request_id, None)
        self._requests.pop(request_id, None)
        if info is None or not self._attached:
            return
        self._schedule(self._process_response(request_id, info))

    def _on_loading_failed(self, params: Dict[str, Any]) -> None:
        request_id = params.get("requestId")
        request = self._requests.pop(request_id, None)
        info = self._responses.pop(request_id, None)
        if request is None:
            return
        logger.info(f"[{self.label}] query request {request_id} failed: {params.get('errorText', 'unknown error')}")
        if info is not None and self._attached:
            self._record_response(info["url"], info["method"], info["status"], info["headers"], None)

    async def _process_response(self, request_id: str, info: Dict[str, Any]) -> None:
        headers = {k.lower(): v for k, v in info["headers"].items()}
        body = None
        if self.capture_response_bodies and is_textual(headers.get("content-type")):
            try:
                result = await self.session.send("Network.getResponseBody", {"requestId": request_id})
                body = result.get("body")
                if body and result.get("base64Encoded"):
                    body = base64.b64decode(body).decode("utf-8", errors="replace")
                if body and len(body.encode("utf-8")) > self.max_body_bytes:
                    body = None
            except Exception as e:
                self.stats.body_errors += 1
                logger.debug(f"Failed to read CDP response body: {e}")

        try:
            self._record_response(info["url"], info["method"], info["status"], headers, body)
        except Exception as e:
            logger.error(f"Error processing CDP response: {e}")


LISTENER_BACKENDS = {
    PageListener.backend: PageListener,
    CdpListener.backend: CdpListener,
}


class NetworkObserver:
    """Attaches listeners of one backend to pages, sharing one buffer."""

    def __init__(
        self,
        buffer: Optional[CaptureBuffer] = None,
        url_filter: Optional[UrlFilter] = None,
        backend: str = PageListener.backend,
        capture_response_bodies: bool = True,
        max_body_bytes: int = 5_000_000,
    ):
        if backend not in LISTENER_BACKENDS:
            raise ValueError(f"Unknown listener backend: {backend}")

        self.buffer = buffer if buffer is not None else CaptureBuffer()
        self.url_filter = url_filter or UrlFilter()
        self.backend = backend
        self.capture_response_bodies = capture_response_bodies
        self.max_body_bytes = max_body_bytes
        self.listeners: List[BaseListener] = []

    @property
    def attaches_frames(self) -> bool:
        """Whether frames get their own listener instead of sharing their page's."""
        return self.backend == CdpListener.backend

    def is_observing(self, target: Any) -> bool:
        return any(listener.target is target and listener.attached for listener in self.listeners)

    async def attach(self, target: Union[Page, Frame], label: str) -> BaseListener:
        """Attach a listener to a page (or, for the cdp backend, a frame) and start buffering matching traffic."""
        listener_cls = LISTENER_BACKENDS[self.backend]
        listener = listener_cls(
            target,
            self.buffer,
            self.url_filter,
            label,
            capture_response_bodies=self.capture_response_bodies,
            max_body_bytes=self.max_body_bytes,
        )
        await listener.start()
        self.listeners.append(listener)
        logger.info(f"Attached {self.backend} listener [{label}] (filter={self.url_filter.patterns})")
        return listener

    async def detach_all(self) -> None:
        for listener in self.listeners:
            try:
                await listener.detach()
            except Exception as e:
                logger.warning(f"Error detaching listener [{listener.label}]: {e}")

    def get_stats(self) -> List[ListenerStats]:
        return [listener.stats for listener in self.listeners]

    def __repr__(self) -> str:
        return (
            f"NetworkObserver(backend={self.backend}, listeners={len(self.listeners)}, "
            f"events={len(self.buffer)})"
        )
