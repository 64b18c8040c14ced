"""Discovery of embedded report surfaces.

The analytics page renders its report inside nested frames (and sometimes
separate pages) some time after the document loads. TargetDiscovery polls
the live frame and page set with a fixed attempt budget and returns as soon
as any surface matches.
"""

import asyncio
import logging
import re
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from playwright.async_api import Page

from ..models.capture import DiscoveredTarget

logger = logging.getLogger(__name__)

DEFAULT_REPORT_PATTERNS = [
    "powerbi.com/reportEmbed",
    "powerbi.com/view",
    "app.powerbi.com",
    "/reportEmbed",
]

# (identifier, kind, handle)
Candidate = Tuple[str, str, object]
Enumerator = Callable[[Page], Iterable[Candidate]]


class UrlMatcher:
    """Matches surface URLs against substrings or regular expressions.

    Patterns wrapped in slashes (``/regex/``) are treated as case-insensitive
    regular expressions; anything else is a case-insensitive substring.
    """

    def __init__(self, patterns: Optional[Sequence[str]] = None):
        self.patterns = list(patterns or DEFAULT_REPORT_PATTERNS)
        self._substrings = []
        self._regexes = []
        for pattern in self.patterns:
            if len(pattern) > 2 and pattern.startswith("/") and pattern.endswith("/"):
                self._regexes.append(re.compile(pattern[1:-1], re.IGNORECASE))
            else:
                self._substrings.append(pattern.lower())

    def __call__(self, url: str) -> bool:
        if not url:
            return False
        lowered = url.lower()
        if any(s in lowered for s in self._substrings):
            return True
        return any(r.search(url) for r in self._regexes)

    def __repr__(self) -> str:
        return f"UrlMatcher({self.patterns})"


def frame_sources(page: Page) -> List[Candidate]:
    """Nested frames of a page, excluding the main frame."""
    main = page.main_frame
    return [(frame.url, "frame", frame) for frame in page.frames if frame is not main]


def context_pages(page: Page) -> List[Candidate]:
    """Other live pages in the same browser context."""
    return [(other.url, "page", other) for other in page.context.pages if other is not page]


DEFAULT_ENUMERATORS: List[Enumerator] = [frame_sources, context_pages]


class TargetDiscovery:
    """Bounded polling for report surfaces with early return."""

    def __init__(
        self,
        max_attempts: int = 10,
        inter_attempt_delay_ms: int = 3000,
        enumerators: Optional[Sequence[Enumerator]] = None,
    ):
        self.max_attempts = max_attempts
        self.inter_attempt_delay_ms = inter_attempt_delay_ms
        self.enumerators = list(enumerators or DEFAULT_ENUMERATORS)
        self.attempts_made = 0

    def _enumerate(self, page: Page) -> List[Candidate]:
        candidates = []
        for enumerate_fn in self.enumerators:
            try:
                candidates.extend(enumerate_fn(page))
            except Exception as e:
                logger.debug(f"Enumerator {getattr(enumerate_fn, '__name__', enumerate_fn)} failed: {e}")
        return candidates

    async def find_targets(
        self,
        page: Page,
        match: Optional[Callable[[str], bool]] = None,
    ) -> List[DiscoveredTarget]:
        """Poll the page for matching surfaces.

        Args:
            page: Page whose frames and sibling pages are enumerated
            match: URL predicate; defaults to the known report patterns

        Returns:
            All matches from the first attempt that found any, or an empty
            list if the attempt budget ran out
        """
        match = match or UrlMatcher()
        self.attempts_made = 0

        for attempt in range(1, self.max_attempts + 1):
            self.attempts_made = attempt
            candidates = self._enumerate(page)
            matches = [
                DiscoveredTarget(identifier=url, kind=kind, discovered_at_attempt=attempt, handle=handle)
                for url, kind, handle in candidates
                if match(url)
            ]

            logger.info(
                f"Discovery attempt {attempt}/{self.max_attempts}: "
                f"{len(candidates)} surfaces, {len(matches)} matching"
            )

            if matches:
                for target in matches:
                    logger.info(f"Found report surface ({target.kind}): {target.identifier}")
                return matches

            if attempt < self.max_attempts:
                await asyncio.sleep(self.inter_attempt_delay_ms / 1000.0)

        logger.warning(
            f"No report surface found after {self.max_attempts} attempts; "
            f"continuing with the primary page"
        )
        return []
