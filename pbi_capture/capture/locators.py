"""Control locator with ordered matcher strategies.

Login pages render their buttons differently between releases, so a
control is located by trying an explicit list of strategies in order and
returning the first element any of them finds.
"""

import logging
import re
from typing import Iterable, List, Optional, Pattern, Sequence, Union

from playwright.async_api import ElementHandle, Error as PlaywrightError, Page

logger = logging.getLogger(__name__)

CLICKABLE_SELECTOR = "button, [role='button'], a, input[type='submit'], input[type='button']"

CONTINUE_PATTERNS = [r"continue", r"next"]
SUBMIT_PATTERNS = [r"log\s?in", r"sign\s?in", r"continue"]


def compile_patterns(patterns: Iterable[Union[str, Pattern]]) -> List[Pattern]:
    """Compile label patterns as case-insensitive regular expressions."""
    return [p if isinstance(p, re.Pattern) else re.compile(p, re.IGNORECASE) for p in patterns]


class MatcherStrategy:
    """Base class for a single way of finding a control."""

    name = "base"

    async def find(self, page: Page) -> Optional[ElementHandle]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class ByAttribute(MatcherStrategy):
    """Find the first element matching a CSS selector."""

    name = "attribute"

    def __init__(self, selector: str):
        self.selector = selector

    async def find(self, page: Page) -> Optional[ElementHandle]:
        return await page.query_selector(self.selector)

    def __repr__(self) -> str:
        return f"ByAttribute({self.selector!r})"


class ByText(MatcherStrategy):
    """Find a clickable element whose visible label matches a pattern.

    Patterns are tried in order across all candidates, so an earlier
    pattern wins over a later one even if the later one matches an
    earlier element.
    """

    name = "text"

    def __init__(self, patterns: Sequence[Union[str, Pattern]], scope: str = CLICKABLE_SELECTOR):
        self.patterns = compile_patterns(patterns)
        self.scope = scope

    async def _label(self, handle: ElementHandle) -> str:
        try:
            text = await handle.inner_text()
        except Exception as e:
            logger.debug(f"Failed to read element text: {e}")
            text = ""
        if not text or not text.strip():
            try:
                text = await handle.get_attribute("value") or await handle.get_attribute("aria-label") or ""
            except PlaywrightError as e:
                logger.debug(f"Element detached while reading its label: {e}")
                text = ""
        return text.strip()

    async def find(self, page: Page) -> Optional[ElementHandle]:
        candidates = await page.query_selector_all(self.scope)
        labels = [(handle, await self._label(handle)) for handle in candidates]

        for pattern in self.patterns:
            for handle, label in labels:
                if label and pattern.search(label):
                    logger.debug(f"Matched control label {label!r} with /{pattern.pattern}/")
                    return handle
        return None

    def __repr__(self) -> str:
        return f"ByText({[p.pattern for p in self.patterns]})"


class ByRole(MatcherStrategy):
    """Find an element by ARIA role, optionally filtered by a label pattern."""

    name = "role"

    def __init__(self, role: str, pattern: Optional[Union[str, Pattern]] = None):
        self.role = role
        self.text = ByText([pattern], scope=f"[role='{role}']") if pattern else None

    async def find(self, page: Page) -> Optional[ElementHandle]:
        if self.text:
            return await self.text.find(page)
        return await page.query_selector(f"[role='{self.role}']")

    def __repr__(self) -> str:
        return f"ByRole({self.role!r})"


class BySubmitType(ByAttribute):
    """Generic submit control fallback."""

    name = "submit"

    def __init__(self):
        super().__init__("button[type='submit'], input[type='submit']")


class ControlLocator:
    """Tries matcher strategies in order and returns the first hit."""

    def __init__(self, strategies: Sequence[MatcherStrategy]):
        self.strategies = list(strategies)

    async def locate(self, page: Page) -> Optional[ElementHandle]:
        for strategy in self.strategies:
            handle = await strategy.find(page)
            if handle is not None:
                logger.debug(f"Control located via {strategy!r}")
                return handle
        return None

    def __repr__(self) -> str:
        return f"ControlLocator({self.strategies})"


def submit_locator(patterns: Sequence[str] = SUBMIT_PATTERNS) -> ControlLocator:
    """Labelled submit control, falling back to any submit-type control."""
    return ControlLocator([ByText(patterns), BySubmitType()])


def continue_locator(patterns: Sequence[str] = CONTINUE_PATTERNS) -> ControlLocator:
    return ControlLocator([ByText(patterns), BySubmitType()])
