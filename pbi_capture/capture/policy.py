"""Capture policies deciding how long to monitor and whether to escalate.

Two policies are available. The fixed window policy simply waits for a set
duration. The cyclic policy waits in short cycles, stops early once any
event has been buffered, and asks for a single relaunch in headful mode if
a headless run captured nothing.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .browser_factory import BrowserMode
from .network_observer import CaptureBuffer

logger = logging.getLogger(__name__)


class PolicyKind:
    """Available capture policies."""
    FIXED = "fixed"
    CYCLIC = "cyclic"


DEFAULT_FIXED_WINDOW_MS = 120000
DEFAULT_MAX_CYCLES = 10
DEFAULT_CYCLE_DELAY_MS = 15000


@dataclass(frozen=True)
class Relaunch:
    """Signal to the run driver: tear down and run again in another mode."""
    mode: BrowserMode


@dataclass
class WaitReport:
    """How a policy's wait ended."""
    cycles: int
    early_exit: bool
    elapsed_ms: float
    events: int


class CapturePolicy:
    """Base class for capture policies."""

    kind = "base"

    async def wait(self, buffer: CaptureBuffer) -> WaitReport:
        raise NotImplementedError

    def decide(self, buffer: CaptureBuffer, mode: BrowserMode, escalated: bool) -> Optional[Relaunch]:
        """Return a Relaunch signal, or None when the run is complete."""
        return None


class FixedWindowPolicy(CapturePolicy):
    """Wait out a fixed monitoring window regardless of what is captured."""

    kind = PolicyKind.FIXED

    def __init__(self, window_ms: int = DEFAULT_FIXED_WINDOW_MS):
        self.window_ms = window_ms

    async def wait(self, buffer: CaptureBuffer) -> WaitReport:
        start = datetime.utcnow()
        logger.info(f"Monitoring report traffic for {self.window_ms / 1000:.0f}s")
        await asyncio.sleep(self.window_ms / 1000.0)
        elapsed = (datetime.utcnow() - start).total_seconds() * 1000
        return WaitReport(cycles=1, early_exit=False, elapsed_ms=elapsed, events=len(buffer))

    def __repr__(self) -> str:
        return f"FixedWindowPolicy(window_ms={self.window_ms})"


class CyclicPolicy(CapturePolicy):
    """Cycle-counted wait with early exit and one headless-to-headful escalation."""

    kind = PolicyKind.CYCLIC

    def __init__(
        self,
        max_cycles: int = DEFAULT_MAX_CYCLES,
        cycle_delay_ms: int = DEFAULT_CYCLE_DELAY_MS,
        escalate: bool = True,
    ):
        self.max_cycles = max_cycles
        self.cycle_delay_ms = cycle_delay_ms
        self.escalate = escalate

    async def wait(self, buffer: CaptureBuffer) -> WaitReport:
        start = datetime.utcnow()
        cycle = 0

        for cycle in range(1, self.max_cycles + 1):
            await asyncio.sleep(self.cycle_delay_ms / 1000.0)
            captured = len(buffer)
            logger.info(f"Capture cycle {cycle}/{self.max_cycles}: {captured} events buffered")
            if captured > 0:
                elapsed = (datetime.utcnow() - start).total_seconds() * 1000
                return WaitReport(cycles=cycle, early_exit=True, elapsed_ms=elapsed, events=captured)

        elapsed = (datetime.utcnow() - start).total_seconds() * 1000
        return WaitReport(cycles=cycle, early_exit=False, elapsed_ms=elapsed, events=len(buffer))

    def decide(self, buffer: CaptureBuffer, mode: BrowserMode, escalated: bool) -> Optional[Relaunch]:
        if not buffer.is_empty():
            return None
        if self.escalate and mode == BrowserMode.HEADLESS and not escalated:
            logger.warning("No events captured in headless mode; escalating to headful")
            return Relaunch(BrowserMode.HEADFUL)
        return None

    def __repr__(self) -> str:
        return (
            f"CyclicPolicy(max_cycles={self.max_cycles}, cycle_delay_ms={self.cycle_delay_ms}, "
            f"escalate={self.escalate})"
        )


def create_policy(
    kind: str = PolicyKind.CYCLIC,
    wait_window_ms: Optional[int] = None,
    fixed_window_ms: int = DEFAULT_FIXED_WINDOW_MS,
    max_cycles: int = DEFAULT_MAX_CYCLES,
    cycle_delay_ms: int = DEFAULT_CYCLE_DELAY_MS,
    escalate: bool = True,
) -> CapturePolicy:
    """Build a capture policy.

    Args:
        kind: PolicyKind.FIXED or PolicyKind.CYCLIC
        wait_window_ms: Total window override; for the cyclic policy it is
            split evenly across max_cycles
        fixed_window_ms: Fixed window duration when not overridden
        max_cycles: Cycle budget for the cyclic policy
        cycle_delay_ms: Cycle length when not overridden
        escalate: Whether the cyclic policy may request a headful relaunch
    """
    if kind == PolicyKind.FIXED:
        return FixedWindowPolicy(wait_window_ms if wait_window_ms is not None else fixed_window_ms)

    if kind == PolicyKind.CYCLIC:
        if wait_window_ms is not None:
            cycle_delay_ms = wait_window_ms // max(1, max_cycles)
        return CyclicPolicy(max_cycles=max_cycles, cycle_delay_ms=cycle_delay_ms, escalate=escalate)

    raise ValueError(f"Unknown capture policy: {kind}")
