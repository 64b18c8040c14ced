"""Browser capture engine for pbi-capture.

Main Components:
- Browser Factory: headless / headful session launch and teardown
- Login Sequencer: forward-only portal login with retries
- Target Discovery: bounded polling for embedded report surfaces
- Network Observer: page and DevTools listeners feeding one buffer
- Capture Policy: fixed window or cyclic wait with one escalation
- Persistence Sink: atomic JSON artifact writer
- Capture Engine: the run driver tying them together

Usage:
    from pbi_capture.capture import CaptureEngine

    engine = CaptureEngine(credentials, config)
    result = await engine.run()
"""

__all__ = [
    # Errors
    "CaptureError",
    "ConfigurationInvalidError",
    "LoginStepError",
    "ElementNotFoundError",
    "ControlInteractionError",
    "NoSubmitControlError",
    "NavigationTimeoutError",
    "LoginNotConfirmedError",
    "LoginFailedError",
    "PersistenceError",

    # Main components
    "CaptureEngine",
    "CaptureEngineConfig",
    "BrowserFactory",
    "BrowserConfig",
    "BrowserMode",
    "BrowserSession",
    "LoginSequencer",
    "LoginConfig",
    "TargetDiscovery",
    "UrlMatcher",
    "NetworkObserver",
    "CaptureBuffer",
    "UrlFilter",
    "CapturePolicy",
    "FixedWindowPolicy",
    "CyclicPolicy",
    "PolicyKind",
    "Relaunch",
    "PersistenceSink",

    # Convenience functions
    "create_capture_engine",
    "create_policy",
]

from .errors import (
    CaptureError,
    ConfigurationInvalidError,
    LoginStepError,
    ElementNotFoundError,
    ControlInteractionError,
    NoSubmitControlError,
    NavigationTimeoutError,
    LoginNotConfirmedError,
    LoginFailedError,
    PersistenceError,
)
from .browser_factory import BrowserFactory, BrowserConfig, BrowserMode, BrowserSession
from .login import LoginSequencer, LoginConfig
from .discovery import TargetDiscovery, UrlMatcher
from .network_observer import NetworkObserver, CaptureBuffer, UrlFilter
from .policy import CapturePolicy, FixedWindowPolicy, CyclicPolicy, PolicyKind, Relaunch, create_policy
from .sink import PersistenceSink
from .engine import CaptureEngine, CaptureEngineConfig, create_capture_engine
