"""Error taxonomy for query capture runs."""

from typing import List, Optional

from ..models.capture import LoginState


class CaptureError(Exception):
    """Base class for all capture failures."""
    pass


class ConfigurationInvalidError(CaptureError):
    """Raised before a run starts when required configuration is missing."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("Invalid configuration: " + "; ".join(self.problems))


class LoginStepError(CaptureError):
    """A single login step failed; retried within the sequencer's budget."""

    def __init__(self, state: LoginState, message: str):
        self.state = state
        super().__init__(f"[{state.value}] {message}")


class ElementNotFoundError(LoginStepError):
    """A required input did not become actionable in time."""

    def __init__(self, state: LoginState, selector: str, timeout_ms: int):
        self.selector = selector
        self.timeout_ms = timeout_ms
        super().__init__(state, f"element {selector!r} not actionable within {timeout_ms}ms")


class NoSubmitControlError(LoginStepError):
    """Neither a labelled nor a generic submit control was rendered."""

    def __init__(self, state: LoginState):
        super().__init__(state, "no submit control found")


class ControlInteractionError(LoginStepError):
    """A located control could not be read, clicked or pressed."""

    def __init__(self, state: LoginState, control: str, cause: Exception):
        self.control = control
        self.cause = cause
        super().__init__(state, f"{control} interaction failed: {cause}")


class NavigationTimeoutError(LoginStepError):
    """A navigation did not reach its ready condition in time."""

    def __init__(self, url: str, timeout_ms: int, state: LoginState = LoginState.START):
        self.url = url
        self.timeout_ms = timeout_ms
        super().__init__(state, f"navigation to {url} not ready within {timeout_ms}ms")


class LoginNotConfirmedError(LoginStepError):
    """Submission produced neither a navigation nor dashboard content."""

    def __init__(self, state: LoginState, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(state, f"dashboard not confirmed within {timeout_ms}ms")


class LoginFailedError(CaptureError):
    """The login flow exhausted its retry budget."""

    def __init__(self, attempts: int, last_error: Optional[LoginStepError] = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Login failed after {attempts} attempts{detail}")


class PersistenceError(CaptureError):
    """The capture artifact could not be written."""

    def __init__(self, path, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to write capture artifact {path}: {cause}")
