"""Pydantic models for query capture runs.

This module defines the data models shared by the capture components:
captured network events, discovered report surfaces, login states and
the outcome of a complete capture run.
"""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


DEFAULT_PORTAL_URL = "https://portal.autocab365.com/#/login"
DEFAULT_ANALYTICS_URL = "https://analytics.autocab365.com"


class Credentials(BaseModel):
    """Portal login values and destinations. Never persisted."""

    model_config = ConfigDict(frozen=True)

    entity_id: str = Field(min_length=1, description="Company / tenant identifier")
    username: str = Field(min_length=1, description="Portal user name")
    password: SecretStr = Field(description="Portal password")
    portal_url: str = Field(default=DEFAULT_PORTAL_URL, description="Login page URL")
    analytics_url: str = Field(default=DEFAULT_ANALYTICS_URL, description="Analytics page URL")

    def __repr__(self) -> str:
        return f"Credentials(entity_id={self.entity_id!r}, username={self.username!r})"


class LoginState(str, Enum):
    """States of the portal login flow.

    Transitions only move forward through the list; FAILED is reachable
    from any state.
    """
    START = "start"
    ENTITY_ENTERED = "entity_entered"
    CREDENTIALS_ENTERED = "credentials_entered"
    SUBMITTED = "submitted"
    NAVIGATION_CONFIRMED = "navigation_confirmed"
    DASHBOARD_CONFIRMED = "dashboard_confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (LoginState.DASHBOARD_CONFIRMED, LoginState.FAILED)


LOGIN_STATE_ORDER: List[LoginState] = [
    LoginState.START,
    LoginState.ENTITY_ENTERED,
    LoginState.CREDENTIALS_ENTERED,
    LoginState.SUBMITTED,
    LoginState.NAVIGATION_CONFIRMED,
    LoginState.DASHBOARD_CONFIRMED,
]


class EventDirection(str, Enum):
    """Direction of a captured network event."""
    REQUEST = "request"
    RESPONSE = "response"


class RunOutcome(str, Enum):
    """Overall result of a capture run."""
    LOGIN_FAILED = "login_failed"
    DISCOVERY_TIMED_OUT = "discovery_timed_out"
    CAPTURE_EMPTY = "capture_empty"
    CAPTURE_SUCCEEDED = "capture_succeeded"

    @property
    def is_fatal(self) -> bool:
        return self == RunOutcome.LOGIN_FAILED


class CapturedEvent(BaseModel):
    """One matching network event observed on an execution context."""

    direction: EventDirection = Field(description="Request or response")
    url: str = Field(description="Request URL")
    method: Optional[str] = Field(default=None, description="HTTP method (requests)")
    status: Optional[int] = Field(default=None, description="HTTP status code (responses)")
    headers: Dict[str, str] = Field(
        default_factory=dict,
        description="Subset of headers relevant to query replay"
    )
    authorization: Optional[str] = Field(
        default=None,
        description="Authorization header value, if the request carried one"
    )
    body: Optional[str] = Field(
        default=None,
        description="Raw request or response body"
    )
    source: Optional[str] = Field(
        default=None,
        description="Label of the listener that observed the event"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Observation time"
    )

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        """Validate URL format."""
        result = urlparse(v)
        if not result.scheme or not result.netloc:
            raise ValueError(f"Invalid URL: {v}")
        return v

    @property
    def host(self) -> str:
        """Extract host from URL."""
        return urlparse(self.url).netloc

    @property
    def has_body(self) -> bool:
        return bool(self.body)


class DiscoveredTarget(BaseModel):
    """An embedded report surface found during discovery."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    identifier: str = Field(description="URL of the surface")
    kind: str = Field(default="frame", description="frame or page")
    discovered_at_attempt: int = Field(ge=1, description="Attempt number that found it")
    handle: Any = Field(
        default=None,
        exclude=True,
        description="Live Playwright frame or page handle"
    )


class ListenerStats(BaseModel):
    """Counters kept by one attached listener."""

    label: str
    observed: int = 0
    matched: int = 0
    discarded: int = 0
    body_errors: int = 0


class RunResult(BaseModel):
    """Summary of one complete capture run, including any escalation."""

    outcome: RunOutcome
    events_captured: int = 0
    artifact_path: Optional[Path] = None
    headless: bool = True
    escalated: bool = False
    login_attempts: int = 0
    targets: List[DiscoveredTarget] = Field(default_factory=list)
    listeners: List[ListenerStats] = Field(default_factory=list)
    notices: List[RunOutcome] = Field(
        default_factory=list,
        description="Non-fatal conditions met along the way, such as a discovery timeout"
    )
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def is_successful(self) -> bool:
        return not self.outcome.is_fatal
