"""Capture data models package."""

from .capture import (
    DEFAULT_PORTAL_URL,
    DEFAULT_ANALYTICS_URL,
    Credentials,
    LoginState,
    LOGIN_STATE_ORDER,
    EventDirection,
    RunOutcome,
    CapturedEvent,
    DiscoveredTarget,
    ListenerStats,
    RunResult,
)

__all__ = [
    'DEFAULT_PORTAL_URL',
    'DEFAULT_ANALYTICS_URL',
    'Credentials',
    'LoginState',
    'LOGIN_STATE_ORDER',
    'EventDirection',
    'RunOutcome',
    'CapturedEvent',
    'DiscoveredTarget',
    'ListenerStats',
    'RunResult',
]
