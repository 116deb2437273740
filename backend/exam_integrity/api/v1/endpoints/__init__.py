"""API endpoints package."""

from . import (
    dashboard,
    incidents,
    policies,
    sessions,
    signals,
    subscriptions,
    termination,
)

__all__ = [
    "dashboard",
    "incidents",
    "policies",
    "sessions",
    "signals",
    "subscriptions",
    "termination",
]
