"""
Engine error taxonomy.

Every error carries a human message, an HTTP status code and a
machine-readable ``reason`` so dashboards can tell "already terminated"
from "not authorized" from "confirmation expired".
"""

from typing import Any, Dict, Optional


class AppError(Exception):
    """Base application error"""

    reason = "error"
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if reason is not None:
            self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "rejected",
            "reason": self.reason,
            "message": self.message,
        }


# ============================================================================
# VALIDATION ERRORS - malformed input, rejected immediately, never retried
# ============================================================================

class ValidationError(AppError):
    reason = "validation_error"
    status_code = 422


class InvalidConfidence(ValidationError):
    reason = "invalid_confidence"


class InvalidChannel(ValidationError):
    reason = "invalid_channel"


class ClockSkew(ValidationError):
    reason = "clock_skew"


class InvalidFilter(ValidationError):
    reason = "invalid_filter"


# ============================================================================
# STATE CONFLICTS - command incompatible with current state
# ============================================================================

class StateConflict(AppError):
    reason = "state_conflict"
    status_code = 409


class InvalidTransition(StateConflict):
    reason = "invalid_transition"


class InvalidIncidentTransition(StateConflict):
    reason = "invalid_incident_transition"


class UnknownSession(StateConflict):
    reason = "unknown_session"
    status_code = 404


class UnknownIncident(StateConflict):
    reason = "unknown_incident"
    status_code = 404


class UnknownSubscription(StateConflict):
    reason = "unknown_subscription"
    status_code = 404


class NotAuthorized(AppError):
    reason = "not_authorized"
    status_code = 403


# ============================================================================
# TIMEOUTS - expected terminal outcomes
# ============================================================================

class Timeout(AppError):
    reason = "timeout"
    status_code = 410


class ConfirmationExpired(Timeout):
    reason = "confirmation_expired"


class SubscriberStalled(Timeout):
    reason = "subscriber_stalled"


class CursorExpired(Timeout):
    """Resume offset older than the retained log; events in between are gone"""

    reason = "cursor_expired"


class TransientIngressOverload(AppError):
    """Ingress buffer full; the producer should retry with backoff"""

    reason = "ingress_overload"
    status_code = 503
