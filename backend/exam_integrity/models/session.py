from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Set
from pydantic import BaseModel, Field


class ActorRole(str, Enum):
    ADMIN = "admin"
    PROCTOR = "proctor"
    STUDENT = "student"
    DETECTOR = "detector"
    SYSTEM = "system"


class Actor(BaseModel):
    """Caller identity as supplied by the identity service (token claims)"""
    id: str
    role: ActorRole


SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM)


class SessionState(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"
    TERMINATED = "terminated"
    SUBMITTED = "submitted"


TERMINAL_STATES = {SessionState.TERMINATED, SessionState.SUBMITTED}

# Allowed transitions; anything absent is rejected
SESSION_TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
    SessionState.SCHEDULED: {SessionState.ACTIVE},
    SessionState.ACTIVE: {SessionState.PAUSED, SessionState.TERMINATED, SessionState.SUBMITTED},
    SessionState.PAUSED: {SessionState.ACTIVE, SessionState.TERMINATED},
    SessionState.TERMINATED: set(),
    SessionState.SUBMITTED: set(),
}


class AuditEntry(BaseModel):
    """One line of a session's audit trail"""
    sequence: int
    session_id: str
    timestamp: datetime
    actor_id: str
    actor_role: ActorRole
    action: str  # admit, pause, resume, warn, termination-requested, terminate, submit, time-expired
    from_state: SessionState
    to_state: SessionState
    note: Optional[str] = None


class ExamSession(BaseModel):
    """One student taking one exam instance"""
    id: str
    student_id: str
    exam_id: str
    scheduled_duration_seconds: int
    state: SessionState = SessionState.SCHEDULED
    last_state_change: datetime
    proctor_ids: List[str] = []

    # Elapsed time is accumulated on every transition out of ACTIVE
    accumulated_seconds: float = 0.0
    active_since: Optional[datetime] = None

    end_reason: Optional[str] = None
    ended_at: Optional[datetime] = None
    warning_count: int = 0
    version: int = 0
    audit_trail: List[AuditEntry] = []
    created_at: datetime

    def elapsed_seconds(self, now: datetime) -> float:
        """Elapsed exam time; only advances while ACTIVE"""
        elapsed = self.accumulated_seconds
        if self.state == SessionState.ACTIVE and self.active_since is not None:
            elapsed += max(0.0, (now - self.active_since).total_seconds())
        return elapsed

    def remaining_seconds(self, now: datetime) -> float:
        return max(0.0, self.scheduled_duration_seconds - self.elapsed_seconds(now))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def summary(self, now: datetime) -> dict:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "exam_id": self.exam_id,
            "state": self.state.value,
            "version": self.version,
            "elapsed_seconds": round(self.elapsed_seconds(now), 3),
            "remaining_seconds": round(self.remaining_seconds(now), 3),
            "scheduled_duration_seconds": self.scheduled_duration_seconds,
            "last_state_change": self.last_state_change.isoformat(),
            "proctor_ids": list(self.proctor_ids),
            "warning_count": self.warning_count,
            "end_reason": self.end_reason,
        }


class TerminationHandle(BaseModel):
    """Confirmation token issued by request_termination"""
    handle: str
    session_id: str
    requested_by: str
    reason: Optional[str] = None
    session_version: int  # any transition after issue invalidates the handle
    issued_at: datetime
    expires_at: datetime
    consumed: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @classmethod
    def issue(
        cls,
        handle: str,
        session: ExamSession,
        actor: Actor,
        reason: Optional[str],
        now: datetime,
        ttl_seconds: int,
    ) -> "TerminationHandle":
        return cls(
            handle=handle,
            session_id=session.id,
            requested_by=actor.id,
            reason=reason,
            session_version=session.version,
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
