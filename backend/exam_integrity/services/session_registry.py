"""
Session Registry - authoritative state of every exam session.

The registry is an arena keyed by session id. It does not lock; callers
(Session Control, the session workers, the scheduler) hold the per-session
lock from ``SessionLocks`` while they read-modify-write a session.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from exam_integrity.config import settings
from exam_integrity.models.session import (
    Actor, AuditEntry, ExamSession, SessionState, SESSION_TRANSITIONS, TERMINAL_STATES
)
from exam_integrity.utils.exceptions import InvalidTransition, UnknownSession

logger = logging.getLogger(__name__)

TransitionListener = Callable[[ExamSession, SessionState, SessionState], None]


class SessionLocks:
    """One asyncio.Lock per session id; no lock spans sessions"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def discard(self, session_id: str) -> None:
        self._locks.pop(session_id, None)


class SessionRegistry:
    """Owns ExamSession records and the transition table"""

    def __init__(self, archived_ids_limit: int = settings.ARCHIVED_SESSION_IDS_LIMIT):
        self._sessions: Dict[str, ExamSession] = {}
        # Archived records are dropped; only their ids are kept, oldest evicted first
        self._archived: "OrderedDict[str, None]" = OrderedDict()
        self.archived_ids_limit = archived_ids_limit
        self._listeners: List[TransitionListener] = []

    def add_listener(self, listener: TransitionListener) -> None:
        """Called synchronously after every state transition"""
        self._listeners.append(listener)

    def create(
        self,
        student_id: str,
        exam_id: str,
        scheduled_duration_seconds: int,
        now: datetime,
        proctor_ids: Optional[Iterable[str]] = None,
        session_id: Optional[str] = None,
    ) -> ExamSession:
        """Register a scheduled session for one student-exam pair"""
        session_id = session_id or str(uuid.uuid4())
        if session_id in self._sessions or session_id in self._archived:
            raise InvalidTransition(f"Session {session_id} already exists")

        session = ExamSession(
            id=session_id,
            student_id=student_id,
            exam_id=exam_id,
            scheduled_duration_seconds=scheduled_duration_seconds,
            state=SessionState.SCHEDULED,
            last_state_change=now,
            proctor_ids=list(proctor_ids or []),
            created_at=now,
        )
        self._sessions[session_id] = session
        logger.info(f"Session {session_id} scheduled for student {student_id}, exam {exam_id}")
        return session

    def find(self, session_id: str) -> Optional[ExamSession]:
        return self._sessions.get(session_id)

    def is_archived(self, session_id: str) -> bool:
        return session_id in self._archived

    def get(self, session_id: str) -> ExamSession:
        session = self.find(session_id)
        if session is None:
            if self.is_archived(session_id):
                raise UnknownSession(f"Exam session {session_id} has been archived")
            raise UnknownSession(f"Exam session {session_id} not found")
        return session

    def get_live(self, session_id: str) -> ExamSession:
        """Non-archived session, or InvalidTransition for commands"""
        session = self._sessions.get(session_id)
        if session is None:
            raise InvalidTransition(f"Exam session {session_id} does not exist or is archived")
        return session

    def transition(
        self,
        session_id: str,
        to_state: SessionState,
        actor: Actor,
        action: str,
        now: datetime,
        note: Optional[str] = None,
    ) -> Tuple[ExamSession, AuditEntry]:
        """
        Apply one state transition.

        Raises:
            InvalidTransition: unknown/archived session or a move absent from the table
        """
        session = self.get_live(session_id)
        from_state = session.state

        if to_state not in SESSION_TRANSITIONS[from_state]:
            raise InvalidTransition(
                f"Cannot move session {session_id} from {from_state.value} to {to_state.value}"
            )

        # Bank elapsed time before leaving ACTIVE
        if from_state == SessionState.ACTIVE and session.active_since is not None:
            session.accumulated_seconds += max(0.0, (now - session.active_since).total_seconds())
            session.active_since = None
        if to_state == SessionState.ACTIVE:
            session.active_since = now

        session.state = to_state
        session.last_state_change = now
        session.version += 1

        if to_state in TERMINAL_STATES:
            session.ended_at = now
            session.end_reason = note or action

        entry = self._append_audit(session, actor, action, from_state, to_state, now, note)

        logger.info(
            f"Session {session_id}: {from_state.value} -> {to_state.value} "
            f"({action} by {actor.role.value} {actor.id})"
        )

        for listener in self._listeners:
            listener(session, from_state, to_state)

        return session, entry

    def record_audit(
        self,
        session_id: str,
        actor: Actor,
        action: str,
        now: datetime,
        note: Optional[str] = None,
    ) -> AuditEntry:
        """Audit an action that does not change state (warnings)"""
        session = self.get_live(session_id)
        return self._append_audit(session, actor, action, session.state, session.state, now, note)

    def _append_audit(
        self,
        session: ExamSession,
        actor: Actor,
        action: str,
        from_state: SessionState,
        to_state: SessionState,
        now: datetime,
        note: Optional[str],
    ) -> AuditEntry:
        entry = AuditEntry(
            sequence=len(session.audit_trail) + 1,
            session_id=session.id,
            timestamp=now,
            actor_id=actor.id,
            actor_role=actor.role,
            action=action,
            from_state=from_state,
            to_state=to_state,
            note=note,
        )
        session.audit_trail.append(entry)
        return entry

    def assign_proctor(self, session_id: str, proctor_id: str) -> ExamSession:
        session = self.get_live(session_id)
        if proctor_id not in session.proctor_ids:
            session.proctor_ids.append(proctor_id)
        return session

    def proctors_for(self, session_id: str) -> List[str]:
        session = self.find(session_id)
        return list(session.proctor_ids) if session else []

    def sessions(self, states: Optional[Iterable[SessionState]] = None) -> List[ExamSession]:
        wanted = set(states) if states else None
        return [
            s for s in self._sessions.values()
            if wanted is None or s.state in wanted
        ]

    def time_expired(self, now: datetime) -> List[ExamSession]:
        """Active sessions whose elapsed time reached the scheduled duration"""
        return [
            s for s in self._sessions.values()
            if s.state == SessionState.ACTIVE and s.elapsed_seconds(now) >= s.scheduled_duration_seconds
        ]

    def archivable(self, now: datetime, retention: timedelta) -> List[str]:
        return [
            s.id for s in self._sessions.values()
            if s.is_terminal and s.ended_at is not None and now - s.ended_at >= retention
        ]

    def archive(self, session_id: str) -> None:
        """Drop a finished session, remembering only its id"""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        self._archived[session_id] = None
        while len(self._archived) > self.archived_ids_limit:
            self._archived.popitem(last=False)
        logger.info(f"Session {session_id} archived")
