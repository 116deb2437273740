"""
Session Control - proctor/admin/student commands against the Session Registry.

Every command is a read-modify-write of one session performed while that
session's lock is held, so commands are linearizable with respect to each
other and to the session's incident worker. Termination is two-step: a
request issues a short-lived confirmation handle and only a confirmation
performs it. Any transition of the session invalidates outstanding handles.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from exam_integrity.config import settings
from exam_integrity.models.events import EventType
from exam_integrity.models.session import (
    Actor, ActorRole, AuditEntry, ExamSession, SessionState, SYSTEM_ACTOR, TerminationHandle
)
from exam_integrity.services.audit_repository import AuditRepository
from exam_integrity.services.fanout import SubscriptionHub
from exam_integrity.services.session_registry import SessionLocks, SessionRegistry
from exam_integrity.utils.clock import Clock, utc_now
from exam_integrity.utils.exceptions import ConfirmationExpired, InvalidTransition, NotAuthorized

logger = logging.getLogger(__name__)

TRANSITION_EVENTS = {
    SessionState.ACTIVE: EventType.SESSION_RESUMED,
    SessionState.PAUSED: EventType.SESSION_PAUSED,
    SessionState.TERMINATED: EventType.SESSION_TERMINATED,
    SessionState.SUBMITTED: EventType.SESSION_SUBMITTED,
}

HANDLE_CONSUMED = "consumed"
HANDLE_INVALIDATED = "invalidated"
HANDLE_EXPIRED = "expired"


class SessionControl:
    """Executes session commands under authorization and causality constraints"""

    def __init__(
        self,
        registry: SessionRegistry,
        locks: SessionLocks,
        hub: SubscriptionHub,
        audit: AuditRepository,
        clock: Clock = utc_now,
        confirmation_ttl_seconds: int = settings.TERMINATION_CONFIRMATION_TTL_SECONDS,
    ):
        self.registry = registry
        self.locks = locks
        self.hub = hub
        self.audit = audit
        self.clock = clock
        self.confirmation_ttl_seconds = confirmation_ttl_seconds
        self._handles: Dict[str, TerminationHandle] = {}
        # Purged handles keep their outcome until the session is archived
        self._retired: Dict[str, Tuple[str, str]] = {}  # handle -> (session id, outcome)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    @staticmethod
    def _require_supervisor(actor: Actor, session: ExamSession) -> None:
        """Admins, or proctors assigned to the session"""
        if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
            return
        if actor.role == ActorRole.PROCTOR and actor.id in session.proctor_ids:
            return
        raise NotAuthorized(f"{actor.role.value} {actor.id} may not control session {session.id}")

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if actor.role not in (ActorRole.ADMIN, ActorRole.SYSTEM):
            raise NotAuthorized("Admin access required")

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the session lock)
    # ------------------------------------------------------------------

    def _transition(
        self,
        session_id: str,
        to_state: SessionState,
        actor: Actor,
        action: str,
        now: datetime,
        note: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> ExamSession:
        session, entry = self.registry.transition(session_id, to_state, actor, action, now, note)
        self.audit.record_session_entry(entry)
        self._publish_session(session, event_type or TRANSITION_EVENTS[to_state], entry, now)
        return session

    def _publish_session(self, session: ExamSession, event_type: str, entry: AuditEntry, now: datetime) -> None:
        payload = session.summary(now)
        payload.update({
            "action": entry.action,
            "actor_id": entry.actor_id,
            "actor_role": entry.actor_role.value,
            "note": entry.note,
            "from_state": entry.from_state.value,
        })
        self.hub.publish(
            event_type=event_type,
            entity_id=session.id,
            sequence=session.version,
            session_id=session.id,
            payload=payload,
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def admit(self, actor: Actor, session_id: str) -> ExamSession:
        """scheduled -> active"""
        self._require_admin(actor)
        async with self.locks.lock_for(session_id):
            now = self.clock()
            return self._transition(
                session_id, SessionState.ACTIVE, actor, "admit", now,
                event_type=EventType.SESSION_ADMITTED,
            )

    async def pause(self, actor: Actor, session_id: str, reason: Optional[str] = None) -> ExamSession:
        async with self.locks.lock_for(session_id):
            session = self.registry.get_live(session_id)
            self._require_supervisor(actor, session)
            return self._transition(session_id, SessionState.PAUSED, actor, "pause", self.clock(), reason)

    async def resume(self, actor: Actor, session_id: str, note: Optional[str] = None) -> ExamSession:
        async with self.locks.lock_for(session_id):
            session = self.registry.get_live(session_id)
            self._require_supervisor(actor, session)
            if session.state != SessionState.PAUSED:
                raise InvalidTransition(
                    f"Cannot resume session {session_id} in state {session.state.value}"
                )
            return self._transition(session_id, SessionState.ACTIVE, actor, "resume", self.clock(), note)

    async def warn(self, actor: Actor, session_id: str, message: str) -> AuditEntry:
        """Send a warning to the student; no state change"""
        async with self.locks.lock_for(session_id):
            session = self.registry.get_live(session_id)
            self._require_supervisor(actor, session)
            if session.state not in (SessionState.ACTIVE, SessionState.PAUSED):
                raise InvalidTransition(
                    f"Cannot warn session {session_id} in state {session.state.value}"
                )

            now = self.clock()
            session.warning_count += 1
            entry = self.registry.record_audit(session_id, actor, "warn", now, message)
            self.audit.record_session_entry(entry)
            self.hub.publish(
                event_type=EventType.SESSION_WARNING,
                entity_id=f"{session_id}/warnings/{session.warning_count}",
                sequence=1,
                session_id=session_id,
                payload={
                    "message": message,
                    "actor_id": actor.id,
                    "warning_number": session.warning_count,
                    "timestamp": now.isoformat(),
                },
            )
            logger.info(f"Warning {session.warning_count} sent to session {session_id} by {actor.id}")
            return entry

    async def request_termination(
        self,
        actor: Actor,
        session_id: str,
        reason: Optional[str] = None,
    ) -> TerminationHandle:
        """
        First step of termination. Never changes session state.

        Returns:
            Handle to pass to confirm_termination before it expires
        """
        async with self.locks.lock_for(session_id):
            session = self.registry.get_live(session_id)
            self._require_supervisor(actor, session)
            if session.state not in (SessionState.ACTIVE, SessionState.PAUSED):
                raise InvalidTransition(
                    f"Cannot terminate session {session_id} in state {session.state.value}"
                )

            now = self.clock()
            handle = TerminationHandle.issue(
                handle=str(uuid.uuid4()),
                session=session,
                actor=actor,
                reason=reason,
                now=now,
                ttl_seconds=self.confirmation_ttl_seconds,
            )
            self._handles[handle.handle] = handle

            entry = self.registry.record_audit(session_id, actor, "termination-requested", now, reason)
            self.audit.record_session_entry(entry)
            self.hub.publish(
                event_type=EventType.TERMINATION_REQUESTED,
                entity_id=handle.handle,
                sequence=1,
                session_id=session_id,
                payload={
                    "requested_by": actor.id,
                    "reason": reason,
                    "expires_at": handle.expires_at.isoformat(),
                },
            )
            logger.warning(f"Termination requested for session {session_id} by {actor.id}")
            return handle

    async def confirm_termination(self, actor: Actor, handle: str) -> ExamSession:
        """
        Second step of termination.

        Raises:
            InvalidTransition: unknown/used handle, or the session moved since the request
            ConfirmationExpired: the handle's TTL elapsed
        """
        record = self._handles.get(handle)
        if record is None:
            retired = self._retired.get(handle)
            if retired is None:
                raise InvalidTransition("Unknown termination confirmation handle")
            session_id, outcome = retired
            session = self.registry.find(session_id)
            if session is not None:
                self._require_supervisor(actor, session)
            if outcome == HANDLE_EXPIRED:
                raise ConfirmationExpired("Termination confirmation expired")
            raise InvalidTransition(f"Termination confirmation handle is {outcome}")

        async with self.locks.lock_for(record.session_id):
            if record.consumed:
                raise InvalidTransition("Termination confirmation handle already used")

            session = self.registry.get_live(record.session_id)
            self._require_supervisor(actor, session)

            if session.version != record.session_version or session.is_terminal:
                raise InvalidTransition(
                    f"Session {session.id} changed state since termination was requested "
                    f"(now {session.state.value})"
                )

            now = self.clock()
            if record.is_expired(now):
                raise ConfirmationExpired(
                    f"Termination confirmation expired at {record.expires_at.isoformat()}"
                )

            record.consumed = True
            note = record.reason or "terminated by proctor"
            return self._transition(session.id, SessionState.TERMINATED, actor, "terminate", now, note)

    async def submit(self, actor: Actor, session_id: str) -> ExamSession:
        """Student hands in the exam"""
        async with self.locks.lock_for(session_id):
            session = self.registry.get_live(session_id)
            if actor.role != ActorRole.SYSTEM and not (
                actor.role == ActorRole.STUDENT and actor.id == session.student_id
            ):
                raise NotAuthorized("Only the student may submit their own exam")
            return self._transition(session_id, SessionState.SUBMITTED, actor, "submit", self.clock())

    def expire_locked(self, session_id: str, now: datetime) -> Optional[ExamSession]:
        """Time-expiry submission; the caller holds the session lock"""
        session = self.registry.get_live(session_id)
        if session.state != SessionState.ACTIVE:
            return None
        if session.elapsed_seconds(now) < session.scheduled_duration_seconds:
            return None
        return self._transition(
            session_id, SessionState.SUBMITTED, SYSTEM_ACTOR, "time-expired", now,
            "scheduled duration elapsed",
        )

    async def assign_proctor(self, actor: Actor, session_id: str, proctor_id: str) -> ExamSession:
        self._require_admin(actor)
        async with self.locks.lock_for(session_id):
            session = self.registry.assign_proctor(session_id, proctor_id)
            logger.info(f"Proctor {proctor_id} assigned to session {session_id}")
            return session

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_handles(self, now: datetime) -> int:
        """
        Retire handles that can no longer be confirmed.

        Only the outcome is kept, so a late confirmation still gets the
        reason it would have got before the purge.
        """
        grace = timedelta(seconds=self.confirmation_ttl_seconds)
        stale: List[Tuple[str, str]] = []
        for key, record in self._handles.items():
            session = self.registry.find(record.session_id)
            if record.consumed:
                stale.append((key, HANDLE_CONSUMED))
            elif session is None or session.version != record.session_version:
                stale.append((key, HANDLE_INVALIDATED))
            elif now >= record.expires_at + grace:
                stale.append((key, HANDLE_EXPIRED))
        for key, outcome in stale:
            record = self._handles.pop(key)
            self._retired[key] = (record.session_id, outcome)
        return len(stale)

    def forget_session(self, session_id: str) -> None:
        """Drop handles and retired outcomes of an archived session"""
        for key in [k for k, h in self._handles.items() if h.session_id == session_id]:
            del self._handles[key]
        for key in [k for k, (sid, _) in self._retired.items() if sid == session_id]:
            del self._retired[key]

    def pending_handles(self, session_id: str) -> List[TerminationHandle]:
        return [h for h in self._handles.values() if h.session_id == session_id and not h.consumed]
