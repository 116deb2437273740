"""
Integrity Engine - wires ingress, aggregation, escalation, session control
and the subscription hub together.

Each session gets a SessionWorker: a bounded queue of released signal batches
drained by one asyncio task. The worker and Session Control both take the
session's lock, so everything that happens to one session is serialized while
different sessions proceed independently. A scheduler task drives time:
releasing reorder buffers, settling correlation windows, review-SLA
reminders, digests, time expiry, subscriber reaping and archival.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from exam_integrity.config import Settings, settings as default_settings
from exam_integrity.core.supabase_client import supabase_client
from exam_integrity.models.events import Cursor, EventType, PollResult, Subscription, SubscriptionFilter
from exam_integrity.models.incident import (
    EscalationAction, EscalationDecision, Incident, IncidentStatus, Severity, Signal
)
from exam_integrity.models.policy import EscalationPolicy
from exam_integrity.models.session import (
    Actor, ActorRole, AuditEntry, ExamSession, SessionState, TERMINAL_STATES, TerminationHandle
)
from exam_integrity.services.aggregator import IncidentAggregator
from exam_integrity.services.audit_repository import AuditRepository
from exam_integrity.services.escalation import (
    EscalationContext, EscalationPolicyEngine, RULE_REVIEW_SLA
)
from exam_integrity.services.fanout import SubscriptionHub
from exam_integrity.services.ingress import SignalIngress
from exam_integrity.services.session_control import SessionControl
from exam_integrity.services.session_registry import SessionLocks, SessionRegistry
from exam_integrity.utils.clock import Clock, utc_now
from exam_integrity.utils.exceptions import NotAuthorized

logger = logging.getLogger(__name__)

INCIDENT_STATUS_EVENTS = {
    IncidentStatus.RESOLVED: EventType.INCIDENT_RESOLVED,
    IncidentStatus.DISMISSED: EventType.INCIDENT_DISMISSED,
}


class SessionWorker:
    """Serial consumer of one session's released signal batches"""

    def __init__(self, session_id: str, engine: "IntegrityEngine", queue_size: int):
        self.session_id = session_id
        self.engine = engine
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.task: Optional[asyncio.Task] = None
        self.failed_batches = 0

    def ensure_running(self) -> None:
        """Start the task, or recreate it if it died"""
        if self.task is not None and not self.task.done():
            return
        if self.task is not None and not self.task.cancelled() and self.task.exception() is not None:
            logger.error(
                f"Worker for session {self.session_id} died: {self.task.exception()}; restarting"
            )
        self.task = asyncio.create_task(self._run())

    def offer(self, batch: List[Signal]) -> bool:
        try:
            self.queue.put_nowait(batch)
        except asyncio.QueueFull:
            return False
        self.ensure_running()
        return True

    async def _run(self) -> None:
        try:
            while True:
                batch = await self.queue.get()
                try:
                    await self._process_with_retry(batch)
                finally:
                    self.queue.task_done()
        finally:
            logger.debug(f"Worker loop ended for session {self.session_id}")

    async def _process_with_retry(self, batch: List[Signal]) -> None:
        try:
            await self.engine.process_batch(self.session_id, batch)
            return
        except Exception as e:
            logger.error(f"Error processing batch for session {self.session_id}, retrying: {str(e)}")

        # Replays are harmless: the aggregator skips signals that already contributed
        try:
            await self.engine.process_batch(self.session_id, batch)
        except Exception as e:
            self.failed_batches += 1
            logger.error(
                f"Dropping batch of {len(batch)} signals for session {self.session_id} "
                f"after retry: {str(e)}"
            )

    async def stop(self) -> None:
        if self.task is None:
            return
        self.task.cancel()
        try:
            await self.task
        except asyncio.CancelledError:
            pass
        self.task = None


class IntegrityEngine:
    """Owns every component and the per-session workers"""

    def __init__(
        self,
        clock: Clock = utc_now,
        audit: Optional[AuditRepository] = None,
        config: Settings = default_settings,
    ):
        self.clock = clock
        self.config = config

        self.locks = SessionLocks()
        self.registry = SessionRegistry(archived_ids_limit=config.ARCHIVED_SESSION_IDS_LIMIT)
        self.audit = audit if audit is not None else AuditRepository()
        self.ingress = SignalIngress(
            session_lookup=self.registry.find,
            clock=clock,
            clock_skew_tolerance_seconds=config.CLOCK_SKEW_TOLERANCE_SECONDS,
            lateness_window_seconds=config.LATENESS_WINDOW_SECONDS,
            buffer_size=config.INGRESS_BUFFER_SIZE,
        )
        self.aggregator = IncidentAggregator(
            correlation_gap_seconds=config.CORRELATION_GAP_SECONDS,
            lateness_window_seconds=config.LATENESS_WINDOW_SECONDS,
            medium_threshold=config.SEVERITY_MEDIUM_THRESHOLD,
            high_threshold=config.SEVERITY_HIGH_THRESHOLD,
        )
        self.escalation = EscalationPolicyEngine(
            EscalationPolicy(
                recommend_count=config.RECOMMEND_TERMINATE_COUNT,
                recommend_window_minutes=config.RECOMMEND_TERMINATE_WINDOW_MINUTES,
                review_sla_minutes=config.REVIEW_SLA_MINUTES,
                digest_interval_seconds=config.DIGEST_INTERVAL_SECONDS,
            )
        )
        self.hub = SubscriptionHub(
            proctors_for=self.registry.proctors_for,
            student_for=self._student_for,
            clock=clock,
            buffer_limit=config.SUBSCRIBER_BUFFER_LIMIT,
            stall_timeout_seconds=config.SUBSCRIBER_STALL_TIMEOUT_SECONDS,
            retention_events=config.HUB_RETENTION_EVENTS,
        )
        self.control = SessionControl(
            registry=self.registry,
            locks=self.locks,
            hub=self.hub,
            audit=self.audit,
            clock=clock,
            confirmation_ttl_seconds=config.TERMINATION_CONFIRMATION_TTL_SECONDS,
        )
        self.registry.add_listener(self._on_transition)

        self.workers: Dict[str, SessionWorker] = {}
        self._digest_pending: Dict[str, List[str]] = defaultdict(list)
        self._digest_started: Dict[str, datetime] = {}
        self._digest_counter: Dict[str, int] = defaultdict(int)
        self._scheduler: Optional[asyncio.Task] = None

    def _student_for(self, session_id: str) -> Optional[str]:
        session = self.registry.find(session_id)
        return session.student_id if session else None

    def _on_transition(self, session: ExamSession, from_state: SessionState, to_state: SessionState) -> None:
        if to_state in TERMINAL_STATES:
            self.ingress.discard(session.id)

    # ------------------------------------------------------------------
    # Authorization helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _can_supervise(actor: Actor, session: ExamSession) -> bool:
        if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
            return True
        return actor.role == ActorRole.PROCTOR and actor.id in session.proctor_ids

    def _require_view(self, actor: Actor, session: ExamSession) -> None:
        if self._can_supervise(actor, session):
            return
        if actor.role == ActorRole.STUDENT and actor.id == session.student_id:
            return
        raise NotAuthorized(f"{actor.role.value} {actor.id} may not view session {session.id}")

    def _require_incident_access(self, actor: Actor, session: ExamSession) -> None:
        if not self._can_supervise(actor, session):
            raise NotAuthorized(
                f"{actor.role.value} {actor.id} may not review incidents of session {session.id}"
            )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        actor: Actor,
        student_id: str,
        exam_id: str,
        scheduled_duration_seconds: int,
        proctor_ids: Optional[List[str]] = None,
        session_id: Optional[str] = None,
    ) -> ExamSession:
        if actor.role not in (ActorRole.ADMIN, ActorRole.SYSTEM):
            raise NotAuthorized("Admin access required")
        return self.registry.create(
            student_id=student_id,
            exam_id=exam_id,
            scheduled_duration_seconds=scheduled_duration_seconds,
            now=self.clock(),
            proctor_ids=proctor_ids,
            session_id=session_id,
        )

    def get_session(self, actor: Actor, session_id: str) -> ExamSession:
        session = self.registry.get(session_id)
        self._require_view(actor, session)
        return session

    def list_sessions(self, actor: Actor, states: Optional[List[SessionState]] = None) -> List[ExamSession]:
        sessions = self.registry.sessions(states)
        if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
            return sessions
        if actor.role == ActorRole.PROCTOR:
            return [s for s in sessions if actor.id in s.proctor_ids]
        if actor.role == ActorRole.STUDENT:
            return [s for s in sessions if s.student_id == actor.id]
        raise NotAuthorized(f"{actor.role.value} may not list sessions")

    def audit_trail(self, actor: Actor, session_id: str) -> List[AuditEntry]:
        session = self.registry.get(session_id)
        self._require_incident_access(actor, session)
        return list(session.audit_trail)

    async def admit(self, actor: Actor, session_id: str) -> ExamSession:
        return await self.control.admit(actor, session_id)

    async def pause(self, actor: Actor, session_id: str, reason: Optional[str] = None) -> ExamSession:
        return await self.control.pause(actor, session_id, reason)

    async def resume(self, actor: Actor, session_id: str, note: Optional[str] = None) -> ExamSession:
        return await self.control.resume(actor, session_id, note)

    async def warn(self, actor: Actor, session_id: str, message: str) -> AuditEntry:
        return await self.control.warn(actor, session_id, message)

    async def submit(self, actor: Actor, session_id: str) -> ExamSession:
        return await self.control.submit(actor, session_id)

    async def request_termination(
        self, actor: Actor, session_id: str, reason: Optional[str] = None
    ) -> TerminationHandle:
        return await self.control.request_termination(actor, session_id, reason)

    async def confirm_termination(self, actor: Actor, handle: str) -> ExamSession:
        return await self.control.confirm_termination(actor, handle)

    async def assign_proctor(self, actor: Actor, session_id: str, proctor_id: str) -> ExamSession:
        return await self.control.assign_proctor(actor, session_id, proctor_id)

    def set_policy(self, actor: Actor, exam_id: str, policy: EscalationPolicy) -> None:
        if actor.role not in (ActorRole.ADMIN, ActorRole.SYSTEM):
            raise NotAuthorized("Admin access required")
        self.escalation.set_policy(exam_id, policy)

    # ------------------------------------------------------------------
    # Signals and incidents
    # ------------------------------------------------------------------

    def submit_signal(
        self,
        actor: Actor,
        session_id: str,
        channel: Any,
        confidence: float,
        detected_at: datetime,
        evidence_ref: Optional[str] = None,
        signal_id: Optional[str] = None,
    ) -> str:
        if actor.role not in (ActorRole.DETECTOR, ActorRole.ADMIN, ActorRole.SYSTEM):
            raise NotAuthorized("Only detectors may submit signals")
        return self.ingress.submit(
            session_id=session_id,
            channel=channel,
            confidence=confidence,
            detected_at=detected_at,
            evidence_ref=evidence_ref,
            signal_id=signal_id,
        )

    def get_incident(self, actor: Actor, incident_id: str) -> Incident:
        incident = self.aggregator.get(incident_id)
        self._require_incident_access(actor, self.registry.get(incident.session_id))
        return incident

    def incidents_for_session(self, actor: Actor, session_id: str) -> List[Incident]:
        session = self.registry.get(session_id)
        self._require_incident_access(actor, session)
        return self.aggregator.incidents_for(session_id)

    def decisions_for_incident(self, actor: Actor, incident_id: str) -> List[EscalationDecision]:
        self.get_incident(actor, incident_id)
        return self.audit.decisions_for_incident(incident_id)

    async def update_incident_status(
        self,
        actor: Actor,
        incident_id: str,
        status: IncidentStatus,
        note: Optional[str] = None,
    ) -> Incident:
        incident = self.aggregator.get(incident_id)
        async with self.locks.lock_for(incident.session_id):
            session = self.registry.get(incident.session_id)
            self._require_incident_access(actor, session)

            now = self.clock()
            incident = self.aggregator.update_status(incident_id, status, actor, now, note)
            event_type = INCIDENT_STATUS_EVENTS.get(status, EventType.INCIDENT_STATUS_CHANGED)
            self._publish_incident(incident, event_type, extra={"actor_id": actor.id, "note": note})

            logger.info(f"Incident {incident_id} moved to {status.value} by {actor.id}")
            return incident

    # ------------------------------------------------------------------
    # Session worker body (runs under the session lock)
    # ------------------------------------------------------------------

    async def process_batch(self, session_id: str, batch: List[Signal]) -> None:
        async with self.locks.lock_for(session_id):
            session = self.registry.find(session_id)
            if session is None or session.is_terminal:
                logger.debug(f"Discarding {len(batch)} signals for finished session {session_id}")
                return

            for signal in batch:
                now = self.clock()
                outcome = self.aggregator.ingest(session, signal, now)
                if outcome is None:
                    continue

                for settled in outcome.settled:
                    self._publish_incident(settled, EventType.INCIDENT_UPDATED)

                incident = outcome.incident
                self._publish_incident(
                    incident,
                    EventType.INCIDENT_CREATED if outcome.created else EventType.INCIDENT_UPDATED,
                )

                context = EscalationContext(
                    incident=incident,
                    previous_severity=outcome.previous_severity,
                    created=outcome.created,
                    session_incidents=self.aggregator.incidents_for(session_id),
                )
                for decision in self.escalation.evaluate_all(context, now):
                    self._apply_decision(session, incident, decision, now)

    def _apply_decision(
        self,
        session: ExamSession,
        incident: Incident,
        decision: EscalationDecision,
        now: datetime,
    ) -> None:
        action = decision.action

        if action == EscalationAction.RECOMMEND_TERMINATE:
            if session.state not in (SessionState.ACTIVE, SessionState.PAUSED):
                decision.applied = False
                decision.suppressed_reason = f"session is {session.state.value}"
                logger.info(
                    f"Suppressed termination recommendation for session {session.id}: "
                    f"{decision.suppressed_reason}"
                )
            else:
                incident.escalated_actions.append(action.value)
                self._publish_escalation(EventType.ESCALATION_RECOMMEND_TERMINATE, incident, decision)
                logger.warning(
                    f"Termination recommended for session {session.id} after incident {incident.id}"
                )

        elif action == EscalationAction.NOTIFY:
            incident.escalated_actions.append(action.value)
            if decision.rule == RULE_REVIEW_SLA:
                incident.escalated_actions.append(RULE_REVIEW_SLA)
            self._publish_escalation(EventType.ESCALATION_NOTIFY, incident, decision)
            logger.warning(
                f"Proctors notified about {incident.severity.value} incident {incident.id} "
                f"in session {session.id} ({decision.rule})"
            )

        elif action == EscalationAction.FLAG and decision.digest:
            pending = self._digest_pending[session.id]
            if incident.id not in pending:
                pending.append(incident.id)
            self._digest_started.setdefault(session.id, now)

        self.audit.record_decision(decision)

    def _publish_incident(self, incident: Incident, event_type: str, extra: Optional[Dict[str, Any]] = None) -> None:
        payload = incident.summary()
        if extra:
            payload.update(extra)
        self.hub.publish(
            event_type=event_type,
            entity_id=incident.id,
            sequence=incident.version,
            session_id=incident.session_id,
            payload=payload,
            severity=incident.severity,
        )

    def _publish_escalation(self, event_type: str, incident: Incident, decision: EscalationDecision) -> None:
        self.hub.publish(
            event_type=event_type,
            entity_id=decision.id,
            sequence=1,
            session_id=incident.session_id,
            payload={
                "incident": incident.summary(),
                "rule": decision.rule,
                "policy_version": decision.policy_version,
            },
            severity=incident.severity,
        )

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    def _worker_for(self, session_id: str) -> SessionWorker:
        worker = self.workers.get(session_id)
        if worker is None:
            worker = SessionWorker(session_id, self, self.config.WORKER_QUEUE_SIZE)
            self.workers[session_id] = worker
        return worker

    def _release(self, now: datetime) -> None:
        for session_id in self.ingress.pending_sessions():
            worker = self._worker_for(session_id)
            if worker.queue.full():
                # Leave the signals buffered; ingress pushes back on detectors when it fills
                logger.debug(f"Worker queue full for session {session_id}, deferring release")
                continue
            batch = self.ingress.release(session_id, now)
            if batch:
                worker.offer(batch)

    async def _settle_and_remind(self, session_id: str, now: datetime) -> None:
        async with self.locks.lock_for(session_id):
            session = self.registry.find(session_id)
            if session is None:
                return
            for incident in self.aggregator.settle(session_id, now):
                self._publish_incident(incident, EventType.INCIDENT_UPDATED)

            incidents = self.aggregator.incidents_for(session_id)
            for incident in self.escalation.sla_candidates(incidents, now):
                context = EscalationContext(
                    incident=incident,
                    previous_severity=incident.severity,
                    session_incidents=incidents,
                )
                for decision in self.escalation.evaluate_all(context, now):
                    if decision.action != EscalationAction.NONE:
                        self._apply_decision(session, incident, decision, now)

    async def _emit_digest(self, session_id: str, now: datetime) -> None:
        async with self.locks.lock_for(session_id):
            session = self.registry.find(session_id)
            pending = self._digest_pending.get(session_id)
            started = self._digest_started.get(session_id)
            if session is None or not pending or started is None:
                return

            policy = self.escalation.policy_for(session.exam_id)
            if now - started < timedelta(seconds=policy.digest_interval_seconds):
                return

            self._digest_pending.pop(session_id, None)
            self._digest_started.pop(session_id, None)

            incidents = [self.aggregator.find(incident_id) for incident_id in pending]
            summaries = [i.summary() for i in incidents if i is not None]
            self._digest_counter[session_id] += 1
            self.hub.publish(
                event_type=EventType.INCIDENT_DIGEST,
                entity_id=f"{session_id}/digests/{self._digest_counter[session_id]}",
                sequence=1,
                session_id=session_id,
                payload={"incidents": summaries, "count": len(summaries)},
                severity=Severity.LOW,
                digest=True,
            )

    async def _expire(self, session_id: str, now: datetime) -> None:
        async with self.locks.lock_for(session_id):
            session = self.control.expire_locked(session_id, now)
            if session is not None:
                logger.info(f"Session {session_id} auto-submitted after {session.scheduled_duration_seconds}s")

    async def _archive(self, session_id: str) -> None:
        async with self.locks.lock_for(session_id):
            self.registry.archive(session_id)
            self.ingress.forget(session_id)
            self.aggregator.forget(session_id)
            self.audit.forget_session(session_id)
            self.control.forget_session(session_id)
            self._digest_pending.pop(session_id, None)
            self._digest_started.pop(session_id, None)
            self._digest_counter.pop(session_id, None)
        worker = self.workers.pop(session_id, None)
        if worker is not None:
            await worker.stop()
        self.locks.discard(session_id)

    async def tick(self) -> None:
        """One scheduler pass"""
        now = self.clock()

        self._release(now)
        for worker in self.workers.values():
            if not worker.queue.empty():
                worker.ensure_running()

        for session in self.registry.sessions():
            await self._settle_and_remind(session.id, now)

        for session_id in list(self._digest_pending.keys()):
            await self._emit_digest(session_id, now)

        for session in self.registry.time_expired(now):
            await self._expire(session.id, now)

        self.hub.reap(now)

        retention = timedelta(minutes=self.config.SESSION_RETENTION_MINUTES)
        for session_id in self.registry.archivable(now, retention):
            await self._archive(session_id)

        self.control.purge_handles(now)

    async def drain(self) -> None:
        """Wait until every queued batch has been processed"""
        for worker in list(self.workers.values()):
            if not worker.queue.empty():
                worker.ensure_running()
            await worker.queue.join()

    async def _scheduler_loop(self) -> None:
        interval = self.config.TICK_INTERVAL_SECONDS
        try:
            while True:
                try:
                    await self.tick()
                except Exception as e:
                    logger.error(f"Error in scheduler tick: {str(e)}")
                await asyncio.sleep(interval)
        finally:
            logger.info("Integrity scheduler stopped")

    def start(self) -> None:
        if self._scheduler is None or self._scheduler.done():
            self._scheduler = asyncio.create_task(self._scheduler_loop())
            logger.info("Integrity scheduler started")

    async def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.cancel()
            try:
                await self._scheduler
            except asyncio.CancelledError:
                pass
            self._scheduler = None
        for worker in list(self.workers.values()):
            await worker.stop()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        actor: Actor,
        session_ids: Optional[List[str]] = None,
        severity_floor: Severity = Severity.LOW,
        after_offset: Optional[int] = None,
    ) -> Cursor:
        filter = SubscriptionFilter(session_ids=set(session_ids or []), severity_floor=severity_floor)
        return self.hub.subscribe(actor.id, actor.role, filter, after_offset)

    def get_subscription(self, actor: Actor, subscription_id: str) -> Subscription:
        """The caller's own subscription (admins may inspect any)"""
        sub = self.hub.get_subscription(subscription_id)
        if actor.role != ActorRole.ADMIN and sub.subscriber_id != actor.id:
            raise NotAuthorized("Subscription belongs to another subscriber")
        return sub

    def poll(self, actor: Actor, subscription_id: str, after: int, limit: int = 100) -> PollResult:
        self.get_subscription(actor, subscription_id)
        return self.hub.poll(Cursor(subscription_id=subscription_id, offset=after), limit)

    def acknowledge(self, actor: Actor, subscription_id: str, offset: int) -> None:
        self.get_subscription(actor, subscription_id)
        self.hub.acknowledge(subscription_id, offset)

    def unsubscribe(self, actor: Actor, subscription_id: str) -> None:
        self.get_subscription(actor, subscription_id)
        self.hub.unsubscribe(subscription_id)

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    def _grid_status(self, session: ExamSession, open_incidents: List[Incident]) -> str:
        if any(
            i.severity == Severity.HIGH
            or EscalationAction.RECOMMEND_TERMINATE.value in i.escalated_actions
            for i in open_incidents
        ):
            return "flagged"
        if session.warning_count > 0 or any(i.severity.at_least(Severity.MEDIUM) for i in open_incidents):
            return "warning"
        return "normal"

    def stats(self, actor: Actor) -> Dict[str, Any]:
        """Eventually-consistent snapshot for the proctor dashboard"""
        now = self.clock()
        sessions = self.list_sessions(actor)

        open_by_session: Dict[str, List[Incident]] = defaultdict(list)
        for incident in self.aggregator.open_incidents():
            open_by_session[incident.session_id].append(incident)

        by_severity = {severity.value: 0 for severity in Severity}
        grid = []
        flagged = 0
        for session in sessions:
            open_incidents = open_by_session.get(session.id, [])
            for incident in open_incidents:
                by_severity[incident.severity.value] += 1
            status = self._grid_status(session, open_incidents)
            if status == "flagged":
                flagged += 1
            grid.append({
                "session_id": session.id,
                "student_id": session.student_id,
                "exam_id": session.exam_id,
                "state": session.state.value,
                "status": status,
                "open_incidents": len(open_incidents),
                "warnings": session.warning_count,
                "remaining_seconds": round(session.remaining_seconds(now), 3),
            })

        states = {state.value: 0 for state in SessionState}
        for session in sessions:
            states[session.state.value] += 1

        return {
            "generated_at": now.isoformat(),
            "sessions_by_state": states,
            "open_incidents_by_severity": by_severity,
            "flagged_sessions": flagged,
            "late_dropped": sum(self.ingress.late_dropped.get(s.id, 0) for s in sessions),
            "signals_accepted": self.ingress.accepted_count,
            "subscriptions": len(self.hub.subscriptions()),
            "audit_mirror_failures": self.audit.mirror_failures,
            "sessions": grid,
        }


# Global singleton instance
integrity_engine = IntegrityEngine(audit=AuditRepository(client=supabase_client))
