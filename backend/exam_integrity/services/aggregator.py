"""
Incident Aggregator - correlates released signals into incidents.

Per session there is at most one collecting incident per channel group. A
signal joins it while it falls within ``last_seen + correlation_gap``;
otherwise it opens a new incident. Severity only ever goes up: once an
escalation may have happened, earlier evidence is never discounted.

The aggregator is not thread- or task-safe by itself; the engine calls it
from the owning session's worker while holding that session's lock.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from exam_integrity.config import settings
from exam_integrity.models.incident import (
    ChannelGroupConfig, Incident, IncidentStatus, INCIDENT_TRANSITIONS,
    Severity, Signal, max_severity
)
from exam_integrity.models.session import Actor, ExamSession
from exam_integrity.utils.exceptions import InvalidIncidentTransition, UnknownIncident

logger = logging.getLogger(__name__)

CHANNEL_BONUS = 0.10
COUNT_BONUS = 0.05
MAX_COUNT_BONUS = 0.15


@dataclass
class SessionIncidents:
    """Arena record: everything the aggregator owns for one session"""
    incidents: Dict[str, Incident] = field(default_factory=dict)
    open_by_group: Dict[str, str] = field(default_factory=dict)
    contributed: Set[str] = field(default_factory=set)


@dataclass
class AggregationOutcome:
    incident: Incident
    created: bool
    previous_severity: Optional[Severity]
    settled: List[Incident] = field(default_factory=list)


class IncidentAggregator:
    """Turns a stream of signals into incidents with stable identity"""

    def __init__(
        self,
        correlation_gap_seconds: float = settings.CORRELATION_GAP_SECONDS,
        lateness_window_seconds: float = settings.LATENESS_WINDOW_SECONDS,
        medium_threshold: float = settings.SEVERITY_MEDIUM_THRESHOLD,
        high_threshold: float = settings.SEVERITY_HIGH_THRESHOLD,
    ):
        self.correlation_gap = timedelta(seconds=correlation_gap_seconds)
        self.lateness_window = timedelta(seconds=lateness_window_seconds)
        self.medium_threshold = medium_threshold
        self.high_threshold = high_threshold

        self._sessions: Dict[str, SessionIncidents] = {}
        self._incident_index: Dict[str, str] = {}  # incident id -> session id

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    @staticmethod
    def score(max_confidence: float, distinct_channels: int, signal_count: int) -> float:
        """Monotone non-decreasing in every argument"""
        channel_bonus = CHANNEL_BONUS * max(0, distinct_channels - 1)
        count_bonus = min(COUNT_BONUS * max(0, signal_count - 1), MAX_COUNT_BONUS)
        return max_confidence + channel_bonus + count_bonus

    def severity_for(self, score: float) -> Severity:
        if score >= self.high_threshold:
            return Severity.HIGH
        if score >= self.medium_threshold:
            return Severity.MEDIUM
        return Severity.LOW

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def _state(self, session_id: str) -> SessionIncidents:
        state = self._sessions.get(session_id)
        if state is None:
            state = SessionIncidents()
            self._sessions[session_id] = state
        return state

    def _window_base(self, incident: Incident) -> datetime:
        if incident.reopened_at is not None and incident.reopened_at > incident.last_seen:
            return incident.reopened_at
        return incident.last_seen

    def ingest(self, session: ExamSession, signal: Signal, now: datetime) -> Optional[AggregationOutcome]:
        """
        Fold one signal into the session's incidents.

        Returns:
            The outcome, or None when the signal already contributed
        """
        state = self._state(session.id)
        if signal.id in state.contributed:
            logger.debug(f"Signal {signal.id} already contributed, skipping")
            return None

        group = ChannelGroupConfig.group_for(signal.channel)
        settled: List[Incident] = []
        incident = None

        open_id = state.open_by_group.get(group)
        if open_id is not None:
            candidate = state.incidents[open_id]
            joinable = (
                candidate.collecting
                and not candidate.is_closed
                and signal.detected_at <= self._window_base(candidate) + self.correlation_gap
            )
            if joinable:
                incident = candidate
            else:
                if candidate.collecting:
                    self._settle_incident(state, candidate)
                    settled.append(candidate)
                state.open_by_group.pop(group, None)

        state.contributed.add(signal.id)

        if incident is None:
            incident = Incident(
                id=str(uuid.uuid4()),
                session_id=session.id,
                exam_id=session.exam_id,
                channel_group=group,
                category=ChannelGroupConfig.category_for({signal.channel}),
                first_seen=signal.detected_at,
                last_seen=signal.detected_at,
                signal_ids=[signal.id],
                channels=[signal.channel],
                max_confidence=signal.confidence,
                created_at=now,
            )
            incident.severity = self.severity_for(self.score(signal.confidence, 1, 1))
            state.incidents[incident.id] = incident
            state.open_by_group[group] = incident.id
            self._incident_index[incident.id] = session.id

            logger.info(
                f"Incident {incident.id} opened for session {session.id}: "
                f"{incident.category} ({incident.severity.value})"
            )
            return AggregationOutcome(incident=incident, created=True, previous_severity=None, settled=settled)

        previous = incident.severity
        incident.signal_ids.append(signal.id)
        if signal.channel not in incident.channels:
            incident.channels.append(signal.channel)
            incident.category = ChannelGroupConfig.category_for(set(incident.channels))
        incident.max_confidence = max(incident.max_confidence, signal.confidence)
        incident.last_seen = max(incident.last_seen, signal.detected_at)
        incident.first_seen = min(incident.first_seen, signal.detected_at)

        computed = self.severity_for(
            self.score(incident.max_confidence, len(incident.channels), incident.signal_count)
        )
        incident.severity = max_severity(previous, computed)
        incident.version += 1

        if incident.severity != previous:
            logger.info(
                f"Incident {incident.id} severity {previous.value} -> {incident.severity.value}"
            )
        return AggregationOutcome(incident=incident, created=False, previous_severity=previous, settled=settled)

    def _settle_incident(self, state: SessionIncidents, incident: Incident) -> None:
        incident.collecting = False
        incident.version += 1
        if state.open_by_group.get(incident.channel_group) == incident.id:
            state.open_by_group.pop(incident.channel_group, None)

    def settle(self, session_id: str, now: datetime) -> List[Incident]:
        """Close correlation windows that saw no joining signal for a full gap"""
        state = self._sessions.get(session_id)
        if state is None:
            return []

        watermark = now - self.lateness_window
        settled = []
        for incident_id in list(state.open_by_group.values()):
            incident = state.incidents[incident_id]
            if incident.collecting and watermark > self._window_base(incident) + self.correlation_gap:
                self._settle_incident(state, incident)
                settled.append(incident)
        return settled

    # ------------------------------------------------------------------
    # Human review
    # ------------------------------------------------------------------

    def update_status(
        self,
        incident_id: str,
        status: IncidentStatus,
        actor: Actor,
        now: datetime,
        note: Optional[str] = None,
    ) -> Incident:
        """
        Move an incident through review.

        Raises:
            UnknownIncident: no such incident
            InvalidIncidentTransition: regression or move out of resolved/dismissed
        """
        incident = self.get(incident_id)
        state = self._state(incident.session_id)

        if status not in INCIDENT_TRANSITIONS[incident.status]:
            raise InvalidIncidentTransition(
                f"Cannot move incident {incident_id} from {incident.status.value} to {status.value}"
            )

        incident.status = status
        incident.status_changed_at = now
        incident.version += 1

        if incident.is_closed:
            incident.resolved_by = actor.id
            incident.resolution_note = note
            if incident.collecting:
                incident.collecting = False
            if state.open_by_group.get(incident.channel_group) == incident.id:
                state.open_by_group.pop(incident.channel_group, None)
        elif status == IncidentStatus.INVESTIGATING and not incident.collecting:
            # Acting on a settled incident reopens its correlation window
            current_id = state.open_by_group.get(incident.channel_group)
            if current_id is not None and current_id != incident.id:
                self._settle_incident(state, state.incidents[current_id])
            incident.collecting = True
            incident.reopened_at = now
            state.open_by_group[incident.channel_group] = incident.id
            logger.info(f"Incident {incident_id} reopened for correlation by {actor.id}")

        return incident

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find(self, incident_id: str) -> Optional[Incident]:
        session_id = self._incident_index.get(incident_id)
        if session_id is None:
            return None
        return self._sessions[session_id].incidents.get(incident_id)

    def get(self, incident_id: str) -> Incident:
        incident = self.find(incident_id)
        if incident is None:
            raise UnknownIncident(f"Incident {incident_id} not found")
        return incident

    def incidents_for(self, session_id: str) -> List[Incident]:
        state = self._sessions.get(session_id)
        if state is None:
            return []
        return sorted(state.incidents.values(), key=lambda i: (i.first_seen, i.created_at))

    def open_incidents(self) -> List[Incident]:
        return [
            incident
            for state in self._sessions.values()
            for incident in state.incidents.values()
            if not incident.is_closed
        ]

    def forget(self, session_id: str) -> None:
        """Release the arena of an archived session"""
        state = self._sessions.pop(session_id, None)
        if state is None:
            return
        for incident_id in state.incidents:
            self._incident_index.pop(incident_id, None)
