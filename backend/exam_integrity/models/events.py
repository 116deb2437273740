from datetime import datetime
from typing import Any, Dict, List, Optional, Set
from pydantic import BaseModel, Field

from exam_integrity.models.incident import Severity
from exam_integrity.models.session import ActorRole


class EventType:
    """Event type constants published through the subscription hub"""

    INCIDENT_CREATED = "incident-created"
    INCIDENT_UPDATED = "incident-updated"
    INCIDENT_STATUS_CHANGED = "incident-status-changed"
    INCIDENT_RESOLVED = "incident-resolved"
    INCIDENT_DISMISSED = "incident-dismissed"
    INCIDENT_DIGEST = "incident-digest"

    ESCALATION_NOTIFY = "escalation-notify"
    ESCALATION_RECOMMEND_TERMINATE = "escalation-recommend-terminate"

    SESSION_ADMITTED = "session-admitted"
    SESSION_PAUSED = "session-paused"
    SESSION_RESUMED = "session-resumed"
    SESSION_TERMINATED = "session-terminated"
    SESSION_SUBMITTED = "session-submitted"
    SESSION_WARNING = "session-warning"
    TERMINATION_REQUESTED = "termination-requested"

    SESSION_EVENTS = {
        SESSION_ADMITTED, SESSION_PAUSED, SESSION_RESUMED,
        SESSION_TERMINATED, SESSION_SUBMITTED,
    }

    # What a student may see about their own session
    STUDENT_VISIBLE = SESSION_EVENTS | {SESSION_WARNING}


class Event(BaseModel):
    """Versioned wire record: {type, entity_id, sequence, payload}"""
    offset: int  # hub log position, the subscription cursor
    type: str
    entity_id: str
    sequence: int  # entity version; consumers upsert by (entity_id, sequence)
    session_id: str
    severity: Optional[Severity] = None
    digest: bool = False
    produced_at: datetime
    payload: Dict[str, Any] = {}

    def to_wire(self) -> dict:
        return {
            "offset": self.offset,
            "type": self.type,
            "entity_id": self.entity_id,
            "sequence": self.sequence,
            "session_id": self.session_id,
            "severity": self.severity.value if self.severity else None,
            "digest": self.digest,
            "produced_at": self.produced_at.isoformat(),
            "payload": self.payload,
        }


class SubscriptionFilter(BaseModel):
    session_ids: Set[str] = set()  # empty means "every session the role may see"
    severity_floor: Severity = Severity.LOW


class Subscription(BaseModel):
    """A live viewer's feed cursor"""
    id: str
    subscriber_id: str
    role: ActorRole
    filter: SubscriptionFilter = Field(default_factory=SubscriptionFilter)
    acked_offset: int = 0  # last offset the subscriber acknowledged
    created_at: datetime

    # Backpressure bookkeeping
    outstanding: int = 0
    dropped_offsets: Set[int] = set()
    dropped_count: int = 0
    stalled_since: Optional[datetime] = None
    disconnected: bool = False
    disconnect_reason: Optional[str] = None


class Cursor(BaseModel):
    subscription_id: str
    offset: int


class PollResult(BaseModel):
    events: List[Event]
    cursor: Cursor
    stalled: bool = False
