from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set
from pydantic import BaseModel, ConfigDict, Field


class Channel(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    SCREEN = "screen"
    NAVIGATION = "navigation"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank


SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


def max_severity(a: Severity, b: Severity) -> Severity:
    return a if a.rank >= b.rank else b


class IncidentStatus(str, Enum):
    NEW = "new"
    INVESTIGATING = "investigating"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


CLOSED_STATUSES = {IncidentStatus.RESOLVED, IncidentStatus.DISMISSED}

INCIDENT_TRANSITIONS: Dict[IncidentStatus, Set[IncidentStatus]] = {
    IncidentStatus.NEW: {
        IncidentStatus.INVESTIGATING, IncidentStatus.ACKNOWLEDGED,
        IncidentStatus.RESOLVED, IncidentStatus.DISMISSED,
    },
    IncidentStatus.INVESTIGATING: {
        IncidentStatus.ACKNOWLEDGED, IncidentStatus.RESOLVED, IncidentStatus.DISMISSED,
    },
    IncidentStatus.ACKNOWLEDGED: {
        IncidentStatus.INVESTIGATING, IncidentStatus.RESOLVED, IncidentStatus.DISMISSED,
    },
    IncidentStatus.RESOLVED: set(),
    IncidentStatus.DISMISSED: set(),
}


class ChannelGroupConfig:
    """Correlation groups and incident categories"""

    # video and screen both evidence simultaneous test-taking misconduct
    CHANNEL_GROUPS = {
        Channel.VIDEO: "visual",
        Channel.SCREEN: "visual",
        Channel.AUDIO: "audio",
        Channel.NAVIGATION: "navigation",
    }

    CATEGORIES = {
        frozenset({Channel.VIDEO}): "face_or_motion",
        frozenset({Channel.SCREEN}): "screen_activity",
        frozenset({Channel.VIDEO, Channel.SCREEN}): "concurrent_visual_misconduct",
        frozenset({Channel.AUDIO}): "audio_anomaly",
        frozenset({Channel.NAVIGATION}): "tab_focus_loss",
    }

    @classmethod
    def group_for(cls, channel: Channel) -> str:
        return cls.CHANNEL_GROUPS[channel]

    @classmethod
    def category_for(cls, channels: Set[Channel]) -> str:
        return cls.CATEGORIES.get(frozenset(channels), "mixed")


class Signal(BaseModel):
    """One detector observation; immutable once ingested"""
    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    channel: Channel
    confidence: float = Field(ge=0, le=1)
    detected_at: datetime
    received_at: datetime
    sequence: int  # per-session ingress order
    evidence_ref: Optional[str] = None  # opaque blob store handle


class Incident(BaseModel):
    """Unit of human review"""
    id: str
    session_id: str
    exam_id: str
    channel_group: str
    category: str
    severity: Severity = Severity.LOW
    status: IncidentStatus = IncidentStatus.NEW

    first_seen: datetime
    last_seen: datetime
    signal_ids: List[str] = []  # append-only, in join order
    channels: List[Channel] = []
    max_confidence: float = 0.0

    # False once the correlation window has settled
    collecting: bool = True
    reopened_at: Optional[datetime] = None

    version: int = 1
    escalated_actions: List[str] = []
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None
    status_changed_at: Optional[datetime] = None
    created_at: datetime

    @property
    def signal_count(self) -> int:
        return len(self.signal_ids)

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STATUSES

    def summary(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "exam_id": self.exam_id,
            "category": self.category,
            "channel_group": self.channel_group,
            "channels": [c.value for c in self.channels],
            "severity": self.severity.value,
            "status": self.status.value,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "signal_count": self.signal_count,
            "signal_ids": list(self.signal_ids),
            "max_confidence": self.max_confidence,
            "collecting": self.collecting,
            "version": self.version,
            "resolved_by": self.resolved_by,
            "resolution_note": self.resolution_note,
        }


class EscalationAction(str, Enum):
    NONE = "none"
    FLAG = "flag"
    NOTIFY = "notify"
    RECOMMEND_TERMINATE = "recommend-terminate"


class EscalationDecision(BaseModel):
    """Audit record of one policy evaluation"""
    id: str
    incident_id: str
    session_id: str
    action: EscalationAction
    rule: str
    policy_version: str
    timestamp: datetime
    severity: Severity
    digest: bool = False
    applied: bool = True  # False when the pre-action state recheck suppressed it
    suppressed_reason: Optional[str] = None

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "session_id": self.session_id,
            "action": self.action.value,
            "rule": self.rule,
            "policy_version": self.policy_version,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "digest": self.digest,
            "applied": self.applied,
            "suppressed_reason": self.suppressed_reason,
        }
