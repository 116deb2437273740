from pydantic import BaseModel
from typing import Optional

from exam_integrity.models.incident import IncidentStatus, Severity


class IncidentStatusUpdate(BaseModel):
    status: IncidentStatus
    note: Optional[str] = None


class PolicyUpdate(BaseModel):
    version: str
    notify_severity: Severity = Severity.HIGH
    recommend_severity: Severity = Severity.MEDIUM
    recommend_count: Optional[int] = None
    recommend_window_minutes: Optional[int] = None
    review_sla_minutes: Optional[int] = None
    digest_interval_seconds: Optional[int] = None
