from pydantic import BaseModel, Field

from exam_integrity.config import settings
from exam_integrity.models.incident import Severity


class EscalationPolicy(BaseModel):
    """Per-exam escalation table"""
    version: str = "default-1"

    # Immediate proctor notification
    notify_severity: Severity = Severity.HIGH

    # Repeated incidents in one session
    recommend_severity: Severity = Severity.MEDIUM
    recommend_count: int = Field(default=settings.RECOMMEND_TERMINATE_COUNT, ge=1)
    recommend_window_minutes: int = Field(default=settings.RECOMMEND_TERMINATE_WINDOW_MINUTES, ge=1)

    # Unreviewed incidents get a reminder notification after this age
    review_sla_minutes: int = Field(default=settings.REVIEW_SLA_MINUTES, ge=1)
    review_sla_severity: Severity = Severity.MEDIUM

    # Incidents at or below this severity are batched into digests
    digest_severity: Severity = Severity.LOW
    digest_interval_seconds: int = Field(default=settings.DIGEST_INTERVAL_SECONDS, ge=1)


DEFAULT_POLICY = EscalationPolicy()
