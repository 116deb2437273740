from pydantic import BaseModel, Field
from typing import List, Optional

from exam_integrity.models.incident import Severity


class SubscriptionCreate(BaseModel):
    session_ids: List[str] = []
    severity_floor: Severity = Severity.LOW
    after_offset: Optional[int] = Field(default=None, ge=0, description="Resume after this hub offset")


class AckRequest(BaseModel):
    offset: int = Field(..., ge=0)
