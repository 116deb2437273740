from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


class SignalSubmit(BaseModel):
    channel: str
    confidence: float = Field(..., description="Detector confidence in [0, 1]")
    detected_at: datetime
    evidence_ref: Optional[str] = None
    signal_id: Optional[str] = None
