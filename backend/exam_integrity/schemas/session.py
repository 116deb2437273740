from pydantic import BaseModel, Field
from typing import List, Optional


class SessionCreate(BaseModel):
    student_id: str
    exam_id: str
    scheduled_duration_seconds: int = Field(..., gt=0, description="Exam length in seconds")
    proctor_ids: List[str] = []
    session_id: Optional[str] = None


class PauseRequest(BaseModel):
    reason: Optional[str] = None


class ResumeRequest(BaseModel):
    note: Optional[str] = None


class WarningRequest(BaseModel):
    message: str = Field(..., min_length=1)


class ProctorAssignment(BaseModel):
    proctor_id: str


class TerminationRequest(BaseModel):
    reason: Optional[str] = None
