"""
Exam session endpoints - lifecycle commands and audit trail
"""

from fastapi import APIRouter, HTTPException, Query, status, Depends
from typing import List, Optional
import logging

from exam_integrity.dependencies import get_current_actor, get_engine
from exam_integrity.models.session import Actor, SessionState
from exam_integrity.schemas.session import (
    PauseRequest, ProctorAssignment, ResumeRequest, SessionCreate, TerminationRequest, WarningRequest
)
from exam_integrity.services.engine import IntegrityEngine
from exam_integrity.utils.exceptions import AppError

logger = logging.getLogger(__name__)
router = APIRouter()


def _accepted(engine: IntegrityEngine, session) -> dict:
    return {"status": "accepted", "session": session.summary(engine.clock())}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_session(
    session_data: SessionCreate,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    """Schedule an exam session for a student"""
    try:
        session = engine.create_session(
            actor=current_actor,
            student_id=session_data.student_id,
            exam_id=session_data.exam_id,
            scheduled_duration_seconds=session_data.scheduled_duration_seconds,
            proctor_ids=session_data.proctor_ids,
            session_id=session_data.session_id,
        )
        return _accepted(engine, session)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    except Exception as e:
        logger.error(f"Failed to create session: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("")
async def list_sessions(
    state: Optional[List[SessionState]] = Query(default=None),
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    """Sessions visible to the caller"""
    try:
        now = engine.clock()
        sessions = engine.list_sessions(current_actor, state)
        return {"sessions": [s.summary(now) for s in sessions]}
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.get("/{session_id}")
async def get_session(
    session_id: str,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    try:
        session = engine.get_session(current_actor, session_id)
        return session.summary(engine.clock())
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.post("/{session_id}/admit")
async def admit_session(
    session_id: str,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    """Admit the student: scheduled -> active"""
    try:
        session = await engine.admit(current_actor, session_id)
        return _accepted(engine, session)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.post("/{session_id}/pause")
async def pause_session(
    session_id: str,
    request: Optional[PauseRequest] = None,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    try:
        session = await engine.pause(current_actor, session_id, request.reason if request else None)
        return _accepted(engine, session)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.post("/{session_id}/resume")
async def resume_session(
    session_id: str,
    request: Optional[ResumeRequest] = None,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    try:
        session = await engine.resume(current_actor, session_id, request.note if request else None)
        return _accepted(engine, session)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.post("/{session_id}/warn")
async def warn_student(
    session_id: str,
    request: WarningRequest,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    """Send a warning to the student without changing session state"""
    try:
        entry = await engine.warn(current_actor, session_id, request.message)
        return {"status": "accepted", "audit_entry": entry.model_dump(mode="json")}
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.post("/{session_id}/submit")
async def submit_exam(
    session_id: str,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    try:
        session = await engine.submit(current_actor, session_id)
        return _accepted(engine, session)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.post("/{session_id}/proctors")
async def assign_proctor(
    session_id: str,
    assignment: ProctorAssignment,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    try:
        session = await engine.assign_proctor(current_actor, session_id, assignment.proctor_id)
        return _accepted(engine, session)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.post("/{session_id}/termination-requests", status_code=status.HTTP_201_CREATED)
async def request_termination(
    session_id: str,
    request: Optional[TerminationRequest] = None,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    """
    First step of the two-step termination.

    Returns a confirmation handle that must be confirmed before it expires.
    """
    try:
        handle = await engine.request_termination(
            current_actor, session_id, request.reason if request else None
        )
        return {
            "status": "accepted",
            "handle": handle.handle,
            "session_id": handle.session_id,
            "expires_at": handle.expires_at.isoformat(),
        }
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.get("/{session_id}/audit")
async def get_audit_trail(
    session_id: str,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    try:
        entries = engine.audit_trail(current_actor, session_id)
        return {"session_id": session_id, "entries": [e.model_dump(mode="json") for e in entries]}
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.get("/{session_id}/incidents")
async def list_session_incidents(
    session_id: str,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    try:
        incidents = engine.incidents_for_session(current_actor, session_id)
        return {"session_id": session_id, "incidents": [i.summary() for i in incidents]}
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
