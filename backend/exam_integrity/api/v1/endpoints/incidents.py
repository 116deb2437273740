"""
Incident review endpoints
"""

from fastapi import APIRouter, HTTPException, Depends
import logging

from exam_integrity.dependencies import get_current_actor, get_engine
from exam_integrity.models.session import Actor
from exam_integrity.schemas.incident import IncidentStatusUpdate
from exam_integrity.services.engine import IntegrityEngine
from exam_integrity.utils.exceptions import AppError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/{incident_id}")
async def get_incident(
    incident_id: str,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    try:
        incident = engine.get_incident(current_actor, incident_id)
        return incident.summary()
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.patch("/{incident_id}/status")
async def update_incident_status(
    incident_id: str,
    update: IncidentStatusUpdate,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    """
    Move an incident through review.

    Resolved and dismissed are final; regressions are rejected with
    invalid_incident_transition.
    """
    try:
        incident = await engine.update_incident_status(
            current_actor, incident_id, update.status, update.note
        )
        return {"status": "accepted", "incident": incident.summary()}
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.get("/{incident_id}/decisions")
async def get_escalation_decisions(
    incident_id: str,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    """Every escalation decision recorded for the incident, applied or not"""
    try:
        decisions = engine.decisions_for_incident(current_actor, incident_id)
        return {"incident_id": incident_id, "decisions": [d.to_record() for d in decisions]}
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
