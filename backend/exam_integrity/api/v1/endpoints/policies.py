from fastapi import APIRouter, HTTPException, Depends
from pydantic import ValidationError as PydanticValidationError

from exam_integrity.dependencies import get_current_admin, get_engine
from exam_integrity.models.policy import EscalationPolicy
from exam_integrity.models.session import Actor
from exam_integrity.schemas.incident import PolicyUpdate
from exam_integrity.services.engine import IntegrityEngine
from exam_integrity.utils.exceptions import AppError

router = APIRouter()


@router.get("/{exam_id}")
async def get_policy(
    exam_id: str,
    current_actor: Actor = Depends(get_current_admin),
    engine: IntegrityEngine = Depends(get_engine)
):
    return engine.escalation.policy_for(exam_id).model_dump(mode="json")


@router.put("/{exam_id}")
async def set_policy(
    exam_id: str,
    update: PolicyUpdate,
    current_actor: Actor = Depends(get_current_admin),
    engine: IntegrityEngine = Depends(get_engine)
):
    """Install a versioned escalation table for one exam"""
    overrides = {k: v for k, v in update.model_dump().items() if v is not None}
    try:
        policy = EscalationPolicy(**{**engine.escalation.default_policy.model_dump(), **overrides})
    except PydanticValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))

    try:
        engine.set_policy(current_actor, exam_id, policy)
        return {"status": "accepted", "policy": policy.model_dump(mode="json")}
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
