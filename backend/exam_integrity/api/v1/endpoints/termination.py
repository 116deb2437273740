from fastapi import APIRouter, HTTPException, Depends

from exam_integrity.dependencies import get_current_actor, get_engine
from exam_integrity.models.session import Actor
from exam_integrity.services.engine import IntegrityEngine
from exam_integrity.utils.exceptions import AppError

router = APIRouter()


@router.post("/{handle}/confirm")
async def confirm_termination(
    handle: str,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    """Second step of the two-step termination"""
    try:
        session = await engine.confirm_termination(current_actor, handle)
        return {"status": "accepted", "session": session.summary(engine.clock())}
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
