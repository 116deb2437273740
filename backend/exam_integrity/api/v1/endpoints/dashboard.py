from fastapi import APIRouter, HTTPException, Depends

from exam_integrity.dependencies import get_current_actor, get_engine
from exam_integrity.models.session import Actor
from exam_integrity.services.engine import IntegrityEngine
from exam_integrity.utils.exceptions import AppError

router = APIRouter()


@router.get("/stats")
async def get_dashboard_stats(
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    """
    Live proctoring grid: session states, open incidents by severity,
    flagged sessions and late-dropped signal counts for the caller's sessions.
    """
    try:
        return engine.stats(current_actor)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
