"""
Detector ingestion endpoint
"""

from fastapi import APIRouter, HTTPException, status, Depends
import logging

from exam_integrity.dependencies import get_current_actor, get_engine
from exam_integrity.models.session import Actor
from exam_integrity.schemas.signal import SignalSubmit
from exam_integrity.services.engine import IntegrityEngine
from exam_integrity.utils.exceptions import AppError, TransientIngressOverload

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{session_id}/signals", status_code=status.HTTP_202_ACCEPTED)
async def submit_signal(
    session_id: str,
    signal: SignalSubmit,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    """
    Submit one suspicion signal from an external detector.

    Accepted signals are buffered and correlated asynchronously; late
    signals are acknowledged but dropped.
    """
    try:
        signal_id = engine.submit_signal(
            actor=current_actor,
            session_id=session_id,
            channel=signal.channel,
            confidence=signal.confidence,
            detected_at=signal.detected_at,
            evidence_ref=signal.evidence_ref,
            signal_id=signal.signal_id,
        )
        return {"status": "accepted", "signal_id": signal_id}
    except TransientIngressOverload as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict(), headers={"Retry-After": "1"})
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
