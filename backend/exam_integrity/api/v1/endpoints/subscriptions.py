"""
Alert feed endpoints - cursor polling and WebSocket push streams
"""

from fastapi import APIRouter, HTTPException, Query, status, Depends, WebSocket, WebSocketDisconnect
from typing import Optional
import asyncio
import json
import logging

from exam_integrity.dependencies import actor_from_token, get_current_actor, get_engine
from exam_integrity.models.session import Actor
from exam_integrity.schemas.subscription import AckRequest, SubscriptionCreate
from exam_integrity.services.engine import IntegrityEngine
from exam_integrity.utils.exceptions import AppError, NotAuthorized, ValidationError

logger = logging.getLogger(__name__)
router = APIRouter()
ws_router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: SubscriptionCreate,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    """
    Open an alert feed for the caller.

    Pass ``after_offset`` when reconnecting to resume from the last
    acknowledged hub offset.
    """
    try:
        cursor = engine.subscribe(
            current_actor,
            session_ids=request.session_ids,
            severity_floor=request.severity_floor,
            after_offset=request.after_offset,
        )
        return {"status": "accepted", "subscription_id": cursor.subscription_id, "cursor": cursor.offset}
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.get("/{subscription_id}/events")
async def poll_events(
    subscription_id: str,
    after: int = Query(..., ge=0, description="Cursor offset; everything up to it is acknowledged"),
    limit: int = Query(default=100, ge=1, le=1000),
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    try:
        result = engine.poll(current_actor, subscription_id, after, limit)
        return {
            "events": [event.to_wire() for event in result.events],
            "cursor": result.cursor.offset,
            "stalled": result.stalled,
        }
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.post("/{subscription_id}/ack")
async def acknowledge_events(
    subscription_id: str,
    request: AckRequest,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    try:
        engine.acknowledge(current_actor, subscription_id, request.offset)
        return {"status": "accepted", "acked_offset": request.offset}
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.delete("/{subscription_id}")
async def close_subscription(
    subscription_id: str,
    current_actor: Actor = Depends(get_current_actor),
    engine: IntegrityEngine = Depends(get_engine)
):
    try:
        engine.unsubscribe(current_actor, subscription_id)
        return {"status": "accepted"}
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


# ============================================================================
# PUSH STREAM
# ============================================================================

async def _push_events(websocket: WebSocket, engine: IntegrityEngine, subscription_id: str) -> None:
    while True:
        events = await engine.hub.next_batch(subscription_id)
        await websocket.send_text(json.dumps({
            "type": "events",
            "events": [event.to_wire() for event in events],
            "cursor": events[-1].offset,
        }))


def _parse_frame(raw: str) -> dict:
    """Decode a client frame into a JSON object with an integer ack offset"""
    try:
        message = json.loads(raw)
    except ValueError as e:
        raise ValidationError(f"Malformed frame: {e}")
    if not isinstance(message, dict):
        raise ValidationError("Malformed frame: expected a JSON object")
    if message.get("type") == "ack":
        try:
            message["offset"] = int(message.get("offset", 0))
        except (TypeError, ValueError):
            raise ValidationError(f"Malformed frame: offset {message.get('offset')!r} is not an integer")
    return message


@ws_router.websocket("/ws/subscriptions/{subscription_id}")
async def websocket_subscription(
    websocket: WebSocket,
    subscription_id: str,
    token: Optional[str] = None,
    engine: IntegrityEngine = Depends(get_engine)
):
    """
    Push stream for an existing subscription.

    The client acknowledges with ``{"type": "ack", "offset": n}``; delivery
    pauses while the subscriber is stalled and the socket is closed once it
    is disconnected for stalling.
    """
    await websocket.accept()

    try:
        actor = actor_from_token(token or "")
        engine.get_subscription(actor, subscription_id)
    except HTTPException as e:
        await websocket.close(code=4401, reason=str(e.detail))
        return
    except NotAuthorized as e:
        await websocket.close(code=4403, reason=e.message)
        return
    except AppError as e:
        await websocket.send_text(json.dumps(e.to_dict()))
        await websocket.close(code=1008, reason=e.reason)
        return

    sender = asyncio.create_task(_push_events(websocket, engine, subscription_id))
    logger.info(f"WebSocket stream opened for subscription {subscription_id} ({actor.role.value} {actor.id})")

    try:
        while True:
            receive = asyncio.create_task(websocket.receive_text())
            done, _ = await asyncio.wait({receive, sender}, return_when=asyncio.FIRST_COMPLETED)

            if sender in done:
                receive.cancel()
                sender.result()  # raises SubscriberStalled once disconnected
                break

            try:
                message = _parse_frame(receive.result())
            except ValidationError as e:
                logger.info(f"Rejected frame on subscription {subscription_id}: {e.message}")
                await websocket.send_text(json.dumps(e.to_dict()))
                continue

            if message.get("type") == "ack":
                engine.acknowledge(actor, subscription_id, message["offset"])
            elif message.get("type") == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for subscription {subscription_id}")

    except AppError as e:
        logger.warning(f"Closing stream for subscription {subscription_id}: {e.message}")
        await websocket.send_text(json.dumps(e.to_dict()))
        await websocket.close(code=1008, reason=e.reason)

    finally:
        sender.cancel()
