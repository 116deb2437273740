from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from exam_integrity.core.security import decode_token
from exam_integrity.models.session import Actor, ActorRole
from exam_integrity.services.engine import IntegrityEngine, integrity_engine

security = HTTPBearer()


def actor_from_token(token: str) -> Actor:
    """Resolve token claims into an Actor, raising 401 when they are unusable"""
    payload = decode_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type"
        )

    actor_id = payload.get("sub")
    if not actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload"
        )

    try:
        role = ActorRole(payload.get("role"))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token role"
        )

    # The system principal is internal to the engine
    if role == ActorRole.SYSTEM:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="System role cannot be used over the API"
        )

    return Actor(id=actor_id, role=role)


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> Actor:
    """Get current authenticated actor from JWT token"""
    return actor_from_token(credentials.credentials)


async def get_current_admin(
    current_actor: Actor = Depends(get_current_actor)
) -> Actor:
    """Require admin role"""
    if current_actor.role != ActorRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_actor


def get_engine() -> IntegrityEngine:
    return integrity_engine
