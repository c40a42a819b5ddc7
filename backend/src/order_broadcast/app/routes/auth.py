"""Request authentication: who is calling, and in which role."""

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status

from order_broadcast.domain.enums import Actor
from order_broadcast.services.auth_service import decode_token

_CALLER_ROLES = {Actor.CUSTOMER.value, Actor.MERCHANT.value, Actor.ADMIN.value}


@dataclass
class CurrentActor:
    id: str
    role: Actor


async def get_current_actor_dep(request: Request) -> CurrentActor:
    """Dependency: extract the calling actor from a Bearer token."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid token",
        )
    token = auth_header.removeprefix("Bearer ")
    payload = decode_token(token)
    if not payload or "sub" not in payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    if payload.get("role") not in _CALLER_ROLES:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token carries no usable role",
        )
    return CurrentActor(id=payload["sub"], role=Actor(payload["role"]))


def require_role(*roles: Actor):
    """Factory: dependency that checks the actor has one of the required roles."""

    async def checker(actor: CurrentActor = Depends(get_current_actor_dep)):
        if actor.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return actor

    return checker
