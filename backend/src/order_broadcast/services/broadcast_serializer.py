"""Response shaping for broadcasts and requests.

Derived fields (countdowns, what the caller may do next) are computed
against the caller's clock at read time and never stored.
"""

from datetime import datetime

from order_broadcast.domain.enums import Actor, BroadcastStatus, RequestStatus
from order_broadcast.domain.models import Broadcast, BroadcastRequest
from order_broadcast.domain.schemas import (
    BroadcastDetailOut,
    BroadcastOut,
    RequestOut,
)
from order_broadcast.infra.clock import as_utc


def quote_expires_in_seconds(request: BroadcastRequest, now: datetime) -> int | None:
    """Seconds left on a priced quote, floored at zero. None when unpriced."""
    if request.status != RequestStatus.PRICED.value or request.pricing_expires_at is None:
        return None
    remaining = (as_utc(request.pricing_expires_at) - now).total_seconds()
    return max(0, int(remaining))


def is_approvable(request: BroadcastRequest, broadcast: Broadcast, now: datetime) -> bool:
    return (
        broadcast.status == BroadcastStatus.ACTIVE.value
        and request.status == RequestStatus.PRICED.value
        and request.pricing_expires_at is not None
        and now <= as_utc(request.pricing_expires_at)
    )


def allowed_actions(
    request: BroadcastRequest, broadcast: Broadcast, role: Actor, now: datetime
) -> list[str]:
    if broadcast.status != BroadcastStatus.ACTIVE.value:
        return []
    if role == Actor.MERCHANT:
        if request.status == RequestStatus.PENDING.value and now < as_utc(broadcast.pricing_deadline):
            return ["quote"]
        return []
    if role == Actor.CUSTOMER and request.status == RequestStatus.PRICED.value:
        if is_approvable(request, broadcast, now):
            return ["approve", "reject"]
        return ["reject"]
    return []


def serialize_request(
    request: BroadcastRequest, broadcast: Broadcast, role: Actor, now: datetime
) -> RequestOut:
    out = RequestOut.model_validate(request)
    out.quote_expires_in_seconds = quote_expires_in_seconds(request, now)
    out.approvable = is_approvable(request, broadcast, now)
    out.allowed_actions = allowed_actions(request, broadcast, role, now)
    return out


def serialize_broadcast(broadcast: Broadcast) -> BroadcastOut:
    return BroadcastOut.model_validate(broadcast)


def serialize_broadcast_detail(
    broadcast: Broadcast,
    requests: list[BroadcastRequest],
    role: Actor,
    now: datetime,
) -> BroadcastDetailOut:
    """Broadcast plus its requests, in the order given (cheapest first)."""
    base = BroadcastOut.model_validate(broadcast).model_dump()
    return BroadcastDetailOut(
        **base,
        requests=[serialize_request(r, broadcast, role, now) for r in requests],
    )
