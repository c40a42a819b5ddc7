"""Merchant routes: incoming requests and quote submission."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from order_broadcast.app.routes.auth import CurrentActor, require_role
from order_broadcast.app.routes.errors import to_http_exception
from order_broadcast.domain.enums import Actor, RequestStatus
from order_broadcast.domain.errors import BroadcastError
from order_broadcast.domain.models import BroadcastRequest
from order_broadcast.domain.schemas import CountOut, QuoteSubmit, RequestOut
from order_broadcast.infra.clock import get_clock
from order_broadcast.infra.database import get_db
from order_broadcast.services.broadcast_serializer import serialize_request
from order_broadcast.services.quoting_service import QuotingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/merchant/requests", tags=["merchant"])

merchant_only = require_role(Actor.MERCHANT)


def _check_access(request: BroadcastRequest, actor: CurrentActor) -> None:
    """Raise 403 if the request was not sent to this merchant."""
    if request.merchant_id != actor.id:
        raise HTTPException(status_code=403, detail="Access denied")


@router.get("", response_model=list[RequestOut])
async def list_requests(
    status: RequestStatus | None = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=100),
    actor: CurrentActor = Depends(merchant_only),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    """Requests sent to the calling merchant. Pending work comes oldest first."""
    quoting = QuotingService(clock=clock)
    requests = await quoting.list_merchant_requests(
        db, actor.id, statuses=[status] if status else None, limit=limit
    )
    now = clock.now()
    return [serialize_request(r, r.broadcast, actor.role, now) for r in requests]


@router.get("/pending-count", response_model=CountOut)
async def pending_count(
    actor: CurrentActor = Depends(merchant_only),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    quoting = QuotingService(clock=clock)
    return CountOut(count=await quoting.count_pending_requests(db, actor.id))


@router.get("/{request_id}", response_model=RequestOut)
async def get_request(
    request_id: str,
    actor: CurrentActor = Depends(merchant_only),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    quoting = QuotingService(clock=clock)
    try:
        request = await quoting.get_request(db, request_id)
    except BroadcastError as e:
        raise to_http_exception(e)
    _check_access(request, actor)
    return serialize_request(request, request.broadcast, actor.role, clock.now())


@router.post("/{request_id}/quote", response_model=RequestOut)
async def submit_quote(
    request_id: str,
    body: QuoteSubmit,
    actor: CurrentActor = Depends(merchant_only),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    """Attach priced line items to a pending request."""
    quoting = QuotingService(clock=clock)
    try:
        request = await quoting.get_request(db, request_id)
        _check_access(request, actor)
        request = await quoting.submit_quote(
            db,
            request_id,
            body.items,
            delivery_fee=body.delivery_fee,
            merchant_id=actor.id,
            validity_minutes=body.validity_minutes,
            notes=body.notes,
            estimated_preparation_minutes=body.estimated_preparation_minutes,
        )
    except BroadcastError as e:
        raise to_http_exception(e)
    return serialize_request(request, request.broadcast, actor.role, clock.now())
