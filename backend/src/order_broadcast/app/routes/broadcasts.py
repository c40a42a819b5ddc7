"""Customer broadcast routes: create, browse quotes, approve, reject, cancel."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from order_broadcast.app.routes.auth import CurrentActor, require_role
from order_broadcast.app.routes.errors import to_http_exception
from order_broadcast.domain.enums import Actor
from order_broadcast.domain.errors import BroadcastError
from order_broadcast.domain.models import Broadcast
from order_broadcast.domain.schemas import (
    BroadcastCancel,
    BroadcastCreate,
    BroadcastDetailOut,
    BroadcastEventOut,
    BroadcastOut,
    CountOut,
    QuoteReject,
    RequestOut,
)
from order_broadcast.infra.clock import get_clock
from order_broadcast.infra.database import get_db
from order_broadcast.services.broadcast_ledger import BroadcastLedger
from order_broadcast.services.broadcast_serializer import (
    serialize_broadcast,
    serialize_broadcast_detail,
    serialize_request,
)
from order_broadcast.services.quoting_service import QuotingService
from order_broadcast.services.resolution_engine import ResolutionEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/broadcasts", tags=["broadcasts"])

customer_only = require_role(Actor.CUSTOMER)
customer_or_admin = require_role(Actor.CUSTOMER, Actor.ADMIN)


def _check_access(broadcast: Broadcast, actor: CurrentActor) -> None:
    """Raise 403 unless the actor owns the broadcast or is an admin."""
    if actor.role == Actor.ADMIN:
        return
    if actor.role == Actor.CUSTOMER and broadcast.customer_id == actor.id:
        return
    raise HTTPException(status_code=403, detail="Access denied")


async def _detail(
    db: AsyncSession, ledger: BroadcastLedger, broadcast_id: str, role: Actor, clock
) -> BroadcastDetailOut:
    broadcast = await ledger.get_broadcast(db, broadcast_id)
    requests = await ledger.list_requests(db, broadcast_id)
    return serialize_broadcast_detail(broadcast, requests, role, clock.now())


async def _get_owned_broadcast(
    db: AsyncSession, ledger: BroadcastLedger, broadcast_id: str, actor: CurrentActor
) -> Broadcast:
    try:
        broadcast = await ledger.get_broadcast(db, broadcast_id)
    except BroadcastError as e:
        raise to_http_exception(e)
    _check_access(broadcast, actor)
    return broadcast


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("", response_model=BroadcastDetailOut, status_code=201)
async def create_broadcast(
    body: BroadcastCreate,
    actor: CurrentActor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    """Fan a customer's order out to up to three merchants."""
    ledger = BroadcastLedger(clock=clock)
    try:
        broadcast = await ledger.create_broadcast(
            db,
            customer_id=actor.id,
            merchant_ids=body.merchant_ids,
            order=body.order,
            pricing_deadline=body.pricing_deadline,
            expires_at=body.expires_at,
        )
    except BroadcastError as e:
        raise to_http_exception(e)
    return await _detail(db, ledger, broadcast.id, actor.role, clock)


@router.get("", response_model=list[BroadcastOut])
async def list_broadcasts(
    active_only: bool = Query(False),
    limit: int = Query(20, ge=1, le=100),
    actor: CurrentActor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    """The caller's broadcasts, newest first."""
    ledger = BroadcastLedger(clock=clock)
    broadcasts = await ledger.list_customer_broadcasts(
        db, actor.id, active_only=active_only, limit=limit
    )
    return [serialize_broadcast(b) for b in broadcasts]


@router.get("/active-count", response_model=CountOut)
async def active_count(
    actor: CurrentActor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    ledger = BroadcastLedger(clock=clock)
    return CountOut(count=await ledger.count_active_broadcasts(db, actor.id))


@router.get("/{broadcast_id}", response_model=BroadcastDetailOut)
async def get_broadcast(
    broadcast_id: str,
    actor: CurrentActor = Depends(customer_or_admin),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    """Broadcast with its requests, cheapest quote first."""
    ledger = BroadcastLedger(clock=clock)
    await _get_owned_broadcast(db, ledger, broadcast_id, actor)
    return await _detail(db, ledger, broadcast_id, actor.role, clock)


@router.get("/{broadcast_id}/timeline", response_model=list[BroadcastEventOut])
async def get_timeline(
    broadcast_id: str,
    actor: CurrentActor = Depends(customer_or_admin),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    """Get the audit timeline for a broadcast."""
    ledger = BroadcastLedger(clock=clock)
    await _get_owned_broadcast(db, ledger, broadcast_id, actor)
    events = await ledger.list_events(db, broadcast_id)
    return [BroadcastEventOut.model_validate(e) for e in events]


@router.post("/{broadcast_id}/cancel", response_model=BroadcastDetailOut)
async def cancel_broadcast(
    broadcast_id: str,
    body: BroadcastCancel,
    actor: CurrentActor = Depends(customer_or_admin),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    """Withdraw the broadcast; every open request is cancelled with it."""
    ledger = BroadcastLedger(clock=clock)
    await _get_owned_broadcast(db, ledger, broadcast_id, actor)
    try:
        await ledger.mark_cancelled(
            db, broadcast_id, reason=body.reason, actor=actor.role, actor_id=actor.id
        )
    except BroadcastError as e:
        raise to_http_exception(e)
    return await _detail(db, ledger, broadcast_id, actor.role, clock)


@router.post("/{broadcast_id}/requests/{request_id}/approve", response_model=BroadcastDetailOut)
async def approve_quote(
    broadcast_id: str,
    request_id: str,
    actor: CurrentActor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    """Accept one quote. Every other open request on the broadcast is cancelled."""
    ledger = BroadcastLedger(clock=clock)
    await _get_owned_broadcast(db, ledger, broadcast_id, actor)
    engine = ResolutionEngine(clock=clock)
    try:
        await engine.approve_quote(db, broadcast_id, request_id, customer_id=actor.id)
    except BroadcastError as e:
        raise to_http_exception(e)
    return await _detail(db, ledger, broadcast_id, actor.role, clock)


@router.post("/{broadcast_id}/requests/{request_id}/reject", response_model=RequestOut)
async def reject_quote(
    broadcast_id: str,
    request_id: str,
    body: QuoteReject,
    actor: CurrentActor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    """Decline one quote; the broadcast stays open for the others."""
    ledger = BroadcastLedger(clock=clock)
    broadcast = await _get_owned_broadcast(db, ledger, broadcast_id, actor)
    quoting = QuotingService(clock=clock)
    try:
        request = await quoting.get_request(db, request_id)
        if request.broadcast_id != broadcast_id:
            raise HTTPException(status_code=404, detail="Request not found on this broadcast")
        request = await quoting.reject_quote(db, request_id, reason=body.reason, customer_id=actor.id)
    except BroadcastError as e:
        raise to_http_exception(e)
    return serialize_request(request, broadcast, actor.role, clock.now())
