"""Broadcast Ledger: creation, cancellation and expiry of broadcasts.

Also home to the conditional-update helpers every other service uses to move
a broadcast or request between states. A transition is an
``UPDATE ... WHERE id = :id AND status = :expected``; zero affected rows means
somebody else moved the row first, and the caller decides whether that is an
error (resolution, quoting) or an expected race (sweeper).
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from order_broadcast.app.config import Settings, get_settings
from order_broadcast.domain.enums import (
    Actor,
    BroadcastEventType,
    BroadcastStatus,
    RequestStatus,
)
from order_broadcast.domain.errors import (
    InvalidStateError,
    NotFoundError,
    PreconditionError,
    RaceLostError,
)
from order_broadcast.domain.models import Broadcast, BroadcastEvent, BroadcastRequest
from order_broadcast.domain.schemas import OrderInput
from order_broadcast.infra.clock import as_utc, system_clock
from order_broadcast.services.broadcast_state_machine import (
    OPEN_REQUEST_STATES,
    BroadcastStateMachine,
)
from order_broadcast.services.order_bridge import enqueue_order_cancelled

logger = logging.getLogger(__name__)
state_machine = BroadcastStateMachine()


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def record_event(
    db: AsyncSession,
    broadcast_id: str,
    event_type: BroadcastEventType,
    actor: Actor,
    now: datetime,
    actor_id: str | None = None,
    request_id: str | None = None,
    from_status: str | None = None,
    to_status: str | None = None,
    data: dict | None = None,
) -> BroadcastEvent:
    """Append an audit trail entry."""
    event = BroadcastEvent(
        broadcast_id=broadcast_id,
        request_id=request_id,
        event_type=event_type.value,
        actor=actor.value,
        actor_id=actor_id or ("system" if actor == Actor.SYSTEM else None),
        from_status=from_status,
        to_status=to_status,
        data=data,
        created_at=now,
    )
    db.add(event)
    return event


async def transition_broadcast(
    db: AsyncSession,
    broadcast: Broadcast,
    target: BroadcastStatus,
    actor: Actor,
    event_type: BroadcastEventType,
    now: datetime,
    actor_id: str | None = None,
    values: dict | None = None,
    data: dict | None = None,
) -> bool:
    """Compare-and-set a broadcast out of its current status.

    Returns False if the stored status no longer matches what we read.
    """
    current = BroadcastStatus(broadcast.status)
    state_machine.validate_broadcast_transition(current, target, actor)

    result = await db.execute(
        update(Broadcast)
        .where(Broadcast.id == broadcast.id, Broadcast.status == current.value)
        .values(status=target.value, updated_at=now, **(values or {}))
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        return False

    record_event(
        db, broadcast.id, event_type, actor, now,
        actor_id=actor_id,
        from_status=current.value,
        to_status=target.value,
        data=data,
    )
    logger.info(
        "Broadcast %s: %s -> %s (actor=%s)",
        broadcast.id, current.value, target.value, actor.value,
    )
    return True


async def transition_request(
    db: AsyncSession,
    request: BroadcastRequest,
    target: RequestStatus,
    actor: Actor,
    event_type: BroadcastEventType,
    now: datetime,
    actor_id: str | None = None,
    values: dict | None = None,
    data: dict | None = None,
) -> bool:
    """Compare-and-set a request out of its current status."""
    current = RequestStatus(request.status)
    state_machine.validate_request_transition(current, target, actor)

    result = await db.execute(
        update(BroadcastRequest)
        .where(BroadcastRequest.id == request.id, BroadcastRequest.status == current.value)
        .values(status=target.value, updated_at=now, **(values or {}))
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        return False

    record_event(
        db, request.broadcast_id, event_type, actor, now,
        actor_id=actor_id,
        request_id=request.id,
        from_status=current.value,
        to_status=target.value,
        data=data,
    )
    logger.info(
        "Request %s (broadcast %s): %s -> %s (actor=%s)",
        request.id, request.broadcast_id, current.value, target.value, actor.value,
    )
    return True


async def load_broadcast(db: AsyncSession, broadcast_id: str) -> Broadcast:
    """Re-read a broadcast from the store, bypassing the identity map."""
    result = await db.execute(
        select(Broadcast)
        .where(Broadcast.id == broadcast_id)
        .execution_options(populate_existing=True)
    )
    broadcast = result.scalar_one_or_none()
    if broadcast is None:
        raise NotFoundError(f"Broadcast {broadcast_id} not found")
    return broadcast


async def open_requests(db: AsyncSession, broadcast_id: str) -> list[BroadcastRequest]:
    """Requests of a broadcast that are still pending or priced."""
    result = await db.execute(
        select(BroadcastRequest)
        .where(
            BroadcastRequest.broadcast_id == broadcast_id,
            BroadcastRequest.status.in_([s.value for s in OPEN_REQUEST_STATES]),
        )
        .order_by(BroadcastRequest.created_at.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def close_open_requests(
    db: AsyncSession,
    broadcast_id: str,
    target: RequestStatus,
    actor: Actor,
    event_type: BroadcastEventType,
    reason: str,
    now: datetime,
    actor_id: str | None = None,
    exclude_request_id: str | None = None,
) -> list[BroadcastRequest]:
    """Move every open request of a broadcast to *target*.

    Requests that carry a draft order get an ``order_cancelled`` bridge
    event. Terminal requests are left alone. Returns the requests moved.
    """
    closed = []
    for request in await open_requests(db, broadcast_id):
        if request.id == exclude_request_id:
            continue
        moved = await transition_request(
            db, request, target, actor, event_type, now,
            actor_id=actor_id,
            data={"reason": reason},
        )
        if not moved:
            continue
        enqueue_order_cancelled(db, request, reason, now)
        closed.append(request)
    return closed


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class BroadcastLedger:
    """Owns the Broadcast aggregate and its fan-out of merchant requests.

    Every mutating method commits its own unit of work.
    """

    def __init__(self, clock=system_clock, settings: Settings | None = None):
        self.clock = clock
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _validate_order(self, merchant_ids: list[str], order: OrderInput) -> None:
        s = self.settings
        if not merchant_ids:
            raise PreconditionError("At least one merchant is required")
        if any(not m for m in merchant_ids):
            raise PreconditionError("Merchant ids must not be blank")
        if len(set(merchant_ids)) != len(merchant_ids):
            raise PreconditionError("Merchant ids must not contain duplicates")
        if len(merchant_ids) > s.max_broadcast_merchants:
            raise PreconditionError(
                f"A broadcast can reach at most {s.max_broadcast_merchants} merchants"
            )

        has_text = bool(order.text and order.text.strip())
        if not (has_text or order.voice_url or order.image_urls):
            raise PreconditionError("Order must have text, a voice recording, or images")
        if order.text and len(order.text) > s.max_order_text_length:
            raise PreconditionError(
                f"Order text exceeds {s.max_order_text_length} characters"
            )
        if len(order.image_urls) > s.max_order_images:
            raise PreconditionError(f"At most {s.max_order_images} images are allowed")
        if order.notes and len(order.notes) > s.max_notes_length:
            raise PreconditionError(f"Notes exceed {s.max_notes_length} characters")

    async def create_broadcast(
        self,
        db: AsyncSession,
        customer_id: str,
        merchant_ids: list[str],
        order: OrderInput,
        pricing_deadline: datetime | None = None,
        expires_at: datetime | None = None,
    ) -> Broadcast:
        """Create a broadcast and one pending request per merchant, atomically."""
        if not customer_id:
            raise PreconditionError("Customer id is required")
        self._validate_order(merchant_ids, order)

        now = self.clock.now()
        pricing_deadline = as_utc(pricing_deadline) or (
            now + timedelta(hours=self.settings.default_pricing_timeout_hours)
        )
        expires_at = as_utc(expires_at) or max(
            pricing_deadline,
            now + timedelta(hours=self.settings.default_auto_cancel_hours),
        )
        if pricing_deadline <= now:
            raise PreconditionError("Pricing deadline must be in the future")
        if pricing_deadline > expires_at:
            raise PreconditionError("Pricing deadline must not be later than expiry")

        broadcast = Broadcast(
            customer_id=customer_id,
            merchant_ids=list(merchant_ids),
            input_type=order.input_type.value,
            original_text=order.text,
            voice_url=order.voice_url,
            transcribed_text=order.transcribed_text,
            image_urls=list(order.image_urls) or None,
            customer_notes=order.notes,
            order_type=order.order_type.value,
            delivery_address=order.delivery_address,
            status=BroadcastStatus.ACTIVE.value,
            pricing_deadline=pricing_deadline,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        broadcast.requests = [
            BroadcastRequest(
                merchant_id=merchant_id,
                status=RequestStatus.PENDING.value,
                items_count=0,
                created_at=now + timedelta(microseconds=position),
                updated_at=now,
            )
            for position, merchant_id in enumerate(merchant_ids)
        ]
        db.add(broadcast)
        await db.flush()

        record_event(
            db, broadcast.id, BroadcastEventType.BROADCAST_CREATED, Actor.CUSTOMER, now,
            actor_id=customer_id,
            to_status=BroadcastStatus.ACTIVE.value,
            data={
                "merchant_ids": list(merchant_ids),
                "pricing_deadline": pricing_deadline.isoformat(),
                "expires_at": expires_at.isoformat(),
            },
        )
        await db.commit()

        logger.info(
            "Broadcast %s created: customer=%s merchants=%d pricing_deadline=%s",
            broadcast.id, customer_id, len(merchant_ids), pricing_deadline.isoformat(),
        )
        return broadcast

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def mark_expired(
        self, db: AsyncSession, broadcast_id: str, reason: str = "broadcast_expired"
    ) -> bool:
        """Expire an active broadcast and everything still open under it.

        Idempotent: returns False without error if the broadcast is already
        terminal (including when a concurrent transaction got there first).
        """
        now = self.clock.now()
        broadcast = await load_broadcast(db, broadcast_id)
        if state_machine.is_broadcast_terminal(broadcast.status):
            return False

        try:
            moved = await transition_broadcast(
                db, broadcast, BroadcastStatus.EXPIRED, Actor.SYSTEM,
                BroadcastEventType.BROADCAST_EXPIRED, now,
                data={"reason": reason},
            )
            if not moved:
                await db.rollback()
                return False

            await close_open_requests(
                db, broadcast_id, RequestStatus.EXPIRED, Actor.SYSTEM,
                BroadcastEventType.REQUEST_EXPIRED, reason, now,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return True

    async def mark_cancelled(
        self,
        db: AsyncSession,
        broadcast_id: str,
        reason: str | None = None,
        actor: Actor = Actor.CUSTOMER,
        actor_id: str | None = None,
    ) -> Broadcast:
        """Withdraw an active broadcast and cancel every open request under it."""
        now = self.clock.now()
        broadcast = await load_broadcast(db, broadcast_id)
        if broadcast.status == BroadcastStatus.COMPLETED.value:
            raise RaceLostError("Already resolved: this order was already decided")

        try:
            moved = await transition_broadcast(
                db, broadcast, BroadcastStatus.CANCELLED, actor,
                BroadcastEventType.BROADCAST_CANCELLED, now,
                actor_id=actor_id,
                values={
                    "cancelled_at": now,
                    "cancelled_by": actor.value,
                    "cancel_reason": reason,
                },
                data={"reason": reason},
            )
            if not moved:
                raise await self._stale_broadcast_error(db, broadcast_id)

            await close_open_requests(
                db, broadcast_id, RequestStatus.CANCELLED, actor,
                BroadcastEventType.REQUEST_CANCELLED, reason or "broadcast_cancelled", now,
                actor_id=actor_id,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        return await self.get_broadcast(db, broadcast_id)

    async def _stale_broadcast_error(self, db: AsyncSession, broadcast_id: str) -> Exception:
        await db.rollback()
        current = await load_broadcast(db, broadcast_id)
        if current.status == BroadcastStatus.COMPLETED.value:
            return RaceLostError("Already resolved: this order was already decided")
        return InvalidStateError(
            f"Broadcast is already {current.status}", current_status=current.status
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_broadcast(self, db: AsyncSession, broadcast_id: str) -> Broadcast:
        """Broadcast with requests and their line items eagerly loaded."""
        result = await db.execute(
            select(Broadcast)
            .where(Broadcast.id == broadcast_id)
            .options(selectinload(Broadcast.requests).selectinload(BroadcastRequest.line_items))
            .execution_options(populate_existing=True)
        )
        broadcast = result.scalar_one_or_none()
        if broadcast is None:
            raise NotFoundError(f"Broadcast {broadcast_id} not found")
        return broadcast

    async def list_requests(self, db: AsyncSession, broadcast_id: str) -> list[BroadcastRequest]:
        """Requests of a broadcast, cheapest quote first, unpriced last."""
        result = await db.execute(
            select(BroadcastRequest)
            .where(BroadcastRequest.broadcast_id == broadcast_id)
            .options(selectinload(BroadcastRequest.line_items))
            .order_by(
                BroadcastRequest.total.asc().nulls_last(),
                BroadcastRequest.created_at.asc(),
            )
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_customer_broadcasts(
        self,
        db: AsyncSession,
        customer_id: str,
        active_only: bool = False,
        limit: int = 20,
    ) -> list[Broadcast]:
        query = select(Broadcast).where(Broadcast.customer_id == customer_id)
        if active_only:
            query = query.where(Broadcast.status == BroadcastStatus.ACTIVE.value)
        query = query.order_by(Broadcast.created_at.desc()).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def count_active_broadcasts(self, db: AsyncSession, customer_id: str) -> int:
        result = await db.execute(
            select(func.count(Broadcast.id)).where(
                Broadcast.customer_id == customer_id,
                Broadcast.status == BroadcastStatus.ACTIVE.value,
            )
        )
        return result.scalar_one()

    async def list_events(self, db: AsyncSession, broadcast_id: str) -> list[BroadcastEvent]:
        """Audit timeline, oldest first."""
        result = await db.execute(
            select(BroadcastEvent)
            .where(BroadcastEvent.broadcast_id == broadcast_id)
            .order_by(BroadcastEvent.created_at.asc())
        )
        return list(result.scalars().all())
