"""Quoting Service: merchants price pending requests, customers reject quotes.

A quote is immutable once submitted: totals are computed here, stored with
the request, and never recomputed. Changing a price means a new quoting
cycle, not an edit.
"""

import logging
import uuid
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from order_broadcast.app.config import Settings, get_settings
from order_broadcast.domain.enums import (
    Actor,
    AvailabilityStatus,
    BroadcastEventType,
    BroadcastStatus,
    RequestStatus,
)
from order_broadcast.domain.errors import (
    InvalidStateError,
    NotFoundError,
    PreconditionError,
    TooLateToQuoteError,
)
from order_broadcast.domain.models import BroadcastRequest, QuoteLineItem
from order_broadcast.domain.schemas import LineItemInput
from order_broadcast.infra.clock import as_utc, system_clock
from order_broadcast.services.broadcast_ledger import load_broadcast, transition_request
from order_broadcast.services.order_bridge import (
    enqueue_draft_order_requested,
    enqueue_order_cancelled,
)

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")


def money(value) -> Decimal:
    """Round to cents, half-up."""
    return Decimal(value).quantize(_CENTS, rounding=ROUND_HALF_UP)


def price_line_items(items: list[LineItemInput]) -> tuple[list[dict], Decimal]:
    """Validate quoted lines and compute their totals.

    Returns (line rows, subtotal). Available lines charge quantity x unit
    price, substituted lines charge the substitute's total, unavailable
    lines charge nothing.
    """
    if not items:
        raise PreconditionError("A quote needs at least one line item")

    rows: list[dict] = []
    subtotal = Decimal("0")
    for position, item in enumerate(items):
        if not item.item_name or not item.item_name.strip():
            raise PreconditionError(f"Line {position + 1}: item name is required")
        if item.quantity <= 0:
            raise PreconditionError(f"Line {position + 1}: quantity must be positive")
        if item.unit_price < 0:
            raise PreconditionError(f"Line {position + 1}: unit price cannot be negative")

        substituted = item.availability_status == AvailabilityStatus.SUBSTITUTED
        has_substitute = any(
            v is not None
            for v in (item.substitute_name, item.substitute_unit_price, item.substitute_quantity)
        )
        if substituted and (not item.substitute_name or item.substitute_unit_price is None):
            raise PreconditionError(
                f"Line {position + 1}: substituted items need a substitute name and price"
            )
        if not substituted and has_substitute:
            raise PreconditionError(
                f"Line {position + 1}: substitute details are only allowed on substituted items"
            )

        line_total = money(item.quantity * item.unit_price)
        substitute_total = None
        if substituted:
            substitute_qty = item.substitute_quantity or item.quantity
            substitute_total = money(substitute_qty * item.substitute_unit_price)
            charged = substitute_total
        elif item.availability_status == AvailabilityStatus.UNAVAILABLE:
            line_total = Decimal("0.00")
            charged = line_total
        else:
            charged = line_total

        subtotal += charged
        rows.append({
            "display_order": position,
            "original_text": item.original_text,
            "item_name": item.item_name.strip(),
            "unit_type": item.unit_type.value if item.unit_type else None,
            "quantity": item.quantity,
            "unit_price": money(item.unit_price),
            "total_price": line_total,
            "availability_status": item.availability_status.value,
            "substitute_name": item.substitute_name if substituted else None,
            "substitute_quantity": item.substitute_quantity if substituted else None,
            "substitute_unit_price": money(item.substitute_unit_price) if substituted else None,
            "substitute_total_price": substitute_total,
            "merchant_notes": item.notes,
        })

    return rows, money(subtotal)


class QuotingService:
    """Request Ledger operations: quote submission, rejection and reads."""

    def __init__(self, clock=system_clock, settings: Settings | None = None):
        self.clock = clock
        self.settings = settings or get_settings()

    async def _load_request(self, db: AsyncSession, request_id: str) -> BroadcastRequest:
        result = await db.execute(
            select(BroadcastRequest)
            .where(BroadcastRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFoundError(f"Request {request_id} not found")
        return request

    # ------------------------------------------------------------------
    # Quote submission
    # ------------------------------------------------------------------

    async def submit_quote(
        self,
        db: AsyncSession,
        request_id: str,
        items: list[LineItemInput],
        delivery_fee: Decimal = Decimal("0"),
        merchant_id: str | None = None,
        validity_minutes: int | None = None,
        notes: str | None = None,
        estimated_preparation_minutes: int | None = None,
    ) -> BroadcastRequest:
        """Attach a priced line-item set to a pending request (pending -> priced)."""
        now = self.clock.now()
        request = await self._load_request(db, request_id)
        broadcast = await load_broadcast(db, request.broadcast_id)
        if merchant_id is not None and request.merchant_id != merchant_id:
            raise NotFoundError(f"Request {request_id} not found")

        if request.status != RequestStatus.PENDING.value:
            raise InvalidStateError(
                f"Request is {request.status}; only pending requests can be quoted",
                current_status=request.status,
            )
        if now >= as_utc(broadcast.pricing_deadline):
            raise TooLateToQuoteError(
                "Too late to quote: the pricing deadline has passed",
                current_status=request.status,
            )
        if broadcast.status != BroadcastStatus.ACTIVE.value:
            raise TooLateToQuoteError(
                f"Too late to quote: the broadcast is {broadcast.status}",
                current_status=broadcast.status,
            )

        if not items:
            raise InvalidStateError(
                "A quote needs at least one line item", current_status=request.status
            )
        if delivery_fee is None or delivery_fee < 0:
            raise PreconditionError("Delivery fee cannot be negative")
        validity = (
            self.settings.default_quote_validity_minutes
            if validity_minutes is None
            else validity_minutes
        )
        if validity <= 0:
            raise PreconditionError("Quote validity window must be positive")

        rows, subtotal = price_line_items(items)
        delivery_fee = money(delivery_fee)
        total = money(subtotal + delivery_fee)
        order_reference = str(uuid.uuid4())

        try:
            moved = await transition_request(
                db, request, RequestStatus.PRICED, Actor.MERCHANT,
                BroadcastEventType.QUOTE_SUBMITTED, now,
                actor_id=request.merchant_id,
                values={
                    "items_count": len(rows),
                    "subtotal": subtotal,
                    "delivery_fee": delivery_fee,
                    "total": total,
                    "merchant_notes": notes,
                    "estimated_preparation_minutes": estimated_preparation_minutes,
                    "priced_at": now,
                    "pricing_expires_at": now + timedelta(minutes=validity),
                    "order_reference": order_reference,
                },
                data={"total": str(total), "validity_minutes": validity},
            )
            if not moved:
                # The sweeper expired it between our read and write.
                await db.rollback()
                current = await self._load_request(db, request_id)
                if current.status == RequestStatus.EXPIRED.value:
                    raise TooLateToQuoteError(
                        "Too late to quote: the request has expired",
                        current_status=current.status,
                    )
                raise InvalidStateError(
                    f"Request is {current.status}; only pending requests can be quoted",
                    current_status=current.status,
                )

            for row in rows:
                db.add(QuoteLineItem(request_id=request_id, created_at=now, **row))
            enqueue_draft_order_requested(db, request, rows, now)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "Quote submitted: request=%s merchant=%s total=%s expires=%s",
            request_id, request.merchant_id, total, request.pricing_expires_at,
        )
        return await self.get_request(db, request_id)

    # ------------------------------------------------------------------
    # Customer rejection
    # ------------------------------------------------------------------

    async def reject_quote(
        self,
        db: AsyncSession,
        request_id: str,
        reason: str | None = None,
        customer_id: str | None = None,
    ) -> BroadcastRequest:
        """Customer declines one quote. The broadcast stays open for the others."""
        now = self.clock.now()
        request = await self._load_request(db, request_id)
        if request.status != RequestStatus.PRICED.value:
            raise InvalidStateError(
                f"Request is {request.status}; only priced quotes can be rejected",
                current_status=request.status,
            )

        try:
            moved = await transition_request(
                db, request, RequestStatus.CUSTOMER_REJECTED, Actor.CUSTOMER,
                BroadcastEventType.QUOTE_REJECTED, now,
                actor_id=customer_id,
                values={"responded_at": now, "rejection_reason": reason},
                data={"reason": reason},
            )
            if not moved:
                await db.rollback()
                current = await self._load_request(db, request_id)
                raise InvalidStateError(
                    f"Request is {current.status}; only priced quotes can be rejected",
                    current_status=current.status,
                )
            enqueue_order_cancelled(db, request, reason or "customer_rejected", now)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        return await self.get_request(db, request_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_request(self, db: AsyncSession, request_id: str) -> BroadcastRequest:
        result = await db.execute(
            select(BroadcastRequest)
            .where(BroadcastRequest.id == request_id)
            .options(
                selectinload(BroadcastRequest.line_items),
                selectinload(BroadcastRequest.broadcast),
            )
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFoundError(f"Request {request_id} not found")
        return request

    async def list_merchant_requests(
        self,
        db: AsyncSession,
        merchant_id: str,
        statuses: list[RequestStatus] | None = None,
        limit: int = 50,
    ) -> list[BroadcastRequest]:
        """A merchant's requests, oldest first when filtered to pending work."""
        query = (
            select(BroadcastRequest)
            .where(BroadcastRequest.merchant_id == merchant_id)
            .options(
                selectinload(BroadcastRequest.line_items),
                selectinload(BroadcastRequest.broadcast),
            )
        )
        if statuses:
            query = query.where(BroadcastRequest.status.in_([s.value for s in statuses]))
        if statuses == [RequestStatus.PENDING]:
            query = query.order_by(BroadcastRequest.created_at.asc())
        else:
            query = query.order_by(BroadcastRequest.created_at.desc())
        result = await db.execute(query.limit(limit))
        return list(result.scalars().all())

    async def count_pending_requests(self, db: AsyncSession, merchant_id: str) -> int:
        result = await db.execute(
            select(func.count(BroadcastRequest.id)).where(
                BroadcastRequest.merchant_id == merchant_id,
                BroadcastRequest.status == RequestStatus.PENDING.value,
            )
        )
        return result.scalar_one()
