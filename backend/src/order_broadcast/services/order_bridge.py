"""Order/Commission bridge — outbound events for downstream settlement.

The ledger never calls the order system inline. Each transition that the
order system must hear about writes a ``BridgeOutboxEvent`` in the same
transaction; ``BridgeDispatcher`` delivers those rows afterwards and retries
failures with exponential backoff. The committed ledger is the source of
truth, so a rejected confirm/cancel call never unwinds a resolution.

Three events only:
- ``draft_order_requested`` on quote submission
- ``order_confirmed`` when a request wins
- ``order_cancelled`` for any request with a draft order that did not win
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

import httpx
from sqlalchemy import case, select
from sqlalchemy.ext.asyncio import AsyncSession

from order_broadcast.app.config import Settings, get_settings
from order_broadcast.domain.enums import BridgeEventType, OutboxStatus
from order_broadcast.domain.models import BridgeOutboxEvent, BroadcastRequest
from order_broadcast.infra.clock import as_utc, system_clock

logger = logging.getLogger(__name__)

_MAX_BACKOFF = timedelta(hours=1)


class BridgeDeliveryError(Exception):
    """Raised by a bridge when the order system did not accept an event."""


def _money(value) -> str | None:
    if value is None:
        return None
    return str(Decimal(value).quantize(Decimal("0.01")))


# ---------------------------------------------------------------------------
# Enqueue (called inside ledger transactions)
# ---------------------------------------------------------------------------


def _enqueue(
    db: AsyncSession,
    event_type: BridgeEventType,
    request: BroadcastRequest,
    payload: dict,
    now: datetime,
) -> BridgeOutboxEvent:
    event = BridgeOutboxEvent(
        event_type=event_type.value,
        request_id=request.id,
        order_reference=request.order_reference,
        payload=payload,
        status=OutboxStatus.PENDING.value,
        attempts=0,
        next_attempt_at=now,
        created_at=now,
    )
    db.add(event)
    return event


def enqueue_draft_order_requested(
    db: AsyncSession,
    request: BroadcastRequest,
    line_items: list[dict],
    now: datetime,
) -> BridgeOutboxEvent:
    """Ask the order system to open a draft order for a freshly priced quote."""
    payload = {
        "request_id": request.id,
        "broadcast_id": request.broadcast_id,
        "merchant_id": request.merchant_id,
        "order_reference": request.order_reference,
        "line_items": [
            {
                "original_text": item["original_text"],
                "item_name": item["item_name"],
                "unit_type": item["unit_type"],
                "quantity": str(item["quantity"]),
                "unit_price": _money(item["unit_price"]),
                "total_price": _money(item["total_price"]),
                "availability_status": item["availability_status"],
                "substitute_name": item["substitute_name"],
                "substitute_total_price": _money(item["substitute_total_price"]),
            }
            for item in line_items
        ],
        "subtotal": _money(request.subtotal),
        "delivery_fee": _money(request.delivery_fee),
        "total": _money(request.total),
    }
    return _enqueue(db, BridgeEventType.DRAFT_ORDER_REQUESTED, request, payload, now)


def enqueue_order_confirmed(
    db: AsyncSession, request: BroadcastRequest, now: datetime
) -> BridgeOutboxEvent:
    payload = {"order_reference": request.order_reference, "request_id": request.id}
    return _enqueue(db, BridgeEventType.ORDER_CONFIRMED, request, payload, now)


def enqueue_order_cancelled(
    db: AsyncSession, request: BroadcastRequest, reason: str, now: datetime
) -> BridgeOutboxEvent | None:
    """Cancel the request's draft order. No-op for requests that never priced."""
    if not request.order_reference:
        return None
    payload = {
        "order_reference": request.order_reference,
        "request_id": request.id,
        "reason": reason,
    }
    return _enqueue(db, BridgeEventType.ORDER_CANCELLED, request, payload, now)


# ---------------------------------------------------------------------------
# Bridges
# ---------------------------------------------------------------------------


class OrderBridge:
    """Interface to the downstream Order/Commission system."""

    async def send(self, event: BridgeOutboxEvent) -> None:
        raise NotImplementedError


class LoggingOrderBridge(OrderBridge):
    """Used when no order system URL is configured (local dev)."""

    async def send(self, event: BridgeOutboxEvent) -> None:
        logger.info(
            "Order bridge (log only): %s order=%s request=%s",
            event.event_type,
            event.order_reference,
            event.request_id,
        )


class HttpOrderBridge(OrderBridge):
    """Posts bridge events to the order system over HTTP.

    The outbox row id is sent as ``Idempotency-Key`` so redelivery after a
    timeout cannot create a second draft or double-cancel.
    """

    def __init__(self, base_url: str, timeout: float = 10.0):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def _path_for(self, event: BridgeOutboxEvent) -> str:
        if event.event_type == BridgeEventType.DRAFT_ORDER_REQUESTED.value:
            return "/draft-orders"
        if event.event_type == BridgeEventType.ORDER_CONFIRMED.value:
            return f"/orders/{event.order_reference}/confirm"
        if event.event_type == BridgeEventType.ORDER_CANCELLED.value:
            return f"/orders/{event.order_reference}/cancel"
        raise BridgeDeliveryError(f"Unknown bridge event type {event.event_type}")

    async def send(self, event: BridgeOutboxEvent) -> None:
        path = self._path_for(event)
        try:
            async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout) as client:
                resp = await client.post(
                    path,
                    json=event.payload,
                    headers={"Idempotency-Key": event.id},
                )
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise BridgeDeliveryError(
                f"Order system returned {exc.response.status_code} for {path}"
            ) from exc
        except httpx.RequestError as exc:
            raise BridgeDeliveryError(f"Order system unreachable: {exc}") from exc


def build_order_bridge(settings: Settings | None = None) -> OrderBridge:
    """Pick the bridge implementation from configuration."""
    settings = settings or get_settings()
    if settings.order_bridge_url:
        return HttpOrderBridge(settings.order_bridge_url, settings.order_bridge_timeout_seconds)
    return LoggingOrderBridge()


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class BridgeDispatcher:
    """Delivers pending outbox rows at least once."""

    def __init__(self, bridge: OrderBridge, clock=system_clock, settings: Settings | None = None):
        self.bridge = bridge
        self.clock = clock
        self.settings = settings or get_settings()

    def _backoff(self, attempts: int) -> timedelta:
        delay = timedelta(seconds=self.settings.bridge_retry_base_seconds * (2 ** (attempts - 1)))
        return min(delay, _MAX_BACKOFF)

    def _record_failure(self, event: BridgeOutboxEvent, error: str, now: datetime, stats: dict) -> None:
        event.last_error = error
        if event.attempts >= self.settings.bridge_max_attempts:
            event.status = OutboxStatus.FAILED.value
            stats["failed"] += 1
            logger.error(
                "Bridge event %s (%s, order=%s) dead-lettered after %d attempts: %s",
                event.id, event.event_type, event.order_reference, event.attempts, error,
            )
        else:
            event.next_attempt_at = now + self._backoff(event.attempts)
            stats["retrying"] += 1
            logger.warning(
                "Bridge event %s (%s) failed, attempt %d, retry at %s: %s",
                event.id, event.event_type, event.attempts,
                as_utc(event.next_attempt_at).isoformat(), error,
            )

    async def deliver_pending(self, db: AsyncSession, limit: int = 100) -> dict:
        """Send due events in creation order. Returns delivery counts."""
        now = self.clock.now()
        pending = BridgeOutboxEvent.status == OutboxStatus.PENDING.value
        # An order with a backed-off event waits as a whole, so nothing overtakes it.
        waiting_orders = select(BridgeOutboxEvent.order_reference).where(
            pending, BridgeOutboxEvent.next_attempt_at > now
        )
        result = await db.execute(
            select(BridgeOutboxEvent)
            .where(
                pending,
                BridgeOutboxEvent.next_attempt_at <= now,
                BridgeOutboxEvent.order_reference.not_in(waiting_orders),
            )
            .order_by(
                BridgeOutboxEvent.created_at.asc(),
                case(
                    (BridgeOutboxEvent.event_type == BridgeEventType.DRAFT_ORDER_REQUESTED.value, 0),
                    else_=1,
                ),
            )
            .limit(limit)
        )
        events = result.scalars().all()

        stats = {"delivered": 0, "retrying": 0, "failed": 0}
        blocked_orders: set[str] = set()

        for event in events:
            # Keep per-order ordering: never confirm/cancel ahead of an undelivered draft.
            if event.order_reference in blocked_orders:
                continue

            event.attempts = (event.attempts or 0) + 1
            try:
                await self.bridge.send(event)
            except BridgeDeliveryError as exc:
                blocked_orders.add(event.order_reference)
                self._record_failure(event, str(exc), now, stats)
                continue
            except Exception as exc:
                blocked_orders.add(event.order_reference)
                logger.exception("Unexpected error sending bridge event %s", event.id)
                self._record_failure(event, f"{type(exc).__name__}: {exc}", now, stats)
                continue

            event.status = OutboxStatus.DELIVERED.value
            event.delivered_at = now
            event.last_error = None
            stats["delivered"] += 1

        if events:
            await db.commit()
        return stats
