"""Resolution Engine — commits one winning quote for a broadcast.

``approve_quote`` runs as a single transaction:

1. re-read the broadcast; it must be active
2. re-read the request; it must be priced and its quote still fresh
3. broadcast active -> completed, compare-and-set on its status
4. request priced -> customer_approved
5. bridge: confirm the winner's draft order
6. every other pending/priced request -> cancelled, draft orders cancelled

The broadcast row is always written before any of its requests, matching
the ledger's expire and cancel paths.

Two approvals racing on the same broadcast can both pass steps 1-2. Only
one can win the compare-and-set in step 3; the other rolls back and
reports ``already_resolved``. Losers never retry.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from order_broadcast.domain.enums import (
    Actor,
    BroadcastEventType,
    BroadcastStatus,
    RequestStatus,
)
from order_broadcast.domain.errors import (
    InvalidStateError,
    NotFoundError,
    RaceLostError,
    StaleQuoteError,
)
from order_broadcast.domain.models import Broadcast, BroadcastRequest
from order_broadcast.infra.clock import as_utc, system_clock
from order_broadcast.services.broadcast_ledger import (
    close_open_requests,
    load_broadcast,
    transition_broadcast,
    transition_request,
)
from order_broadcast.services.order_bridge import enqueue_order_confirmed

logger = logging.getLogger(__name__)

_ALREADY_RESOLVED = "Already resolved: this order was already decided"
_STALE_QUOTE = "This quote has expired; please choose another quote"


class ResolutionEngine:
    """Customer-facing winner resolution."""

    def __init__(self, clock=system_clock):
        self.clock = clock

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

    def _check_approvable(self, broadcast: Broadcast, request: BroadcastRequest, now) -> None:
        """Raise unless *request* can win *broadcast* at *now*."""
        # A loser whose own request was cancelled by the winner must still
        # hear "already resolved", so the broadcast is checked first.
        if broadcast.status == BroadcastStatus.COMPLETED.value:
            raise RaceLostError(_ALREADY_RESOLVED)
        # Expired or cancelled broadcasts report their own status, not the quote's.
        if broadcast.status != BroadcastStatus.ACTIVE.value:
            raise InvalidStateError(
                f"Broadcast is {broadcast.status}; quotes can no longer be approved",
                current_status=broadcast.status,
            )

        if request.status == RequestStatus.EXPIRED.value and request.priced_at is not None:
            raise StaleQuoteError(_STALE_QUOTE)
        if request.status != RequestStatus.PRICED.value:
            raise InvalidStateError(
                f"Request is {request.status}; only priced quotes can be approved",
                current_status=request.status,
            )
        expires = as_utc(request.pricing_expires_at)
        if expires is None or now > expires:
            raise StaleQuoteError(_STALE_QUOTE)

    async def _explain_lost_update(
        self, db: AsyncSession, broadcast_id: str, request_id: str, now
    ) -> Exception:
        """Work out why a conditional update matched no row."""
        await db.rollback()
        broadcast = await load_broadcast(db, broadcast_id)
        request = await self._load_request(db, request_id)
        try:
            self._check_approvable(broadcast, request, now)
        except (RaceLostError, InvalidStateError, StaleQuoteError) as e:
            return e
        return RaceLostError(_ALREADY_RESOLVED)

    async def _cancel_siblings(
        self,
        db: AsyncSession,
        broadcast_id: str,
        winner_id: str,
        now,
        actor_id: str | None,
    ) -> list[BroadcastRequest]:
        return await close_open_requests(
            db, broadcast_id, RequestStatus.CANCELLED, Actor.CUSTOMER,
            BroadcastEventType.REQUEST_CANCELLED, "another_quote_approved", now,
            actor_id=actor_id,
            exclude_request_id=winner_id,
        )

    async def approve_quote(
        self,
        db: AsyncSession,
        broadcast_id: str,
        request_id: str,
        customer_id: str | None = None,
    ) -> Broadcast:
        """Fix *request_id* as the winner of *broadcast_id*.

        Raises StaleQuoteError if the quote's validity window has closed,
        RaceLostError if the broadcast was already completed, and
        InvalidStateError for any other disallowed state.
        """
        now = self.clock.now()

        try:
            # Steps 1-2
            broadcast = await load_broadcast(db, broadcast_id)
            request = await self._load_request(db, request_id)
            if request.broadcast_id != broadcast_id:
                raise NotFoundError(f"Request {request_id} does not belong to broadcast {broadcast_id}")
            self._check_approvable(broadcast, request, now)

            # Step 3
            completed = await transition_broadcast(
                db, broadcast, BroadcastStatus.COMPLETED, Actor.CUSTOMER,
                BroadcastEventType.BROADCAST_COMPLETED, now,
                actor_id=customer_id,
                values={"completed_at": now, "winning_request_id": request_id},
                data={"winning_request_id": request_id, "total": str(request.total)},
            )
            if not completed:
                raise await self._explain_lost_update(db, broadcast_id, request_id, now)

            # Step 4
            approved = await transition_request(
                db, request, RequestStatus.CUSTOMER_APPROVED, Actor.CUSTOMER,
                BroadcastEventType.QUOTE_APPROVED, now,
                actor_id=customer_id,
                values={"responded_at": now},
            )
            if not approved:
                raise await self._explain_lost_update(db, broadcast_id, request_id, now)

            # Step 5
            enqueue_order_confirmed(db, request, now)

            # Step 6
            cancelled = await self._cancel_siblings(db, broadcast_id, request_id, now, customer_id)

            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "Broadcast %s resolved: winner=%s total=%s, %d sibling(s) cancelled",
            broadcast_id, request_id, request.total, len(cancelled),
        )
        return broadcast
