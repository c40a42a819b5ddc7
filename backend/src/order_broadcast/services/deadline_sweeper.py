"""Deadline sweeper: durably expires broadcasts and requests past their deadlines.

Every pass re-evaluates stored timestamps against the clock; nothing is
queued in memory, so a pass that dies halfway is safe to rerun. A
conditional update that matches no row means a concurrent resolution or
cancellation already moved the entity: that is counted as skipped, not
raised.

Jobs (in order):
1. active broadcasts past ``expires_at`` -> expired, cascading to open requests
2. pending requests past their broadcast's ``pricing_deadline`` -> expired
3. priced requests past ``pricing_expires_at`` -> counted as stale; relabelled
   expired only when ``sweeper_relabel_stale_quotes`` is on. The resolver's
   freshness check is what actually blocks approval.
4. optional: active broadcasts past ``pricing_deadline`` with no live quote
   left -> expired early (``sweeper_expire_unquoted_broadcasts``)
"""

import logging
from dataclasses import asdict, dataclass

from sqlalchemy import and_, exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from order_broadcast.app.config import Settings, get_settings
from order_broadcast.domain.enums import (
    Actor,
    BroadcastEventType,
    BroadcastStatus,
    RequestStatus,
)
from order_broadcast.domain.models import Broadcast, BroadcastRequest
from order_broadcast.infra.clock import system_clock
from order_broadcast.services.broadcast_ledger import BroadcastLedger, transition_request
from order_broadcast.services.order_bridge import enqueue_order_cancelled

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired_broadcasts: int = 0
    expired_requests: int = 0
    stale_quotes: int = 0
    relabelled_quotes: int = 0
    skipped: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.expired_broadcasts or self.expired_requests or self.relabelled_quotes)

    def as_dict(self) -> dict:
        return asdict(self)


class DeadlineSweeper:
    """Runs the expiry jobs against one session."""

    def __init__(
        self,
        clock=system_clock,
        settings: Settings | None = None,
        ledger: BroadcastLedger | None = None,
    ):
        self.clock = clock
        self.settings = settings or get_settings()
        self.ledger = ledger or BroadcastLedger(clock=clock, settings=self.settings)

    async def sweep(self, db: AsyncSession) -> SweepResult:
        """Run every expiry job once."""
        result = SweepResult()
        await self.expire_overdue_broadcasts(db, result)
        await self.expire_unpriced_requests(db, result)
        await self.handle_stale_quotes(db, result)
        if self.settings.sweeper_expire_unquoted_broadcasts:
            await self.expire_unquoted_broadcasts(db, result)

        if result.changed:
            logger.info("Deadline sweep: %s", result.as_dict())
        return result

    # ------------------------------------------------------------------
    # Job 1: broadcast expiry
    # ------------------------------------------------------------------

    async def expire_overdue_broadcasts(self, db: AsyncSession, result: SweepResult) -> None:
        now = self.clock.now()
        rows = await db.execute(
            select(Broadcast.id).where(
                Broadcast.status == BroadcastStatus.ACTIVE.value,
                Broadcast.expires_at < now,
            )
        )
        for broadcast_id in rows.scalars().all():
            if await self.ledger.mark_expired(db, broadcast_id, reason="broadcast_expired"):
                result.expired_broadcasts += 1
            else:
                result.skipped += 1
                logger.debug("Sweeper: broadcast %s already terminal", broadcast_id)

    # ------------------------------------------------------------------
    # Job 2: pricing deadline
    # ------------------------------------------------------------------

    async def expire_unpriced_requests(self, db: AsyncSession, result: SweepResult) -> None:
        now = self.clock.now()
        rows = await db.execute(
            select(BroadcastRequest)
            .join(Broadcast, Broadcast.id == BroadcastRequest.broadcast_id)
            .where(
                BroadcastRequest.status == RequestStatus.PENDING.value,
                Broadcast.pricing_deadline < now,
            )
            .execution_options(populate_existing=True)
        )
        requests = rows.scalars().all()
        if not requests:
            return

        try:
            for request in requests:
                moved = await transition_request(
                    db, request, RequestStatus.EXPIRED, Actor.SYSTEM,
                    BroadcastEventType.REQUEST_EXPIRED, now,
                    data={"reason": "pricing_deadline_passed"},
                )
                if moved:
                    result.expired_requests += 1
                else:
                    result.skipped += 1
                    logger.debug("Sweeper: request %s no longer pending", request.id)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    # ------------------------------------------------------------------
    # Job 3: stale quotes
    # ------------------------------------------------------------------

    async def handle_stale_quotes(self, db: AsyncSession, result: SweepResult) -> None:
        now = self.clock.now()
        rows = await db.execute(
            select(BroadcastRequest)
            .join(Broadcast, Broadcast.id == BroadcastRequest.broadcast_id)
            .where(
                BroadcastRequest.status == RequestStatus.PRICED.value,
                BroadcastRequest.pricing_expires_at < now,
                Broadcast.status == BroadcastStatus.ACTIVE.value,
            )
            .execution_options(populate_existing=True)
        )
        requests = rows.scalars().all()
        result.stale_quotes += len(requests)
        if not requests or not self.settings.sweeper_relabel_stale_quotes:
            return

        try:
            for request in requests:
                moved = await transition_request(
                    db, request, RequestStatus.EXPIRED, Actor.SYSTEM,
                    BroadcastEventType.QUOTE_STALE, now,
                    data={"reason": "quote_validity_passed"},
                )
                if not moved:
                    result.skipped += 1
                    continue
                enqueue_order_cancelled(db, request, "quote_expired", now)
                result.relabelled_quotes += 1
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    # ------------------------------------------------------------------
    # Job 4: nothing left to approve
    # ------------------------------------------------------------------

    async def expire_unquoted_broadcasts(self, db: AsyncSession, result: SweepResult) -> None:
        now = self.clock.now()
        live_quote = exists().where(
            and_(
                BroadcastRequest.broadcast_id == Broadcast.id,
                BroadcastRequest.status.in_(
                    [RequestStatus.PENDING.value, RequestStatus.PRICED.value]
                ),
            )
        )
        rows = await db.execute(
            select(Broadcast.id).where(
                Broadcast.status == BroadcastStatus.ACTIVE.value,
                Broadcast.pricing_deadline < now,
                ~live_quote,
            )
        )
        for broadcast_id in rows.scalars().all():
            if await self.ledger.mark_expired(db, broadcast_id, reason="no_quotes_received"):
                result.expired_broadcasts += 1
            else:
                result.skipped += 1
