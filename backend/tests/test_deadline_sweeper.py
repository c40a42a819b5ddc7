"""Tests for the DeadlineSweeper expiry jobs."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from order_broadcast.domain.enums import (
    BridgeEventType,
    BroadcastEventType,
    BroadcastStatus,
    RequestStatus,
)
from order_broadcast.domain.models import BridgeOutboxEvent
from order_broadcast.services.deadline_sweeper import DeadlineSweeper


async def _bridge_events(db, event_type: BridgeEventType) -> list[BridgeOutboxEvent]:
    result = await db.execute(
        select(BridgeOutboxEvent).where(BridgeOutboxEvent.event_type == event_type.value)
    )
    return list(result.scalars().all())


class TestBroadcastExpiry:

    @pytest.mark.asyncio
    async def test_expires_broadcast_and_every_open_request(
        self, db_session, ledger, quoting, sweeper, make_broadcast, make_items, clock
    ):
        broadcast = await make_broadcast(merchant_ids=["m-1", "m-2"])
        priced_id = broadcast.requests[0].id
        await quoting.submit_quote(db_session, priced_id, make_items())

        clock.set(broadcast.expires_at + timedelta(seconds=1))
        result = await sweeper.sweep(db_session)

        assert result.expired_broadcasts == 1
        stored = await ledger.get_broadcast(db_session, broadcast.id)
        assert stored.status == BroadcastStatus.EXPIRED.value
        assert {r.status for r in stored.requests} == {RequestStatus.EXPIRED.value}

        # The priced request's draft order is cancelled; nothing is ever confirmed
        cancels = await _bridge_events(db_session, BridgeEventType.ORDER_CANCELLED)
        assert [e.request_id for e in cancels] == [priced_id]
        assert await _bridge_events(db_session, BridgeEventType.ORDER_CONFIRMED) == []

    @pytest.mark.asyncio
    async def test_nothing_expires_before_deadline(self, db_session, sweeper, make_broadcast, clock):
        broadcast = await make_broadcast()
        clock.set(broadcast.expires_at)

        result = await sweeper.sweep(db_session)

        assert result.expired_broadcasts == 0

    @pytest.mark.asyncio
    async def test_sweeping_twice_changes_nothing_more(self, db_session, ledger, sweeper, make_broadcast, clock):
        broadcast = await make_broadcast()
        clock.set(broadcast.expires_at + timedelta(minutes=1))

        first = await sweeper.sweep(db_session)
        second = await sweeper.sweep(db_session)

        assert first.expired_broadcasts == 1
        assert second.as_dict() == {
            "expired_broadcasts": 0,
            "expired_requests": 0,
            "stale_quotes": 0,
            "relabelled_quotes": 0,
            "skipped": 0,
        }
        events = await ledger.list_events(db_session, broadcast.id)
        assert [e.event_type for e in events].count(BroadcastEventType.BROADCAST_EXPIRED.value) == 1

    @pytest.mark.asyncio
    async def test_completed_broadcast_is_never_expired(
        self, db_session, ledger, quoting, resolver, sweeper, make_broadcast, make_items, clock
    ):
        broadcast = await make_broadcast(merchant_ids=["m-1"])
        request_id = broadcast.requests[0].id
        await quoting.submit_quote(db_session, request_id, make_items())
        await resolver.approve_quote(db_session, broadcast.id, request_id)

        clock.advance(days=3)
        await sweeper.sweep(db_session)

        stored = await ledger.get_broadcast(db_session, broadcast.id)
        assert stored.status == BroadcastStatus.COMPLETED.value
        assert stored.requests[0].status == RequestStatus.CUSTOMER_APPROVED.value


class TestPricingDeadline:

    @pytest.mark.asyncio
    async def test_unpriced_requests_expire_at_pricing_deadline(
        self, db_session, ledger, quoting, sweeper, make_broadcast, make_items, clock
    ):
        broadcast = await make_broadcast(merchant_ids=["m-1", "m-2"])
        priced_id, pending_id = broadcast.requests[0].id, broadcast.requests[1].id
        await quoting.submit_quote(db_session, priced_id, make_items())

        clock.set(broadcast.pricing_deadline + timedelta(seconds=1))
        result = await sweeper.sweep(db_session)

        assert result.expired_requests == 1
        assert result.expired_broadcasts == 0
        stored = await ledger.get_broadcast(db_session, broadcast.id)
        statuses = {r.id: r.status for r in stored.requests}
        assert statuses[pending_id] == RequestStatus.EXPIRED.value
        # A priced quote survives its broadcast's pricing deadline
        assert statuses[priced_id] == RequestStatus.PRICED.value
        assert stored.status == BroadcastStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_unquoted_broadcast_expires_early_when_enabled(
        self, db_session, ledger, make_broadcast, clock, settings
    ):
        broadcast = await make_broadcast(merchant_ids=["m-1", "m-2"])
        early = settings.model_copy(update={"sweeper_expire_unquoted_broadcasts": True})
        sweeper = DeadlineSweeper(clock=clock, settings=early, ledger=ledger)

        clock.set(broadcast.pricing_deadline + timedelta(seconds=1))
        result = await sweeper.sweep(db_session)

        assert result.expired_requests == 2
        assert result.expired_broadcasts == 1
        stored = await ledger.get_broadcast(db_session, broadcast.id)
        assert stored.status == BroadcastStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_unquoted_broadcast_waits_for_expiry_by_default(self, db_session, ledger, sweeper, make_broadcast, clock):
        broadcast = await make_broadcast()
        clock.set(broadcast.pricing_deadline + timedelta(seconds=1))

        await sweeper.sweep(db_session)

        stored = await ledger.get_broadcast(db_session, broadcast.id)
        assert stored.status == BroadcastStatus.ACTIVE.value


class TestStaleQuotes:

    @pytest.mark.asyncio
    async def test_stale_quotes_are_counted_not_relabelled_by_default(
        self, db_session, quoting, sweeper, make_broadcast, make_items, clock
    ):
        broadcast = await make_broadcast()
        request_id = broadcast.requests[0].id
        await quoting.submit_quote(db_session, request_id, make_items(), validity_minutes=5)
        clock.advance(minutes=6)

        result = await sweeper.sweep(db_session)

        assert result.stale_quotes == 1
        assert result.relabelled_quotes == 0
        stored = await quoting.get_request(db_session, request_id)
        assert stored.status == RequestStatus.PRICED.value

    @pytest.mark.asyncio
    async def test_relabels_stale_quotes_when_enabled(
        self, db_session, ledger, quoting, make_broadcast, make_items, clock, settings
    ):
        broadcast = await make_broadcast()
        request_id = broadcast.requests[0].id
        await quoting.submit_quote(db_session, request_id, make_items(), validity_minutes=5)
        clock.advance(minutes=6)
        relabel = settings.model_copy(update={"sweeper_relabel_stale_quotes": True})

        result = await DeadlineSweeper(clock=clock, settings=relabel, ledger=ledger).sweep(db_session)

        assert result.relabelled_quotes == 1
        stored = await quoting.get_request(db_session, request_id)
        assert stored.status == RequestStatus.EXPIRED.value
        cancels = await _bridge_events(db_session, BridgeEventType.ORDER_CANCELLED)
        assert [e.payload["reason"] for e in cancels] == ["quote_expired"]
        events = await ledger.list_events(db_session, broadcast.id)
        assert BroadcastEventType.QUOTE_STALE.value in [e.event_type for e in events]
