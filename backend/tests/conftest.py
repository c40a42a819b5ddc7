"""Shared test infrastructure for the order broadcast test suite.

Provides:
- session_factory / db_session: async SQLite sessions over a per-test database file
- clock: FixedClock starting at 2026-01-01 12:00 UTC
- settings: Settings with defaults, ignoring any local .env
- ledger / quoting / resolver / sweeper: services wired to the fixed clock
- make_broadcast: factory for a broadcast with pending requests
- make_items: factory for quote line items
"""

from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from order_broadcast.infra.database import Base
import order_broadcast.domain.models  # noqa: F401

from order_broadcast.app.config import Settings
from order_broadcast.domain.schemas import LineItemInput, OrderInput
from order_broadcast.infra.clock import FixedClock
from order_broadcast.services.broadcast_ledger import BroadcastLedger
from order_broadcast.services.deadline_sweeper import DeadlineSweeper
from order_broadcast.services.quoting_service import QuotingService
from order_broadcast.services.resolution_engine import ResolutionEngine


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def session_factory(tmp_path):
    """Session factory over a fresh SQLite file with all tables created.

    A file (rather than :memory:) lets several sessions see each other's
    commits, which the race tests rely on.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'broadcast.db'}",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def ledger(clock, settings):
    return BroadcastLedger(clock=clock, settings=settings)


@pytest.fixture
def quoting(clock, settings):
    return QuotingService(clock=clock, settings=settings)


@pytest.fixture
def resolver(clock):
    return ResolutionEngine(clock=clock)


@pytest.fixture
def sweeper(clock, settings, ledger):
    return DeadlineSweeper(clock=clock, settings=settings, ledger=ledger)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_broadcast(db_session, ledger):
    """Factory that creates a broadcast with one pending request per merchant.

    Usage:
        broadcast = await make_broadcast(merchant_ids=["m-1", "m-2"])
    """
    async def _factory(
        customer_id: str = "cust-1",
        merchant_ids: list[str] | None = None,
        text: str = "2 kg basmati rice, 1 dozen eggs",
        pricing_deadline=None,
        expires_at=None,
    ):
        return await ledger.create_broadcast(
            db_session,
            customer_id=customer_id,
            merchant_ids=merchant_ids or ["m-1", "m-2", "m-3"],
            order=OrderInput(text=text),
            pricing_deadline=pricing_deadline,
            expires_at=expires_at,
        )

    return _factory


@pytest.fixture
def make_items():
    """Factory for quote line items.

    Usage:
        items = make_items(("Rice", "2", "5.00"), ("Eggs", "12", "0.25"))
    """
    def _factory(*lines) -> list[LineItemInput]:
        lines = lines or (("Basmati rice", "2", "4.50"),)
        return [
            LineItemInput(item_name=name, quantity=Decimal(qty), unit_price=Decimal(price))
            for name, qty, price in lines
        ]

    return _factory

