"""SQLAlchemy ORM models for custom-order broadcasting.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime(timezone=True) for timestamps, always written in UTC

Rows are never deleted. Original customer input and the final quoted line
items must stay comparable for dispute review.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from order_broadcast.infra.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Broadcast
# ---------------------------------------------------------------------------


class Broadcast(Base):
    """One customer's competitive-pricing request sent to several merchants."""

    __tablename__ = "broadcasts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    customer_id = Column(String(36), nullable=False, index=True)
    merchant_ids = Column(JSON, nullable=False)  # ordered, fixed at creation

    # Original input (opaque to the core)
    input_type = Column(String(20), nullable=False)  # InputType
    original_text = Column(Text, nullable=True)
    voice_url = Column(String(500), nullable=True)
    transcribed_text = Column(Text, nullable=True)
    image_urls = Column(JSON, nullable=True)
    customer_notes = Column(Text, nullable=True)

    # Fulfilment
    order_type = Column(String(20), nullable=False, default="delivery")  # OrderType
    delivery_address = Column(JSON, nullable=True)

    # Status
    status = Column(String(20), nullable=False, default="active", index=True)  # BroadcastStatus
    pricing_deadline = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    # Resolution
    completed_at = Column(DateTime(timezone=True), nullable=True)
    winning_request_id = Column(String(36), nullable=True)

    # Cancellation
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(20), nullable=True)  # Actor
    cancel_reason = Column(String(500), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)

    # Relationships
    requests = relationship(
        "BroadcastRequest",
        back_populates="broadcast",
        order_by="BroadcastRequest.created_at",
    )
    events = relationship("BroadcastEvent", back_populates="broadcast")


class BroadcastRequest(Base):
    """One merchant's slot within a broadcast."""

    __tablename__ = "broadcast_requests"
    __table_args__ = (
        UniqueConstraint("broadcast_id", "merchant_id", name="uq_broadcast_merchant"),
        Index("ix_broadcast_requests_status_broadcast", "status", "broadcast_id"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    broadcast_id = Column(String(36), ForeignKey("broadcasts.id"), nullable=False, index=True)
    merchant_id = Column(String(36), nullable=False, index=True)

    status = Column(String(30), nullable=False, default="pending")  # RequestStatus

    # Pricing summary (set once, at quote submission)
    items_count = Column(Integer, default=0)
    subtotal = Column(Numeric(12, 2), nullable=True)
    delivery_fee = Column(Numeric(12, 2), nullable=True)
    total = Column(Numeric(12, 2), nullable=True)
    merchant_notes = Column(Text, nullable=True)
    estimated_preparation_minutes = Column(Integer, nullable=True)

    # Quote window
    priced_at = Column(DateTime(timezone=True), nullable=True)
    pricing_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Customer response
    responded_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(String(500), nullable=True)

    # Draft order at the Order/Commission bridge
    order_reference = Column(String(36), nullable=True, unique=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)

    # Relationships
    broadcast = relationship("Broadcast", back_populates="requests")
    line_items = relationship(
        "QuoteLineItem",
        back_populates="request",
        order_by="QuoteLineItem.display_order",
    )


class QuoteLineItem(Base):
    """One product in a merchant's quote. Immutable once the quote is priced."""

    __tablename__ = "quote_line_items"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id = Column(String(36), ForeignKey("broadcast_requests.id"), nullable=False, index=True)
    display_order = Column(Integer, nullable=False, default=0)

    # Customer's words, preserved verbatim for dispute comparison
    original_text = Column(Text, nullable=True)

    # Merchant's match
    item_name = Column(String(200), nullable=False)
    unit_type = Column(String(20), nullable=True)  # UnitType
    quantity = Column(Numeric(10, 3), nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)

    availability_status = Column(String(20), nullable=False, default="available")  # AvailabilityStatus

    # Substitute (only when availability_status = substituted)
    substitute_name = Column(String(200), nullable=True)
    substitute_quantity = Column(Numeric(10, 3), nullable=True)
    substitute_unit_price = Column(Numeric(12, 2), nullable=True)
    substitute_total_price = Column(Numeric(12, 2), nullable=True)

    merchant_notes = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    request = relationship("BroadcastRequest", back_populates="line_items")


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class BroadcastEvent(Base):
    """Immutable audit trail entry for broadcast and request transitions."""

    __tablename__ = "broadcast_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    broadcast_id = Column(String(36), ForeignKey("broadcasts.id"), nullable=False, index=True)
    request_id = Column(String(36), nullable=True)
    event_type = Column(String(50), nullable=False)  # BroadcastEventType
    actor = Column(String(20), nullable=False)  # Actor
    actor_id = Column(String(36), nullable=True)
    from_status = Column(String(30), nullable=True)
    to_status = Column(String(30), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    broadcast = relationship("Broadcast", back_populates="events")


# ---------------------------------------------------------------------------
# Order/Commission bridge outbox
# ---------------------------------------------------------------------------


class BridgeOutboxEvent(Base):
    """Outbound event for the Order/Commission bridge.

    Written in the same transaction as the ledger change that caused it and
    delivered afterwards, at least once.
    """

    __tablename__ = "bridge_outbox"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_type = Column(String(40), nullable=False)  # BridgeEventType
    request_id = Column(String(36), nullable=False, index=True)
    order_reference = Column(String(36), nullable=False)
    payload = Column(JSON, nullable=False)

    status = Column(String(20), nullable=False, default="pending", index=True)  # OutboxStatus
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=False)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
