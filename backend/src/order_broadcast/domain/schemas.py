"""Pydantic v2 schemas for API request/response validation."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from order_broadcast.domain.enums import (
    AvailabilityStatus,
    InputType,
    OrderType,
    UnitType,
)


# ---------------------------------------------------------------------------
# Broadcast input
# ---------------------------------------------------------------------------


class OrderInput(BaseModel):
    """The customer's original order, as produced by the capture pipeline."""

    input_type: InputType = InputType.TEXT
    text: str | None = None
    voice_url: str | None = None
    transcribed_text: str | None = None
    image_urls: list[str] = Field(default_factory=list)
    notes: str | None = None
    order_type: OrderType = OrderType.DELIVERY
    delivery_address: dict | None = None


class BroadcastCreate(BaseModel):
    """Schema for creating a broadcast. Deadlines default from settings."""

    merchant_ids: list[str]
    order: OrderInput
    pricing_deadline: datetime | None = None
    expires_at: datetime | None = None


class BroadcastCancel(BaseModel):
    reason: str | None = None


# ---------------------------------------------------------------------------
# Quote input
# ---------------------------------------------------------------------------


class LineItemInput(BaseModel):
    """One priced line submitted by a merchant."""

    original_text: str | None = None
    item_name: str
    unit_type: UnitType | None = None
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    availability_status: AvailabilityStatus = AvailabilityStatus.AVAILABLE
    substitute_name: str | None = None
    substitute_unit_price: Decimal | None = Field(default=None, ge=0)
    substitute_quantity: Decimal | None = Field(default=None, gt=0)
    notes: str | None = None


class QuoteSubmit(BaseModel):
    """Schema for a merchant attaching a quote to a pending request."""

    items: list[LineItemInput]
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    validity_minutes: int | None = Field(default=None, ge=1, le=24 * 60)
    notes: str | None = None
    estimated_preparation_minutes: int | None = Field(default=None, ge=1, le=480)


class QuoteReject(BaseModel):
    reason: str | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class LineItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    display_order: int
    original_text: str | None = None
    item_name: str
    unit_type: str | None = None
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal
    availability_status: str
    substitute_name: str | None = None
    substitute_quantity: Decimal | None = None
    substitute_unit_price: Decimal | None = None
    substitute_total_price: Decimal | None = None
    merchant_notes: str | None = None


class RequestOut(BaseModel):
    """A merchant slot as shown to customers and merchants."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    broadcast_id: str
    merchant_id: str
    status: str
    items_count: int = 0
    subtotal: Decimal | None = None
    delivery_fee: Decimal | None = None
    total: Decimal | None = None
    merchant_notes: str | None = None
    estimated_preparation_minutes: int | None = None
    priced_at: datetime | None = None
    pricing_expires_at: datetime | None = None
    responded_at: datetime | None = None
    rejection_reason: str | None = None
    order_reference: str | None = None
    line_items: list[LineItemOut] = []

    # Countdown support for presentation layers
    quote_expires_in_seconds: int | None = None
    approvable: bool = False
    allowed_actions: list[str] = []


class BroadcastOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str
    merchant_ids: list[str]
    input_type: str
    original_text: str | None = None
    voice_url: str | None = None
    transcribed_text: str | None = None
    image_urls: list[str] | None = None
    customer_notes: str | None = None
    order_type: str
    delivery_address: dict | None = None
    status: str
    pricing_deadline: datetime
    expires_at: datetime
    completed_at: datetime | None = None
    winning_request_id: str | None = None
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None
    cancel_reason: str | None = None
    created_at: datetime | None = None


class BroadcastDetailOut(BroadcastOut):
    """Broadcast with its requests, cheapest quote first."""

    requests: list[RequestOut] = []


class BroadcastEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    broadcast_id: str
    request_id: str | None = None
    event_type: str
    actor: str
    actor_id: str | None = None
    from_status: str | None = None
    to_status: str | None = None
    data: dict | None = None
    created_at: datetime | None = None


class CountOut(BaseModel):
    count: int
