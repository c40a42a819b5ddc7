"""Domain enumerations for custom-order broadcasting.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class BroadcastStatus(str, Enum):
    """Lifecycle of a customer's competitive-pricing broadcast."""

    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class RequestStatus(str, Enum):
    """Lifecycle of one merchant's slot within a broadcast."""

    PENDING = "pending"
    PRICED = "priced"
    CUSTOMER_APPROVED = "customer_approved"
    CUSTOMER_REJECTED = "customer_rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class AvailabilityStatus(str, Enum):
    """Whether the merchant can supply a quoted line."""

    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    SUBSTITUTED = "substituted"


class InputType(str, Enum):
    """How the customer captured the original order."""

    TEXT = "text"
    VOICE = "voice"
    IMAGE = "image"
    MIXED = "mixed"


class OrderType(str, Enum):
    """Fulfilment mode requested by the customer."""

    DELIVERY = "delivery"
    PICKUP = "pickup"


class UnitType(str, Enum):
    """Units a merchant may price a line in."""

    KG = "kg"
    GRAM = "gram"
    PIECE = "piece"
    BOX = "box"
    CARTON = "carton"
    PACK = "pack"
    BOTTLE = "bottle"
    LITER = "liter"
    BAG = "bag"
    DOZEN = "dozen"
    BUNDLE = "bundle"


class Actor(str, Enum):
    """Party performing a broadcast or request action."""

    CUSTOMER = "customer"
    MERCHANT = "merchant"
    ADMIN = "admin"
    SYSTEM = "system"


class BroadcastEventType(str, Enum):
    """Type of entry in the broadcast audit trail."""

    BROADCAST_CREATED = "broadcast_created"
    BROADCAST_COMPLETED = "broadcast_completed"
    BROADCAST_EXPIRED = "broadcast_expired"
    BROADCAST_CANCELLED = "broadcast_cancelled"
    QUOTE_SUBMITTED = "quote_submitted"
    QUOTE_APPROVED = "quote_approved"
    QUOTE_REJECTED = "quote_rejected"
    QUOTE_STALE = "quote_stale"
    REQUEST_EXPIRED = "request_expired"
    REQUEST_CANCELLED = "request_cancelled"


class BridgeEventType(str, Enum):
    """Events emitted to the Order/Commission bridge."""

    DRAFT_ORDER_REQUESTED = "draft_order_requested"
    ORDER_CONFIRMED = "order_confirmed"
    ORDER_CANCELLED = "order_cancelled"


class OutboxStatus(str, Enum):
    """Delivery state of an outbound bridge event."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
