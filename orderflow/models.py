"""
Order aggregate, status enumerations and the audit row type.
Snapshots are frozen: built once when the order is placed and never edited afterwards.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel


class OrderStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    CONFIRMED = "CONFIRMED"
    PACKING = "PACKING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"
    RETURN_REQUESTED = "RETURN_REQUESTED"
    RETURNED = "RETURNED"
    FAILED = "FAILED"


class PaymentState(str, Enum):
    UNPAID = "UNPAID"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    COD = "COD"
    BANK_TRANSFER = "BANK_TRANSFER"
    CASH = "CASH"
    CARD = "CARD"
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"
    OTHER = "OTHER"


class FulfillmentStatus(str, Enum):
    # Declaration order is shipment progress; see order_state.advance_fulfillment
    UNFULFILLED = "UNFULFILLED"
    PACKING = "PACKING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    RETURNED = "RETURNED"


class ActorRole(str, Enum):
    ADMIN = "ADMIN"
    EDITOR = "EDITOR"
    CUSTOMER = "CUSTOMER"


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python and in the database."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Actor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str | None = None
    role: ActorRole = ActorRole.EDITOR

    @property
    def is_privileged(self) -> bool:
        return self.role == ActorRole.ADMIN


class AddressSnapshot(ApiModel):
    model_config = ConfigDict(frozen=True)

    recipient: str
    phone: str | None = None
    line1: str
    line2: str | None = None
    ward: str | None = None
    district: str | None = None
    city: str
    country: str = "VN"


class BuyerSnapshot(ApiModel):
    model_config = ConfigDict(frozen=True)

    name: str
    email: str
    phone: str | None = None
    company_name: str | None = None
    tax_code: str | None = None


ORDER_CODE_PREFIX = "ORD"


def format_order_code(year: int, sequence: int) -> str:
    """ORD-2026-000123: per-year sequence, allocated by the store when the order is inserted."""
    return f"{ORDER_CODE_PREFIX}-{year}-{sequence:06d}"


class Order(ApiModel):
    id: str
    order_code: str
    order_status: OrderStatus
    payment_state: PaymentState = PaymentState.UNPAID
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.UNFULFILLED

    subtotal: Decimal
    discount: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    shipping_cost: Decimal = Decimal("0")
    total: Decimal
    currency: str = "VND"
    paid_amount: Decimal = Decimal("0")

    buyer_snapshot: BuyerSnapshot
    shipping_snapshot: AddressSnapshot | None = None
    billing_snapshot: AddressSnapshot | None = None

    carrier: str | None = None
    tracking_code: str | None = None
    transaction_ref: str | None = None
    cancel_reason: str | None = None

    created_at: datetime
    updated_at: datetime
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    canceled_at: datetime | None = None

    version: int = 1

    @computed_field
    @property
    def outstanding_amount(self) -> Decimal:
        return max(Decimal("0"), self.total - self.paid_amount)


class StatusHistoryEntry(ApiModel):
    """One audit row. Rows are appended, never updated or deleted."""

    id: int | None = None
    order_id: str
    from_status: OrderStatus | None = None
    to_status: OrderStatus
    actor_id: str | None = None
    actor_name: str | None = None
    note_internal: str | None = None
    note_customer: str | None = None
    forced: bool = False
    created_at: datetime | None = None

    @property
    def actor_display(self) -> str:
        if self.actor_id is None:
            return "system"
        return self.actor_name or self.actor_id


class Payment(ApiModel):
    """Payments ledger row. paid_amount on the order is the sum of these."""

    id: int | None = None
    order_id: str
    amount: Decimal
    payment_method: PaymentMethod = PaymentMethod.OTHER
    payment_date: datetime
    note: str | None = None
    actor_id: str | None = None
    created_at: datetime | None = None


class HistoryView(ApiModel):
    id: int | None
    from_status: OrderStatus | None
    to_status: OrderStatus
    actor_id: str | None
    actor_display: str
    note_internal: str | None
    note_customer: str | None
    forced: bool
    created_at: datetime | None

    @classmethod
    def from_entry(cls, entry: StatusHistoryEntry) -> "HistoryView":
        return cls(
            id=entry.id,
            from_status=entry.from_status,
            to_status=entry.to_status,
            actor_id=entry.actor_id,
            actor_display=entry.actor_display,
            note_internal=entry.note_internal,
            note_customer=entry.note_customer,
            forced=entry.forced,
            created_at=entry.created_at,
        )


class NewOrder(ApiModel):
    """Checkout payload frozen into an Order."""

    initial_status: OrderStatus = OrderStatus.PENDING_CONFIRMATION
    subtotal: Decimal = Field(..., ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    shipping_cost: Decimal = Field(default=Decimal("0"), ge=0)
    total: Decimal = Field(..., ge=0)
    currency: str = Field(default="VND", min_length=3, max_length=3)
    buyer: BuyerSnapshot
    shipping_address: AddressSnapshot | None = None
    billing_address: AddressSnapshot | None = None
    note_customer: str | None = Field(default=None, max_length=2000)
