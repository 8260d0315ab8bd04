"""
Order lifecycle state machine. The transition table is the only place that decides
which status may follow which; every mutation path validates against it.
"""
from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType

from orderflow.errors import InvalidTransitionError, MissingCancelReasonError
from orderflow.models import FulfillmentStatus, OrderStatus, PaymentState

S = OrderStatus

# Current status -> statuses reachable in one step. Empty = terminal.
ORDER_STATUS_FLOW: MappingProxyType[OrderStatus, frozenset[OrderStatus]] = MappingProxyType({
    S.DRAFT: frozenset({S.PENDING_CONFIRMATION, S.CANCELED}),
    S.PENDING_CONFIRMATION: frozenset({S.CONFIRMED, S.CANCELED, S.FAILED}),
    S.CONFIRMED: frozenset({S.PACKING, S.CANCELED, S.FAILED}),
    S.PACKING: frozenset({S.SHIPPED, S.CANCELED, S.FAILED}),
    S.SHIPPED: frozenset({S.DELIVERED, S.RETURN_REQUESTED}),
    S.DELIVERED: frozenset(),
    S.RETURN_REQUESTED: frozenset({S.RETURNED, S.DELIVERED}),
    S.RETURNED: frozenset(),
    S.CANCELED: frozenset(),
    S.FAILED: frozenset(),
})

TERMINAL_STATUSES = frozenset(s for s, nxt in ORDER_STATUS_FLOW.items() if not nxt)

STATUS_LABELS: MappingProxyType[OrderStatus, dict[str, str]] = MappingProxyType({
    S.DRAFT: {"en": "Draft", "vi": "Nháp"},
    S.PENDING_CONFIRMATION: {"en": "Pending", "vi": "Chờ xác nhận"},
    S.CONFIRMED: {"en": "Confirmed", "vi": "Đã xác nhận"},
    S.PACKING: {"en": "Packing", "vi": "Đang đóng gói"},
    S.SHIPPED: {"en": "Shipped", "vi": "Đã gửi"},
    S.DELIVERED: {"en": "Delivered", "vi": "Đã giao"},
    S.RETURN_REQUESTED: {"en": "Return Requested", "vi": "Yêu cầu trả hàng"},
    S.RETURNED: {"en": "Returned", "vi": "Đã trả hàng"},
    S.CANCELED: {"en": "Canceled", "vi": "Đã hủy"},
    S.FAILED: {"en": "Failed", "vi": "Thất bại"},
})

_FULFILLMENT_BY_STATUS = MappingProxyType({
    S.PACKING: FulfillmentStatus.PACKING,
    S.SHIPPED: FulfillmentStatus.SHIPPED,
    S.DELIVERED: FulfillmentStatus.DELIVERED,
    S.RETURN_REQUESTED: FulfillmentStatus.DELIVERED,
    S.RETURNED: FulfillmentStatus.RETURNED,
})

_FULFILLMENT_RANK = {f: i for i, f in enumerate(FulfillmentStatus)}

# Fulfillment stages after which carrier/tracking are frozen
SHIPPING_LOCKED_FULFILLMENT = frozenset({FulfillmentStatus.DELIVERED, FulfillmentStatus.RETURNED})


@dataclass(frozen=True)
class TransitionCheck:
    changed: bool
    forced: bool = False


def allowed_next_statuses(current: OrderStatus) -> frozenset[OrderStatus]:
    return ORDER_STATUS_FLOW[current]


def is_valid_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    """True if requested may follow current without force (same status counts)."""
    return requested == current or requested in ORDER_STATUS_FLOW[current]


def can_modify_order(status: OrderStatus) -> bool:
    return status not in TERMINAL_STATUSES


def can_cancel_order(status: OrderStatus) -> bool:
    return S.CANCELED in ORDER_STATUS_FLOW[status]


def validate_transition(
    current: OrderStatus,
    requested: OrderStatus,
    *,
    force: bool = False,
    privileged: bool = False,
    cancel_reason: str | None = None,
) -> TransitionCheck:
    """
    Check a requested status change. Pure: no I/O.
    Cancel always needs a reason, even when forced or already canceled.
    Force only bypasses the table for privileged actors; the result is flagged forced.
    """
    if requested == S.CANCELED and not (cancel_reason or "").strip():
        raise MissingCancelReasonError()
    if requested == current:
        return TransitionCheck(changed=False)
    if requested in ORDER_STATUS_FLOW[current]:
        return TransitionCheck(changed=True)
    if force and privileged:
        return TransitionCheck(changed=True, forced=True)
    raise InvalidTransitionError(current.value, requested.value)


def fulfillment_for_status(status: OrderStatus) -> FulfillmentStatus:
    return _FULFILLMENT_BY_STATUS.get(status, FulfillmentStatus.UNFULFILLED)


def advance_fulfillment(current: FulfillmentStatus, target: FulfillmentStatus) -> FulfillmentStatus:
    """Move fulfillment forward to target; never step back."""
    if _FULFILLMENT_RANK[target] > _FULFILLMENT_RANK[current]:
        return target
    return current


def stock_action_for_transition(from_status: OrderStatus, to_status: OrderStatus) -> str | None:
    """Warehouse action implied by a status change (hint for the admin UI)."""
    if from_status == to_status:
        return None
    if to_status == S.CONFIRMED:
        return "RESERVE"
    if to_status == S.SHIPPED:
        return "DEDUCT"
    if to_status in (S.CANCELED, S.FAILED) and from_status in (S.CONFIRMED, S.PACKING):
        return "RELEASE"
    if to_status == S.RETURNED and from_status in (S.SHIPPED, S.DELIVERED, S.RETURN_REQUESTED):
        return "RESTOCK"
    return None


def payment_state_for(total: Decimal, paid_amount: Decimal) -> PaymentState:
    """Payment state implied by the ledger sum against the order total."""
    if paid_amount <= 0:
        return PaymentState.UNPAID
    if paid_amount >= total:
        return PaymentState.PAID
    return PaymentState.PARTIAL
