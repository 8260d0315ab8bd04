"""
Order errors. Raised inside the service (rolling back any open transaction) and
rendered as {"error": {"code", "message", "details"}} by the app's exception handlers.
"""
from typing import Any


class OrderError(Exception):
    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, details: list[dict[str, Any]] | None = None):
        self.message = message
        self.details = details or []
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "message": self.message, "details": self.details}}


class InvalidTransitionError(OrderError):
    """Requested status is not reachable from the current one."""
    code = "ORDER_INVALID_TRANSITION"
    http_status = 400

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Cannot transition from {from_status} to {to_status}",
            [{"from": from_status, "to": to_status}],
        )


class MissingCancelReasonError(OrderError):
    code = "MISSING_CANCEL_REASON"
    http_status = 400

    def __init__(self):
        super().__init__(
            "Cancel reason is required",
            [{"field": "cancelReason", "message": "Must not be empty"}],
        )


class OrderNotFoundError(OrderError):
    code = "ORDER_NOT_FOUND"
    http_status = 404

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order with ID {order_id} not found", [{"id": order_id}])


class ConcurrentModificationError(OrderError):
    """The order row changed between read and write."""
    code = "CONCURRENT_MODIFICATION"
    http_status = 409

    def __init__(self, order_id: str, expected_version: int, actual_version: int | None = None):
        self.order_id = order_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Order {order_id} was modified concurrently, reload and retry",
            [{"id": order_id, "expectedVersion": expected_version, "actualVersion": actual_version}],
        )


class OrderValidationError(OrderError):
    code = "VALIDATION_ERROR"
    http_status = 400


class ShippingLockedError(OrderError):
    code = "SHIPPING_LOCKED"
    http_status = 409

    def __init__(self, fulfillment_status: str):
        super().__init__(
            f"Shipping details cannot be changed once fulfillment is {fulfillment_status}",
            [{"fulfillmentStatus": fulfillment_status}],
        )


class AuthRequiredError(OrderError):
    code = "AUTH_REQUIRED"
    http_status = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class ForbiddenError(OrderError):
    code = "AUTH_FORBIDDEN"
    http_status = 403


class DuplicateOrderCodeError(OrderError):
    code = "ORDER_CODE_CONFLICT"
    http_status = 409

    def __init__(self, order_code: str):
        self.order_code = order_code
        super().__init__(f"Order code {order_code} already exists", [{"orderCode": order_code}])


class PaymentExceedsOutstandingError(OrderError):
    code = "PAYMENT_EXCEEDS_OUTSTANDING"
    http_status = 400

    def __init__(self, amount, outstanding):
        super().__init__(
            f"Payment amount {amount} exceeds outstanding balance {outstanding}",
            [{"amount": str(amount), "outstanding": str(outstanding)}],
        )
