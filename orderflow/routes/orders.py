from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import Field

from orderflow.auth import ensure_can_force, require_staff
from orderflow.models import Actor, ApiModel, NewOrder, Order, OrderStatus, PaymentMethod, PaymentState
from orderflow.order_state import STATUS_LABELS, allowed_next_statuses, can_cancel_order
from orderflow.service import OrderService, TransitionResult

router = APIRouter(prefix="/admin/orders", tags=["orders"])


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service


class UpdateStatusBody(ApiModel):
    new_status: OrderStatus = Field(..., description="Requested order status")
    note_internal: str | None = Field(default=None, max_length=2000)
    note_customer: str | None = Field(default=None, max_length=2000)
    cancel_reason: str | None = Field(default=None, max_length=500)
    force: bool = Field(default=False, description="ADMIN only: bypass the transition table")
    notify_customer: bool = False


class UpdateShippingBody(ApiModel):
    carrier: str | None = Field(default=None, max_length=100)
    tracking_code: str | None = Field(default=None, max_length=100)
    mark_shipped: bool = False
    mark_delivered: bool = False
    force: bool = False
    notify_customer: bool = False


class UpdatePaymentBody(ApiModel):
    payment_state: PaymentState
    transaction_ref: str | None = Field(default=None, max_length=200)


class AddPaymentBody(ApiModel):
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod = PaymentMethod.OTHER
    payment_date: datetime | None = None
    note: str | None = Field(default=None, max_length=500)


class AddNoteBody(ApiModel):
    note_internal: str | None = Field(default=None, max_length=2000)
    note_customer: str | None = Field(default=None, max_length=2000)


class BulkStatusBody(ApiModel):
    ids: list[str] = Field(..., min_length=1)
    new_status: OrderStatus
    note_internal: str | None = Field(default=None, max_length=2000)
    note_customer: str | None = Field(default=None, max_length=2000)
    cancel_reason: str | None = Field(default=None, max_length=500)
    force: bool = False


def _order_json(order: Order) -> dict:
    return order.model_dump(mode="json", by_alias=True)


def _transition_json(result: TransitionResult) -> dict:
    return {
        "ok": True,
        "changed": result.changed,
        "from": result.from_status.value,
        "to": result.to_status.value,
        "forced": result.forced,
        "stockAction": result.stock_action,
        "order": _order_json(result.order),
    }


@router.post("")
async def create_order(
    body: NewOrder,
    actor: Actor = Depends(require_staff),
    service: OrderService = Depends(get_order_service),
) -> JSONResponse:
    order = await service.create_order(body, actor=actor)
    return JSONResponse(status_code=201, content={"ok": True, "order": _order_json(order)})


@router.get("")
async def list_orders(
    status: OrderStatus | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100, alias="pageSize"),
    actor: Actor = Depends(require_staff),
    service: OrderService = Depends(get_order_service),
) -> JSONResponse:
    orders, total = await service.list_orders(status=status, page=page, page_size=page_size)
    total_pages = (total + page_size - 1) // page_size
    return JSONResponse(
        status_code=200,
        content={
            "orders": [_order_json(o) for o in orders],
            "pagination": {
                "page": page,
                "pageSize": page_size,
                "totalItems": total,
                "totalPages": total_pages,
                "hasNextPage": page < total_pages,
                "hasPrevPage": page > 1,
            },
        },
    )


@router.post("/bulk/status")
async def bulk_update_status(
    body: BulkStatusBody,
    actor: Actor = Depends(require_staff),
    service: OrderService = Depends(get_order_service),
) -> JSONResponse:
    ensure_can_force(actor, body.force)
    result = await service.bulk_update_status(
        body.ids,
        body.new_status,
        actor=actor,
        note_internal=body.note_internal,
        note_customer=body.note_customer,
        cancel_reason=body.cancel_reason,
        force=body.force,
    )
    return JSONResponse(
        status_code=200,
        content={"ok": True, "updated": len(result.updated), "skipped": result.skipped, "missing": result.missing},
    )


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    actor: Actor = Depends(require_staff),
    service: OrderService = Depends(get_order_service),
) -> JSONResponse:
    order = await service.get_order(order_id)
    return JSONResponse(status_code=200, content={"order": _order_json(order)})


@router.get("/{order_id}/history")
async def get_history(
    order_id: str,
    actor: Actor = Depends(require_staff),
    service: OrderService = Depends(get_order_service),
) -> JSONResponse:
    """Audit trail, newest first."""
    history = await service.get_history(order_id)
    return JSONResponse(
        status_code=200,
        content={"history": [h.model_dump(mode="json", by_alias=True) for h in history]},
    )


@router.get("/{order_id}/transitions")
async def get_transitions(
    order_id: str,
    actor: Actor = Depends(require_staff),
    service: OrderService = Depends(get_order_service),
) -> JSONResponse:
    """Legal next statuses for the admin status dropdown."""
    order = await service.get_order(order_id)
    allowed = [s for s in OrderStatus if s in allowed_next_statuses(order.order_status)]
    return JSONResponse(
        status_code=200,
        content={
            "current": order.order_status.value,
            "allowed": [{"status": s.value, "label": STATUS_LABELS[s]} for s in allowed],
            "canCancel": can_cancel_order(order.order_status),
        },
    )


@router.patch("/{order_id}/status")
async def update_status(
    order_id: str,
    body: UpdateStatusBody,
    actor: Actor = Depends(require_staff),
    service: OrderService = Depends(get_order_service),
) -> JSONResponse:
    ensure_can_force(actor, body.force)
    result = await service.apply_transition(
        order_id,
        body.new_status,
        actor=actor,
        note_internal=body.note_internal,
        note_customer=body.note_customer,
        cancel_reason=body.cancel_reason,
        force=body.force,
        notify_customer=body.notify_customer,
    )
    return JSONResponse(status_code=200, content=_transition_json(result))


@router.patch("/{order_id}/shipping")
async def update_shipping(
    order_id: str,
    body: UpdateShippingBody,
    actor: Actor = Depends(require_staff),
    service: OrderService = Depends(get_order_service),
) -> JSONResponse:
    ensure_can_force(actor, body.force)
    result = await service.update_shipping(
        order_id,
        actor=actor,
        carrier=body.carrier,
        tracking_code=body.tracking_code,
        mark_shipped=body.mark_shipped,
        mark_delivered=body.mark_delivered,
        force=body.force,
        notify_customer=body.notify_customer,
    )
    content = _transition_json(result)
    content["statusUpdatedTo"] = result.to_status.value if result.from_status != result.to_status else None
    return JSONResponse(status_code=200, content=content)


@router.patch("/{order_id}/payment")
async def update_payment(
    order_id: str,
    body: UpdatePaymentBody,
    actor: Actor = Depends(require_staff),
    service: OrderService = Depends(get_order_service),
) -> JSONResponse:
    result = await service.update_payment(
        order_id,
        payment_state=body.payment_state,
        transaction_ref=body.transaction_ref,
        actor=actor,
    )
    return JSONResponse(
        status_code=200,
        content={"ok": True, "changed": result.changed, "order": _order_json(result.order)},
    )


@router.get("/{order_id}/payments")
async def list_payments(
    order_id: str,
    actor: Actor = Depends(require_staff),
    service: OrderService = Depends(get_order_service),
) -> JSONResponse:
    payments = await service.list_payments(order_id)
    return JSONResponse(
        status_code=200,
        content={"payments": [p.model_dump(mode="json", by_alias=True) for p in payments]},
    )


@router.post("/{order_id}/payments")
async def add_payment(
    order_id: str,
    body: AddPaymentBody,
    actor: Actor = Depends(require_staff),
    service: OrderService = Depends(get_order_service),
) -> JSONResponse:
    """Book a payment; paid/outstanding amounts and payment state follow the ledger."""
    result = await service.add_payment(
        order_id,
        body.amount,
        payment_method=body.payment_method,
        payment_date=body.payment_date,
        note=body.note,
        actor=actor,
    )
    return JSONResponse(
        status_code=201,
        content={"ok": True, "paymentId": result.payment.id, "order": _order_json(result.order)},
    )


@router.post("/{order_id}/notes")
async def add_note(
    order_id: str,
    body: AddNoteBody,
    actor: Actor = Depends(require_staff),
    service: OrderService = Depends(get_order_service),
) -> JSONResponse:
    entry = await service.add_note(
        order_id,
        actor=actor,
        note_internal=body.note_internal,
        note_customer=body.note_customer,
    )
    return JSONResponse(status_code=200, content={"ok": True, "id": entry.id})
