"""
Order mutation service: every change to an order's status, shipping or payment fields goes
through here. Each mutation reads the order, validates against the transition table, and
hands the store one atomic write (field changes + one history row, plus a ledger row for
payments) guarded by the version it read. A lost race is retried after re-reading.
Customer notifications are scheduled after commit and never block or fail the request.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Protocol

from orderflow.config import settings
from orderflow.errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    MissingCancelReasonError,
    OrderNotFoundError,
    OrderValidationError,
    PaymentExceedsOutstandingError,
    ShippingLockedError,
)
from orderflow.metrics import (
    order_conflicts_total,
    order_notifications_failed_total,
    order_payments_recorded_total,
    order_transitions_rejected_total,
    order_transitions_total,
)
from orderflow.models import (
    Actor,
    HistoryView,
    NewOrder,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentState,
    StatusHistoryEntry,
)
from orderflow.order_state import (
    SHIPPING_LOCKED_FULFILLMENT,
    TransitionCheck,
    advance_fulfillment,
    fulfillment_for_status,
    payment_state_for,
    stock_action_for_transition,
    validate_transition,
)

logger = logging.getLogger(__name__)

INITIAL_STATUSES = frozenset({OrderStatus.DRAFT, OrderStatus.PENDING_CONFIRMATION})

Notifier = Callable[[Order, StatusHistoryEntry], Awaitable[None]]


class OrderStore(Protocol):
    async def get_order(self, order_id: str) -> Order | None: ...

    async def list_orders(
        self, status: OrderStatus | None = None, page: int = 1, page_size: int = 20
    ) -> tuple[list[Order], int]: ...

    async def insert_order(
        self, order: Order, entry: StatusHistoryEntry
    ) -> tuple[Order, StatusHistoryEntry]: ...

    async def apply_change(
        self, order: Order, changes: dict[str, Any], entry: StatusHistoryEntry
    ) -> tuple[Order, StatusHistoryEntry]: ...

    async def record_payment(
        self, order: Order, payment: Payment, changes: dict[str, Any], entry: StatusHistoryEntry
    ) -> tuple[Order, Payment, StatusHistoryEntry]: ...

    async def list_history(self, order_id: str) -> list[StatusHistoryEntry]: ...

    async def list_payments(self, order_id: str) -> list[Payment]: ...


@dataclass
class TransitionResult:
    order: Order
    from_status: OrderStatus
    to_status: OrderStatus
    changed: bool
    forced: bool = False
    history: StatusHistoryEntry | None = None

    @property
    def stock_action(self) -> str | None:
        return stock_action_for_transition(self.from_status, self.to_status) if self.changed else None


@dataclass
class BulkResult:
    updated: list[str]
    skipped: list[dict[str, str]]
    missing: list[str]


@dataclass
class PaymentResult:
    order: Order
    payment: Payment
    history: StatusHistoryEntry


def _clean(note: str | None) -> str | None:
    if note is None:
        return None
    return note.strip() or None


def status_changes(
    order: Order,
    to_status: OrderStatus,
    now: datetime,
    cancel_reason: str | None = None,
) -> dict[str, Any]:
    """Field updates implied by moving `order` to `to_status`. Fulfillment only moves forward."""
    changes: dict[str, Any] = {"order_status": to_status, "updated_at": now}
    fulfillment = advance_fulfillment(order.fulfillment_status, fulfillment_for_status(to_status))
    if fulfillment != order.fulfillment_status:
        changes["fulfillment_status"] = fulfillment
    if to_status == OrderStatus.SHIPPED and order.shipped_at is None:
        changes["shipped_at"] = now
    if to_status == OrderStatus.DELIVERED and order.delivered_at is None:
        changes["delivered_at"] = now
    if to_status == OrderStatus.CANCELED:
        changes["canceled_at"] = now
        changes["cancel_reason"] = _clean(cancel_reason)
    return changes


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrderService:
    def __init__(
        self,
        store: OrderStore,
        notifier: Notifier | None = None,
        conflict_retries: int | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._store = store
        self._notifier = notifier
        self._conflict_retries = settings.conflict_retries if conflict_retries is None else conflict_retries
        self._now = clock
        self._pending: set[asyncio.Task] = set()

    # ── reads ─────────────────────────────────────────

    async def get_order(self, order_id: str) -> Order:
        order = await self._store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def list_orders(
        self,
        status: OrderStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Order], int]:
        return await self._store.list_orders(status=status, page=page, page_size=page_size)

    async def get_history(self, order_id: str) -> list[HistoryView]:
        """Audit trail for one order, newest first."""
        await self.get_order(order_id)
        entries = await self._store.list_history(order_id)
        return [HistoryView.from_entry(e) for e in entries]

    async def list_payments(self, order_id: str) -> list[Payment]:
        """Payments ledger for one order, latest payment date first."""
        await self.get_order(order_id)
        return await self._store.list_payments(order_id)

    # ── creation ──────────────────────────────────────

    async def create_order(self, data: NewOrder, actor: Actor | None = None) -> Order:
        if data.initial_status not in INITIAL_STATUSES:
            raise OrderValidationError(
                f"Orders start in DRAFT or PENDING_CONFIRMATION, not {data.initial_status.value}",
                [{"field": "initialStatus", "value": data.initial_status.value}],
            )
        expected_total = data.subtotal - data.discount + data.tax + data.shipping_cost
        if expected_total != data.total:
            raise OrderValidationError(
                "Total does not match subtotal - discount + tax + shipping cost",
                [{"field": "total", "expected": str(expected_total), "actual": str(data.total)}],
            )

        now = self._now()
        order = Order(
            id=uuid.uuid4().hex,
            order_code="",  # allocated by the store inside the insert transaction
            order_status=data.initial_status,
            subtotal=data.subtotal,
            discount=data.discount,
            tax=data.tax,
            shipping_cost=data.shipping_cost,
            total=data.total,
            currency=data.currency.upper(),
            buyer_snapshot=data.buyer,
            shipping_snapshot=data.shipping_address,
            billing_snapshot=data.billing_address or data.shipping_address,
            created_at=now,
            updated_at=now,
        )
        entry = self._entry(order, None, data.initial_status, actor, note_customer=_clean(data.note_customer))
        saved, _ = await self._store.insert_order(order, entry)
        logger.info("Created order %s (%s) in %s", saved.id, saved.order_code, saved.order_status.value)
        return saved

    # ── mutations ─────────────────────────────────────

    async def apply_transition(
        self,
        order_id: str,
        new_status: OrderStatus,
        *,
        actor: Actor | None = None,
        note_internal: str | None = None,
        note_customer: str | None = None,
        cancel_reason: str | None = None,
        force: bool = False,
        notify_customer: bool = False,
    ) -> TransitionResult:
        """
        Move an order to new_status. Requesting the current status is a no-op: nothing is
        written and updated_at is untouched. Cancel needs a reason even when forced.
        """
        privileged = actor is not None and actor.is_privileged

        async def attempt(order: Order) -> TransitionResult:
            check = self._check(order, new_status, force, privileged, cancel_reason)
            if not check.changed:
                return TransitionResult(order, order.order_status, new_status, changed=False)
            changes = status_changes(order, new_status, self._now(), cancel_reason)
            entry = self._entry(
                order,
                order.order_status,
                new_status,
                actor,
                note_internal=_clean(note_internal),
                note_customer=_clean(note_customer),
                forced=check.forced,
            )
            updated, saved = await self._store.apply_change(order, changes, entry)
            return TransitionResult(updated, order.order_status, new_status, True, check.forced, saved)

        result = await self._with_retry(order_id, attempt)
        if result.changed:
            self._record_transition(result, actor)
            if notify_customer:
                self._notify(result.order, result.history)
        return result

    async def update_shipping(
        self,
        order_id: str,
        *,
        actor: Actor | None = None,
        carrier: str | None = None,
        tracking_code: str | None = None,
        mark_shipped: bool = False,
        mark_delivered: bool = False,
        force: bool = False,
        notify_customer: bool = False,
    ) -> TransitionResult:
        """
        Update carrier/tracking (None leaves a field as is, "" clears it) and optionally mark
        the order shipped or delivered. Delivered wins when both flags are set.
        """
        privileged = actor is not None and actor.is_privileged
        next_status = (
            OrderStatus.DELIVERED if mark_delivered
            else OrderStatus.SHIPPED if mark_shipped
            else None
        )

        async def attempt(order: Order) -> TransitionResult:
            shipping: dict[str, Any] = {}
            if carrier is not None and _clean(carrier) != order.carrier:
                shipping["carrier"] = _clean(carrier)
            if tracking_code is not None and _clean(tracking_code) != order.tracking_code:
                shipping["tracking_code"] = _clean(tracking_code)
            if shipping and order.fulfillment_status in SHIPPING_LOCKED_FULFILLMENT and not (force and privileged):
                raise ShippingLockedError(order.fulfillment_status.value)

            check = TransitionCheck(changed=False)
            if next_status is not None:
                check = self._check(order, next_status, force, privileged, None)
            if not shipping and not check.changed:
                return TransitionResult(order, order.order_status, order.order_status, changed=False)

            now = self._now()
            changes = dict(shipping, updated_at=now)
            notes = []
            if shipping:
                parts = ["Shipping updated"]
                if "carrier" in shipping:
                    parts.append(f"Carrier: {shipping['carrier'] or '-'}")
                if "tracking_code" in shipping:
                    parts.append(f"Tracking: {shipping['tracking_code'] or '-'}")
                notes.append(" • ".join(parts))
            to_status = order.order_status
            if check.changed:
                to_status = next_status
                changes.update(status_changes(order, next_status, now))
                notes.append(f"Status updated via shipping: {order.order_status.value} → {next_status.value}")

            entry = self._entry(
                order,
                order.order_status,
                to_status,
                actor,
                note_internal=" | ".join(notes),
                forced=check.forced,
            )
            updated, saved = await self._store.apply_change(order, changes, entry)
            return TransitionResult(updated, order.order_status, to_status, True, check.forced, saved)

        result = await self._with_retry(order_id, attempt)
        if result.changed and result.from_status != result.to_status:
            self._record_transition(result, actor)
            if notify_customer:
                self._notify(result.order, result.history)
        return result

    async def update_payment(
        self,
        order_id: str,
        *,
        payment_state: PaymentState,
        transaction_ref: str | None = None,
        actor: Actor | None = None,
    ) -> TransitionResult:
        """
        Manual payment state override (and transaction reference when given). Order status is
        unchanged. Marking PAID books the outstanding balance as a MANUAL_ADJUSTMENT payment.
        """
        ref = _clean(transaction_ref)

        async def attempt(order: Order) -> TransitionResult:
            ref_changed = ref is not None and ref != order.transaction_ref
            if payment_state == order.payment_state and not ref_changed:
                return TransitionResult(order, order.order_status, order.order_status, changed=False)

            now = self._now()
            changes: dict[str, Any] = {"payment_state": payment_state, "updated_at": now}
            if ref_changed:
                changes["transaction_ref"] = ref
            note = f"Payment updated: {order.payment_state.value} → {payment_state.value}"
            if ref:
                note += f" (TX: {ref})"
            entry = self._entry(order, order.order_status, order.order_status, actor, note_internal=note)

            outstanding = order.outstanding_amount
            if payment_state == PaymentState.PAID and outstanding > 0:
                changes["paid_amount"] = order.paid_amount + outstanding
                adjustment = Payment(
                    order_id=order.id,
                    amount=outstanding,
                    payment_method=PaymentMethod.MANUAL_ADJUSTMENT,
                    payment_date=now,
                    note="Marked as PAID from admin payment override",
                    actor_id=actor.id if actor else None,
                )
                updated, _, saved = await self._store.record_payment(order, adjustment, changes, entry)
            else:
                updated, saved = await self._store.apply_change(order, changes, entry)
            return TransitionResult(updated, order.order_status, order.order_status, True, history=saved)

        result = await self._with_retry(order_id, attempt)
        if result.changed:
            logger.info("Order %s payment state set to %s", order_id, payment_state.value)
        return result

    async def add_payment(
        self,
        order_id: str,
        amount: Decimal,
        *,
        payment_method: PaymentMethod = PaymentMethod.OTHER,
        payment_date: datetime | None = None,
        note: str | None = None,
        actor: Actor | None = None,
    ) -> PaymentResult:
        """
        Book a payment into the ledger. paid_amount and payment_state are recomputed from the
        ledger in the same write; paying more than the outstanding balance is rejected.
        """
        if amount <= 0:
            raise OrderValidationError("Payment amount must be positive", [{"field": "amount", "value": str(amount)}])
        note = _clean(note)

        async def attempt(order: Order) -> PaymentResult:
            outstanding = order.outstanding_amount
            if amount > outstanding:
                raise PaymentExceedsOutstandingError(amount, outstanding)

            now = self._now()
            paid_amount = order.paid_amount + amount
            changes: dict[str, Any] = {"paid_amount": paid_amount, "updated_at": now}
            state = payment_state_for(order.total, paid_amount)
            if state != order.payment_state:
                changes["payment_state"] = state
            payment = Payment(
                order_id=order.id,
                amount=amount,
                payment_method=payment_method,
                payment_date=payment_date or now,
                note=note,
                actor_id=actor.id if actor else None,
            )
            history_note = f"Payment received: {amount} ({payment_method.value})"
            if note:
                history_note += f" - {note}"
            entry = self._entry(order, order.order_status, order.order_status, actor, note_internal=history_note)
            updated, saved_payment, saved = await self._store.record_payment(order, payment, changes, entry)
            return PaymentResult(updated, saved_payment, saved)

        result = await self._with_retry(order_id, attempt)
        order_payments_recorded_total.labels(method=payment_method.value).inc()
        logger.info(
            "Order %s payment %s %s booked, paid %s of %s (%s)",
            order_id, amount, payment_method.value, result.order.paid_amount, result.order.total,
            result.order.payment_state.value,
        )
        return result

    async def add_note(
        self,
        order_id: str,
        *,
        actor: Actor | None = None,
        note_internal: str | None = None,
        note_customer: str | None = None,
    ) -> StatusHistoryEntry:
        internal, customer = _clean(note_internal), _clean(note_customer)
        if not internal and not customer:
            raise OrderValidationError(
                "At least one note is required",
                [{"field": "noteInternal"}, {"field": "noteCustomer"}],
            )

        async def attempt(order: Order) -> StatusHistoryEntry:
            entry = self._entry(
                order,
                order.order_status,
                order.order_status,
                actor,
                note_internal=internal,
                note_customer=customer,
            )
            _, saved = await self._store.apply_change(order, {}, entry)
            return saved

        return await self._with_retry(order_id, attempt)

    async def bulk_update_status(
        self,
        ids: list[str],
        new_status: OrderStatus,
        *,
        actor: Actor | None = None,
        note_internal: str | None = None,
        note_customer: str | None = None,
        cancel_reason: str | None = None,
        force: bool = False,
    ) -> BulkResult:
        """Apply one transition to many orders. Each order commits on its own."""
        if new_status == OrderStatus.CANCELED and not _clean(cancel_reason):
            raise MissingCancelReasonError()

        result = BulkResult(updated=[], skipped=[], missing=[])
        for order_id in dict.fromkeys(ids):
            try:
                outcome = await self.apply_transition(
                    order_id,
                    new_status,
                    actor=actor,
                    note_internal=note_internal,
                    note_customer=note_customer,
                    cancel_reason=cancel_reason,
                    force=force,
                )
            except OrderNotFoundError:
                result.missing.append(order_id)
                continue
            except (InvalidTransitionError, ConcurrentModificationError) as e:
                result.skipped.append({"id": order_id, "reason": e.message})
                continue
            if outcome.changed:
                result.updated.append(order_id)
            else:
                result.skipped.append({"id": order_id, "reason": "Already in target status"})
        logger.info(
            "Bulk %s: %d updated, %d skipped, %d missing",
            new_status.value, len(result.updated), len(result.skipped), len(result.missing),
        )
        return result

    # ── internals ─────────────────────────────────────

    async def _with_retry(self, order_id: str, attempt: Callable[[Order], Awaitable[Any]]) -> Any:
        retries_left = self._conflict_retries
        while True:
            order = await self.get_order(order_id)
            try:
                return await attempt(order)
            except ConcurrentModificationError:
                order_conflicts_total.inc()
                if retries_left <= 0:
                    logger.warning("Order %s still contended after retry, giving up", order_id)
                    raise
                retries_left -= 1
                logger.info("Order %s changed since read (version %d), re-reading", order_id, order.version)

    def _check(
        self,
        order: Order,
        requested: OrderStatus,
        force: bool,
        privileged: bool,
        cancel_reason: str | None,
    ) -> TransitionCheck:
        try:
            return validate_transition(
                order.order_status,
                requested,
                force=force,
                privileged=privileged,
                cancel_reason=cancel_reason,
            )
        except (InvalidTransitionError, MissingCancelReasonError) as e:
            order_transitions_rejected_total.labels(reason=e.code).inc()
            logger.warning("Rejected order %s: %s", order.id, e.message)
            raise

    @staticmethod
    def _entry(
        order: Order,
        from_status: OrderStatus | None,
        to_status: OrderStatus,
        actor: Actor | None,
        note_internal: str | None = None,
        note_customer: str | None = None,
        forced: bool = False,
    ) -> StatusHistoryEntry:
        return StatusHistoryEntry(
            order_id=order.id,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor.id if actor else None,
            actor_name=actor.name if actor else None,
            note_internal=note_internal,
            note_customer=note_customer,
            forced=forced,
        )

    @staticmethod
    def _record_transition(result: TransitionResult, actor: Actor | None) -> None:
        order_transitions_total.labels(
            from_status=result.from_status.value,
            to_status=result.to_status.value,
            forced=str(result.forced).lower(),
        ).inc()
        logger.info(
            "Order %s %s -> %s by %s%s",
            result.order.id,
            result.from_status.value,
            result.to_status.value,
            actor.id if actor else "system",
            " (forced)" if result.forced else "",
        )

    def _notify(self, order: Order, entry: StatusHistoryEntry | None) -> None:
        if self._notifier is None or entry is None:
            return
        task = asyncio.create_task(self._deliver(order, entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, order: Order, entry: StatusHistoryEntry) -> None:
        try:
            await self._notifier(order, entry)
        except Exception:
            order_notifications_failed_total.inc()
            logger.exception("Failed to queue notification for order %s", order.id)

    async def drain_notifications(self, timeout: float | None = None) -> None:
        """Wait for scheduled notifications (shutdown, tests); cancel what is left after timeout."""
        if not self._pending:
            return
        logger.info("Waiting for %d pending notification(s) ...", len(self._pending))
        _, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
