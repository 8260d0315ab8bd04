"""
Async Postgres: orders (current state per order), order_status_history (append-only audit log),
payments (ledger behind paid_amount) and order_counters (per-year order code sequence).
Every mutation runs in a single transaction: lock the order row, compare version,
update the row, insert one history row. Any failure rolls both back.
"""
import json
from enum import Enum
from typing import Any

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from orderflow.config import settings
from orderflow.errors import ConcurrentModificationError, DuplicateOrderCodeError, OrderNotFoundError
from orderflow.models import Order, OrderStatus, Payment, StatusHistoryEntry, format_order_code

_pool: asyncpg.Pool | None = None

_JSON_COLUMNS = ("buyer_snapshot", "shipping_snapshot", "billing_snapshot")

# Columns the service may change after creation. Snapshots and order totals are not among them.
UPDATABLE_COLUMNS = frozenset({
    "order_status",
    "payment_state",
    "fulfillment_status",
    "carrier",
    "tracking_code",
    "paid_amount",
    "transaction_ref",
    "cancel_reason",
    "updated_at",
    "shipped_at",
    "delivered_at",
    "canceled_at",
})

_ORDER_COLUMNS = (
    "id", "order_code", "order_status", "payment_state", "fulfillment_status",
    "subtotal", "discount", "tax", "shipping_cost", "total", "currency", "paid_amount",
    "buyer_snapshot", "shipping_snapshot", "billing_snapshot",
    "carrier", "tracking_code", "transaction_ref", "cancel_reason",
    "created_at", "updated_at", "shipped_at", "delivered_at", "canceled_at", "version",
)


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id VARCHAR(64) PRIMARY KEY,
                order_code VARCHAR(32) NOT NULL UNIQUE,
                order_status VARCHAR(32) NOT NULL,
                payment_state VARCHAR(16) NOT NULL DEFAULT 'UNPAID',
                fulfillment_status VARCHAR(16) NOT NULL DEFAULT 'UNFULFILLED',
                subtotal NUMERIC(14, 2) NOT NULL,
                discount NUMERIC(14, 2) NOT NULL DEFAULT 0,
                tax NUMERIC(14, 2) NOT NULL DEFAULT 0,
                shipping_cost NUMERIC(14, 2) NOT NULL DEFAULT 0,
                total NUMERIC(14, 2) NOT NULL,
                currency CHAR(3) NOT NULL DEFAULT 'VND',
                paid_amount NUMERIC(14, 2) NOT NULL DEFAULT 0,
                buyer_snapshot JSONB NOT NULL,
                shipping_snapshot JSONB,
                billing_snapshot JSONB,
                carrier VARCHAR(100),
                tracking_code VARCHAR(100),
                transaction_ref VARCHAR(200),
                cancel_reason VARCHAR(500),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                shipped_at TIMESTAMPTZ,
                delivered_at TIMESTAMPTZ,
                canceled_at TIMESTAMPTZ,
                version INT NOT NULL DEFAULT 1
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_order_status
            ON orders(order_status);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_status_history (
                id BIGSERIAL PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL REFERENCES orders(id),
                from_status VARCHAR(32),
                to_status VARCHAR(32) NOT NULL,
                actor_id VARCHAR(64),
                actor_name VARCHAR(200),
                note_internal TEXT,
                note_customer TEXT,
                forced BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_order_status_history_order_id
            ON order_status_history(order_id, created_at DESC);
        """)
        await conn.execute("""
            ALTER TABLE orders ADD COLUMN IF NOT EXISTS paid_amount NUMERIC(14, 2) NOT NULL DEFAULT 0;
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS payments (
                id BIGSERIAL PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL REFERENCES orders(id),
                amount NUMERIC(14, 2) NOT NULL CHECK (amount > 0),
                payment_method VARCHAR(32) NOT NULL,
                payment_date TIMESTAMPTZ NOT NULL,
                note VARCHAR(500),
                actor_id VARCHAR(64),
                created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_payments_order_id
            ON payments(order_id, payment_date DESC);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_counters (
                year INT PRIMARY KEY,
                last_number INT NOT NULL
            );
        """)


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _order_from_row(row: asyncpg.Record) -> Order:
    data = dict(row)
    for col in _JSON_COLUMNS:
        if isinstance(data.get(col), str):
            data[col] = json.loads(data[col])
    return Order.model_validate(data)


def _history_from_row(row: asyncpg.Record) -> StatusHistoryEntry:
    return StatusHistoryEntry.model_validate(dict(row))


def _payment_from_row(row: asyncpg.Record) -> Payment:
    return Payment.model_validate(dict(row))


async def _insert_history(conn: asyncpg.Connection, entry: StatusHistoryEntry) -> StatusHistoryEntry:
    row = await conn.fetchrow(
        """
        INSERT INTO order_status_history
            (order_id, from_status, to_status, actor_id, actor_name, note_internal, note_customer, forced)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        RETURNING id, created_at;
        """,
        entry.order_id,
        _to_db(entry.from_status),
        _to_db(entry.to_status),
        entry.actor_id,
        entry.actor_name,
        entry.note_internal,
        entry.note_customer,
        entry.forced,
    )
    return entry.model_copy(update={"id": row["id"], "created_at": row["created_at"]})


class PostgresOrderStore:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def get_order(self, order_id: str) -> Order | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM orders WHERE id = $1;", order_id)
        return _order_from_row(row) if row else None

    async def list_orders(
        self,
        status: OrderStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Order], int]:
        where = "WHERE order_status = $1" if status else ""
        args: list[Any] = [status.value] if status else []
        offset = (page - 1) * page_size
        async with self._pool.acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM orders {where};", *args)
            rows = await conn.fetch(
                f"""
                SELECT * FROM orders {where}
                ORDER BY created_at DESC
                LIMIT ${len(args) + 1} OFFSET ${len(args) + 2};
                """,
                *args,
                page_size,
                offset,
            )
        return [_order_from_row(r) for r in rows], total

    async def insert_order(self, order: Order, entry: StatusHistoryEntry) -> tuple[Order, StatusHistoryEntry]:
        """Insert a new order and its first history row. The order code is allocated here."""
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                sequence = await conn.fetchval(
                    """
                    INSERT INTO order_counters (year, last_number) VALUES ($1, 1)
                    ON CONFLICT (year) DO UPDATE SET last_number = order_counters.last_number + 1
                    RETURNING last_number;
                    """,
                    order.created_at.year,
                )
                order = order.model_copy(update={"order_code": format_order_code(order.created_at.year, sequence)})
                data = order.model_dump(mode="json")
                values = []
                for col in _ORDER_COLUMNS:
                    value = getattr(order, col)
                    if col in _JSON_COLUMNS:
                        value = json.dumps(data[col]) if data[col] is not None else None
                    values.append(_to_db(value))
                placeholders = ", ".join(
                    f"${i}::jsonb" if col in _JSON_COLUMNS else f"${i}"
                    for i, col in enumerate(_ORDER_COLUMNS, start=1)
                )
                try:
                    await conn.execute(
                        f"INSERT INTO orders ({', '.join(_ORDER_COLUMNS)}) VALUES ({placeholders});",
                        *values,
                    )
                except UniqueViolationError:
                    raise DuplicateOrderCodeError(order.order_code)
                saved = await _insert_history(conn, entry)
        return order, saved

    async def apply_change(
        self,
        order: Order,
        changes: dict[str, Any],
        entry: StatusHistoryEntry,
    ) -> tuple[Order, StatusHistoryEntry]:
        """
        Write changes read from `order` plus one history row, atomically.
        Raises ConcurrentModificationError if the row's version moved since `order` was read.
        An empty `changes` only appends the history row (version unchanged).
        """
        _check_columns(changes)
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                updated = await _locked_update(conn, order, changes)
                saved = await _insert_history(conn, entry)
        return _order_from_row(updated), saved

    async def record_payment(
        self,
        order: Order,
        payment: Payment,
        changes: dict[str, Any],
        entry: StatusHistoryEntry,
    ) -> tuple[Order, Payment, StatusHistoryEntry]:
        """Same guarantees as apply_change, with one payments ledger row in the same transaction."""
        _check_columns(changes)
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                updated = await _locked_update(conn, order, changes)
                row = await conn.fetchrow(
                    """
                    INSERT INTO payments (order_id, amount, payment_method, payment_date, note, actor_id)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    RETURNING *;
                    """,
                    payment.order_id,
                    payment.amount,
                    _to_db(payment.payment_method),
                    payment.payment_date,
                    payment.note,
                    payment.actor_id,
                )
                saved = await _insert_history(conn, entry)
        return _order_from_row(updated), _payment_from_row(row), saved

    async def list_history(self, order_id: str) -> list[StatusHistoryEntry]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM order_status_history
                WHERE order_id = $1
                ORDER BY created_at DESC, id DESC;
                """,
                order_id,
            )
        return [_history_from_row(r) for r in rows]

    async def list_payments(self, order_id: str) -> list[Payment]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM payments
                WHERE order_id = $1
                ORDER BY payment_date DESC, created_at DESC, id DESC;
                """,
                order_id,
            )
        return [_payment_from_row(r) for r in rows]


def _check_columns(changes: dict[str, Any]) -> None:
    unknown = set(changes) - UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Columns not updatable: {sorted(unknown)}")


async def _locked_update(conn: asyncpg.Connection, order: Order, changes: dict[str, Any]) -> asyncpg.Record:
    """Lock the order row, check its version, apply changes. Caller owns the transaction."""
    row = await conn.fetchrow("SELECT version FROM orders WHERE id = $1 FOR UPDATE;", order.id)
    if row is None:
        raise OrderNotFoundError(order.id)
    if row["version"] != order.version:
        raise ConcurrentModificationError(order.id, order.version, row["version"])

    if not changes:
        return await conn.fetchrow("SELECT * FROM orders WHERE id = $1;", order.id)
    cols = list(changes)
    assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(cols, start=2))
    return await conn.fetchrow(
        f"""
        UPDATE orders SET {assignments}, version = version + 1
        WHERE id = $1
        RETURNING *;
        """,
        order.id,
        *[_to_db(changes[c]) for c in cols],
    )
