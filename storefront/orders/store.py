"""Order persistence, the durable source of truth for fulfillment state.

Concurrency contract:
- Every status change is a compare-and-swap on the current status
  (UPDATE ... WHERE id = ? AND status = ?), so two concurrent deliveries
  for the same order cannot both pass the same guard
- A lost swap returns None; callers treat it as a redelivery no-op
- Driver failures surface as OrderStoreError (webhook answers 5xx and the
  sender redelivers)
- Connect and statement timeouts are bounded so a slow database cannot
  pin webhook workers
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

import psycopg
from psycopg.rows import dict_row

from storefront.orders.models import (
    Order,
    OrderItem,
    OrderStatus,
    check_changes,
    ensure_transition,
)

logger = logging.getLogger(__name__)


class OrderStoreError(Exception):
    """Raised when the order store cannot be reached or a query fails."""


@runtime_checkable
class OrderStore(Protocol):
    """Storage interface used by the reconciler and the read path."""

    def get(self, order_id: str) -> Order | None:
        ...

    def insert(self, order: Order) -> None:
        ...

    def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
        **changes: Any,
    ) -> Order | None:
        """Move order_id from expected to target; None if it is not at expected."""
        ...

    def list_by_status(
        self, status: OrderStatus, updated_before: float | None = None
    ) -> list[Order]:
        ...


# ── In-memory store ───────────────────────────────────────────────────────


class InMemoryOrderStore:
    """Process-local order store with the same CAS semantics as Postgres.

    Used for tests and local development (ORDER_STORE=memory).
    """

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._lock = threading.Lock()

    def get(self, order_id: str) -> Order | None:
        with self._lock:
            order = self._orders.get(order_id)
            return copy.deepcopy(order) if order else None

    def insert(self, order: Order) -> None:
        with self._lock:
            if order.id in self._orders:
                raise OrderStoreError(f"Order already exists: {order.id}")
            self._orders[order.id] = copy.deepcopy(order)

    def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
        **changes: Any,
    ) -> Order | None:
        ensure_transition(expected, target)
        check_changes(changes)
        with self._lock:
            current = self._orders.get(order_id)
            if current is None or current.status != expected:
                return None
            updated = current.with_changes(target, **changes)
            self._orders[order_id] = updated
            return copy.deepcopy(updated)

    def list_by_status(
        self, status: OrderStatus, updated_before: float | None = None
    ) -> list[Order]:
        with self._lock:
            found = [
                copy.deepcopy(o)
                for o in self._orders.values()
                if o.status == status
                and (updated_before is None or o.updated_at < updated_before)
            ]
        return sorted(found, key=lambda o: o.updated_at)


# ── Postgres store ────────────────────────────────────────────────────────


_ORDER_COLUMNS = (
    "id, email, status, subtotal, shipping, total, "
    "fulfillment_order_id, fulfillment_status, created_at, updated_at"
)


class PostgresOrderStore:
    """psycopg-backed store over the store_orders / store_order_items tables."""

    def __init__(self, database_url: str, timeout: float = 5.0):
        self._url = database_url
        self._timeout = timeout

    def _connect(self) -> psycopg.Connection:
        try:
            return psycopg.connect(
                self._url,
                autocommit=True,
                row_factory=dict_row,
                connect_timeout=max(1, int(self._timeout)),
                options=f"-c statement_timeout={int(self._timeout * 1000)}",
            )
        except psycopg.Error as e:
            raise OrderStoreError(f"Cannot connect to order database: {e}") from e

    def init_tables(self) -> None:
        """Create order tables if they don't exist.  Idempotent."""
        try:
            with self._connect() as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS store_orders (
                        id                   TEXT PRIMARY KEY,
                        email                TEXT NOT NULL,
                        status               TEXT NOT NULL DEFAULT 'pending',
                        subtotal             INT NOT NULL DEFAULT 0,
                        shipping             INT NOT NULL DEFAULT 0,
                        total                INT NOT NULL DEFAULT 0,
                        fulfillment_order_id TEXT,
                        fulfillment_status   TEXT,
                        created_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
                        updated_at           TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS store_order_items (
                        order_id   TEXT NOT NULL REFERENCES store_orders(id),
                        position   INT NOT NULL,
                        variant_id TEXT NOT NULL,
                        quantity   INT NOT NULL,
                        name       TEXT NOT NULL DEFAULT '',
                        PRIMARY KEY (order_id, position)
                    )
                """)
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS store_orders_status_idx "
                    "ON store_orders (status, updated_at)"
                )
        except psycopg.Error as e:
            raise OrderStoreError(f"Failed to create order tables: {e}") from e
        logger.info("Order tables initialized")

    def get(self, order_id: str) -> Order | None:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_ORDER_COLUMNS} FROM store_orders WHERE id = %s",
                    (order_id,),
                ).fetchone()
                if row is None:
                    return None
                return _row_to_order(row, self._load_items(conn, order_id))
        except psycopg.Error as e:
            raise OrderStoreError(f"Failed to load order {order_id}: {e}") from e

    def insert(self, order: Order) -> None:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """INSERT INTO store_orders
                       (id, email, status, subtotal, shipping, total,
                        fulfillment_order_id, fulfillment_status)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s)""",
                    (
                        order.id,
                        order.email,
                        order.status.value,
                        order.subtotal,
                        order.shipping,
                        order.total,
                        order.fulfillment_order_id,
                        order.fulfillment_status,
                    ),
                )
                for position, item in enumerate(order.items):
                    conn.execute(
                        """INSERT INTO store_order_items
                           (order_id, position, variant_id, quantity, name)
                           VALUES (%s, %s, %s, %s, %s)""",
                        (order.id, position, item.variant_id, item.quantity, item.name),
                    )
        except psycopg.Error as e:
            raise OrderStoreError(f"Failed to insert order {order.id}: {e}") from e

    def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
        **changes: Any,
    ) -> Order | None:
        ensure_transition(expected, target)
        check_changes(changes)

        # Column names come from MUTABLE_FIELDS (checked above), values are bound
        columns = sorted(changes)
        assignments = ", ".join(["status = %s", *(f"{c} = %s" for c in columns), "updated_at = now()"])
        query = (
            f"UPDATE store_orders SET {assignments} "
            f"WHERE id = %s AND status = %s RETURNING {_ORDER_COLUMNS}"
        )
        params: list[Any] = [target.value, *(changes[c] for c in columns), order_id, expected.value]

        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
                if row is None:
                    return None
                return _row_to_order(row, self._load_items(conn, order_id))
        except psycopg.Error as e:
            raise OrderStoreError(
                f"Failed to move order {order_id} {expected.value} -> {target.value}: {e}"
            ) from e

    def list_by_status(
        self, status: OrderStatus, updated_before: float | None = None
    ) -> list[Order]:
        try:
            with self._connect() as conn:
                if updated_before is not None:
                    rows = conn.execute(
                        f"""SELECT {_ORDER_COLUMNS} FROM store_orders
                            WHERE status = %s AND updated_at < to_timestamp(%s)
                            ORDER BY updated_at""",
                        (status.value, updated_before),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        f"""SELECT {_ORDER_COLUMNS} FROM store_orders
                            WHERE status = %s ORDER BY updated_at""",
                        (status.value,),
                    ).fetchall()
                return [_row_to_order(r, self._load_items(conn, r["id"])) for r in rows]
        except psycopg.Error as e:
            raise OrderStoreError(f"Failed to list {status.value} orders: {e}") from e

    @staticmethod
    def _load_items(conn: psycopg.Connection, order_id: str) -> list[OrderItem]:
        rows = conn.execute(
            """SELECT variant_id, quantity, name FROM store_order_items
               WHERE order_id = %s ORDER BY position""",
            (order_id,),
        ).fetchall()
        return [
            OrderItem(variant_id=r["variant_id"], quantity=r["quantity"], name=r["name"])
            for r in rows
        ]


def _to_epoch(value: Any) -> float:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if value is None:
        return time.time()
    return float(value)


def _row_to_order(row: dict[str, Any], items: list[OrderItem]) -> Order:
    return Order(
        id=row["id"],
        email=row["email"],
        items=items,
        status=OrderStatus(row["status"]),
        subtotal=row["subtotal"],
        shipping=row["shipping"],
        total=row["total"],
        fulfillment_order_id=row["fulfillment_order_id"],
        fulfillment_status=row["fulfillment_status"],
        created_at=_to_epoch(row["created_at"]),
        updated_at=_to_epoch(row["updated_at"]),
    )


def build_order_store(backend: str, database_url: str = "", timeout: float = 5.0) -> OrderStore:
    """Create the configured store backend ('postgres' or 'memory')."""
    if backend == "memory":
        logger.warning("Using in-memory order store; orders are not durable")
        return InMemoryOrderStore()
    if backend == "postgres":
        if not database_url:
            raise OrderStoreError("DATABASE_URL is required for the postgres order store")
        return PostgresOrderStore(database_url, timeout=timeout)
    raise ValueError(f"Unknown order store backend: {backend}")
