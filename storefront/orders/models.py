"""Order data models and the order status state machine.

Lifecycle contract:
- Orders are created PENDING by the checkout flow (outside this service)
- From then on only the reconciler mutates them, through compare-and-swap
  transitions on status
- Status only moves forward; terminal orders are kept for support/audit
- Items are frozen once an order is PAID
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class OrderStatus(str, Enum):
    """Order lifecycle states."""
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"  # Fulfillment call in flight
    FULFILLED = "fulfilled"
    ERROR = "error"            # Needs operator attention
    EXPIRED = "expired"        # Checkout session expired unpaid


TERMINAL_STATUSES = frozenset(
    {OrderStatus.FULFILLED, OrderStatus.ERROR, OrderStatus.EXPIRED}
)

# current -> allowed next states
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.EXPIRED}),
    OrderStatus.PAID: frozenset({OrderStatus.PROCESSING, OrderStatus.ERROR}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.FULFILLED, OrderStatus.ERROR}),
    OrderStatus.FULFILLED: frozenset(),
    OrderStatus.ERROR: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}

# Columns a transition may change besides status
MUTABLE_FIELDS = frozenset(
    {"email", "shipping", "total", "fulfillment_order_id", "fulfillment_status"}
)


class InvalidTransitionError(Exception):
    """Raised when a status change is not in the transition table."""

    def __init__(self, current: OrderStatus, target: OrderStatus):
        self.current = current
        self.target = target
        super().__init__(f"Invalid order transition: {current.value} -> {target.value}")


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: OrderStatus, target: OrderStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


def check_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot change order fields: {', '.join(sorted(unknown))}")


@dataclass
class OrderItem:
    """A line item. variant_id is a Printful sync variant id (numeric) or external variant id."""
    variant_id: str
    quantity: int
    name: str = ""


@dataclass
class Order:
    """One order per checkout attempt. Amounts are in minor currency units."""
    id: str
    email: str
    items: list[OrderItem] = field(default_factory=list)
    status: OrderStatus = OrderStatus.PENDING
    subtotal: int = 0
    shipping: int = 0
    total: int = 0
    fulfillment_order_id: str | None = None
    fulfillment_status: str | None = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def with_changes(self, target: OrderStatus, **changes: Any) -> Order:
        """Return a copy moved to target with the given column changes."""
        ensure_transition(self.status, target)
        check_changes(changes)
        return replace(self, status=target, updated_at=time.time(), **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "email": self.email,
            "items": [
                {"variant_id": i.variant_id, "quantity": i.quantity, "name": i.name}
                for i in self.items
            ],
            "subtotal": self.subtotal,
            "shipping": self.shipping,
            "total": self.total,
            "fulfillment_order_id": self.fulfillment_order_id,
            "fulfillment_status": self.fulfillment_status,
        }


def create_order(
    order_id: str,
    email: str,
    items: list[OrderItem],
    subtotal: int = 0,
    shipping: int = 0,
    total: int | None = None,
) -> Order:
    """Build a new PENDING order, as the checkout flow does."""
    now = time.time()
    return Order(
        id=order_id,
        email=email,
        items=list(items),
        subtotal=subtotal,
        shipping=shipping,
        total=subtotal + shipping if total is None else total,
        created_at=now,
        updated_at=now,
    )
