"""Order confirmation read path.

Combines the Stripe Checkout Session (what the customer paid, where it
ships) with the local order row. The webhook may not have arrived yet, so
a missing or still-pending order is a normal answer, not an error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import stripe

from storefront.orders.store import OrderStore

logger = logging.getLogger(__name__)


class ConfirmationError(Exception):
    """Raised when a confirmation cannot be shown; carries an HTTP status."""

    def __init__(self, status_code: int, reason: str):
        self.status_code = status_code
        self.reason = reason
        super().__init__(reason)


@dataclass
class OrderConfirmation:
    order_number: str
    email: str
    total: float  # Major currency units for display
    status: str | None  # None until the order row is visible
    shipping_address: dict[str, Any] | None = None
    items: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_number": self.order_number,
            "email": self.email,
            "total": self.total,
            "status": self.status,
            "shipping_address": self.shipping_address,
            "items": self.items,
        }


def _get(obj: Any, key: str) -> Any:
    """Key lookup that works for StripeObject and plain dicts."""
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def _shipping_address(session: Any) -> dict[str, Any] | None:
    details = _get(_get(session, "collected_information"), "shipping_details") or _get(
        session, "shipping_details"
    )
    address = _get(details, "address")
    if not address:
        return None
    return {
        "name": _get(details, "name"),
        "line1": _get(address, "line1"),
        "line2": _get(address, "line2"),
        "city": _get(address, "city"),
        "state": _get(address, "state"),
        "postal_code": _get(address, "postal_code"),
        "country": _get(address, "country"),
    }


def load_confirmation(
    session_id: str, client: stripe.StripeClient, store: OrderStore
) -> OrderConfirmation:
    """Build the confirmation view for a checkout session id.

    Raises:
        ConfirmationError: 402 unpaid session, 404 unknown session, 502 Stripe failure
    """
    try:
        session = client.checkout.sessions.retrieve(session_id)
    except stripe.InvalidRequestError as e:
        logger.info("Checkout session not found: %s", session_id)
        raise ConfirmationError(404, "order not found") from e
    except stripe.StripeError as e:
        logger.warning("Failed to retrieve checkout session %s", session_id, exc_info=True)
        raise ConfirmationError(502, "payment provider unavailable") from e

    if _get(session, "payment_status") != "paid":
        raise ConfirmationError(402, "payment incomplete")

    order_id = _get(_get(session, "metadata"), "orderId")
    order = store.get(order_id) if order_id else None

    customer = _get(session, "customer_details")
    amount_total = _get(session, "amount_total") or 0

    return OrderConfirmation(
        order_number=order_id or str(_get(session, "id") or session_id)[-8:].upper(),
        email=_get(customer, "email") or _get(session, "customer_email") or "",
        total=amount_total / 100,
        status=order.status.value if order else None,
        shipping_address=_shipping_address(session),
        items=[
            {"variant_id": i.variant_id, "quantity": i.quantity, "name": i.name}
            for i in order.items
        ]
        if order
        else [],
    )
