"""Typed Stripe checkout events.

decode_event() turns an authenticated Stripe event envelope into a
PaymentEvent. It never raises: unknown event types decode as UNRECOGNIZED
and malformed fields decode as None, so the reconciler guards against a
stable shape instead of nested dict lookups.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

# metadata.type marker set by the checkout flow on store orders
STORE_ORDER_MARKER = "store_order"


class EventType(str, Enum):
    """Checkout events the pipeline understands."""
    SESSION_COMPLETED = "session_completed"
    SESSION_EXPIRED = "session_expired"
    UNRECOGNIZED = "unrecognized"


_STRIPE_EVENT_TYPES: dict[str, EventType] = {
    "checkout.session.completed": EventType.SESSION_COMPLETED,
    # Delayed payment methods: completed arrives unpaid, this one once settled
    "checkout.session.async_payment_succeeded": EventType.SESSION_COMPLETED,
    "checkout.session.expired": EventType.SESSION_EXPIRED,
}


@dataclass(frozen=True)
class ShippingAddress:
    line1: str
    line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None


@dataclass(frozen=True)
class ShippingDetails:
    address: ShippingAddress
    name: str | None = None


@dataclass(frozen=True)
class PaymentEvent:
    """A verified checkout event, reduced to the fields the pipeline uses."""

    event_type: EventType
    stripe_type: str = ""
    event_id: str = ""
    session_id: str | None = None
    order_id: str | None = None
    order_type: str | None = None
    customer_email: str | None = None
    amount_total: int | None = None
    amount_shipping: int | None = None
    shipping: ShippingDetails | None = None
    payment_status: str | None = None

    @property
    def is_store_order(self) -> bool:
        return self.order_type == STORE_ORDER_MARKER


def _str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _int(value: Any) -> int | None:
    # bool is an int subclass; Stripe never sends booleans for amounts
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _decode_shipping(obj: dict[str, Any]) -> ShippingDetails | None:
    """Read shipping_details, falling back to collected_information.

    Newer Stripe API versions only populate
    collected_information.shipping_details.
    """
    details = _dict(obj.get("shipping_details")) or _dict(
        _dict(obj.get("collected_information")).get("shipping_details")
    )
    address = _dict(details.get("address"))
    line1 = _str(address.get("line1"))
    if line1 is None:
        return None
    return ShippingDetails(
        name=_str(details.get("name")),
        address=ShippingAddress(
            line1=line1,
            line2=_str(address.get("line2")),
            city=_str(address.get("city")),
            state=_str(address.get("state")),
            postal_code=_str(address.get("postal_code")),
            country=_str(address.get("country")),
        ),
    )


def decode_event(payload: Any) -> PaymentEvent:
    """Decode a Stripe event envelope ({type, id, data.object})."""
    envelope = _dict(payload)
    stripe_type = _str(envelope.get("type")) or ""
    event_type = _STRIPE_EVENT_TYPES.get(stripe_type, EventType.UNRECOGNIZED)
    event_id = _str(envelope.get("id")) or ""

    if event_type is EventType.UNRECOGNIZED:
        return PaymentEvent(event_type=event_type, stripe_type=stripe_type, event_id=event_id)

    obj = _dict(_dict(envelope.get("data")).get("object"))
    metadata = _dict(obj.get("metadata"))
    customer = _dict(obj.get("customer_details"))
    totals = _dict(obj.get("total_details"))

    return PaymentEvent(
        event_type=event_type,
        stripe_type=stripe_type,
        event_id=event_id,
        session_id=_str(obj.get("id")),
        order_id=_str(metadata.get("orderId")),
        order_type=_str(metadata.get("type")),
        customer_email=_str(customer.get("email")) or _str(obj.get("customer_email")),
        amount_total=_int(obj.get("amount_total")),
        amount_shipping=_int(totals.get("amount_shipping")),
        shipping=_decode_shipping(obj),
        payment_status=_str(obj.get("payment_status")),
    )
