"""Shared fixtures for the storefront fulfillment test suite."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any

import pytest

from storefront.fulfillment.printful import FulfillmentOrder, FulfillmentRequest
from storefront.orders.models import OrderItem, create_order
from storefront.orders.store import InMemoryOrderStore

WEBHOOK_SECRET = "whsec_test_secret"


class FakePrintful:
    """Records create_order calls; returns `result` or raises `error`."""

    def __init__(self, result: FulfillmentOrder | None = None, error: Exception | None = None):
        self.result = result or FulfillmentOrder(id=9001, status="draft")
        self.error = error
        self.calls: list[FulfillmentRequest] = []

    def create_order(self, request: FulfillmentRequest) -> FulfillmentOrder:
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return self.result


def sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Compute a valid Stripe-Signature header."""
    ts = int(time.time()) if timestamp is None else timestamp
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def checkout_payload(
    order_id: str = "ord_1",
    event_type: str = "checkout.session.completed",
    *,
    with_address: bool = True,
    marker: str = "store_order",
    email: str = "buyer@example.com",
    amount_total: int = 5398,
    amount_shipping: int = 499,
    event_id: str = "evt_1",
) -> dict[str, Any]:
    """A Stripe checkout.session.* event envelope."""
    obj: dict[str, Any] = {
        "id": "cs_test_123",
        "object": "checkout.session",
        "metadata": {"orderId": order_id, "type": marker},
        "customer_details": {"email": email},
        "amount_total": amount_total,
        "total_details": {"amount_shipping": amount_shipping},
        "payment_status": "paid",
    }
    if with_address:
        obj["shipping_details"] = {
            "name": "Ada Lovelace",
            "address": {
                "line1": "12 Analytical Row",
                "line2": None,
                "city": "London",
                "state": None,
                "postal_code": "N1 9GU",
                "country": "GB",
            },
        }
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def encode(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode()


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def printful() -> FakePrintful:
    return FakePrintful()


@pytest.fixture
def pending_order(store):
    """ord_1: pending, one line of variant 4011 x 2."""
    order = create_order(
        "ord_1",
        "checkout@example.com",
        [OrderItem(variant_id="4011", quantity=2, name="Classic Tee")],
        subtotal=4899,
        shipping=0,
    )
    store.insert(order)
    return order


@pytest.fixture
def make_signature():
    """Factory: make_signature(body, secret=..., timestamp=None) -> header."""
    return sign


@pytest.fixture
def make_payload():
    """Factory: make_payload(order_id, event_type, ...) -> event envelope dict."""
    return checkout_payload


@pytest.fixture
def fake_printful_cls():
    return FakePrintful
