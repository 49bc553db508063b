"""Tests for the order confirmation read path (Stripe client mocked)."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import stripe

from storefront.orders.confirmation import ConfirmationError, load_confirmation
from storefront.orders.models import OrderStatus


def _stripe(session=None, error=None) -> MagicMock:
    client = MagicMock()
    if error is not None:
        client.checkout.sessions.retrieve.side_effect = error
    else:
        client.checkout.sessions.retrieve.return_value = session
    return client


def _session(**overrides) -> dict:
    session = {
        "id": "cs_test_a1b2c3d4e5f6g7h8",
        "payment_status": "paid",
        "amount_total": 5398,
        "metadata": {"orderId": "ord_1", "type": "store_order"},
        "customer_details": {"email": "buyer@example.com"},
        "collected_information": {
            "shipping_details": {
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
        },
    }
    session.update(overrides)
    return session


class TestLoadConfirmation:

    def test_paid_with_order(self, store, pending_order):
        client = _stripe(_session())
        confirmation = load_confirmation("cs_test_a1b2c3d4e5f6g7h8", client, store)

        client.checkout.sessions.retrieve.assert_called_once_with("cs_test_a1b2c3d4e5f6g7h8")
        assert confirmation.order_number == "ord_1"
        assert confirmation.email == "buyer@example.com"
        assert confirmation.total == 53.98
        assert confirmation.status == OrderStatus.PENDING.value
        assert confirmation.shipping_address["city"] == "London"
        assert confirmation.items == [{"variant_id": "4011", "quantity": 2, "name": "Classic Tee"}]

    def test_order_not_yet_visible(self, store):
        confirmation = load_confirmation("cs_x", _stripe(_session()), store)
        assert confirmation.status is None
        assert confirmation.items == []

    def test_order_number_falls_back_to_session_suffix(self, store):
        confirmation = load_confirmation("cs_x", _stripe(_session(metadata={})), store)
        assert confirmation.order_number == "E5F6G7H8"

    def test_legacy_shipping_details(self, store):
        session = _session(collected_information=None)
        session["shipping_details"] = {"name": "Grace", "address": {"line1": "1 Cobol Way"}}
        confirmation = load_confirmation("cs_x", _stripe(session), store)
        assert confirmation.shipping_address["line1"] == "1 Cobol Way"

    def test_unpaid(self, store):
        with pytest.raises(ConfirmationError) as exc:
            load_confirmation("cs_x", _stripe(_session(payment_status="unpaid")), store)
        assert exc.value.status_code == 402

    def test_unknown_session(self, store):
        error = stripe.InvalidRequestError("No such checkout.session", param="id")
        with pytest.raises(ConfirmationError) as exc:
            load_confirmation("cs_nope", _stripe(error=error), store)
        assert exc.value.status_code == 404

    def test_stripe_unavailable(self, store):
        error = stripe.APIConnectionError("Network error")
        with pytest.raises(ConfirmationError) as exc:
            load_confirmation("cs_x", _stripe(error=error), store)
        assert exc.value.status_code == 502

    def test_to_dict(self, store):
        data = load_confirmation("cs_x", _stripe(_session()), store).to_dict()
        assert set(data) == {"order_number", "email", "total", "status", "shipping_address", "items"}
