"""Tests for the order status state machine."""

from __future__ import annotations

import itertools

import pytest

from storefront.orders.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    InvalidTransitionError,
    OrderItem,
    OrderStatus,
    can_transition,
    create_order,
    ensure_transition,
)

ALLOWED = {
    (OrderStatus.PENDING, OrderStatus.PAID),
    (OrderStatus.PENDING, OrderStatus.EXPIRED),
    (OrderStatus.PAID, OrderStatus.PROCESSING),
    (OrderStatus.PAID, OrderStatus.ERROR),
    (OrderStatus.PROCESSING, OrderStatus.FULFILLED),
    (OrderStatus.PROCESSING, OrderStatus.ERROR),
}


class TestTransitionTable:

    @pytest.mark.parametrize("current,target", list(itertools.product(OrderStatus, OrderStatus)))
    def test_only_listed_pairs_allowed(self, current, target):
        assert can_transition(current, target) is ((current, target) in ALLOWED)

    def test_terminal_states_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert ALLOWED_TRANSITIONS[status] == frozenset()

    def test_no_transition_goes_backwards(self):
        order = list(OrderStatus)
        for current, targets in ALLOWED_TRANSITIONS.items():
            for target in targets:
                assert order.index(target) > order.index(current)

    def test_ensure_transition_raises(self):
        with pytest.raises(InvalidTransitionError) as exc:
            ensure_transition(OrderStatus.PAID, OrderStatus.EXPIRED)
        assert exc.value.current is OrderStatus.PAID
        assert exc.value.target is OrderStatus.EXPIRED
        assert "paid -> expired" in str(exc.value)


class TestOrder:

    def _order(self):
        return create_order("ord_1", "a@example.com", [OrderItem("4011", 2)], subtotal=1000, shipping=250)

    def test_create_order_defaults(self):
        order = self._order()
        assert order.status is OrderStatus.PENDING
        assert order.total == 1250
        assert order.created_at == order.updated_at > 0
        assert order.is_terminal is False

    def test_with_changes(self):
        order = self._order()
        paid = order.with_changes(OrderStatus.PAID, email="b@example.com", total=1300)
        assert paid.status is OrderStatus.PAID
        assert paid.email == "b@example.com"
        assert paid.total == 1300
        assert order.status is OrderStatus.PENDING  # original untouched

    def test_with_changes_rejects_invalid_transition(self):
        with pytest.raises(InvalidTransitionError):
            self._order().with_changes(OrderStatus.FULFILLED)

    def test_with_changes_rejects_immutable_fields(self):
        with pytest.raises(ValueError, match="items"):
            self._order().with_changes(OrderStatus.PAID, items=[])

    def test_to_dict(self):
        data = self._order().to_dict()
        assert data["status"] == "pending"
        assert data["items"] == [{"variant_id": "4011", "quantity": 2, "name": ""}]
        assert data["fulfillment_order_id"] is None
