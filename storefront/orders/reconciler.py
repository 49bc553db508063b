"""Order reconciler: maps verified checkout events onto order transitions.

Transitions (every step is a compare-and-swap in the store):

    pending --session_completed--> paid --address--> processing --ok--> fulfilled
                                    |                     |
                                    +--no address--> error <--provider failed
    pending --session_expired--> expired

Delivery contract:
- Safe under at-least-once delivery: only pending and paid orders are
  acted on, and the paid -> processing swap admits exactly one pass, so
  Printful is called at most once per order id
- A completed event whose payment is not settled (delayed payment methods)
  leaves the order pending; the later async_payment_succeeded event pays it
- A pass that stopped at paid (store failure after the payment write) is
  resumed by the redelivery the 5xx answer triggers
- Once Printful has answered (or timed out), the outcome is stored as
  order state, never raised; redelivery must not repeat a provider call
- Store failures propagate so the sender redelivers the webhook
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum

from pydantic import ValidationError

from storefront.fulfillment.printful import (
    FulfillmentError,
    FulfillmentItem,
    FulfillmentRequest,
    PrintfulClient,
    Recipient,
)
from storefront.orders.models import Order, OrderStatus
from storefront.orders.store import OrderStore
from storefront.webhooks.events import EventType, PaymentEvent

logger = logging.getLogger(__name__)

MISSING_ADDRESS = "missing_address"
NOT_CONFIGURED = "not_configured"

# Checkout payment_status values that mean the money is settled
SETTLED_PAYMENT_STATUSES = frozenset({"paid", "no_payment_required"})

# Statuses a pass can be interrupted in; older than the cutoff means stalled
IN_FLIGHT_STATUSES = (OrderStatus.PAID, OrderStatus.PROCESSING)


class UnknownOrderError(LookupError):
    """Raised when an event references an order id the store does not have."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class ReconcileAction(str, Enum):
    """What a reconciliation pass did."""
    IGNORED = "ignored"                  # Not ours / unrecognized event
    UNKNOWN_ORDER = "unknown_order"
    DUPLICATE = "duplicate"              # Order already advanced (redelivery)
    REJECTED = "rejected"                # Paid event for an order with no items
    AWAITING_PAYMENT = "awaiting_payment"  # Completed, payment not yet settled
    EXPIRED = "expired"
    MISSING_ADDRESS = "missing_address"
    FULFILLED = "fulfilled"
    FULFILLMENT_FAILED = "fulfillment_failed"


@dataclass(frozen=True)
class ReconcileOutcome:
    action: ReconcileAction
    order_id: str | None = None
    status: OrderStatus | None = None


def fulfillment_error_status(error: FulfillmentError) -> str:
    """Stored fulfillment_status for a failed Printful call.

    'error: transient: ...' may succeed on a manual retry (check Printful
    first when outcome is unknown); 'error: rejected: ...' needs a data fix.
    """
    kind = "transient" if error.transient else "rejected"
    detail = error.reason
    if error.outcome_unknown:
        detail += " (outcome unknown)"
    return f"error: {kind}: {detail}"


def external_id_for(order_id: str) -> str | None:
    """Printful external_id (max 32 chars) derived from the order id."""
    candidate = order_id.replace("-", "")
    return candidate if 0 < len(candidate) <= 32 else None


def build_fulfillment_request(order: Order, event: PaymentEvent) -> FulfillmentRequest:
    """Printful order body from a paid order and its checkout event.

    Raises ValueError/ValidationError when an item has no variant id or a
    non-positive quantity; the caller records that as a rejection.
    """
    if event.shipping is None:
        raise ValueError("shipping address required")
    address = event.shipping.address
    return FulfillmentRequest(
        recipient=Recipient(
            name=event.shipping.name or "Customer",
            address1=address.line1,
            address2=address.line2,
            city=address.city or "",
            state_code=address.state,
            country_code=address.country or "US",
            zip=address.postal_code or "",
            email=event.customer_email or order.email,
        ),
        items=[
            FulfillmentItem.for_variant(item.variant_id, item.quantity)
            for item in order.items
        ],
        external_id=external_id_for(order.id),
    )


def _redact_email(email: str | None) -> str:
    if not email or "@" not in email:
        return ""
    return "***@" + email.split("@", 1)[1]


class OrderReconciler:
    """The only component with business logic; everything else is an adapter."""

    def __init__(self, store: OrderStore, fulfillment: PrintfulClient | None = None):
        self._store = store
        self._fulfillment = fulfillment

    def load_order(self, order_id: str) -> Order:
        order = self._store.get(order_id)
        if order is None:
            raise UnknownOrderError(order_id)
        return order

    def reconcile(self, event: PaymentEvent) -> ReconcileOutcome:
        """Apply one verified event. Safe to call repeatedly for the same event."""
        if event.event_type is EventType.UNRECOGNIZED:
            logger.info("Unhandled event type: %s; acknowledging", event.stripe_type or "unknown")
            return ReconcileOutcome(ReconcileAction.IGNORED)

        if not event.is_store_order:
            logger.info("Ignoring non-store checkout session %s", event.session_id)
            return ReconcileOutcome(ReconcileAction.IGNORED, event.order_id)

        if not event.order_id:
            logger.error("No orderId in checkout session %s metadata", event.session_id)
            return ReconcileOutcome(ReconcileAction.IGNORED)

        try:
            order = self.load_order(event.order_id)
        except UnknownOrderError as e:
            logger.error("%s (event %s); acknowledging", e, event.event_id)
            return ReconcileOutcome(ReconcileAction.UNKNOWN_ORDER, e.order_id)

        if event.event_type is EventType.SESSION_EXPIRED:
            return self._expire(order)
        return self._complete(order, event)

    # ── session_expired ──────────────────────────────────────────────────

    def _expire(self, order: Order) -> ReconcileOutcome:
        if order.status is not OrderStatus.PENDING:
            logger.info("Order %s is %s; ignoring expiry", order.id, order.status.value)
            return ReconcileOutcome(ReconcileAction.DUPLICATE, order.id, order.status)

        updated = self._store.transition(order.id, OrderStatus.PENDING, OrderStatus.EXPIRED)
        if updated is None:
            return self._lost_race(order.id)
        logger.info("Order %s expired", order.id)
        return ReconcileOutcome(ReconcileAction.EXPIRED, order.id, updated.status)

    # ── session_completed ────────────────────────────────────────────────

    def _complete(self, order: Order, event: PaymentEvent) -> ReconcileOutcome:
        if order.status is OrderStatus.PAID:
            # An earlier pass wrote paid and then failed; pick up where it stopped
            logger.warning("Order %s is paid with no fulfillment attempt; resuming", order.id)
            return self._dispatch(order, event)

        if order.status is not OrderStatus.PENDING:
            logger.info(
                "Order %s already %s; redelivered %s is a no-op",
                order.id,
                order.status.value,
                event.event_id or "event",
            )
            return ReconcileOutcome(ReconcileAction.DUPLICATE, order.id, order.status)

        if event.payment_status not in SETTLED_PAYMENT_STATUSES:
            logger.info(
                "Order %s checkout completed with payment_status=%s; waiting for payment",
                order.id,
                event.payment_status or "missing",
            )
            return ReconcileOutcome(ReconcileAction.AWAITING_PAYMENT, order.id, order.status)

        if not order.items:
            logger.error("Order %s has no items; not marking paid", order.id)
            return ReconcileOutcome(ReconcileAction.REJECTED, order.id, order.status)

        paid = self._store.transition(
            order.id,
            OrderStatus.PENDING,
            OrderStatus.PAID,
            email=event.customer_email or order.email,
            shipping=order.shipping if event.amount_shipping is None else event.amount_shipping,
            total=order.total if event.amount_total is None else event.amount_total,
        )
        if paid is None:
            return self._lost_race(order.id)
        logger.info(
            "Order %s paid: total=%d shipping=%d email=%s",
            paid.id,
            paid.total,
            paid.shipping,
            _redact_email(paid.email),
        )
        return self._dispatch(paid, event)

    def _dispatch(self, paid: Order, event: PaymentEvent) -> ReconcileOutcome:
        """Record the fulfillment attempt for a paid order.

        Every exit leaves paid through a swap, so of two passes over the
        same paid order only one reaches Printful.
        """
        if event.shipping is None:
            logger.error("No shipping address for paid order %s", paid.id)
            return self._fail(paid, OrderStatus.PAID, MISSING_ADDRESS, ReconcileAction.MISSING_ADDRESS)

        if self._fulfillment is None:
            logger.error("Printful is not configured; order %s needs manual fulfillment", paid.id)
            return self._fail(paid, OrderStatus.PAID, NOT_CONFIGURED, ReconcileAction.FULFILLMENT_FAILED)

        try:
            request = build_fulfillment_request(paid, event)
        except (ValueError, ValidationError) as e:
            logger.error("Order %s cannot be sent to Printful: %s", paid.id, e)
            return self._fail(
                paid,
                OrderStatus.PAID,
                "error: rejected: invalid order data",
                ReconcileAction.FULFILLMENT_FAILED,
            )

        processing = self._store.transition(paid.id, OrderStatus.PAID, OrderStatus.PROCESSING)
        if processing is None:
            return self._lost_race(paid.id)

        return self._fulfill(processing, request)

    def _fulfill(self, order: Order, request: FulfillmentRequest) -> ReconcileOutcome:
        try:
            created = self._fulfillment.create_order(request)
        except FulfillmentError as e:
            logger.error(
                "Failed to create Printful order for %s (transient=%s): %s",
                order.id,
                e.transient,
                e.reason,
            )
            status = fulfillment_error_status(e)
            return self._fail(order, OrderStatus.PROCESSING, status, ReconcileAction.FULFILLMENT_FAILED)
        except Exception as e:
            logger.exception("Unexpected Printful client failure for order %s", order.id)
            status = f"error: transient: unexpected {type(e).__name__} (outcome unknown)"
            return self._fail(order, OrderStatus.PROCESSING, status, ReconcileAction.FULFILLMENT_FAILED)

        fulfilled = self._store.transition(
            order.id,
            OrderStatus.PROCESSING,
            OrderStatus.FULFILLED,
            fulfillment_order_id=str(created.id),
            fulfillment_status=created.status,
        )
        if fulfilled is None:
            # Only this pass can move an order out of processing
            logger.error(
                "Order %s left processing while Printful order %s was created",
                order.id,
                created.id,
            )
            return self._lost_race(order.id)
        logger.info("Order %s fulfilled by Printful order %s", order.id, created.id)
        return ReconcileOutcome(ReconcileAction.FULFILLED, order.id, fulfilled.status)

    def _fail(
        self,
        order: Order,
        expected: OrderStatus,
        fulfillment_status: str,
        action: ReconcileAction,
    ) -> ReconcileOutcome:
        updated = self._store.transition(
            order.id, expected, OrderStatus.ERROR, fulfillment_status=fulfillment_status
        )
        if updated is None:
            return self._lost_race(order.id)
        return ReconcileOutcome(action, order.id, updated.status)

    def _lost_race(self, order_id: str) -> ReconcileOutcome:
        current = self._store.get(order_id)
        status = current.status if current else None
        logger.info(
            "Order %s changed concurrently (now %s); treating as redelivery",
            order_id,
            status.value if status else "missing",
        )
        return ReconcileOutcome(ReconcileAction.DUPLICATE, order_id, status)

    # ── Operator support ─────────────────────────────────────────────────

    def find_stalled(self, max_age_seconds: float, now: float | None = None) -> list[Order]:
        """Orders left paid or processing for longer than max_age_seconds.

        Paid means a pass stopped before the fulfillment attempt and no
        redelivery resumed it. Processing means a crash between the
        Printful call and the final write; look the order up in Printful
        (storefront-orders lookup) before acting on it.
        """
        cutoff = (time.time() if now is None else now) - max_age_seconds
        stalled = [
            order
            for status in IN_FLIGHT_STATUSES
            for order in self._store.list_by_status(status, updated_before=cutoff)
        ]
        stalled.sort(key=lambda o: o.updated_at)
        for order in stalled:
            logger.warning(
                "Order %s stalled in %s since %.0f", order.id, order.status.value, order.updated_at
            )
        return stalled
