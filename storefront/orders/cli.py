"""Operator CLI for orders that need attention.

Usage:
    python -m storefront.orders.cli stalled --minutes 15
    python -m storefront.orders.cli errors
    python -m storefront.orders.cli show ORDER_ID
    python -m storefront.orders.cli lookup ORDER_ID
"""

from __future__ import annotations

import argparse
import sys
import time

from storefront.config import get_settings
from storefront.fulfillment.printful import FulfillmentError, PrintfulClient
from storefront.orders.models import Order, OrderStatus
from storefront.orders.reconciler import (
    MISSING_ADDRESS,
    NOT_CONFIGURED,
    OrderReconciler,
    external_id_for,
)
from storefront.orders.store import OrderStore, build_order_store


def retry_hint(order: Order) -> str:
    """How an operator should treat an order in error."""
    status = order.fulfillment_status or ""
    if status == MISSING_ADDRESS:
        return "collect address, then fulfill by hand"
    if status == NOT_CONFIGURED:
        return "configure Printful, then fulfill by hand"
    if "(outcome unknown)" in status:
        return "run lookup to check Printful before retrying"
    if status.startswith("error: transient:"):
        return "safe to retry"
    return "fix order data before retrying"


def _format_order(order: Order) -> str:
    age_min = (time.time() - order.updated_at) / 60
    return (
        f"{order.id:36s}  {order.status.value:10s}  {order.total / 100:>9.2f}  "
        f"{age_min:7.1f}m  {order.fulfillment_status or '-'}"
    )


def cmd_stalled(args: argparse.Namespace, store: OrderStore) -> int:
    """List orders stuck in paid or processing."""
    stalled = OrderReconciler(store).find_stalled(args.minutes * 60)
    if not stalled:
        print(f"No orders in paid or processing for more than {args.minutes} minutes")
        return 0
    for order in stalled:
        print(_format_order(order))
    return 1


def cmd_errors(args: argparse.Namespace, store: OrderStore) -> int:
    """List orders in error with a retry hint."""
    failed = store.list_by_status(OrderStatus.ERROR)
    if not failed:
        print("No orders in error")
        return 0
    for order in failed:
        print(f"{_format_order(order)}  [{retry_hint(order)}]")
    return 1


def cmd_show(args: argparse.Namespace, store: OrderStore) -> int:
    """Print one order."""
    order = store.get(args.order_id)
    if order is None:
        print(f"ERROR: order not found: {args.order_id}", file=sys.stderr)
        return 2
    print(f"Order:        {order.id}")
    print(f"  Status:     {order.status.value}")
    print(f"  Email:      {order.email}")
    print(f"  Total:      {order.total / 100:.2f} (shipping {order.shipping / 100:.2f})")
    print(f"  Printful:   {order.fulfillment_order_id or '-'} ({order.fulfillment_status or '-'})")
    print("  Items:")
    for item in order.items:
        print(f"    {item.quantity} x {item.variant_id} {item.name}")
    if order.status is OrderStatus.ERROR:
        print(f"  Next step:  {retry_hint(order)}")
    return 0


def cmd_lookup(args: argparse.Namespace, store: OrderStore, printful: PrintfulClient | None) -> int:
    """Find the Printful order placed for ORDER_ID, by external id."""
    order = store.get(args.order_id)
    if order is None:
        print(f"ERROR: order not found: {args.order_id}", file=sys.stderr)
        return 2
    external_id = external_id_for(order.id)
    if external_id is None:
        print(f"ERROR: order id {order.id} has no Printful external id", file=sys.stderr)
        return 2
    if printful is None:
        print("ERROR: PRINTFUL_API_KEY is not set", file=sys.stderr)
        return 2

    try:
        remote = printful.get_order(f"@{external_id}")
    except FulfillmentError as e:
        if e.status_code == 404:
            print(f"No Printful order with external id {external_id} ({order.status.value} locally)")
            return 1
        print(f"ERROR: Printful lookup failed: {e.reason}", file=sys.stderr)
        return 2

    print(f"Order:        {order.id} ({order.status.value} locally)")
    print(f"  Printful:   {remote.id} ({remote.status})")
    if order.fulfillment_order_id and order.fulfillment_order_id != str(remote.id):
        print(f"  WARNING:    local record points at Printful order {order.fulfillment_order_id}")
    if order.status is not OrderStatus.FULFILLED:
        print("  Next step:  already placed in Printful; do not fulfill again")
    return 0


def main(
    argv: list[str] | None = None,
    store: OrderStore | None = None,
    printful: PrintfulClient | None = None,
) -> int:
    parser = argparse.ArgumentParser(
        prog="storefront-orders",
        description="Storefront order fulfillment tooling",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_stalled = sub.add_parser("stalled", help="Orders stuck in paid or processing")
    p_stalled.add_argument("--minutes", type=float, default=15.0, help="Minimum age")
    p_stalled.set_defaults(func=cmd_stalled)

    p_errors = sub.add_parser("errors", help="Orders in error")
    p_errors.set_defaults(func=cmd_errors)

    p_show = sub.add_parser("show", help="Show one order")
    p_show.add_argument("order_id")
    p_show.set_defaults(func=cmd_show)

    p_lookup = sub.add_parser("lookup", help="Find the Printful order for an order")
    p_lookup.add_argument("order_id")

    args = parser.parse_args(argv)
    settings = None
    if store is None:
        settings = get_settings()
        store = build_order_store(
            settings.order_store, settings.database_url, timeout=settings.database_timeout
        )

    if args.command == "lookup":
        if printful is None:
            from storefront.serve import build_printful_client

            printful = build_printful_client(settings or get_settings())
        return cmd_lookup(args, store, printful)
    return args.func(args, store)


if __name__ == "__main__":
    sys.exit(main())
