"""FastAPI application for the storefront fulfillment webhook.

Collaborators (store, Printful client, Stripe client) are built once here
and kept on app.state; tests pass their own.

Run:
    python -m storefront.serve --port 8060
"""

from __future__ import annotations

import logging
import sys

import stripe
from fastapi import FastAPI

from storefront.config import Settings, get_settings
from storefront.fulfillment.printful import PrintfulClient
from storefront.orders.reconciler import OrderReconciler
from storefront.orders.store import OrderStore, PostgresOrderStore, build_order_store
from storefront.webhooks.handlers import register_webhook_routes

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_printful_client(settings: Settings) -> PrintfulClient | None:
    if not settings.printful_api_key:
        logger.warning("PRINTFUL_API_KEY not set; paid orders will need manual fulfillment")
        return None
    return PrintfulClient(
        settings.printful_api_key,
        store_id=settings.printful_store_id or None,
        base_url=settings.printful_base_url,
        timeout=settings.printful_timeout,
    )


def build_stripe_client(settings: Settings) -> stripe.StripeClient | None:
    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY not set; order confirmation lookups disabled")
        return None
    return stripe.StripeClient(api_key=settings.stripe_secret_key)


def create_app(
    settings: Settings | None = None,
    store: OrderStore | None = None,
    fulfillment: PrintfulClient | None = None,
    stripe_client: stripe.StripeClient | None = None,
) -> FastAPI:
    """Build the app. Missing collaborators are created from settings."""
    settings = settings or get_settings()
    if store is None:
        store = build_order_store(
            settings.order_store, settings.database_url, timeout=settings.database_timeout
        )
        if isinstance(store, PostgresOrderStore):
            store.init_tables()
    if fulfillment is None:
        fulfillment = build_printful_client(settings)
    if stripe_client is None:
        stripe_client = build_stripe_client(settings)

    app = FastAPI(title="Storefront Fulfillment")
    app.state.settings = settings
    app.state.store = store
    app.state.stripe_client = stripe_client
    app.state.reconciler = OrderReconciler(store, fulfillment)

    @app.get("/health")
    async def health():
        return {"status": "ok", "fulfillment": fulfillment is not None}

    register_webhook_routes(app)
    return app


if __name__ == "__main__":
    import uvicorn

    port = 8060
    for i, arg in enumerate(sys.argv):
        if arg == "--port" and i + 1 < len(sys.argv):
            port = int(sys.argv[i + 1])

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=port)
