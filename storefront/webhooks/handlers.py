"""Webhook HTTP handlers: FastAPI routes for the Stripe checkout webhook.

Each delivery:
1. Reads the raw body (HMAC covers the exact bytes sent)
2. Verifies the Stripe-Signature header
3. Decodes the event and runs the reconciler (in the threadpool; the
   store and Printful calls block)
4. Returns 200 {"received": true}

Response contract:
- 400 only for signature failures; nothing is processed
- 200 for every authenticated event, including unknown orders, ignored
  events and fulfillment failures (those are recorded as order state)
- 500 for infrastructure faults (store down, misconfiguration); Stripe
  redelivers and the reconciler's no-op rule absorbs the repeat
- Never return error details to the webhook caller
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from storefront.orders.confirmation import ConfirmationError, load_confirmation
from storefront.orders.reconciler import OrderReconciler
from storefront.orders.store import OrderStoreError
from storefront.webhooks.verification import (
    SIGNATURE_HEADER,
    VerificationError,
    verify_event,
)

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/store/webhook"
CONFIRMATION_PATH = "/api/store/orders/confirmation"


def _log_webhook(event_type: str, event_id: str, order_id: str, status: str, start: float) -> None:
    """Audit log for webhook activity."""
    logger.info(
        "WEBHOOK_AUDIT provider=stripe event=%s id=%s order=%s status=%s elapsed_ms=%.1f",
        event_type,
        event_id,
        order_id,
        status,
        (time.time() - start) * 1000,
    )


async def handle_stripe_webhook(request: Request) -> JSONResponse:
    """Verify, reconcile and acknowledge one Stripe delivery."""
    start = time.time()
    state = request.app.state

    body = await request.body()

    secret = state.settings.stripe_webhook_secret
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured; cannot verify webhooks")
        _log_webhook("unknown", "unknown", "", "not_configured", start)
        return JSONResponse({"error": "configuration error"}, status_code=500)

    try:
        event = verify_event(
            body,
            request.headers.get(SIGNATURE_HEADER),
            secret,
            tolerance=state.settings.stripe_signature_tolerance,
        )
    except VerificationError as e:
        logger.warning("Stripe webhook rejected: %s", e.reason)
        _log_webhook("unknown", "unknown", "", "signature_failed", start)
        return JSONResponse({"error": "invalid signature"}, status_code=400)

    reconciler: OrderReconciler = state.reconciler
    try:
        outcome = await run_in_threadpool(reconciler.reconcile, event)
    except OrderStoreError:
        logger.exception("Order store unavailable for event %s", event.event_id)
        _log_webhook(event.stripe_type, event.event_id, event.order_id or "", "store_failed", start)
        return JSONResponse({"error": "internal error"}, status_code=500)
    except Exception:
        logger.exception("Unexpected failure reconciling event %s", event.event_id)
        _log_webhook(event.stripe_type, event.event_id, event.order_id or "", "failed", start)
        return JSONResponse({"error": "internal error"}, status_code=500)

    _log_webhook(
        event.stripe_type or "unknown",
        event.event_id,
        outcome.order_id or "",
        outcome.action.value,
        start,
    )
    return JSONResponse({"received": True}, status_code=200)


async def handle_order_confirmation(request: Request) -> JSONResponse:
    """Confirmation page data for ?session_id=cs_..."""
    session_id = request.query_params.get("session_id", "").strip()
    if not session_id:
        return JSONResponse({"error": "session_id required"}, status_code=400)

    stripe_client = request.app.state.stripe_client
    if stripe_client is None:
        return JSONResponse({"error": "payment provider not configured"}, status_code=503)

    try:
        confirmation = await run_in_threadpool(
            load_confirmation, session_id, stripe_client, request.app.state.store
        )
    except ConfirmationError as e:
        return JSONResponse({"error": e.reason}, status_code=e.status_code)
    except OrderStoreError:
        logger.exception("Order store unavailable for confirmation %s", session_id)
        return JSONResponse({"error": "internal error"}, status_code=500)

    return JSONResponse(confirmation.to_dict())


def register_webhook_routes(app: FastAPI) -> None:
    """Register the store webhook and confirmation routes.

    Expects app.state.settings, .reconciler, .store and .stripe_client
    (see storefront.serve.create_app).
    """
    app.add_api_route(WEBHOOK_PATH, handle_stripe_webhook, methods=["POST"])
    app.add_api_route(CONFIRMATION_PATH, handle_order_confirmation, methods=["GET"])
    logger.info("Store routes registered: %s, %s", WEBHOOK_PATH, CONFIRMATION_PATH)
