"""Printful order API client for dropship fulfillment.

Failure contract:
- create_order() is never retried here. Printful does not guarantee
  idempotent order creation, so after a timeout a blind retry could ship
  the same goods twice. The caller records the failure instead.
- Transport errors, timeouts, 429 and 5xx -> FulfillmentError(transient=True)
- Other 4xx (validation) -> FulfillmentError(transient=False)
- outcome_unknown is set when the request may have reached Printful
  (timeout after connect, unreadable success body)
- Read-only calls (get_order, estimate_shipping) retry with backoff
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError, model_validator

from storefront.tools.retry import retry_with_backoff

logger = logging.getLogger(__name__)

PRINTFUL_API_BASE = "https://api.printful.com"


class FulfillmentError(Exception):
    """Raised when Printful did not create (or confirm) an order."""

    def __init__(
        self,
        reason: str,
        *,
        transient: bool,
        status_code: int | None = None,
        outcome_unknown: bool = False,
    ):
        self.reason = reason
        self.transient = transient
        self.status_code = status_code
        self.outcome_unknown = outcome_unknown
        super().__init__(reason)


class Recipient(BaseModel):
    name: str
    address1: str
    address2: str | None = None
    city: str
    state_code: str | None = None
    country_code: str
    zip: str
    email: str | None = None


class FulfillmentItem(BaseModel):
    """A line item, addressed by Printful sync variant id or external variant id."""

    sync_variant_id: int | None = None
    external_variant_id: str | None = None
    quantity: int = Field(gt=0)

    @model_validator(mode="after")
    def _one_variant_reference(self) -> FulfillmentItem:
        if (self.sync_variant_id is None) == (self.external_variant_id is None):
            raise ValueError("exactly one of sync_variant_id / external_variant_id required")
        return self

    @classmethod
    def for_variant(cls, variant_id: str, quantity: int) -> FulfillmentItem:
        """Numeric ids are sync variant ids; anything else is an external id."""
        if not variant_id.strip():
            raise ValueError("variant id is blank")
        if variant_id.isdigit():
            return cls(sync_variant_id=int(variant_id), quantity=quantity)
        return cls(external_variant_id=variant_id, quantity=quantity)

    @property
    def variant_id(self) -> str:
        return str(self.sync_variant_id) if self.sync_variant_id is not None else self.external_variant_id


class FulfillmentRequest(BaseModel):
    """Body of POST /orders. external_id is Printful's per-store unique key."""

    recipient: Recipient
    items: list[FulfillmentItem] = Field(min_length=1)
    external_id: str | None = Field(default=None, max_length=32)


class FulfillmentOrder(BaseModel):
    """The subset of Printful's order response the pipeline keeps."""

    id: int
    status: str
    external_id: str | None = None
    shipping: str | None = None


class ShippingRate(BaseModel):
    id: str
    name: str
    rate: str


def _error_message(response: httpx.Response) -> str:
    """Extract Printful's error.message, falling back to the status code."""
    try:
        data = response.json()
    except ValueError:
        return f"Printful API error: {response.status_code}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(data.get("result"), str):
            return data["result"]
    return f"Printful API error: {response.status_code}"


class PrintfulClient:
    """Thin client over the Printful REST API.

    One instance (and one pooled httpx.Client) per process; pass
    http_client to inject a transport in tests.
    """

    def __init__(
        self,
        api_key: str,
        store_id: str | None = None,
        base_url: str = PRINTFUL_API_BASE,
        timeout: float = 5.0,
        http_client: httpx.Client | None = None,
    ):
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        if store_id:
            headers["X-PF-Store-Id"] = store_id
        self._client = http_client or httpx.Client(timeout=httpx.Timeout(timeout))
        self._client.base_url = base_url
        self._client.headers.update(headers)

    def close(self) -> None:
        self._client.close()

    # ── Order creation (single attempt) ───────────────────────────────────

    def create_order(self, request: FulfillmentRequest) -> FulfillmentOrder:
        """Create a Printful order. Exactly one HTTP attempt."""
        body = request.model_dump(mode="json", exclude_none=True)
        logger.info(
            "Creating Printful order: external_id=%s items=%d",
            request.external_id,
            len(request.items),
        )

        try:
            response = self._client.post("/orders", json=body)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            # Request never left this host
            raise FulfillmentError(f"connection failed: {e}", transient=True) from e
        except httpx.TimeoutException as e:
            raise FulfillmentError(
                f"timed out: {type(e).__name__}", transient=True, outcome_unknown=True
            ) from e
        except httpx.TransportError as e:
            raise FulfillmentError(
                f"transport error: {type(e).__name__}", transient=True, outcome_unknown=True
            ) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise FulfillmentError(
                _error_message(response),
                transient=True,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            message = _error_message(response)
            logger.error("Printful rejected order (HTTP %d): %s", response.status_code, message)
            raise FulfillmentError(message, transient=False, status_code=response.status_code)

        try:
            order = FulfillmentOrder.model_validate(response.json()["result"])
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            raise FulfillmentError(
                "unreadable order response",
                transient=False,
                status_code=response.status_code,
                outcome_unknown=True,
            ) from e

        logger.info("Printful order created: %s (status=%s)", order.id, order.status)
        return order

    # ── Read-only calls (retried) ─────────────────────────────────────────

    @retry_with_backoff(max_retries=3, base_delay=0.5, max_delay=10.0)
    def _read(self, method: str, endpoint: str, payload: dict | None = None) -> Any:
        response = self._client.request(method, endpoint, json=payload)
        response.raise_for_status()
        return response.json()["result"]

    def _read_or_raise(self, method: str, endpoint: str, payload: dict | None = None) -> Any:
        try:
            return self._read(method, endpoint, payload)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise FulfillmentError(
                _error_message(e.response),
                transient=status == 429 or status >= 500,
                status_code=status,
            ) from e
        except httpx.TransportError as e:
            raise FulfillmentError(
                f"transport error: {type(e).__name__}", transient=True
            ) from e
        except (ValueError, KeyError) as e:
            raise FulfillmentError("unreadable response", transient=False) from e

    def get_order(self, order_id: str | int) -> FulfillmentOrder:
        """Fetch an order by Printful id, or by external id as '@<external_id>'."""
        result = self._read_or_raise("GET", f"/orders/{order_id}")
        try:
            return FulfillmentOrder.model_validate(result)
        except ValidationError as e:
            raise FulfillmentError("unreadable order response", transient=False) from e

    def estimate_shipping(
        self, recipient: Recipient, items: list[FulfillmentItem]
    ) -> list[ShippingRate]:
        payload = {
            "recipient": recipient.model_dump(mode="json", exclude_none=True),
            "items": [i.model_dump(mode="json", exclude_none=True) for i in items],
        }
        result = self._read_or_raise("POST", "/shipping/rates", payload)
        try:
            return [ShippingRate.model_validate(r) for r in result]
        except (TypeError, ValidationError) as e:
            raise FulfillmentError("unreadable shipping rates", transient=False) from e
