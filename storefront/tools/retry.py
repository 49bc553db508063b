"""Backoff for idempotent Printful reads.

Used by PrintfulClient.get_order / estimate_shipping, which the operator
lookup runs against a provider that rate-limits (429 with Retry-After) and
has short 5xx spells.

Never wrap a call that creates something on the provider side: after a
timeout the first attempt may have succeeded, and a retry would duplicate it.
"""

from __future__ import annotations

import functools
import logging
import random
import time
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def _retry_reason(exc: Exception) -> tuple[str, httpx.Response | None] | None:
    """Why exc is worth another attempt, or None if it is final."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in RETRYABLE_STATUS_CODES:
            return f"HTTP {status}", exc.response
        return None
    if isinstance(exc, httpx.TransportError):
        return type(exc).__name__, None
    return None


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    jitter: float = 0.3,
    sleep: Callable[[float], None] | None = None,
) -> Callable:
    """Decorator: up to max_retries extra attempts for retryable httpx failures.

    sleep defaults to time.sleep, looked up at call time so tests can patch it.
    """

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return fn(*args, **kwargs)
                except (httpx.HTTPStatusError, httpx.TransportError) as e:
                    retry = _retry_reason(e)
                    if retry is None or attempt >= max_retries:
                        raise
                    reason, response = retry
                    delay = compute_delay(attempt, base_delay, max_delay, jitter, response)
                    attempt += 1
                    logger.warning(
                        "%s failed (%s); attempt %d of %d in %.2fs",
                        fn.__name__,
                        reason,
                        attempt + 1,
                        max_retries + 1,
                        delay,
                    )
                    (sleep or time.sleep)(delay)

        return wrapper

    return decorator


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    response: httpx.Response | None = None,
) -> float:
    """Retry-After seconds when the provider sends them, else jittered doubling."""
    if response is not None:
        try:
            return min(float(response.headers["Retry-After"]), max_delay)
        except (KeyError, ValueError):
            pass

    delay = min(base_delay * 2**attempt, max_delay)
    spread = delay * jitter
    return max(0.05, delay + random.uniform(-spread, spread))
