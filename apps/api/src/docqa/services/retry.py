"""Transient-failure classification and backoff shared by the model clients."""

from __future__ import annotations

from random import random

import httpx

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status in RETRYABLE_STATUS_CODES or status >= 500
    return False


def retry_after_seconds(exc: BaseException) -> float | None:
    if not isinstance(exc, httpx.HTTPStatusError):
        return None
    raw = exc.response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def backoff_delay(attempt: int, *, base_seconds: float, max_seconds: float) -> float:
    delay = min(base_seconds * (2 ** (attempt - 1)), max_seconds)
    return delay + random() * 0.2 * delay


def next_delay(exc: BaseException, attempt: int, *, base_seconds: float, max_seconds: float) -> float:
    delay = retry_after_seconds(exc)
    if delay is not None:
        return min(delay, max_seconds) if max_seconds > 0 else delay
    return backoff_delay(attempt, base_seconds=base_seconds, max_seconds=max_seconds)
