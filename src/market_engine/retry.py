"""Exponential backoff with jitter for settlement-layer and signal-provider calls."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from .exceptions import ExternalCallError, TransientChainError
from .redaction import sanitize_text

T = TypeVar("T")

RETRYABLE_CATEGORIES = frozenset({"network", "rate_limit", "server", "unknown"})


def backoff_delay_ms(attempt: int, *, base_ms: int, jitter_ms: int) -> int:
    """Delay before retrying after zero-based ``attempt``."""
    backoff_ms = base_ms * (2**attempt)
    jitter = random.randint(0, jitter_ms) if jitter_ms > 0 else 0
    return int(backoff_ms + jitter)


def call_with_retry(
    fn: Callable[[], T],
    *,
    operation: str,
    max_attempts: int,
    base_ms: int,
    jitter_ms: int,
    logger: logging.Logger,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn`` until it succeeds, fails permanently, or attempts run out.

    Only ``ExternalCallError`` with a retryable category is retried. Any other
    exception (including non-retryable ``ExternalCallError``) propagates
    unchanged on first occurrence. Exhausting ``max_attempts`` raises
    ``TransientChainError`` chained from the last failure.
    """
    if max_attempts <= 0:
        raise ValueError("max_attempts must be > 0.")

    last_error: ExternalCallError | None = None
    for attempt in range(max_attempts):
        try:
            return fn()
        except ExternalCallError as exc:
            if exc.category not in RETRYABLE_CATEGORIES:
                raise
            last_error = exc
            if attempt + 1 >= max_attempts:
                break
            delay_ms = backoff_delay_ms(attempt, base_ms=base_ms, jitter_ms=jitter_ms)
            logger.warning(
                "External call failed; retrying operation=%s attempt=%d/%d "
                "category=%s status=%s delay_ms=%d",
                operation,
                attempt + 1,
                max_attempts,
                exc.category,
                exc.status_code,
                delay_ms,
            )
            if delay_ms > 0:
                sleep_fn(delay_ms / 1000.0)

    error_message = (
        f"External call failed after retries (operation={operation} "
        f"attempts_used={max_attempts}): "
        f"{sanitize_text(str(last_error)) if last_error else 'unknown error'}"
    )
    logger.error(error_message)
    raise TransientChainError(
        error_message,
        operation=operation,
        attempts=max_attempts,
    ) from last_error
