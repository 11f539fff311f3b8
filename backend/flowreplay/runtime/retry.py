"""Step retry policy: count / interval / backoff around an async operation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from flowreplay.compiler.ir import RetryConfig
from flowreplay.config import settings

logger = logging.getLogger("flowreplay.runtime.retry")

OnRetry = Callable[[int, BaseException], Awaitable[Any]]


def compute_delay_ms(policy: RetryConfig, attempt: int, max_delay_ms: int | None = None) -> int:
    """Backoff before retry number ``attempt`` (1-based).

    none        -> interval
    linear      -> interval * attempt
    exponential -> interval * 2**attempt
    All capped at max_delay_ms (settings.RETRY_MAX_DELAY_MS by default).
    """
    cap = settings.RETRY_MAX_DELAY_MS if max_delay_ms is None else max_delay_ms
    interval = max(0, policy.interval_ms)
    if policy.backoff == "linear":
        delay = interval * attempt
    elif policy.backoff == "exponential":
        delay = interval * (2 ** min(attempt, 30))
    else:
        delay = interval
    return max(0, min(delay, cap))


async def with_retry(
    op: Callable[[], Awaitable[Any]],
    on_retry: OnRetry | None,
    policy: RetryConfig,
) -> Any:
    """Run ``op``; on exception retry up to ``policy.count`` more times.

    ``on_retry(attempt, exc)`` is awaited before each backoff sleep.  When
    retries are exhausted the last exception propagates unchanged.
    ``asyncio.CancelledError`` is never retried.
    """
    attempt = 0
    while True:
        try:
            return await op()
        except Exception as exc:
            if attempt >= max(0, policy.count):
                raise
            attempt += 1
            delay_ms = compute_delay_ms(policy, attempt)
            logger.debug(
                "Attempt %d/%d failed (%s); retrying in %d ms",
                attempt, policy.count, type(exc).__name__, delay_ms,
            )
            if on_retry is not None:
                await on_retry(attempt, exc)
            if delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000)
