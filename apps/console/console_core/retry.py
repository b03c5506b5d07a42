from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from console_core.core.config import get_settings
from console_core.metrics import observe_retry_attempt, observe_retry_exhausted


logger = logging.getLogger("console_core.retry")

T = TypeVar("T")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    retries: int | None = None,
    delay: float | None = None,
    backoff: float | None = None,
    *,
    operation_name: str = "operation",
    retry_if: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Run ``operation`` with bounded exponential backoff.

    ``retries`` counts the calls made after the first one, so ``retries=3``
    means up to four invocations. The wait before retry ``n`` is
    ``delay * backoff ** (n - 1)`` seconds; there is no jitter and no cap.
    The last failure is re-raised unchanged. Failures rejected by
    ``retry_if`` are re-raised at once.

    Entity mutations must not be wrapped in this helper: a failed write is
    surfaced to the caller right away.
    """

    settings = get_settings()
    retries_left = settings.retry_max_retries if retries is None else retries
    current_delay = settings.retry_initial_delay_seconds if delay is None else delay
    multiplier = settings.retry_backoff_multiplier if backoff is None else backoff
    attempt = 1

    while True:
        try:
            return await operation()
        except Exception as exc:
            if retry_if is not None and not retry_if(exc):
                raise
            if retries_left <= 0:
                observe_retry_exhausted(operation_name)
                logger.error(
                    "retry.exhausted",
                    extra={"operation": operation_name, "attempt": attempt, "error": str(exc)},
                )
                raise

            observe_retry_attempt(operation_name)
            logger.warning(
                "retry.scheduled",
                extra={
                    "operation": operation_name,
                    "attempt": attempt,
                    "retries_left": retries_left,
                    "delay_ms": round(current_delay * 1000, 2),
                    "error": str(exc),
                },
            )
            await sleep(current_delay)
            retries_left -= 1
            current_delay *= multiplier
            attempt += 1
