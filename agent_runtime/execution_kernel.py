"""Shared async retry primitive for the model transport."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


def exponential_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter, capped at *max_delay*."""
    delay = base_delay * (2 ** attempt)
    jitter = random.uniform(0.5, 1.5)
    return min(delay * jitter, max_delay)


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how long to wait between model-call attempts."""

    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        return exponential_backoff(attempt, self.base_delay, self.max_delay)


async def run_async_with_retry(
    *,
    caller: str,
    model: str,
    policy: RetryPolicy,
    invoke: Callable[[int], Awaitable[T]],
    should_retry: Callable[[Exception], bool],
    logger: logging.Logger,
    warning_sink: list[str] | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> T:
    """Run ``invoke(attempt)`` until it succeeds, a non-retryable error occurs,
    or ``policy.max_retries`` retries are spent. The last error propagates.

    Cancellation is not an ``Exception`` and is never retried.
    """
    for attempt in range(policy.max_retries + 1):
        try:
            return await invoke(attempt)
        except Exception as exc:
            if not should_retry(exc) or attempt >= policy.max_retries:
                raise

            delay = policy.delay(attempt)
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            if warning_sink is not None:
                warning_sink.append(
                    f"RETRY {attempt + 1}/{policy.max_retries + 1}: "
                    f"{model} ({type(exc).__name__}: {exc})"
                )
            logger.warning(
                "%s attempt %d/%d failed (retrying in %.1fs): %s",
                caller,
                attempt + 1,
                policy.max_retries + 1,
                delay,
                exc,
            )
            await asyncio.sleep(delay)

    raise RuntimeError("run_async_with_retry exhausted without returning")
