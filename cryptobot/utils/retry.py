"""Backoff and retry helpers."""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


def compute_backoff(base_ms: float, attempt: int, cap_ms: float) -> float:
    """Exponential delay in ms: min(base * 2^attempt, cap). `attempt` is 0-based."""
    return float(min(base_ms * (2 ** max(attempt, 0)), cap_ms))


async def retry_async(
    func: Callable[[], Awaitable],
    max_attempts: int = 3,
    timeout: float | None = 30.0,
    delay: float = 0.5,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,),
):
    """Await `func()` up to `max_attempts` times.

    Each attempt is bounded by `timeout` seconds; a timeout counts as a
    retryable failure. Exceptions outside `exceptions` propagate immediately.
    The last failure is re-raised once attempts are exhausted.
    """
    retryable = tuple(exceptions) + (asyncio.TimeoutError,)
    for attempt in range(max_attempts):
        try:
            if timeout is None:
                return await func()
            return await asyncio.wait_for(func(), timeout=timeout)
        except retryable as e:
            if attempt == max_attempts - 1:
                raise
            wait_time = delay * (backoff ** attempt)
            logger.warning(f"Attempt {attempt + 1}/{max_attempts} failed, retrying in {wait_time:.2f}s: {e!r}")
            await asyncio.sleep(wait_time)
