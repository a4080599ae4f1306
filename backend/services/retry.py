"""
Accruals Hub - Retry Controller

Runs a coroutine with bounded retries and exponential backoff plus jitter:

    delay = base_delay * 2 ** (attempt - 1) + random(0, 1s)

Errors whose code can never succeed on a second try (INVALID_INPUT,
FILE_NOT_FOUND and the registry codes) are raised immediately.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from services.errors import HubError, as_hub_error
from services.hub_config import AI_MAX_RETRIES, RETRY_DELAY_SECONDS

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_delay: float, jitter: Optional[float] = None) -> float:
    """Delay before the next try after `attempt` failures (attempt is 1-based)."""
    if jitter is None:
        jitter = random.random()
    return base_delay * (2 ** (attempt - 1)) + jitter


async def retry_with_backoff(
    operation: Callable[[], Awaitable[Any]],
    max_retries: int = AI_MAX_RETRIES,
    base_delay: float = RETRY_DELAY_SECONDS,
    context: str = "",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Await `operation()` up to `max_retries` times.

    Args:
        operation: zero-argument coroutine factory
        max_retries: total number of attempts
        base_delay: backoff base in seconds
        context: label used in log lines
        sleep: injectable sleep (tests pass a no-op)

    Raises:
        HubError: the last error once attempts are exhausted, or the first
        non-retryable one.
    """
    last_error: Optional[HubError] = None

    for attempt in range(1, max_retries + 1):
        try:
            return await operation()
        except Exception as e:
            last_error = as_hub_error(e)

            if not last_error.retryable:
                logger.warning("%s: non-retryable error %s, giving up", context or "operation", last_error.code.value)
                if last_error is e:
                    raise
                raise last_error from e

            if attempt < max_retries:
                delay = backoff_delay(attempt, base_delay)
                logger.warning(
                    "%s: attempt %d/%d failed (%s), retrying in %.1fs",
                    context or "operation", attempt, max_retries, last_error.message, delay
                )
                await sleep(delay)

    logger.error("%s: all %d attempts failed", context or "operation", max_retries)
    raise last_error
