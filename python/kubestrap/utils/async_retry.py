"""
kubestrap/utils/async_retry.py

Bounded retries for async callables, with the policy chosen at call time
(e.g. from settings). Every wait goes through an injectable `sleep`, so
callers and tests control time.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type

from typing_extensions import TypeVar

R = TypeVar("R")

SleepFunc = Callable[[float], Awaitable[None]]

logger = logging.getLogger(__name__)


async def retry_call(
    func: Callable[[], Awaitable[R]],
    *,
    retries: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    noisy: bool = False,
    sleep: SleepFunc = asyncio.sleep,
    description: str = "",
) -> R:
    """Await `func()` up to `retries` times, sleeping between attempts.

    Args:
        func: Zero-argument coroutine factory; called once per attempt.
        retries: Maximum number of total attempts (not just failures).
        delay: Seconds to wait before the second attempt.
        backoff: Multiplier applied to the delay after each failed attempt.
        retry_on: Exception types that trigger a retry; others propagate at once.
        noisy: If True, log a warning per failure and an error on exhaustion.
        sleep: Awaitable sleep function.
        description: Name used in log lines.

    Returns:
        The first successful result.

    Raises:
        The exception of the final attempt.
    """
    if retries < 1:
        raise ValueError("retries must be at least 1")

    name = description or getattr(func, "__qualname__", repr(func))
    wait = delay
    for attempt in range(1, retries + 1):
        try:
            return await func()
        except retry_on as exc:
            if noisy:
                logger.warning(
                    "Attempt %d/%d for %s failed: %s", attempt, retries, name, exc
                )
            if attempt == retries:
                if noisy:
                    logger.error("All %d attempts failed for %s", retries, name)
                raise
            await sleep(wait)
            wait *= backoff
    raise AssertionError("unreachable")

