"""Backoff for upstream calls that answer "too many requests"

The invoicing service allows roughly one call per second. A 429 is retried
after the longer of the exponential backoff and the ``Retry-After`` the
service sent; every other failure propagates on the first attempt.
"""

import asyncio
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


def retry_delay(error: BaseException, backoff: float, max_delay: float) -> float:
    """Seconds to wait before the next attempt"""
    hinted: Optional[float] = getattr(error, "retry_after", None)
    if hinted is not None and hinted > backoff:
        return min(hinted, max_delay)
    return min(backoff, max_delay)


def async_retry_with_backoff(
    max_retries: int = 2,
    initial_delay: float = 2.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
):
    """
    Decorator retrying an async upstream call

    Args:
        max_retries: Attempts after the first one
        initial_delay: Backoff before the first retry, in seconds
        max_delay: Upper bound for any single wait
        exponential_base: Backoff multiplier between attempts
        exceptions: Exception types that trigger a retry
        sleep: Awaitable used to wait, ``asyncio.sleep`` by default
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            backoff = initial_delay
            attempt = 0

            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_retries:
                        logger.error(f"{func.__name__} gave up after {attempt + 1} attempts: {e}")
                        raise

                    wait = retry_delay(e, backoff, max_delay)
                    attempt += 1
                    logger.warning(
                        f"{func.__name__} throttled ({e}), retry {attempt}/{max_retries} in {wait:.2f}s"
                    )
                    await (sleep or asyncio.sleep)(wait)
                    backoff *= exponential_base

        return wrapper
    return decorator
