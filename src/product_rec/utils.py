"""Utility functions and decorators for product_rec."""

import time
import logging
import asyncio
from functools import wraps
from typing import TypeVar, Callable

logger = logging.getLogger(__name__)

T = TypeVar('T')


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Retry a function on the given exceptions, sleeping longer after each failure.

    Args:
        max_retries: Total number of attempts
        initial_delay: Seconds to wait after the first failure
        backoff_factor: Multiplier applied to the wait after each failure
        exceptions: Exception types that trigger a retry; anything else propagates

    Example:
        @retry_with_backoff(max_retries=3, initial_delay=0.2,
                            exceptions=(sqlite3.OperationalError,))
        def fetch_rows():
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = initial_delay
            for attempt in range(1, max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries:
                        logger.error(f"{func.__name__} gave up after {attempt} attempts: {e}")
                        raise
                    logger.warning(
                        f"{func.__name__} attempt {attempt}/{max_retries} failed: {e}; "
                        f"retrying in {delay:.1f}s"
                    )
                    time.sleep(delay)
                    delay *= backoff_factor

        return wrapper
    return decorator


async def run_with_deadline(coro, timeout: float, fallback: T) -> T:
    """
    Await a coroutine, returning ``fallback`` if it does not finish in time.

    The abandoned work is cancelled; threads started through
    ``asyncio.to_thread`` keep running to completion in the background but
    their results are discarded.
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Computation exceeded {timeout:.1f}s deadline, using fallback")
        return fallback
