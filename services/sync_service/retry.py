"""Retry logic with exponential backoff and jitter for remote store calls."""

import asyncio
import logging
import random
from functools import wraps
from typing import Any, Awaitable, Callable, Tuple, Type

logger = logging.getLogger(__name__)

JITTER_RATIO = 0.3


def backoff_delay(attempt: int, base_delay: float, exponential_base: float = 2.0) -> float:
    """Delay before retrying after the given zero-based attempt."""
    return (exponential_base ** attempt) * base_delay + random.uniform(0, JITTER_RATIO * base_delay)


async def execute_with_retry(
    operation: Callable[[], Awaitable[Any]],
    max_attempts: int = 5,
    base_delay: float = 0.2,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    description: str = "operation",
) -> Any:
    """
    Run an async operation, retrying on failure.

    Args:
        operation: Zero-argument callable returning an awaitable
        max_attempts: Total number of attempts
        base_delay: Base delay in seconds
        exceptions: Exception types that trigger a retry
        description: Name used in log messages

    Returns:
        The operation's result

    Raises:
        The last exception once all attempts are exhausted
    """
    last_exception = None

    for attempt in range(max_attempts):
        try:
            return await operation()
        except exceptions as e:
            last_exception = e

            if attempt < max_attempts - 1:
                delay = backoff_delay(attempt, base_delay)
                logger.warning(
                    f"Attempt {attempt + 1}/{max_attempts} failed for {description}: {e}. "
                    f"Retrying in {delay:.2f} seconds..."
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"All {max_attempts} attempts failed for {description}: {e}")

    raise last_exception


def retry_with_exponential_backoff(
    max_retries: int = 3,
    initial_delay: float = 0.2,
    exceptions: Tuple[Type[Exception], ...] = (Exception,)
):
    """
    Decorator form of :func:`execute_with_retry` for coroutine functions.

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Base delay in seconds
        exceptions: Tuple of exception types to catch and retry

    Returns:
        Decorated function with retry logic
    """
    def decorator(func: Callable) -> Callable:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"{func.__name__} must be a coroutine function")

        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            return await execute_with_retry(
                lambda: func(*args, **kwargs),
                max_attempts=max_retries + 1,
                base_delay=initial_delay,
                exceptions=exceptions,
                description=func.__name__,
            )

        return wrapper

    return decorator
