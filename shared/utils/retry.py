"""Retry helpers with exponential backoff"""
import asyncio
import logging
from typing import Callable, Any, Optional, Type, Tuple
from functools import wraps

logger = logging.getLogger(__name__)


async def retry_with_backoff(
    func: Callable,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    before_retry: Optional[Callable] = None,
) -> Any:
    """
    Run ``func`` and retry it with exponential backoff.

    Args:
        func: zero-argument callable (sync or async)
        max_retries: retries after the first attempt
        initial_delay: first delay in seconds
        max_delay: upper bound for a single delay
        exponential_base: growth factor between delays
        exceptions: exceptions that trigger a retry; anything else propagates
        before_retry: optional (sync or async) hook called with the exception
            before sleeping, e.g. to roll back a session

    Returns:
        Whatever ``func`` returns.
    """
    delay = initial_delay

    for attempt in range(max_retries + 1):
        try:
            if asyncio.iscoroutinefunction(func):
                return await func()
            return func()
        except exceptions as e:
            if attempt == max_retries:
                raise
            logger.warning(
                f"Attempt {attempt + 1}/{max_retries + 1} failed with {type(e).__name__}: {e}. "
                f"Retrying in {delay:.2f}s"
            )
            if before_retry is not None:
                if asyncio.iscoroutinefunction(before_retry):
                    await before_retry(e)
                else:
                    before_retry(e)
            await asyncio.sleep(delay)
            delay = min(delay * exponential_base, max_delay)


def retry_decorator(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,)
):
    """Decorator form of retry_with_backoff for coroutine functions"""
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            async def call_func():
                return await func(*args, **kwargs)

            return await retry_with_backoff(
                call_func,
                max_retries=max_retries,
                initial_delay=initial_delay,
                max_delay=max_delay,
                exponential_base=exponential_base,
                exceptions=exceptions
            )
        return wrapper
    return decorator
