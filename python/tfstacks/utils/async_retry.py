"""
tfstacks/utils/async_retry.py

Provides a decorator to retry an async call against the state bucket a few
times before giving up. Only the exception types listed in `retry_on` are
retried; anything else propagates on the first failure.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Delay in seconds between attempts. Defaults to 1.0.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that trigger another attempt. Defaults to Exception.

    Returns:
        A decorator returning a wrapped coroutine function with the same signature.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            async def attempt(remaining: int, attempt_number: int) -> R:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if remaining <= 1:
                        logger.error(
                            "Giving up on %s after %d attempts: %s",
                            func.__qualname__,
                            attempt_number,
                            exc,
                        )
                        raise
                    logger.warning(
                        "Attempt %d/%d of %s failed: %s",
                        attempt_number,
                        retries,
                        func.__qualname__,
                        exc,
                    )
                    await asyncio.sleep(delay)
                    return await attempt(remaining - 1, attempt_number + 1)

            return await attempt(retries, 1)

        return wrapper

    return decorator
