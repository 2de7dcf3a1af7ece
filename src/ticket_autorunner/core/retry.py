from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Callable, Coroutine, ParamSpec, TypeVar, cast

from tenacity import (
    AsyncRetrying,
    after_log,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from .exceptions import TransientError

P = ParamSpec("P")
T = TypeVar("T")

_logger = logging.getLogger("ticket_autorunner.core.retry")


def retry_transient(
    max_attempts: int = 5,
    base_wait: float = 1.0,
    max_wait: float = 60.0,
) -> Callable[[Callable[P, Coroutine[Any, Any, T]]], Callable[P, Coroutine[Any, Any, T]]]:
    """
    Decorator for retrying transient errors with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default: 5)
        base_wait: Base wait time in seconds before exponential backoff (default: 1.0)
        max_wait: Maximum wait time in seconds between retries (default: 60.0)

    Returns:
        A decorator that wraps async functions with retry logic.

    Raises:
        TransientError: re-raised once all attempts are exhausted.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, T]],
    ) -> Callable[P, Coroutine[Any, Any, T]]:
        @wraps(func)
        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=base_wait, max=max_wait, exp_base=2),
            retry=retry_if_exception_type(TransientError),
            before_sleep=before_sleep_log(_logger, logging.WARNING),
            after=after_log(_logger, logging.DEBUG),
            reraise=True,
        )
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return cast(T, await func(*args, **kwargs))

        return wrapper

    return decorator


def bounded_retry(
    attempts: int,
    delay_seconds: float,
    *,
    logger: logging.Logger = _logger,
) -> AsyncRetrying:
    """Fixed-delay retry over any exception; the last error is re-raised."""
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_fixed(max(0.0, delay_seconds)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


__all__ = ["bounded_retry", "retry_transient"]
