"""Retry utilities for handling transient failures.

Provides a decorator for retrying async operations with exponential backoff.
The engine uses it for notification delivery, where each channel is retried
independently; quality gate retries are owned by the Quality Gate Executor
because they must be classified and recorded.

Key Exports:
    async_retry: Decorator for adding retry logic to async functions.

Example:
    >>> from tamma.utils.retry import async_retry
    >>>
    >>> @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(httpx.HTTPError,))
    ... async def post_alert(client, url, body):
    ...     response = await client.post(url, json=body)
    ...     response.raise_for_status()

Backoff Formula:
    delay = backoff_factor ** attempt_number
    For backoff_factor=2.0: 2s, 4s, 8s, ...
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    on_retry: Callable[[int, Exception], Any] | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of attempts before giving up. The
            function will be called at most max_attempts times.
        backoff_factor: Base for exponential backoff calculation. The delay
            before attempt N+1 is backoff_factor^N seconds. A factor of 0
            retries immediately.
        exceptions: Exception types that trigger a retry. Other exceptions
            propagate immediately.
        on_retry: Optional callback invoked with (attempt, error) before
            each backoff sleep.

    Returns:
        A decorator function that wraps async functions with retry logic.

    Raises:
        The last caught exception if all retry attempts are exhausted.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        name = getattr(func, "__name__", repr(func))

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_exception = None

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt == max_attempts:
                        log.error(
                            "retry_exhausted",
                            function=name,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = backoff_factor**attempt if backoff_factor > 0 else 0.0
                    log.warning(
                        "retry_attempt",
                        function=name,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    if on_retry is not None:
                        on_retry(attempt, e)
                    await asyncio.sleep(delay)

            # This should never be reached, but satisfy type checker
            if last_exception:
                raise last_exception
            raise RuntimeError("Retry logic error")

        return wrapper

    return decorator
