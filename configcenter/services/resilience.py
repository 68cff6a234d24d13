"""Timeout and retry combinators for reload handlers."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from configcenter.domain.errors import HandlerError, HandlerTimeoutError

T = TypeVar("T")


def with_timeout(
    operation: Callable[[], Awaitable[T]],
    timeout_s: float,
    name: str = "handler",
) -> Callable[[], Awaitable[T]]:
    """
    Wrap ``operation`` so each call fails with ``HandlerTimeoutError`` once
    ``timeout_s`` elapses. The underlying coroutine is cancelled.
    """

    async def run() -> T:
        try:
            return await asyncio.wait_for(operation(), timeout=timeout_s)
        except asyncio.TimeoutError as e:
            raise HandlerTimeoutError(timeout_s, name) from e

    return run


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    delay_s: float,
    on_failure: Callable[[int, Exception], None] | None = None,
) -> T:
    """
    Call ``operation`` up to ``attempts`` times, sleeping ``delay_s`` between
    failed attempts.

    Args:
        operation: Zero-argument coroutine factory
        attempts: Total attempts, at least 1
        delay_s: Pause between attempts
        on_failure: Called with (attempt number, error) after each failure

    Raises:
        HandlerError: every attempt failed; wraps the last error
    """
    attempts = max(attempts, 1)
    last_error: Exception | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            last_error = e
            if on_failure is not None:
                on_failure(attempt, e)
            if attempt < attempts:
                await asyncio.sleep(delay_s)

    assert last_error is not None
    raise HandlerError(attempts, last_error) from last_error
