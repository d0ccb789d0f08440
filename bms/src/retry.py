"""
Bounded retry combinator for upstream calls.

``with_retry`` separates the retry policy (which errors are retryable, what
to do before the next attempt) from the call site. The hub-cloud adapter
uses it for both of its retry cases: refresh-then-retry on an invalid token,
and fixed backoff on transport failures.

CHANGELOG:
- 2026-10-06: Initial creation (STORY-006)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    is_retryable: Callable[[BaseException], bool],
    before_retry: Callable[[BaseException, int], Awaitable[None]] | None = None,
    backoff_s: float | Callable[[BaseException], float] = 0.0,
) -> T:
    """Run *operation* until it succeeds or attempts are exhausted.

    Args:
        operation: Zero-argument coroutine function, called once per attempt.
        max_attempts: Total attempts including the first (>= 1).
        is_retryable: Predicate deciding whether an error may be retried.
            Non-retryable errors propagate immediately.
        before_retry: Optional hook awaited with the error and the attempt
            number that failed, before the next attempt (e.g. token refresh).
        backoff_s: Fixed sleep before the next attempt, or a function of the
            error returning the sleep in seconds.

    Returns:
        The result of the first successful attempt.

    Raises:
        Exception: The last error when it is not retryable or when the
            final attempt fails.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt >= max_attempts or not is_retryable(exc):
                raise
            logger.warning(
                "Attempt %d/%d failed (%s), retrying",
                attempt,
                max_attempts,
                type(exc).__name__,
            )
            if before_retry is not None:
                await before_retry(exc, attempt)
            delay = backoff_s(exc) if callable(backoff_s) else backoff_s
            if delay > 0:
                await asyncio.sleep(delay)
            attempt += 1
