"""Retry-with-timeout combinator for providers that are polled until done."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from scriptshift.errors import ProviderError, ProviderTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def poll_until(
    check: Callable[[], Awaitable[T]],
    *,
    is_done: Callable[[T], bool],
    interval_seconds: float,
    max_wait_seconds: float,
    description: str,
    is_failed: Callable[[T], str | None] | None = None,
    provider: str | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Await `check()` at a fixed interval until `is_done` accepts the result.

    Args:
        check: Coroutine factory fetching the current remote status
        is_done: Predicate marking the terminal success state
        interval_seconds: Delay between checks
        max_wait_seconds: Upper bound on total elapsed time
        description: Human-readable name used in logs and errors
        is_failed: Returns an error message when the remote side reports failure
        provider: Provider name attached to raised errors
        sleep: Injected sleep (tests pass a no-op)
        clock: Injected monotonic clock

    Returns:
        The first status accepted by `is_done`

    Raises:
        ProviderError: If the remote side reports failure
        ProviderTimeoutError: If `max_wait_seconds` elapses first
    """
    started = clock()
    attempt = 0

    while True:
        attempt += 1
        result = await check()

        if is_done(result):
            logger.debug("%s finished after %s check(s)", description, attempt)
            return result

        if is_failed is not None:
            failure = is_failed(result)
            if failure:
                raise ProviderError(f"{description} failed: {failure}", provider=provider)

        elapsed = clock() - started
        if elapsed + interval_seconds > max_wait_seconds:
            raise ProviderTimeoutError(
                f"{description} timed out after {elapsed:.0f}s (max {max_wait_seconds:.0f}s)",
                provider=provider,
            )

        logger.debug("%s not ready (check %s); retrying in %.1fs", description, attempt, interval_seconds)
        await sleep(interval_seconds)
