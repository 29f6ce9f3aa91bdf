"""Bounded retry loops shared by log polling and reachability probing.

A loop is bounded by wall time (``timeout``), by attempt count
(``max_retries``), or both -- whichever is exhausted first ends it.  Clock
and delay are injectable so tests can drive the loop without sleeping.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_BACKOFF_DELAY = 30.0


@dataclass
class RetryOptions:
    """Retry configuration.  Durations are in seconds."""

    timeout: float = 30.0
    delay: float = 0.5
    max_retries: int | None = None
    time_provider: Callable[[], float] = time.monotonic
    delay_provider: Callable[[float], Awaitable[None]] = asyncio.sleep
    silent: bool = False
    # Exception types that end the loop at once instead of being retried
    abort_on: tuple[type[BaseException], ...] = ()
    logger: logging.Logger | None = None


class RetryError(Exception):
    """Raised when a retry loop gives up.  ``last_error`` is the final failure."""

    def __init__(self, message: str, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error


def _ms(seconds: float) -> str:
    return f"{seconds * 1000:.0f}ms"


async def retry(
    fn: Callable[[], Awaitable[T] | T],
    options: RetryOptions | None = None,
) -> T:
    """Call *fn* until it returns without raising or the bounds run out."""
    opts = options or RetryOptions()
    log = opts.logger or logger

    start = opts.time_provider()
    attempts = 0

    while True:
        attempts += 1
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            if opts.abort_on and isinstance(e, opts.abort_on):
                raise RetryError(
                    f"Failed after non-retryable error: {e}", e,
                ) from e

            elapsed = opts.time_provider() - start
            within_timeout = elapsed < opts.timeout
            within_count = opts.max_retries is None or attempts < opts.max_retries

            if not within_timeout or not within_count:
                reason = (
                    f"timeout after {_ms(opts.timeout)}"
                    if not within_timeout
                    else f"{opts.max_retries} attempts"
                )
                raise RetryError(f"Failed after {reason}: {e}", e) from e

            if not opts.silent:
                log.debug("Retry attempt %d failed: %s", attempts, e)

            await opts.delay_provider(opts.delay)
            continue

        if attempts > 1 and not opts.silent:
            log.debug("Retry succeeded after %d attempts", attempts)
        return result


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T] | T],
    options: RetryOptions | None = None,
) -> T:
    """Like :func:`retry`, but doubles the delay after every failed attempt.

    ``options.delay`` is the initial delay; the delay never exceeds
    ``MAX_BACKOFF_DELAY`` seconds.
    """
    opts = options or RetryOptions()
    sleep = opts.delay_provider
    current = min(opts.delay, MAX_BACKOFF_DELAY)

    async def _backoff(_delay: float) -> None:
        nonlocal current
        actual = current
        current = min(current * 2, MAX_BACKOFF_DELAY)
        await sleep(actual)

    return await retry(fn, replace(opts, delay_provider=_backoff))
