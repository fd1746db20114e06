"""Retry and polling utilities with exponential backoff.

Cluster operations need to wait for remote state to settle: a freshly
unsealed follower, a leader election after a join. Instead of sleeping for a
fixed period the callers poll an observable condition with growing delays
and give up after a hard deadline.
"""
from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from .errors import DevbaoError

T = TypeVar("T")


class StabilizeTimeoutError(DevbaoError):
    """Raised when a polled condition never became true."""


@dataclass(slots=True)
class Backoff:
    """Bounded exponential backoff schedule.

    ``sleep`` and ``clock`` are injectable so that tests can run the schedule
    without real delays.
    """

    timeout: float = 30.0
    initial_delay: float = 0.25
    max_delay: float = 2.0
    jitter: float = 0.1
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def delay(self, attempt: int) -> float:
        """Return the delay to apply after *attempt* (zero based)."""
        delay = min(self.initial_delay * (2**attempt), self.max_delay)
        if self.jitter > 0:
            delay = delay * (1 + random.uniform(-self.jitter, self.jitter))
        return max(delay, 0.0)


def retry_with_backoff(
    func: Callable[[], T],
    *,
    max_attempts: int = 5,
    base_delay: float = 0.1,
    max_delay: float = 10.0,
    jitter: float = 0.1,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *func* until it succeeds, sleeping with exponential backoff.

    Args:
        func: Callable to retry
        max_attempts: Maximum number of attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries
        jitter: Random jitter factor (0-1)
        retry_on: Exception types that trigger another attempt
        sleep: Sleep function, replaced in tests

    Returns:
        Result of the function

    Raises:
        The last exception if all attempts fail
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: BaseException | None = None
    for attempt in range(max_attempts):
        try:
            return func()
        except retry_on as exc:
            last_error = exc

            if attempt == max_attempts - 1:
                break

            delay = min(base_delay * (2**attempt), max_delay)
            if jitter > 0:
                delay = delay * (1 + random.uniform(-jitter, jitter))
            sleep(delay)

    assert last_error is not None
    raise last_error


def poll_until(
    check: Callable[[], T | None],
    *,
    backoff: Backoff,
    description: str,
    retry_on: tuple[type[BaseException], ...] = (DevbaoError,),
) -> T:
    """Poll *check* until it returns a truthy value or the deadline passes.

    Exceptions listed in *retry_on* count as "not yet"; the last one is
    chained onto the :class:`StabilizeTimeoutError` raised at the deadline.
    """
    deadline = backoff.clock() + backoff.timeout
    last_error: BaseException | None = None
    attempt = 0
    while True:
        try:
            result = check()
        except retry_on as exc:
            last_error = exc
        else:
            if result:
                return result

        remaining = deadline - backoff.clock()
        if remaining <= 0:
            message = f"timed out after {backoff.timeout:g}s waiting for {description}"
            if last_error is not None:
                message += f"; last error: {last_error}"
            raise StabilizeTimeoutError(message) from last_error

        backoff.sleep(min(backoff.delay(attempt), remaining))
        attempt += 1


__all__ = ["Backoff", "StabilizeTimeoutError", "poll_until", "retry_with_backoff"]
