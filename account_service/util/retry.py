from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar


T = TypeVar("T")


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Outcome of a bounded retry loop.

    The combinator never decides what an exhausted loop means; callers do.
    """

    ok: bool
    attempts: int
    value: Optional[T] = None
    error: Optional[BaseException] = None


def linear_backoff(base_seconds: float) -> Callable[[int], float]:
    """Delay of base * attempt: 5s, 10s, 15s, ... for base=5."""

    def _delay(attempt: int) -> float:
        return float(base_seconds) * attempt

    return _delay


def retry(
    fn: Callable[[], T],
    *,
    max_attempts: int,
    backoff: Callable[[int], float],
    sleep: Callable[[float], None] = time.sleep,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_error: Optional[Callable[[int, BaseException, Optional[float]], None]] = None,
) -> RetryResult[T]:
    """Call fn up to max_attempts times.

    After failed attempt n (1-based) the loop sleeps backoff(n) seconds,
    except after the last attempt. on_error(attempt, error, next_delay) is
    called for every failure; next_delay is None once attempts are exhausted.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return RetryResult(ok=True, attempts=attempt, value=fn())
        except retry_on as e:
            last_error = e
            delay = backoff(attempt) if attempt < max_attempts else None
            if on_error is not None:
                on_error(attempt, e, delay)
            if delay is not None and delay > 0:
                sleep(delay)

    return RetryResult(ok=False, attempts=max_attempts, error=last_error)
