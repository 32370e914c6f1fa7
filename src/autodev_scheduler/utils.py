"""Provide utility helpers for timestamps and retries."""

from __future__ import annotations

import random
import time
from datetime import datetime, timezone
from typing import Callable, TypeVar

from loguru import logger

T = TypeVar("T")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _backoff_delay(attempt: int, initial: float, multiplier: float, max_delay: float, jitter: bool) -> float:
    delay = min(initial * (multiplier ** max(attempt - 1, 0)), max_delay)
    if jitter and delay > 0:
        delay += random.uniform(0, delay / 4)
    return delay


def retry_call(
    operation: Callable[[], T],
    *,
    attempts: int,
    retry_on: tuple[type[BaseException], ...],
    initial_delay: float = 0.5,
    multiplier: float = 2.0,
    max_delay: float = 10.0,
    jitter: bool = True,
    label: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run `operation` with exponential backoff.

    Args:
        operation: Zero-argument callable to run.
        attempts: Total number of attempts (at least 1).
        retry_on: Exception types that trigger another attempt.
        initial_delay: Delay before the second attempt, in seconds.
        multiplier: Growth factor applied to the delay after each failure.
        max_delay: Upper bound for a single delay.
        jitter: Add up to 25% random jitter to each delay.
        label: Name used in log messages.
        sleep: Sleep function, replaceable in tests.

    Returns:
        The value returned by the first successful attempt.

    Raises:
        The last exception raised by `operation` once attempts are exhausted.
    """
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except retry_on as exc:
            if attempt >= attempts:
                logger.error("All {} attempts failed for {}: {}", attempts, label, exc)
                raise
            delay = _backoff_delay(attempt, initial_delay, multiplier, max_delay, jitter)
            logger.warning(
                "Attempt {}/{} failed for {} ({}). Retrying in {:.2f}s",
                attempt,
                attempts,
                label,
                exc,
                delay,
            )
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
