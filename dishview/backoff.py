"""Retry with exponential backoff and jitter."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.25  # +/- fraction of the exponential delay


DEFAULT_RETRY_POLICY = RetryPolicy()


def backoff_delay(attempt: int, policy: RetryPolicy = DEFAULT_RETRY_POLICY, rng=random) -> float:
    """
    Delay in seconds to wait after the given (1-based) failed attempt.

    base * multiplier^(attempt-1), scaled by a uniform jitter in
    [1 - jitter, 1 + jitter] and capped at max_delay.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    exponential = policy.base_delay * (policy.multiplier ** (attempt - 1))
    jittered = exponential * (1 + policy.jitter * rng.uniform(-1.0, 1.0))
    return min(policy.max_delay, jittered)


def call_with_retry(
    fn: Callable[[], T],
    is_retryable: Callable[[Exception], bool],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    sleep: Optional[Callable[[float], None]] = None,
    label: str = "call",
) -> T:
    """
    Runs fn until it succeeds, raises a non-retryable error, or attempts run out.
    The last error is re-raised unchanged.
    """
    if sleep is None:
        sleep = time.sleep
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return fn()
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt >= policy.max_attempts:
                logger.error("All %d attempts exhausted for %s: %s", policy.max_attempts, label, e)
                raise
            delay = backoff_delay(attempt, policy)
            logger.warning(
                "Retryable error for %s (attempt %d/%d), retrying in %.1fs: %s",
                label,
                attempt,
                policy.max_attempts,
                delay,
                e,
            )
            sleep(delay)
    raise ValueError(f"max_attempts must be >= 1, got {policy.max_attempts}")
