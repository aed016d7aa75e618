"""
Retry policy for failed work attempts.

The retry counter lives in the job record; everything here is stateless.
"""

import random
from dataclasses import dataclass
from enum import Enum

from reportq.v1.core.exceptions import TransientError


class RetryDecision(str, Enum):
    """Outcome of a retry decision."""

    RETRY = "retry"
    EXHAUSTED = "exhausted"


def decide(retry_count: int, max_retries: int) -> RetryDecision:
    """Retry while retry_count < max_retries, otherwise the job is exhausted."""
    if retry_count < 0 or max_retries < 0:
        raise ValueError("retry_count and max_retries must be non-negative")
    if retry_count < max_retries:
        return RetryDecision.RETRY
    return RetryDecision.EXHAUSTED


def describe_error(error: BaseException) -> str:
    """Human readable cause for a failure_reason column."""
    return str(error) or error.__class__.__name__


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry of transient work failures."""

    max_retries: int = 3

    def evaluate(self, retry_count: int, error: BaseException) -> RetryDecision:
        """Only TransientError is retried; anything else fails the job outright."""
        if not isinstance(error, TransientError):
            return RetryDecision.EXHAUSTED
        return decide(retry_count, self.max_retries)

    def failure_reason(self, error: BaseException) -> str:
        """failure_reason recorded on the terminal failed state."""
        if isinstance(error, TransientError):
            return f"exhausted retries: {describe_error(error)}"
        return f"permanent failure: {describe_error(error)}"


def backoff_delay(
    attempt: int, base_delay_s: float, max_delay_s: float, jitter: float = 0.25
) -> float:
    """Exponential backoff (base * 2^(attempt-1)) capped at max_delay_s, with ±jitter."""
    delay = min(max_delay_s, base_delay_s * (2 ** max(0, attempt - 1)))
    spread = delay * jitter * (2 * random.random() - 1)
    return max(0.0, min(max_delay_s, delay + spread))
