"""Retry and backoff policy for episode generation failures.

Decides whether a failure may be retried and how long to wait before the job
becomes claimable again.

Classification rules:
    - TransientError (incl. RateLimitError) -> retryable
    - TimeoutError, ConnectionError -> retryable
    - BudgetExceeded -> terminal, stored as exactly "budget_exceeded"
    - PermanentError subtypes, MalformedSubscriptionError -> terminal
    - Anything else -> retryable (max_attempts bounds the damage)
"""

from dataclasses import dataclass
from datetime import timedelta

from manyfutures.core.config import Settings
from manyfutures.services.exceptions import (
    BudgetExceeded,
    GenerationError,
    MalformedSubscriptionError,
    TransientError,
)

MAX_ERROR_LENGTH = 1000


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of classifying a failure."""

    retryable: bool
    error_code: str
    message: str


class RetryPolicy:
    """Exponential backoff: base * 2^(attempt_count - 1), capped at max_delay."""

    def __init__(self, base_delay: timedelta, max_delay: timedelta):
        if base_delay <= timedelta(0):
            raise ValueError("base_delay must be positive")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay=timedelta(seconds=settings.retry_base_delay_seconds),
            max_delay=timedelta(seconds=settings.retry_max_delay_seconds),
        )

    def classify(self, exc: BaseException) -> RetryDecision:
        """Classify an exception raised while processing a job.

        Args:
            exc: Exception from the budget check, generator or validation

        Returns:
            RetryDecision with the retry flag and a short error code
        """
        if isinstance(exc, BudgetExceeded):
            return RetryDecision(False, BudgetExceeded.error_code, str(exc))

        if isinstance(exc, MalformedSubscriptionError):
            return RetryDecision(False, MalformedSubscriptionError.error_code, str(exc))

        if isinstance(exc, TransientError):
            return RetryDecision(True, exc.error_code, str(exc))

        if isinstance(exc, GenerationError):
            return RetryDecision(exc.retryable, exc.error_code, str(exc))

        if isinstance(exc, TimeoutError):
            return RetryDecision(True, "timeout", str(exc) or "operation timed out")

        if isinstance(exc, ConnectionError):
            return RetryDecision(True, "connection_error", str(exc))

        # Unknown failure: retry, bounded by max_attempts
        return RetryDecision(True, "unexpected_error", f"{type(exc).__name__}: {exc}")

    def backoff_delay(self, attempt_count: int) -> timedelta:
        """Delay before the next attempt.

        Args:
            attempt_count: Attempts made so far, including the one that just failed

        Returns:
            base_delay for the first retry, doubling each time, capped at max_delay
        """
        exponent = max(attempt_count - 1, 0)
        # Cap the exponent so huge attempt counts cannot overflow timedelta
        if exponent >= 32:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    @staticmethod
    def format_error(decision: RetryDecision) -> str:
        """Render the value stored in ScheduleJob.last_error."""
        if decision.error_code == BudgetExceeded.error_code:
            return BudgetExceeded.error_code
        return f"{decision.error_code}: {decision.message}"[:MAX_ERROR_LENGTH]
