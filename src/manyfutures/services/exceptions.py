"""Service error hierarchy for episode scheduling and generation.

This module defines the exception hierarchy for service-level errors:
- SchedulerError: Base for all scheduler errors
- Queue errors: DuplicateJobError, StaleLeaseError, LeaseExpiredError, JobNotFoundError
- BudgetExceeded: Cost governor denial (terminal job failure, never a crash)
- GenerationError: Content generator failures, split into
  TransientError (retryable) and PermanentError (terminal)
"""

from decimal import Decimal
from uuid import UUID


class SchedulerError(Exception):
    """Base exception for all scheduler errors."""

    pass


# Queue errors
class DuplicateJobError(SchedulerError):
    """A job for this subscription period is already scheduled or delivered.

    Callers treat this as "already scheduled", not as a user-facing error.
    """

    def __init__(self, idempotency_key: str, reason: str = "already_scheduled"):
        self.idempotency_key = idempotency_key
        self.reason = reason
        super().__init__(f"Duplicate job for {idempotency_key} ({reason})")


class StaleLeaseError(SchedulerError):
    """The caller no longer owns the job it tried to complete or fail.

    The job was reclaimed by another worker or cancelled. The caller must
    discard its in-progress work and must not retry.
    """

    def __init__(self, job_id: UUID, worker_id: str, detail: str = ""):
        self.job_id = job_id
        self.worker_id = worker_id
        message = f"Worker {worker_id} no longer owns job {job_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class LeaseExpiredError(StaleLeaseError):
    """The caller still holds the job but its lease has lapsed.

    Resolved by reclaim; the worker loop handles it like any stale lease.
    """

    pass


class JobNotFoundError(SchedulerError):
    """No schedule job exists with the given ID."""

    def __init__(self, job_id: UUID):
        self.job_id = job_id
        super().__init__(f"Schedule job {job_id} not found")


# Cost governor
class BudgetExceeded(SchedulerError):
    """Spend ceiling would be exceeded by running the job."""

    error_code = "budget_exceeded"

    def __init__(
        self,
        subscription_id: UUID,
        limit_kind: str,
        current_total: Decimal,
        estimated_cost: Decimal,
        limit: Decimal,
    ):
        self.subscription_id = subscription_id
        self.limit_kind = limit_kind
        self.current_total = current_total
        self.estimated_cost = estimated_cost
        self.limit = limit
        super().__init__(
            f"{limit_kind} exceeded for subscription {subscription_id}: "
            f"current={current_total} estimated={estimated_cost} limit={limit}"
        )


class MalformedSubscriptionError(SchedulerError):
    """Subscription state does not allow generating an episode (missing, misconfigured)."""

    error_code = "malformed_subscription"


# Content generation errors
class GenerationError(SchedulerError):
    """Base class for categorized content generator errors."""

    retryable: bool = False
    error_code = "generation_error"


class TransientError(GenerationError):
    """Transient errors that should be retried (network, timeouts, 5xx).

    Examples:
    - Network timeouts
    - Service unavailable (502, 503, 504)
    - Connection resets
    """

    retryable = True
    error_code = "transient_error"


class RateLimitError(TransientError):
    """Rate limit exceeded (429)."""

    error_code = "rate_limited"


class PermanentError(GenerationError):
    """Permanent errors that should not be retried.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    """

    retryable = False
    error_code = "generation_rejected"


class ContentPolicyError(PermanentError):
    """Generator refused the request on content-policy grounds."""

    error_code = "content_policy"


class ContentValidationError(PermanentError):
    """Generated content does not satisfy the episode content contract."""

    error_code = "content_validation"
