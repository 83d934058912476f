"""Episode worker: claims schedule jobs and turns them into delivered episodes.

Each tick:
1. Claim one due job (own transaction)
2. Load the subscription; missing -> terminal failure, paused -> cancel
3. Check the budget; denied -> terminal failure with last_error "budget_exceeded"
4. Generate content while a heartbeat keeps the lease alive
   (no database transaction is held during the call)
5. Record spend (own transaction: the money is spent whatever happens next)
6. Complete the job and insert the episode in one transaction
7. Notify and schedule the next delivery from the subscription cadence

Failures go through the retry policy and back into the queue store. A worker
that lost its lease discards its work; the reclaiming worker owns the job now.
"""

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

import structlog

from manyfutures.core.config import Settings
from manyfutures.core.timezone import utcnow
from manyfutures.models.episode import Episode
from manyfutures.models.schedule_job import InvalidStateTransition, JobStatus, ScheduleJob
from manyfutures.models.subscription import Subscription, SubscriptionStatus
from manyfutures.services.cost_governor import CostGovernor
from manyfutures.services.exceptions import (
    BudgetExceeded,
    DuplicateJobError,
    JobNotFoundError,
    MalformedSubscriptionError,
    StaleLeaseError,
)
from manyfutures.services.generation.contracts import (
    ContentGenerator,
    GeneratedEpisode,
    GenerationContext,
)
from manyfutures.services.notifications import LoggingNotificationSender, NotificationSender
from manyfutures.services.retry_policy import RetryPolicy
from manyfutures.services.scheduling.planner import schedule_next_occurrence

logger = structlog.get_logger(__name__)

ERROR_BACKOFF_SECONDS = 5


class JobOutcome(str, Enum):
    """What happened to a claimed job."""

    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    BUDGET_DENIED = "budget_denied"
    CANCELLED = "cancelled"
    DISCARDED = "discarded"  # Lease lost or period already delivered


@dataclass
class WorkerContext:
    """Collaborators and identity of one worker loop."""

    uow_factory: Callable
    settings: Settings
    generator: ContentGenerator
    governor: CostGovernor
    retry_policy: RetryPolicy
    worker_id: str
    notifier: NotificationSender = field(default_factory=LoggingNotificationSender)
    clock: Callable[[], datetime] = utcnow

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(seconds=self.settings.lease_duration_seconds)


async def process_next_job(ctx: WorkerContext) -> JobOutcome | None:
    """Claim and process one job.

    Returns:
        Outcome of the processed job, or None if nothing was due
    """
    async with await ctx.uow_factory() as uow:
        job = await uow.jobs.claim_next(
            ctx.worker_id,
            ctx.lease_duration,
            ctx.clock(),
            batch_size=ctx.settings.claim_batch_size,
        )

    if job is None:
        return None

    return await process_job(ctx, job)


async def process_job(ctx: WorkerContext, job: ScheduleJob) -> JobOutcome:
    """Process a job this worker has claimed.

    Never raises for generator, budget or subscription problems; those are
    recorded on the job. Only cancellation and unexpected database errors
    propagate to the loop.

    Args:
        ctx: Worker context
        job: Job in processing status leased to ``ctx.worker_id`` (detached)

    Returns:
        JobOutcome describing the final state from this worker's point of view
    """
    attempt_number = job.attempt_count + 1
    logger.info(
        "job.started",
        job_id=str(job.id),
        subscription_id=str(job.subscription_id),
        worker_id=ctx.worker_id,
        attempt_number=attempt_number,
    )

    try:
        async with await ctx.uow_factory() as uow:
            subscription = await uow.subscriptions.get_by_id(job.subscription_id)
            if subscription is None:
                raise MalformedSubscriptionError(f"Subscription {job.subscription_id} not found")

            if subscription.status == SubscriptionStatus.PAUSED:
                await uow.jobs.cancel(job.id, ctx.clock(), reason="subscription_paused")
                logger.info(
                    "job.skipped_paused",
                    job_id=str(job.id),
                    subscription_id=str(job.subscription_id),
                )
                return JobOutcome.CANCELLED

            decision = await ctx.governor.check_budget(
                uow,
                subscription.id,
                ctx.governor.estimate_cost(subscription),
                ctx.clock(),
                subscription=subscription,
            )
            if not decision.allowed:
                raise decision.error  # type: ignore[misc]

            recent = await uow.episodes.list_by_subscription(subscription.id, limit=5)

        context = GenerationContext(
            job_id=job.id,
            subscription_id=subscription.id,
            subscription_name=subscription.name,
            brief=subscription.brief or "",
            target_delivery_time=job.target_delivery_time,
            attempt_number=attempt_number,
            currency=ctx.governor.currency_for(subscription),
            previous_titles=[episode.title for episode in recent],
        )
        generated = await generate_with_heartbeat(ctx, job, context)

    except Exception as e:
        return await handle_failure(ctx, job, e)

    return await finish_job(ctx, job, subscription, generated)


async def generate_with_heartbeat(
    ctx: WorkerContext, job: ScheduleJob, context: GenerationContext
) -> GeneratedEpisode:
    """Run the generator while a background task extends the lease."""
    heartbeat = asyncio.create_task(_heartbeat(ctx, job))
    try:
        return await ctx.generator.generate(context)
    finally:
        heartbeat.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await heartbeat


async def _heartbeat(ctx: WorkerContext, job: ScheduleJob) -> None:
    interval = ctx.lease_duration.total_seconds() / 3
    while True:
        await asyncio.sleep(interval)
        try:
            async with await ctx.uow_factory() as uow:
                await uow.jobs.extend_lease(job.id, ctx.worker_id, ctx.lease_duration, ctx.clock())
            logger.debug("job.lease_extended", job_id=str(job.id), worker_id=ctx.worker_id)
        except StaleLeaseError as e:
            # Generation continues; complete() will report the lost lease
            logger.warning(
                "job.lease_lost", job_id=str(job.id), worker_id=ctx.worker_id, reason=str(e)
            )
            return
        except Exception as e:
            logger.warning(
                "job.heartbeat_failed",
                job_id=str(job.id),
                worker_id=ctx.worker_id,
                error_type=type(e).__name__,
                error_message=str(e),
            )


async def finish_job(
    ctx: WorkerContext,
    job: ScheduleJob,
    subscription: Subscription,
    generated: GeneratedEpisode,
) -> JobOutcome:
    """Record spend, publish the episode and complete the job."""
    now = ctx.clock()

    async with await ctx.uow_factory() as uow:
        await ctx.governor.record_spend(
            uow,
            job.subscription_id,
            job.id,
            generated.cost,
            now,
            model=generated.model,
            prompt_tokens=generated.prompt_tokens,
            completion_tokens=generated.completion_tokens,
            currency=ctx.governor.currency_for(subscription),
        )

    episode = Episode(
        subscription_id=job.subscription_id,
        job_id=job.id,
        idempotency_key=job.idempotency_key,
        title=generated.title,
        content=generated.content,
        model=generated.model,
        created_at=now,
    )

    try:
        async with await ctx.uow_factory() as uow:
            # Ownership is checked before the insert so a stale worker never publishes
            completed = await uow.jobs.complete(job.id, ctx.worker_id, episode.id, now)
            await uow.episodes.add(episode)

    except StaleLeaseError as e:
        logger.warning(
            "job.lease_lost",
            job_id=str(job.id),
            worker_id=ctx.worker_id,
            reason=str(e),
            stage="complete",
        )
        return JobOutcome.DISCARDED

    except DuplicateJobError as e:
        logger.warning(
            "job.duplicate_period",
            job_id=str(job.id),
            idempotency_key=e.idempotency_key,
        )
        try:
            async with await ctx.uow_factory() as uow:
                await uow.jobs.cancel(job.id, ctx.clock(), reason="duplicate_period")
        except (InvalidStateTransition, JobNotFoundError) as cancel_error:
            logger.warning(
                "job.cancel_failed", job_id=str(job.id), error_message=str(cancel_error)
            )
        return JobOutcome.DISCARDED

    logger.info(
        "job.completed",
        job_id=str(job.id),
        subscription_id=str(job.subscription_id),
        episode_id=str(episode.id),
        worker_id=ctx.worker_id,
        attempt_count=completed.attempt_count,
        cost=str(generated.cost),
    )

    try:
        await ctx.notifier.episode_ready(completed, episode)
    except Exception as e:
        logger.warning("notification.failed", job_id=str(job.id), error_message=str(e))

    try:
        await schedule_next_occurrence(ctx.uow_factory, completed, ctx.settings, ctx.clock())
    except Exception as e:
        # The enumerator will schedule the subscription on its next pass
        logger.error(
            "job.next_occurrence_failed",
            job_id=str(job.id),
            error_type=type(e).__name__,
            error_message=str(e),
        )

    return JobOutcome.COMPLETED


async def handle_failure(ctx: WorkerContext, job: ScheduleJob, exc: Exception) -> JobOutcome:
    """Classify a failure and record it on the job (retry or terminal)."""
    decision = ctx.retry_policy.classify(exc)
    attempt_count = job.attempt_count + 1

    try:
        async with await ctx.uow_factory() as uow:
            failed = await uow.jobs.fail(
                job.id,
                ctx.worker_id,
                ctx.retry_policy.format_error(decision),
                retryable=decision.retryable,
                now=ctx.clock(),
                retry_delay=ctx.retry_policy.backoff_delay(attempt_count),
            )
    except StaleLeaseError as e:
        logger.warning(
            "job.lease_lost",
            job_id=str(job.id),
            worker_id=ctx.worker_id,
            reason=str(e),
            stage="fail",
            error_code=decision.error_code,
        )
        return JobOutcome.DISCARDED

    if failed.status == JobStatus.PENDING:
        logger.warning(
            "job.retry_scheduled",
            job_id=str(job.id),
            error_code=decision.error_code,
            error_message=decision.message,
            attempt_count=failed.attempt_count,
            retry_at=failed.generation_start_time.isoformat(),
        )
        return JobOutcome.RETRY_SCHEDULED

    logger.error(
        "job.failed",
        job_id=str(job.id),
        subscription_id=str(job.subscription_id),
        error_code=decision.error_code,
        error_message=decision.message,
        attempt_count=failed.attempt_count,
        retryable=decision.retryable,
    )
    try:
        await ctx.notifier.job_failed(failed)
    except Exception as e:
        logger.warning("notification.failed", job_id=str(job.id), error_message=str(e))

    if isinstance(exc, BudgetExceeded):
        return JobOutcome.BUDGET_DENIED
    return JobOutcome.FAILED


async def run_episode_worker(ctx: WorkerContext) -> None:
    """Main worker loop.

    Processes jobs back to back while work is due, sleeps POLL_INTERVAL_SECONDS
    when the queue is empty, and handles graceful shutdown.

    Args:
        ctx: Worker context (collaborators, settings, worker id)
    """
    logger.info(
        "worker.started",
        worker_id=ctx.worker_id,
        poll_interval=ctx.settings.poll_interval_seconds,
        lease_duration_seconds=ctx.settings.lease_duration_seconds,
    )

    try:
        while True:
            try:
                outcome = await process_next_job(ctx)
                if outcome is None:
                    await asyncio.sleep(ctx.settings.poll_interval_seconds)

            except asyncio.CancelledError:
                # Propagate cancellation for graceful shutdown
                raise

            except Exception as e:
                # Unexpected error in polling loop - log and continue with backoff
                logger.error(
                    "worker.error",
                    worker_id=ctx.worker_id,
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    except asyncio.CancelledError:
        # Graceful shutdown
        logger.info("worker.stopped", worker_id=ctx.worker_id)
        raise
