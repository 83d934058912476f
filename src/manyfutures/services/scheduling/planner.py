"""Creating schedule jobs for subscription deliveries.

``schedule_delivery`` is the entry point the subscription enumerator calls;
``schedule_next_occurrence`` chains the next delivery after a job completes.
"""

from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

import structlog

from manyfutures.core.config import Settings
from manyfutures.models.schedule_job import ScheduleJob
from manyfutures.models.subscription import Subscription, SubscriptionStatus
from manyfutures.services.exceptions import DuplicateJobError, MalformedSubscriptionError
from manyfutures.services.idempotency import derive_idempotency_key
from manyfutures.services.scheduling.cadence import (
    calculate_priority,
    next_delivery_time,
    subscription_zone,
)
from manyfutures.uow import UnitOfWork

logger = structlog.get_logger(__name__)

# Delivered slots schedule_next_occurrence steps over before giving up
MAX_DELIVERED_SLOT_SKIPS = 7


def build_schedule_job(
    subscription: Subscription,
    target_delivery_time: datetime,
    settings: Settings,
    now: datetime,
) -> ScheduleJob:
    """Build (but do not persist) the job for one delivery.

    Generation starts ``generation_lead_hours`` before delivery, clamped so it
    is never before ``now`` and never after the delivery itself. Day periods
    of the idempotency key follow the subscription's local calendar.

    Raises:
        MalformedSubscriptionError: If the subscription time zone is unknown
    """
    generation_start_time = target_delivery_time - timedelta(hours=settings.generation_lead_hours)
    generation_start_time = min(max(generation_start_time, now), target_delivery_time)

    return ScheduleJob(
        subscription_id=subscription.id,
        generation_start_time=generation_start_time,
        target_delivery_time=target_delivery_time,
        priority=calculate_priority(subscription.tier),
        max_attempts=settings.default_max_attempts,
        idempotency_key=derive_idempotency_key(
            subscription.id,
            target_delivery_time,
            settings.idempotency_period,
            subscription_zone(subscription),
        ),
        created_at=now,
        updated_at=now,
    )


async def schedule_delivery(uow_factory: Callable, job: ScheduleJob) -> ScheduleJob | None:
    """Enqueue a job in its own transaction.

    Returns:
        The persisted job, or None if the period is already scheduled or delivered
    """
    try:
        async with await uow_factory() as uow:
            return await uow.jobs.enqueue(job)
    except DuplicateJobError as e:
        logger.info(
            "job.already_scheduled",
            subscription_id=str(job.subscription_id),
            idempotency_key=e.idempotency_key,
            reason=e.reason,
        )
        return None


async def schedule_next_occurrence(
    uow_factory: Callable,
    job: ScheduleJob,
    settings: Settings,
    now: datetime,
) -> ScheduleJob | None:
    """Schedule the delivery that follows ``job`` for an active subscription.

    A slot whose period was already delivered is stepped over and the slot after
    it is tried, so the chain of deliveries keeps going.

    Returns:
        The new job, or None if the subscription is gone, paused or already scheduled
    """
    async with await uow_factory() as uow:
        subscription = await uow.subscriptions.get_by_id(job.subscription_id)

    if subscription is None or subscription.status != SubscriptionStatus.ACTIVE:
        return None

    after = max(job.target_delivery_time, now)
    for _ in range(MAX_DELIVERED_SLOT_SKIPS + 1):
        try:
            target = next_delivery_time(subscription, after)
            candidate = build_schedule_job(subscription, target, settings, now)
        except MalformedSubscriptionError as e:
            logger.error(
                "job.next_occurrence_failed",
                subscription_id=str(subscription.id),
                error_message=str(e),
            )
            return None

        try:
            async with await uow_factory() as uow:
                next_job = await uow.jobs.enqueue(candidate)
        except DuplicateJobError as e:
            if e.reason != "already_delivered":
                logger.info(
                    "job.already_scheduled",
                    subscription_id=str(subscription.id),
                    idempotency_key=e.idempotency_key,
                    reason=e.reason,
                )
                return None
            logger.warning(
                "job.slot_already_delivered",
                subscription_id=str(subscription.id),
                idempotency_key=e.idempotency_key,
                target_delivery_time=target.isoformat(),
            )
            after = target
            continue

        logger.info(
            "job.next_occurrence_scheduled",
            subscription_id=str(subscription.id),
            job_id=str(next_job.id),
            target_delivery_time=target.isoformat(),
        )
        return next_job

    logger.error(
        "job.next_occurrence_failed",
        subscription_id=str(subscription.id),
        error_message=f"next {MAX_DELIVERED_SLOT_SKIPS + 1} slots already delivered",
    )
    return None


async def pause_subscription(uow: UnitOfWork, subscription_id: UUID, now: datetime) -> int:
    """Pause a subscription and cancel all of its non-terminal jobs.

    Workers already generating for it discover the cancellation when they try
    to complete and discard their work.

    Returns:
        Number of jobs cancelled

    Raises:
        MalformedSubscriptionError: If the subscription does not exist
    """
    subscription = await uow.subscriptions.get_by_id(subscription_id)
    if subscription is None:
        raise MalformedSubscriptionError(f"Subscription {subscription_id} not found")

    await uow.subscriptions.set_status(subscription, SubscriptionStatus.PAUSED)
    cancelled = await uow.jobs.cancel_for_subscription(subscription_id, now)

    logger.info(
        "subscription.paused",
        subscription_id=str(subscription_id),
        cancelled_jobs=cancelled,
    )
    return cancelled
