"""Notification hooks for delivered episodes and failed jobs."""

from typing import Protocol

import structlog

from manyfutures.models.episode import Episode
from manyfutures.models.schedule_job import ScheduleJob

logger = structlog.get_logger(__name__)


class NotificationSender(Protocol):
    """Tells the outside world about delivery outcomes.

    Implementations must not raise for delivery problems of their own; the
    worker logs and ignores exceptions from these hooks.
    """

    async def episode_ready(self, job: ScheduleJob, episode: Episode) -> None: ...

    async def job_failed(self, job: ScheduleJob) -> None: ...


class LoggingNotificationSender:
    """Default sender: writes structured log events only."""

    async def episode_ready(self, job: ScheduleJob, episode: Episode) -> None:
        logger.info(
            "notification.episode_ready",
            job_id=str(job.id),
            subscription_id=str(job.subscription_id),
            episode_id=str(episode.id),
            title=episode.title,
        )

    async def job_failed(self, job: ScheduleJob) -> None:
        logger.error(
            "notification.job_failed",
            job_id=str(job.id),
            subscription_id=str(job.subscription_id),
            attempt_count=job.attempt_count,
            last_error=job.last_error,
        )
