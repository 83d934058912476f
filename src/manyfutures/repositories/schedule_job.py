"""ScheduleJob repository - the schedule queue store.

Provides durable storage and atomic claim semantics for ScheduleJob entities.
Every mutation is a conditional UPDATE guarded by the row version
(claim-and-verify): the row only changes if nobody changed it since we read it.
On PostgreSQL the candidate read additionally uses FOR UPDATE SKIP LOCKED so
concurrent workers look at non-overlapping rows.
"""

from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from manyfutures.models.schedule_job import ACTIVE_STATUSES, JobStatus, ScheduleJob
from manyfutures.services.exceptions import (
    DuplicateJobError,
    JobNotFoundError,
    LeaseExpiredError,
    SchedulerError,
    StaleLeaseError,
)

logger = structlog.get_logger(__name__)

RETRY_PRIORITY = 8
MAX_ERROR_LENGTH = 1000
LEASE_EXPIRED_ERROR = "lease_expired"
_CANCEL_ATTEMPTS = 3


class ScheduleJobRepository:
    """Repository for ScheduleJob entities.

    The claim operation is the only mutual-exclusion point between workers.
    It never reads-then-writes unconditionally: the write re-checks the version
    that was read, so exactly one of two racing workers wins a job.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def enqueue(self, job: ScheduleJob) -> ScheduleJob:
        """Insert a new pending job.

        Args:
            job: New ScheduleJob in pending status with its idempotency key set

        Returns:
            Persisted job

        Raises:
            ValueError: If the job violates the entity invariants
            DuplicateJobError: If a non-terminal job already exists for the key,
                or the period has already been delivered
        """
        self._validate_new_job(job)

        if await self._period_already_delivered(job.idempotency_key):
            raise DuplicateJobError(job.idempotency_key, reason="already_delivered")

        self.session.add(job)
        try:
            await self.session.flush()
        except IntegrityError as e:
            # Partial unique index over non-terminal jobs
            if "idempotency_key" not in str(e.orig):
                raise
            raise DuplicateJobError(job.idempotency_key) from e

        logger.info(
            "job.enqueued",
            job_id=str(job.id),
            subscription_id=str(job.subscription_id),
            idempotency_key=job.idempotency_key,
            generation_start_time=job.generation_start_time.isoformat(),
            priority=job.priority,
        )
        return job

    async def claim_next(
        self,
        worker_id: str,
        lease_duration: timedelta,
        now: datetime,
        batch_size: int = 5,
    ) -> ScheduleJob | None:
        """Claim the highest-priority due job for this worker.

        Query explanation:
        - WHERE status = 'pending' OR (status = 'processing' AND lease expired):
          due work, including jobs abandoned by crashed workers
        - AND generation_start_time <= now: backoff and future jobs stay hidden
        - ORDER BY priority DESC, generation_start_time ASC, created_at ASC
        - LIMIT batch_size FOR UPDATE SKIP LOCKED (PostgreSQL; ignored by SQLite)

        Each candidate is then claimed with a version-checked UPDATE. A candidate
        that another worker claimed in the meantime is skipped.

        Reclaiming a lease-expired job counts the abandoned attempt. A job whose
        abandoned attempt uses up max_attempts is failed with
        last_error="lease_expired" instead of being handed out again.

        Args:
            worker_id: Identifier of the claiming worker instance
            lease_duration: How long the claim is valid without renewal
            now: Current time (UTC)
            batch_size: Number of candidates to try before giving up

        Returns:
            The claimed job in processing status, or None if nothing is eligible
        """
        lease_lapsed = and_(
            ScheduleJob.status == JobStatus.PROCESSING,  # type: ignore[arg-type]
            ScheduleJob.lease_expires_at <= now,  # type: ignore[operator]
        )
        result = await self.session.execute(
            select(ScheduleJob)
            .where(
                or_(ScheduleJob.status == JobStatus.PENDING, lease_lapsed),  # type: ignore[arg-type]
                ScheduleJob.generation_start_time <= now,  # type: ignore[operator]
            )
            .order_by(
                ScheduleJob.priority.desc(),  # type: ignore[attr-defined]
                ScheduleJob.generation_start_time.asc(),  # type: ignore[attr-defined]
                ScheduleJob.created_at.asc(),  # type: ignore[attr-defined]
            )
            .limit(batch_size)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        candidates = list(result.scalars().all())

        for candidate in candidates:
            previous_owner = candidate.lease_owner
            reclaimed = candidate.status == JobStatus.PROCESSING

            if reclaimed and candidate.attempt_count + 1 >= candidate.max_attempts:
                await self._expire_abandoned(candidate, now, previous_owner)
                continue

            candidate.assert_transition(JobStatus.PROCESSING)
            values = {}
            if reclaimed:
                values = {
                    "attempt_count": candidate.attempt_count + 1,
                    "last_error": LEASE_EXPIRED_ERROR,
                }

            claimed = await self._compare_and_set(
                candidate,
                now,
                status=JobStatus.PROCESSING,
                lease_owner=worker_id,
                lease_expires_at=now + lease_duration,
                claimed_at=now,
                **values,
            )
            if not claimed:
                logger.debug("job.claim_lost", job_id=str(candidate.id), worker_id=worker_id)
                continue

            if reclaimed:
                logger.warning(
                    "job.lease_reclaimed",
                    job_id=str(candidate.id),
                    worker_id=worker_id,
                    previous_owner=previous_owner,
                    attempt_count=candidate.attempt_count,
                )
            logger.info(
                "job.claimed",
                job_id=str(candidate.id),
                worker_id=worker_id,
                attempt_count=candidate.attempt_count,
                priority=candidate.priority,
            )
            return candidate

        return None

    async def complete(
        self, job_id: UUID, worker_id: str, artifact_id: UUID, now: datetime
    ) -> ScheduleJob:
        """Transition processing -> completed and record the artifact.

        Raises:
            JobNotFoundError: If the job does not exist
            StaleLeaseError: If the caller no longer owns the job
            LeaseExpiredError: If the caller's lease lapsed before completion
        """
        job = await self._get_owned(job_id, worker_id, now)
        job.assert_transition(JobStatus.COMPLETED)

        completed = await self._compare_and_set(
            job,
            now,
            status=JobStatus.COMPLETED,
            result_artifact_id=artifact_id,
            completed_at=now,
            lease_owner=None,
            lease_expires_at=None,
        )
        if not completed:
            raise StaleLeaseError(job_id, worker_id, "job changed while completing")
        return job

    async def fail(
        self,
        job_id: UUID,
        worker_id: str,
        error: str,
        *,
        retryable: bool,
        now: datetime,
        retry_delay: timedelta = timedelta(0),
    ) -> ScheduleJob:
        """Record a failed attempt.

        Increments attempt_count. A retryable failure with attempts remaining goes
        back to pending with the lease cleared and generation_start_time moved to
        now + retry_delay (backoff). Anything else becomes failed (terminal).

        Args:
            job_id: Job to fail
            worker_id: Worker that holds the lease
            error: Failure reason stored in last_error (truncated to 1000 chars)
            retryable: Whether the failure class may be retried
            now: Current time (UTC)
            retry_delay: Backoff before the job becomes claimable again

        Returns:
            Updated job (status pending or failed)

        Raises:
            JobNotFoundError: If the job does not exist
            StaleLeaseError: If the caller no longer owns the job
            LeaseExpiredError: If the caller's lease lapsed
        """
        job = await self._get_owned(job_id, worker_id, now)
        attempt_count = job.attempt_count + 1
        error_text = error[:MAX_ERROR_LENGTH]

        if retryable and attempt_count < job.max_attempts:
            job.assert_transition(JobStatus.PENDING)
            retry_at = now + retry_delay
            values = {
                "status": JobStatus.PENDING,
                "attempt_count": attempt_count,
                "last_error": error_text,
                "lease_owner": None,
                "lease_expires_at": None,
                "generation_start_time": retry_at,
                "priority": max(job.priority, RETRY_PRIORITY),
            }
            if retry_at > job.target_delivery_time:
                # Delivery will be late; keep target_delivery_time >= generation_start_time
                values["target_delivery_time"] = retry_at
        else:
            job.assert_transition(JobStatus.FAILED)
            values = {
                "status": JobStatus.FAILED,
                "attempt_count": attempt_count,
                "last_error": error_text,
                "lease_owner": None,
                "lease_expires_at": None,
                "failed_at": now,
            }

        if not await self._compare_and_set(job, now, **values):
            raise StaleLeaseError(job_id, worker_id, "job changed while failing")
        return job

    async def cancel(self, job_id: UUID, now: datetime, reason: str | None = None) -> ScheduleJob:
        """Transition any non-terminal job to cancelled.

        Cancelling an already cancelled job is a no-op. An in-flight worker is not
        interrupted; it discovers the cancellation when it tries to complete.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidStateTransition: If the job already completed or failed
        """
        for _ in range(_CANCEL_ATTEMPTS):
            job = await self._load(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status == JobStatus.CANCELLED:
                return job
            job.assert_transition(JobStatus.CANCELLED)

            cancelled = await self._compare_and_set(
                job,
                now,
                status=JobStatus.CANCELLED,
                cancelled_at=now,
                lease_owner=None,
                lease_expires_at=None,
                last_error=reason[:MAX_ERROR_LENGTH] if reason else job.last_error,
            )
            if cancelled:
                logger.info("job.cancelled", job_id=str(job_id), reason=reason)
                return job

        raise SchedulerError(f"Job {job_id} kept changing while being cancelled")

    async def cancel_for_subscription(self, subscription_id: UUID, now: datetime) -> int:
        """Cancel every non-terminal job of a subscription in one statement.

        Returns:
            Number of jobs cancelled
        """
        result = await self.session.execute(
            update(ScheduleJob)
            .where(
                ScheduleJob.subscription_id == subscription_id,  # type: ignore[arg-type]
                ScheduleJob.status.in_(ACTIVE_STATUSES),  # type: ignore[attr-defined]
            )
            .values(
                status=JobStatus.CANCELLED,
                cancelled_at=now,
                updated_at=now,
                lease_owner=None,
                lease_expires_at=None,
                version=ScheduleJob.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[attr-defined]

    async def extend_lease(
        self, job_id: UUID, worker_id: str, lease_duration: timedelta, now: datetime
    ) -> ScheduleJob:
        """Push the caller's lease forward (heartbeat during long generations).

        Raises:
            StaleLeaseError: If the caller no longer owns the job
            LeaseExpiredError: If the lease already lapsed
        """
        job = await self._get_owned(job_id, worker_id, now)
        extended = await self._compare_and_set(job, now, lease_expires_at=now + lease_duration)
        if not extended:
            raise StaleLeaseError(job_id, worker_id, "job changed while extending lease")
        return job

    async def get_by_id(self, job_id: UUID) -> ScheduleJob | None:
        """Retrieve job by UUID.

        Args:
            job_id: Job's unique identifier

        Returns:
            ScheduleJob if found, None otherwise
        """
        return await self._load(job_id, lock=False)

    async def get_active_by_idempotency_key(self, idempotency_key: str) -> ScheduleJob | None:
        """Retrieve the pending/processing job for a period, if any."""
        result = await self.session.execute(
            select(ScheduleJob).where(
                ScheduleJob.idempotency_key == idempotency_key,  # type: ignore[arg-type]
                ScheduleJob.status.in_(ACTIVE_STATUSES),  # type: ignore[attr-defined]
            )
        )
        return result.scalar_one_or_none()

    async def list_by_status(
        self, status: JobStatus, limit: int = 100, offset: int = 0
    ) -> list[ScheduleJob]:
        """Retrieve jobs by status, most recently updated first.

        Used by operators and alerting to find jobs that reached failed.
        """
        result = await self.session.execute(
            select(ScheduleJob)
            .where(ScheduleJob.status == status)  # type: ignore[arg-type]
            .order_by(ScheduleJob.updated_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def list_by_subscription(
        self, subscription_id: UUID, limit: int = 100, offset: int = 0
    ) -> list[ScheduleJob]:
        """Retrieve a subscription's jobs, latest delivery first."""
        result = await self.session.execute(
            select(ScheduleJob)
            .where(ScheduleJob.subscription_id == subscription_id)  # type: ignore[arg-type]
            .order_by(ScheduleJob.target_delivery_time.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[JobStatus, int]:
        """Count jobs per status (every status present, zero if none)."""
        result = await self.session.execute(
            select(ScheduleJob.status, func.count(ScheduleJob.id)).group_by(ScheduleJob.status)  # type: ignore[arg-type]
        )
        counts = {status: 0 for status in JobStatus}
        for status, count in result.all():
            counts[JobStatus(status)] = count
        return counts

    async def _load(self, job_id: UUID, lock: bool = True) -> ScheduleJob | None:
        stmt = (
            select(ScheduleJob)
            .where(ScheduleJob.id == job_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_owned(self, job_id: UUID, worker_id: str, now: datetime) -> ScheduleJob:
        job = await self._load(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.PROCESSING or job.lease_owner != worker_id:
            raise StaleLeaseError(
                job_id, worker_id, f"status={job.status.value} owner={job.lease_owner}"
            )
        if not job.lease_is_active(now):
            raise LeaseExpiredError(
                job_id, worker_id, f"lease expired at {job.lease_expires_at}"
            )
        return job

    async def _compare_and_set(self, job: ScheduleJob, now: datetime, **values) -> bool:
        """Apply ``values`` only if the row still has the version we read.

        Returns:
            True if this call won the update (job is refreshed), False otherwise
        """
        observed_version = job.version
        result = await self.session.execute(
            update(ScheduleJob)
            .where(
                ScheduleJob.id == job.id,  # type: ignore[arg-type]
                ScheduleJob.version == observed_version,  # type: ignore[arg-type]
            )
            .values(version=observed_version + 1, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            return False
        await self.session.refresh(job)
        return True

    async def _expire_abandoned(
        self, job: ScheduleJob, now: datetime, previous_owner: str | None
    ) -> None:
        """Fail a lease-expired job whose abandoned attempt was its last one."""
        job.assert_transition(JobStatus.FAILED)
        expired = await self._compare_and_set(
            job,
            now,
            status=JobStatus.FAILED,
            attempt_count=job.attempt_count + 1,
            last_error=LEASE_EXPIRED_ERROR,
            lease_owner=None,
            lease_expires_at=None,
            failed_at=now,
        )
        if expired:
            logger.error(
                "job.failed",
                job_id=str(job.id),
                subscription_id=str(job.subscription_id),
                previous_owner=previous_owner,
                attempt_count=job.attempt_count,
                error_code=LEASE_EXPIRED_ERROR,
            )

    async def _period_already_delivered(self, idempotency_key: str) -> bool:
        result = await self.session.execute(
            select(
                exists().where(
                    ScheduleJob.idempotency_key == idempotency_key,  # type: ignore[arg-type]
                    ScheduleJob.status == JobStatus.COMPLETED,  # type: ignore[arg-type]
                )
            )
        )
        return bool(result.scalar())

    @staticmethod
    def _validate_new_job(job: ScheduleJob) -> None:
        if job.status != JobStatus.PENDING:
            raise ValueError(f"New jobs must be pending, got {job.status.value}")
        if not job.idempotency_key:
            raise ValueError("idempotency_key is required")
        if job.generation_start_time.tzinfo is None or job.target_delivery_time.tzinfo is None:
            raise ValueError("Job times must be timezone-aware")
        if job.target_delivery_time < job.generation_start_time:
            raise ValueError("target_delivery_time must be >= generation_start_time")
        if job.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0 <= job.attempt_count <= job.max_attempts:
            raise ValueError("attempt_count must be between 0 and max_attempts")
