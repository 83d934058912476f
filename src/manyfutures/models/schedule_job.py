"""ScheduleJob entity - one scheduled episode generation for one subscription period."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Index, text
from sqlmodel import Field, SQLModel

from manyfutures.core.timezone import utcnow
from manyfutures.models.types import UTCDateTime, string_enum


class JobStatus(str, Enum):
    """Schedule job lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

# processing -> processing is a reclaim of an abandoned (lease-expired) job
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset(
        {
            JobStatus.PROCESSING,
            JobStatus.PENDING,
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.CANCELLED,
        }
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

_ACTIVE_PREDICATE = "status IN ('pending', 'processing')"


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid schedule job state transition."""

    pass


class ScheduleJob(SQLModel, table=True):
    """ScheduleJob is a leased, retryable unit of episode generation work."""

    __tablename__ = "schedule_jobs"  # type: ignore[assignment]
    __table_args__ = (
        # At most one non-terminal job per subscription period
        Index(
            "uq_schedule_jobs_active_idempotency_key",
            "idempotency_key",
            unique=True,
            postgresql_where=text(_ACTIVE_PREDICATE),
            sqlite_where=text(_ACTIVE_PREDICATE),
        ),
        Index("ix_schedule_jobs_claim", "status", "generation_start_time", "priority"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    subscription_id: UUID = Field(foreign_key="subscriptions.id", index=True)

    # Timing: generation starts ahead of the delivery the subscriber expects
    generation_start_time: datetime = Field(sa_column=Column(UTCDateTime(), nullable=False))
    target_delivery_time: datetime = Field(sa_column=Column(UTCDateTime(), nullable=False))

    status: JobStatus = Field(
        default=JobStatus.PENDING,
        sa_column=Column(string_enum(JobStatus, "job_status"), nullable=False),
    )
    priority: int = Field(default=5)  # 10=Enterprise, 9=Growth, 8=Retry, 6=Trial, 5=Standard

    # Lease
    lease_owner: Optional[str] = Field(default=None, max_length=255)
    lease_expires_at: Optional[datetime] = Field(
        default=None, sa_column=Column(UTCDateTime(), nullable=True)
    )

    # Retry bookkeeping
    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    last_error: Optional[str] = Field(default=None, max_length=1000)

    # Result
    result_artifact_id: Optional[UUID] = Field(default=None)

    idempotency_key: str = Field(max_length=255)
    version: int = Field(default=0)

    claimed_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime()))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime()))
    failed_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime()))
    cancelled_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime()))
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False)
    )

    @property
    def is_terminal(self) -> bool:
        """True once the job is completed, failed or cancelled."""
        return self.status in TERMINAL_STATUSES

    def lease_is_active(self, now: datetime) -> bool:
        """True if the job is processing under a lease that has not lapsed yet."""
        return (
            self.status == JobStatus.PROCESSING
            and self.lease_expires_at is not None
            and self.lease_expires_at > now
        )

    def is_claimable(self, now: datetime) -> bool:
        """True if claim_next would hand this job to a worker at ``now``.

        Mirrors the candidate filter claim_next runs in SQL, plus its rule that a
        lease-expired job whose abandoned attempt was its last is failed rather
        than handed out. Queue tests check both against each other.
        """
        if self.generation_start_time > now:
            return False
        if self.status == JobStatus.PENDING:
            return True
        return (
            self.status == JobStatus.PROCESSING
            and not self.lease_is_active(now)
            and self.attempt_count + 1 < self.max_attempts
        )

    def assert_transition(self, target: JobStatus) -> None:
        """Validate a transition from the current status to ``target``.

        Raises:
            InvalidStateTransition: If the lifecycle does not allow the transition
        """
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateTransition(
                f"Cannot move job {self.id} from {self.status.value} to {target.value}."
            )
