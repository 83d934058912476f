"""Episode entity - the published artifact of a completed schedule job."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column
from sqlmodel import Field, SQLModel

from manyfutures.core.timezone import utcnow
from manyfutures.models.types import UTCDateTime


class Episode(SQLModel, table=True):
    """Episode is one generated newsletter issue for one subscription period."""

    __tablename__ = "episodes"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    subscription_id: UUID = Field(foreign_key="subscriptions.id", index=True)
    job_id: UUID = Field(foreign_key="schedule_jobs.id", unique=True)
    # Same key as the job: a period can only ever publish one episode
    idempotency_key: str = Field(max_length=255, unique=True)
    title: str = Field(max_length=500)
    content: str
    model: Optional[str] = Field(default=None, max_length=100)
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False)
    )
