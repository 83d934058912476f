"""Spend ledger entities - append-only records and their daily aggregate."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Date, UniqueConstraint
from sqlmodel import Field, SQLModel

from manyfutures.core.timezone import utcnow
from manyfutures.models.types import MONEY, UTCDateTime, string_enum


class SpendOperation(str, Enum):
    """What the money was spent on."""

    GENERATION = "generation"
    CHAT = "chat"
    ADJUSTMENT = "adjustment"


class SpendRecord(SQLModel, table=True):
    """Immutable ledger entry for one unit of paid work (one LLM call).

    Never updated once written. Corrections are new entries with negative amounts.
    """

    __tablename__ = "spend_records"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    subscription_id: UUID = Field(foreign_key="subscriptions.id", index=True)
    job_id: Optional[UUID] = Field(default=None, foreign_key="schedule_jobs.id", index=True)
    amount: Decimal = Field(sa_column=Column(MONEY, nullable=False))
    currency: str = Field(default="GBP", max_length=3)
    operation: SpendOperation = Field(
        default=SpendOperation.GENERATION,
        sa_column=Column(string_enum(SpendOperation, "spend_operation"), nullable=False),
    )
    model: Optional[str] = Field(default=None, max_length=100)
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    note: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False, index=True)
    )

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class DailySpendAggregate(SQLModel, table=True):
    """Per-subscription, per-day spend totals maintained by atomic increments."""

    __tablename__ = "daily_spend_aggregates"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint("subscription_id", "spend_date", name="uq_daily_spend_subscription_date"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    subscription_id: UUID = Field(foreign_key="subscriptions.id", index=True)
    spend_date: date = Field(sa_column=Column(Date, nullable=False))
    total: Decimal = Field(default=Decimal("0.00"), sa_column=Column(MONEY, nullable=False))
    currency: str = Field(default="GBP", max_length=3)
    total_tokens: int = Field(default=0)
    generation_total: Decimal = Field(
        default=Decimal("0.00"), sa_column=Column(MONEY, nullable=False)
    )
    record_count: int = Field(default=0)
    updated_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False)
    )
