"""Subscription entity - a subscriber's research project with cadence and budget."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from manyfutures.core.timezone import utcnow
from manyfutures.models.types import MONEY, UTCDateTime, string_enum


class SubscriptionTier(str, Enum):
    """Billing tier; drives queue priority."""

    TRIAL = "TRIAL"
    STARTER = "STARTER"
    GROWTH = "GROWTH"
    ENTERPRISE = "ENTERPRISE"


class SubscriptionStatus(str, Enum):
    """Whether episodes are currently being scheduled."""

    ACTIVE = "active"
    PAUSED = "paused"


class CadenceMode(str, Enum):
    """Delivery cadence."""

    DAILY = "daily"
    WEEKLY = "weekly"


class Subscription(SQLModel, table=True):
    """Subscription owns schedule jobs, spend and delivered episodes."""

    __tablename__ = "subscriptions"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(max_length=255)
    brief: Optional[str] = Field(default=None)  # Research brief fed to the generator
    tier: SubscriptionTier = Field(
        default=SubscriptionTier.TRIAL,
        sa_column=Column(string_enum(SubscriptionTier, "subscription_tier"), nullable=False),
    )
    status: SubscriptionStatus = Field(
        default=SubscriptionStatus.ACTIVE,
        sa_column=Column(string_enum(SubscriptionStatus, "subscription_status"), nullable=False),
    )

    # Cadence: weekly mode delivers on ISO weekdays (1=Monday ... 7=Sunday)
    cadence_mode: CadenceMode = Field(
        default=CadenceMode.WEEKLY,
        sa_column=Column(string_enum(CadenceMode, "cadence_mode"), nullable=False),
    )
    cadence_days: list[int] = Field(default_factory=lambda: [1], sa_column=Column(JSON))
    delivery_hour: int = Field(default=9, ge=0, le=23)
    timezone: str = Field(default="Europe/London", max_length=100)

    # Budget overrides (None = use configured defaults)
    daily_cost_limit: Optional[Decimal] = Field(default=None, sa_column=Column(MONEY))
    job_cost_limit: Optional[Decimal] = Field(default=None, sa_column=Column(MONEY))
    currency: str = Field(default="GBP", max_length=3)

    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False)
    )

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE
