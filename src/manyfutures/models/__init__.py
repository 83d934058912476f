"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from manyfutures.models.episode import Episode
from manyfutures.models.schedule_job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    InvalidStateTransition,
    JobStatus,
    ScheduleJob,
)
from manyfutures.models.spend import DailySpendAggregate, SpendOperation, SpendRecord
from manyfutures.models.subscription import (
    CadenceMode,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
)

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "CadenceMode",
    "DailySpendAggregate",
    "Episode",
    "InvalidStateTransition",
    "JobStatus",
    "ScheduleJob",
    "SpendOperation",
    "SpendRecord",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionTier",
]
