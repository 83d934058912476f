"""Repository layer for the Many Futures scheduler.

Provides data access abstractions for all domain entities.
Each repository is self-contained; there are no base classes.
"""

from manyfutures.repositories.episode import EpisodeRepository
from manyfutures.repositories.schedule_job import ScheduleJobRepository
from manyfutures.repositories.spend import SpendRepository
from manyfutures.repositories.subscription import SubscriptionRepository

__all__ = [
    "EpisodeRepository",
    "ScheduleJobRepository",
    "SpendRepository",
    "SubscriptionRepository",
]
