"""Subscription repository.

Subscriptions are owned by the wider product; the scheduler reads them to
derive cadence, priority and budget overrides, and pauses them.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from manyfutures.models.subscription import Subscription, SubscriptionStatus


class SubscriptionRepository:
    """Repository for Subscription entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, subscription_id: UUID) -> Subscription | None:
        """Retrieve subscription by UUID.

        Args:
            subscription_id: Subscription's unique identifier

        Returns:
            Subscription if found, None otherwise
        """
        result = await self.session.execute(
            select(Subscription).where(Subscription.id == subscription_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def add(self, subscription: Subscription) -> Subscription:
        """Persist new subscription to database.

        Args:
            subscription: Subscription entity to persist

        Returns:
            Persisted subscription with generated ID
        """
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def list_active(self, limit: int = 1000) -> list[Subscription]:
        """Retrieve active subscriptions, oldest first."""
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.status == SubscriptionStatus.ACTIVE)  # type: ignore[arg-type]
            .order_by(Subscription.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def set_status(self, subscription: Subscription, status: SubscriptionStatus) -> None:
        subscription.status = status
        await self.session.flush()
