"""Episode repository.

Inserting an episode is the last line of defence against double delivery:
the table carries unique constraints on both job_id and idempotency_key.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from manyfutures.models.episode import Episode
from manyfutures.services.exceptions import DuplicateJobError


class EpisodeRepository:
    """Repository for Episode entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, episode: Episode) -> Episode:
        """Persist a generated episode.

        Args:
            episode: Episode entity to persist

        Returns:
            Persisted episode

        Raises:
            DuplicateJobError: If the period (or job) already published an episode
        """
        self.session.add(episode)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise DuplicateJobError(episode.idempotency_key, reason="duplicate_period") from e
        return episode

    async def get_by_id(self, episode_id: UUID) -> Episode | None:
        result = await self.session.execute(
            select(Episode).where(Episode.id == episode_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_job_id(self, job_id: UUID) -> Episode | None:
        """Retrieve the episode a job produced, if any."""
        result = await self.session.execute(
            select(Episode).where(Episode.job_id == job_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_idempotency_key(self, idempotency_key: str) -> Episode | None:
        result = await self.session.execute(
            select(Episode).where(Episode.idempotency_key == idempotency_key)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def list_by_subscription(self, subscription_id: UUID, limit: int = 50) -> list[Episode]:
        """Retrieve a subscription's episodes, newest first."""
        result = await self.session.execute(
            select(Episode)
            .where(Episode.subscription_id == subscription_id)  # type: ignore[arg-type]
            .order_by(Episode.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())
