"""Spend repository for the cost ledger.

Provides the append-only SpendRecord ledger and the DailySpendAggregate totals.
Aggregates are maintained with a single INSERT ... ON CONFLICT DO UPDATE so
concurrent recorders never lose an increment.
"""

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from manyfutures.models.spend import DailySpendAggregate, SpendOperation, SpendRecord


def spend_date_for(moment: datetime) -> date:
    """UTC calendar day a spend belongs to."""
    return moment.astimezone(timezone.utc).date()


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Half-open UTC interval [start, end) covering a calendar day."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class SpendRepository:
    """Repository for SpendRecord and DailySpendAggregate entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add_record(self, record: SpendRecord) -> SpendRecord:
        """Append a ledger entry and fold it into the day's aggregate.

        Both writes happen in the caller's transaction, so the ledger and the
        aggregate are committed (or rolled back) together.

        Args:
            record: New SpendRecord (amount already quantized)

        Returns:
            Persisted record
        """
        self.session.add(record)
        await self.session.flush()
        await self._increment_aggregate(record)
        return record

    async def get_aggregate(
        self, subscription_id: UUID, spend_date: date
    ) -> DailySpendAggregate | None:
        """Retrieve the aggregate row for one subscription day, if any."""
        result = await self.session.execute(
            select(DailySpendAggregate)
            .where(
                DailySpendAggregate.subscription_id == subscription_id,  # type: ignore[arg-type]
                DailySpendAggregate.spend_date == spend_date,  # type: ignore[arg-type]
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_daily_total(self, subscription_id: UUID, spend_date: date) -> Decimal:
        """Current aggregate total for a subscription day (zero if nothing spent)."""
        result = await self.session.execute(
            select(DailySpendAggregate.total).where(
                DailySpendAggregate.subscription_id == subscription_id,  # type: ignore[arg-type]
                DailySpendAggregate.spend_date == spend_date,  # type: ignore[arg-type]
            )
        )
        total = result.scalar_one_or_none()
        return Decimal(total) if total is not None else Decimal("0.00")

    async def sum_ledger_for_day(self, subscription_id: UUID, spend_date: date) -> Decimal:
        """Sum the raw ledger for a subscription day.

        This is the source of truth that reconciliation compares aggregates against.
        """
        start, end = day_bounds(spend_date)
        result = await self.session.execute(
            select(func.coalesce(func.sum(SpendRecord.amount), 0)).where(
                SpendRecord.subscription_id == subscription_id,  # type: ignore[arg-type]
                SpendRecord.created_at >= start,  # type: ignore[operator]
                SpendRecord.created_at < end,  # type: ignore[operator]
            )
        )
        return Decimal(result.scalar_one())

    async def list_records(self, subscription_id: UUID, spend_date: date) -> list[SpendRecord]:
        """Retrieve a subscription day's ledger entries in creation order."""
        start, end = day_bounds(spend_date)
        result = await self.session.execute(
            select(SpendRecord)
            .where(
                SpendRecord.subscription_id == subscription_id,  # type: ignore[arg-type]
                SpendRecord.created_at >= start,  # type: ignore[operator]
                SpendRecord.created_at < end,  # type: ignore[operator]
            )
            .order_by(SpendRecord.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def list_subscriptions_with_spend(self, spend_date: date) -> list[UUID]:
        """Subscription IDs that have ledger entries or an aggregate row for the day."""
        start, end = day_bounds(spend_date)
        ledger = await self.session.execute(
            select(SpendRecord.subscription_id)
            .where(
                SpendRecord.created_at >= start,  # type: ignore[operator]
                SpendRecord.created_at < end,  # type: ignore[operator]
            )
            .distinct()
        )
        aggregates = await self.session.execute(
            select(DailySpendAggregate.subscription_id).where(
                DailySpendAggregate.spend_date == spend_date  # type: ignore[arg-type]
            )
        )
        ids = set(ledger.scalars().all()) | set(aggregates.scalars().all())
        return sorted(ids, key=str)

    async def overwrite_aggregate(
        self,
        subscription_id: UUID,
        spend_date: date,
        now: datetime,
        currency: str,
    ) -> DailySpendAggregate:
        """Rebuild a day's aggregate from the ledger (reconciliation).

        Returns:
            The aggregate row after it was overwritten
        """
        records = await self.list_records(subscription_id, spend_date)
        total = sum((record.amount for record in records), Decimal("0.00"))
        generation_total = sum(
            (r.amount for r in records if r.operation == SpendOperation.GENERATION),
            Decimal("0.00"),
        )
        total_tokens = sum(record.total_tokens for record in records)

        aggregate = await self.get_aggregate(subscription_id, spend_date)
        if aggregate is None:
            aggregate = DailySpendAggregate(
                subscription_id=subscription_id,
                spend_date=spend_date,
                currency=currency,
            )
            self.session.add(aggregate)

        aggregate.total = total
        aggregate.generation_total = generation_total
        aggregate.total_tokens = total_tokens
        aggregate.record_count = len(records)
        aggregate.updated_at = now
        await self.session.flush()
        return aggregate

    async def _increment_aggregate(self, record: SpendRecord) -> None:
        """Atomically add a record to its day's aggregate row (upsert)."""
        dialect = self.session.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert

        generation_amount = (
            record.amount if record.operation == SpendOperation.GENERATION else Decimal("0.00")
        )
        stmt = insert(DailySpendAggregate).values(
            subscription_id=record.subscription_id,
            spend_date=spend_date_for(record.created_at),
            total=record.amount,
            currency=record.currency,
            total_tokens=record.total_tokens,
            generation_total=generation_amount,
            record_count=1,
            updated_at=record.created_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["subscription_id", "spend_date"],
            set_={
                "total": DailySpendAggregate.total + stmt.excluded.total,
                "total_tokens": DailySpendAggregate.total_tokens + stmt.excluded.total_tokens,
                "generation_total": (
                    DailySpendAggregate.generation_total + stmt.excluded.generation_total
                ),
                "record_count": DailySpendAggregate.record_count + 1,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
