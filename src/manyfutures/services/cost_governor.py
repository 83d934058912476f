"""Cost governor: per-subscription spend ceilings and the spend ledger.

Every job is checked against its subscription's daily ceiling before any paid
work starts. Spend is appended to the ledger and folded into the daily
aggregate in the caller's transaction.

The check-then-generate gap is a known soft spot: two jobs of one subscription
checked at the same moment may both pass and overshoot the ceiling by at most
one job's cost. Claim ordering makes this rare in practice.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from manyfutures.core.config import Settings
from manyfutures.core.money import quantize_money, to_decimal
from manyfutures.models.spend import SpendOperation, SpendRecord
from manyfutures.models.subscription import Subscription
from manyfutures.repositories.spend import spend_date_for
from manyfutures.services.exceptions import BudgetExceeded
from manyfutures.uow import UnitOfWork

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BudgetDecision:
    """Result of a budget check."""

    allowed: bool
    current_total: Decimal
    estimated_cost: Decimal
    limit: Decimal
    error: Optional[BudgetExceeded] = None


@dataclass(frozen=True)
class ReconcileResult:
    """Aggregate vs. ledger comparison for one subscription day."""

    subscription_id: UUID
    spend_date: date
    aggregate_total: Decimal
    ledger_total: Decimal

    @property
    def drift(self) -> Decimal:
        return self.aggregate_total - self.ledger_total

    @property
    def has_drift(self) -> bool:
        return self.drift != 0


class CostGovernor:
    """Enforces spend ceilings and records spend."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def currency_for(self, subscription: Subscription | None) -> str:
        if subscription is not None and subscription.currency:
            return subscription.currency
        return self.settings.default_currency

    def daily_limit_for(self, subscription: Subscription | None) -> Decimal:
        """Daily ceiling: the subscription override, else the configured default."""
        currency = self.currency_for(subscription)
        if subscription is not None and subscription.daily_cost_limit is not None:
            return quantize_money(subscription.daily_cost_limit, currency)
        return quantize_money(self.settings.daily_cost_limit, currency)

    def job_limit_for(self, subscription: Subscription | None) -> Decimal:
        """Per-episode ceiling: the subscription override, else the configured default."""
        currency = self.currency_for(subscription)
        if subscription is not None and subscription.job_cost_limit is not None:
            return quantize_money(subscription.job_cost_limit, currency)
        return quantize_money(self.settings.job_cost_limit, currency)

    def estimate_cost(self, subscription: Subscription | None) -> Decimal:
        """Conservative up-front estimate of one episode generation."""
        return quantize_money(self.settings.estimated_job_cost, self.currency_for(subscription))

    async def check_budget(
        self,
        uow: UnitOfWork,
        subscription_id: UUID,
        estimated_cost: Decimal | int | str,
        now: datetime,
        subscription: Subscription | None = None,
    ) -> BudgetDecision:
        """Check whether a job may spend ``estimated_cost`` today.

        Denied when current_total + estimated_cost > daily limit (equal is
        allowed), or when estimated_cost alone exceeds the per-job limit.

        Args:
            uow: Unit of work used to read the daily aggregate
            subscription_id: Subscription being charged
            estimated_cost: Estimated cost of the job (Decimal, int or str)
            now: Current time; selects the UTC spend day
            subscription: Loaded subscription for limit overrides (optional)

        Returns:
            BudgetDecision; when denied, ``error`` carries a BudgetExceeded
        """
        currency = self.currency_for(subscription)
        estimate = quantize_money(estimated_cost, currency)
        current_total = quantize_money(
            await uow.spend.get_daily_total(subscription_id, spend_date_for(now)), currency
        )
        daily_limit = self.daily_limit_for(subscription)
        job_limit = self.job_limit_for(subscription)

        error = None
        limit = daily_limit
        if estimate > job_limit:
            limit = job_limit
            error = BudgetExceeded(subscription_id, "job_limit", current_total, estimate, job_limit)
        elif current_total + estimate > daily_limit:
            error = BudgetExceeded(
                subscription_id, "daily_limit", current_total, estimate, daily_limit
            )

        if error is not None:
            logger.warning(
                "budget.denied",
                subscription_id=str(subscription_id),
                limit_kind=error.limit_kind,
                current_total=str(current_total),
                estimated_cost=str(estimate),
                limit=str(limit),
            )

        return BudgetDecision(
            allowed=error is None,
            current_total=current_total,
            estimated_cost=estimate,
            limit=limit,
            error=error,
        )

    async def record_spend(
        self,
        uow: UnitOfWork,
        subscription_id: UUID,
        job_id: UUID | None,
        amount: Decimal | int | str,
        now: datetime,
        *,
        operation: SpendOperation = SpendOperation.GENERATION,
        model: str | None = None,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        currency: str | None = None,
        note: str | None = None,
    ) -> SpendRecord:
        """Append to the ledger and increment the daily aggregate atomically.

        Raises:
            TypeError: If amount is a float
            ValueError: If amount is not a finite number
        """
        currency = currency or self.settings.default_currency
        record = SpendRecord(
            subscription_id=subscription_id,
            job_id=job_id,
            amount=quantize_money(to_decimal(amount), currency),
            currency=currency,
            operation=operation,
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            note=note,
            created_at=now,
        )
        await uow.spend.add_record(record)

        logger.info(
            "spend.recorded",
            subscription_id=str(subscription_id),
            job_id=str(job_id) if job_id else None,
            amount=str(record.amount),
            currency=currency,
            operation=operation.value,
            total_tokens=record.total_tokens,
        )
        return record

    async def reconcile(
        self,
        uow: UnitOfWork,
        subscription_id: UUID,
        day: date,
        now: datetime,
        dry_run: bool = False,
    ) -> ReconcileResult:
        """Recompute a day's aggregate from the ledger and overwrite it.

        Args:
            uow: Unit of work for reads and the overwrite
            subscription_id: Subscription to reconcile
            day: UTC spend day
            now: Current time (aggregate updated_at)
            dry_run: Report drift without writing

        Returns:
            ReconcileResult with the totals observed before any overwrite
        """
        aggregate_total = await uow.spend.get_daily_total(subscription_id, day)
        ledger_total = await uow.spend.sum_ledger_for_day(subscription_id, day)
        result = ReconcileResult(
            subscription_id=subscription_id,
            spend_date=day,
            aggregate_total=aggregate_total,
            ledger_total=ledger_total,
        )

        if result.has_drift:
            logger.warning(
                "spend.drift_detected",
                subscription_id=str(subscription_id),
                spend_date=day.isoformat(),
                aggregate_total=str(aggregate_total),
                ledger_total=str(ledger_total),
                drift=str(result.drift),
                dry_run=dry_run,
            )

        if not dry_run:
            subscription = await uow.subscriptions.get_by_id(subscription_id)
            await uow.spend.overwrite_aggregate(
                subscription_id, day, now, currency=self.currency_for(subscription)
            )

        return result
