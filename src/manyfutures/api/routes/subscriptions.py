"""Subscription operations: pause and spend view."""

from datetime import date
from decimal import Decimal
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from manyfutures.api.dependencies import get_settings, get_uow_factory
from manyfutures.core.config import Settings
from manyfutures.core.timezone import utcnow
from manyfutures.services.cost_governor import CostGovernor
from manyfutures.services.exceptions import MalformedSubscriptionError
from manyfutures.services.scheduling.planner import pause_subscription

logger = structlog.get_logger()
router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


class PauseResponse(BaseModel):
    subscription_id: UUID
    status: str
    cancelled_jobs: int


class SpendResponse(BaseModel):
    """Daily spend of one subscription against its ceiling."""

    subscription_id: UUID
    spend_date: date
    total: Decimal
    daily_limit: Decimal
    remaining: Decimal
    currency: str
    record_count: int


@router.post("/{subscription_id}/pause", response_model=PauseResponse)
async def pause(subscription_id: UUID, uow_factory=Depends(get_uow_factory)) -> PauseResponse:
    """Pause a subscription and cancel its scheduled jobs.

    Raises:
        HTTPException 404: Subscription not found
    """
    try:
        async with await uow_factory() as uow:
            cancelled = await pause_subscription(uow, subscription_id, utcnow())
    except MalformedSubscriptionError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")

    return PauseResponse(subscription_id=subscription_id, status="paused", cancelled_jobs=cancelled)


@router.get("/{subscription_id}/spend", response_model=SpendResponse)
async def get_spend(
    subscription_id: UUID,
    day: date | None = Query(None, description="UTC day (YYYY-MM-DD), defaults to today"),
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> SpendResponse:
    """Show a subscription's spend for one UTC day.

    Raises:
        HTTPException 404: Subscription not found
    """
    spend_date = day or utcnow().date()
    governor = CostGovernor(settings)

    async with await uow_factory() as uow:
        subscription = await uow.subscriptions.get_by_id(subscription_id)
        if subscription is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found"
            )
        aggregate = await uow.spend.get_aggregate(subscription_id, spend_date)

    total = aggregate.total if aggregate else Decimal("0.00")
    daily_limit = governor.daily_limit_for(subscription)
    return SpendResponse(
        subscription_id=subscription_id,
        spend_date=spend_date,
        total=total,
        daily_limit=daily_limit,
        remaining=max(daily_limit - total, Decimal("0.00")),
        currency=governor.currency_for(subscription),
        record_count=aggregate.record_count if aggregate else 0,
    )
