"""Delivery cadence and queue priority.

Subscriptions deliver at ``delivery_hour`` local time in their own time zone,
either every day or on selected ISO weekdays (1=Monday ... 7=Sunday).
"""

from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from manyfutures.models.subscription import CadenceMode, Subscription, SubscriptionTier
from manyfutures.services.exceptions import MalformedSubscriptionError

PRIORITY_ENTERPRISE = 10
PRIORITY_GROWTH = 9
PRIORITY_RETRY = 8
PRIORITY_TRIAL = 6
PRIORITY_STANDARD = 5


def calculate_priority(tier: SubscriptionTier, attempt_count: int = 0) -> int:
    """Queue priority for a job (higher is claimed first).

    Retries jump ahead of everything except paying Enterprise/Growth tiers.
    """
    if tier == SubscriptionTier.ENTERPRISE:
        return PRIORITY_ENTERPRISE
    if tier == SubscriptionTier.GROWTH:
        return PRIORITY_GROWTH
    if attempt_count > 0:
        return PRIORITY_RETRY
    if tier == SubscriptionTier.TRIAL:
        return PRIORITY_TRIAL
    return PRIORITY_STANDARD


def subscription_zone(subscription: Subscription) -> ZoneInfo:
    """The subscription's IANA time zone.

    Raises:
        MalformedSubscriptionError: If the zone name is unknown
    """
    try:
        return ZoneInfo(subscription.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise MalformedSubscriptionError(
            f"Subscription {subscription.id} has unknown timezone {subscription.timezone!r}"
        ) from e


def _delivery_weekdays(subscription: Subscription) -> set[int]:
    if subscription.cadence_mode == CadenceMode.DAILY:
        return set(range(1, 8))

    days = {int(day) for day in subscription.cadence_days or []}
    if not days or not days <= set(range(1, 8)):
        raise MalformedSubscriptionError(
            f"Subscription {subscription.id} has invalid cadence_days {subscription.cadence_days!r}"
        )
    return days


def next_delivery_time(subscription: Subscription, after: datetime) -> datetime:
    """Next delivery slot strictly after ``after``.

    Args:
        subscription: Subscription with cadence settings
        after: Timezone-aware reference time

    Returns:
        UTC datetime of the next delivery

    Raises:
        MalformedSubscriptionError: If the cadence settings cannot produce a slot
    """
    if after.tzinfo is None:
        raise ValueError("after must be timezone-aware")
    if not 0 <= subscription.delivery_hour <= 23:
        raise MalformedSubscriptionError(
            f"Subscription {subscription.id} has invalid delivery_hour {subscription.delivery_hour}"
        )

    zone = subscription_zone(subscription)
    weekdays = _delivery_weekdays(subscription)
    local_after = after.astimezone(zone)

    # Eight days always contains the next matching weekday, even for today's slot
    for offset in range(8):
        day = local_after.date() + timedelta(days=offset)
        if day.isoweekday() not in weekdays:
            continue
        slot = datetime.combine(day, time(hour=subscription.delivery_hour), tzinfo=zone)
        slot_utc = slot.astimezone(timezone.utc)
        if slot_utc > after:
            return slot_utc

    raise MalformedSubscriptionError(f"No delivery slot found for subscription {subscription.id}")
