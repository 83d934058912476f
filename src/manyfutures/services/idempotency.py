"""Idempotency keys for subscription delivery periods.

A key identifies one (subscription, period) pair. The queue store enforces that
only one non-terminal job exists per key, and the episodes table enforces that a
key publishes at most one episode.

Day periods follow the subscriber's calendar: they are cut at local midnight in
the subscription's time zone, so two consecutive local deliveries never share a
key even when a DST change puts both on the same UTC day. Hour periods are cut
on UTC hours.
"""

from datetime import datetime, timezone, tzinfo
from uuid import UUID

PERIODS = ("day", "hour")


def truncate_to_period(
    moment: datetime, period: str = "day", zone: tzinfo = timezone.utc
) -> datetime:
    """Truncate a timezone-aware moment to the start of its period.

    Args:
        moment: Timezone-aware datetime (any zone)
        period: "day" or "hour"
        zone: Time zone whose calendar days delimit "day" periods

    Returns:
        Start of the period; local midnight in ``zone`` for days, UTC for hours

    Raises:
        ValueError: If moment is naive or period is unknown
    """
    if moment.tzinfo is None:
        raise ValueError("moment must be timezone-aware")
    if period not in PERIODS:
        raise ValueError(f"Unknown idempotency period {period!r}; expected one of {PERIODS}")

    if period == "day":
        local_moment = moment.astimezone(zone)
        return local_moment.replace(hour=0, minute=0, second=0, microsecond=0)
    utc_moment = moment.astimezone(timezone.utc)
    return utc_moment.replace(minute=0, second=0, microsecond=0)


def derive_idempotency_key(
    subscription_id: UUID,
    target_delivery_time: datetime,
    period: str = "day",
    zone: tzinfo = timezone.utc,
) -> str:
    """Derive the deterministic key for a subscription's delivery period.

    Example:
        >>> derive_idempotency_key(sub_id, datetime(2026, 10, 19, 9, tzinfo=timezone.utc))
        '5f0c...:2026-10-19T00:00:00+00:00'
        >>> derive_idempotency_key(sub_id, monday_slot, zone=ZoneInfo("Europe/London"))
        '5f0c...:2026-03-30T00:00:00+01:00'
    """
    period_start = truncate_to_period(target_delivery_time, period, zone)
    return f"{subscription_id}:{period_start.isoformat()}"
