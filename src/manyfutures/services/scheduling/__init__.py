"""Delivery scheduling: cadence, priority and job creation."""

from manyfutures.services.scheduling.cadence import calculate_priority, next_delivery_time
from manyfutures.services.scheduling.planner import (
    build_schedule_job,
    pause_subscription,
    schedule_delivery,
    schedule_next_occurrence,
)

__all__ = [
    "build_schedule_job",
    "calculate_priority",
    "next_delivery_time",
    "pause_subscription",
    "schedule_delivery",
    "schedule_next_occurrence",
]
