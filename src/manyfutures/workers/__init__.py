"""Background workers for async processing tasks."""

from manyfutures.workers.episode_worker import (
    JobOutcome,
    WorkerContext,
    process_next_job,
    run_episode_worker,
)

__all__ = [
    "JobOutcome",
    "WorkerContext",
    "process_next_job",
    "run_episode_worker",
]
