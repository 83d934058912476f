"""Shared test constants and small async helpers."""

from datetime import datetime, timedelta, timezone

# Fixed reference time for deterministic tests (a Monday, 05:00 UTC)
NOW = datetime(2026, 10, 19, 5, 0, tzinfo=timezone.utc)

LEASE = timedelta(minutes=10)


async def enqueue(uow_factory, job):
    async with await uow_factory() as uow:
        return await uow.jobs.enqueue(job)


async def claim(uow_factory, worker_id, now=NOW, lease=LEASE):
    async with await uow_factory() as uow:
        return await uow.jobs.claim_next(worker_id, lease, now)


async def load_job(uow_factory, job_id):
    async with await uow_factory() as uow:
        return await uow.jobs.get_by_id(job_id)


class MutableClock:
    """Test clock the code under test reads through ``clock()``."""

    def __init__(self, start: datetime = NOW):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> datetime:
        self.current = self.current + delta
        return self.current
