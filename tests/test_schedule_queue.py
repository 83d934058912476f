"""Schedule queue store tests.

Tests focus on claim semantics and lifecycle updates:
- Concurrent claims never hand one job to two workers
- Lease expiry makes abandoned jobs claimable again (and not before)
- Claim ordering: priority, then generation start, then creation
- complete/fail/cancel enforce lease ownership and the state machine
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from manyfutures.models.schedule_job import InvalidStateTransition, JobStatus
from manyfutures.services.exceptions import (
    JobNotFoundError,
    LeaseExpiredError,
    StaleLeaseError,
)
from tests.helpers import LEASE, NOW, claim, enqueue
from tests.helpers import load_job as load


@pytest.mark.asyncio
class TestClaimNext:
    """Test ScheduleJobRepository.claim_next."""

    async def test_claim_leases_due_job(self, uow_factory, subscription, make_job):
        job = await enqueue(uow_factory, make_job(subscription.id))

        claimed = await claim(uow_factory, "worker-a")

        assert claimed is not None
        assert claimed.id == job.id
        assert claimed.status == JobStatus.PROCESSING
        assert claimed.lease_owner == "worker-a"
        assert claimed.lease_expires_at == NOW + LEASE
        assert claimed.claimed_at == NOW
        assert claimed.attempt_count == 0
        assert claimed.version == job.version + 1

    async def test_returns_none_when_queue_empty(self, uow_factory, subscription):
        assert await claim(uow_factory, "worker-a") is None

    async def test_future_jobs_are_not_claimable(self, uow_factory, subscription, make_job):
        await enqueue(
            uow_factory, make_job(subscription.id, generation_start_time=NOW + timedelta(hours=1))
        )

        assert await claim(uow_factory, "worker-a") is None
        assert await claim(uow_factory, "worker-a", now=NOW + timedelta(hours=1)) is not None

    async def test_concurrent_claims_single_job_exactly_one_wins(
        self, uow_factory, subscription, make_job
    ):
        """Two workers racing for one job: one gets it, the other gets nothing."""
        job = await enqueue(uow_factory, make_job(subscription.id))

        results = await asyncio.gather(
            claim(uow_factory, "worker-a"),
            claim(uow_factory, "worker-b"),
        )

        winners = [result for result in results if result is not None]
        assert len(winners) == 1
        assert winners[0].id == job.id

        stored = await load(uow_factory, job.id)
        assert stored.lease_owner == winners[0].lease_owner
        assert stored.version == 1

    async def test_concurrent_claims_many_workers_distinct_jobs(
        self, uow_factory, subscription, make_job
    ):
        """More workers than jobs: every job is claimed exactly once."""
        job_ids = set()
        for day in range(5):
            target = NOW + timedelta(days=day, hours=4)
            job = await enqueue(uow_factory, make_job(subscription.id, target_delivery_time=target))
            job_ids.add(job.id)

        results = await asyncio.gather(
            *[claim(uow_factory, f"worker-{index}") for index in range(8)]
        )

        claimed = [result for result in results if result is not None]
        assert len(claimed) == 5
        assert {job.id for job in claimed} == job_ids
        assert len({job.lease_owner for job in claimed}) == 5

    async def test_ordering_priority_then_start_then_created(
        self, uow_factory, subscription, make_job
    ):
        low = await enqueue(
            uow_factory,
            make_job(
                subscription.id,
                priority=5,
                generation_start_time=NOW - timedelta(hours=3),
                target_delivery_time=NOW + timedelta(days=1),
            ),
        )
        high_late = await enqueue(
            uow_factory,
            make_job(
                subscription.id,
                priority=9,
                generation_start_time=NOW - timedelta(minutes=1),
                target_delivery_time=NOW + timedelta(days=2),
            ),
        )
        high_early = await enqueue(
            uow_factory,
            make_job(
                subscription.id,
                priority=9,
                generation_start_time=NOW - timedelta(hours=1),
                target_delivery_time=NOW + timedelta(days=3),
                created_at=NOW - timedelta(minutes=1),
            ),
        )
        high_early_older = await enqueue(
            uow_factory,
            make_job(
                subscription.id,
                priority=9,
                generation_start_time=NOW - timedelta(hours=1),
                target_delivery_time=NOW + timedelta(days=4),
                created_at=NOW - timedelta(hours=2),
            ),
        )

        order = [(await claim(uow_factory, "worker-a")).id for _ in range(4)]

        assert order == [high_early_older.id, high_early.id, high_late.id, low.id]


@pytest.mark.asyncio
class TestLeaseExpiry:
    """Abandoned jobs come back after their lease lapses, never before."""

    async def test_not_claimable_before_lease_expiry(self, uow_factory, subscription, make_job):
        await enqueue(uow_factory, make_job(subscription.id))
        await claim(uow_factory, "worker-a")

        just_before = NOW + LEASE - timedelta(seconds=1)
        assert await claim(uow_factory, "worker-b", now=just_before) is None

    async def test_claimable_at_lease_expiry(self, uow_factory, subscription, make_job):
        job = await enqueue(uow_factory, make_job(subscription.id))
        await claim(uow_factory, "worker-a")

        reclaimed = await claim(uow_factory, "worker-b", now=NOW + LEASE)

        assert reclaimed is not None
        assert reclaimed.id == job.id
        assert reclaimed.lease_owner == "worker-b"
        assert reclaimed.lease_expires_at == NOW + LEASE + LEASE
        # The abandoned attempt counts
        assert reclaimed.attempt_count == 1
        assert reclaimed.last_error == "lease_expired"

    async def test_repeatedly_abandoned_job_fails_at_max_attempts(
        self, uow_factory, subscription, make_job
    ):
        job = await enqueue(uow_factory, make_job(subscription.id, max_attempts=3))

        claims = 0
        for lapse in range(10):
            if await claim(uow_factory, f"worker-{lapse}", now=NOW + LEASE * lapse):
                claims += 1

        assert claims == 3
        stored = await load(uow_factory, job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.attempt_count == 3
        assert stored.last_error == "lease_expired"
        assert stored.lease_owner is None
        assert stored.failed_at == NOW + LEASE * 3

    async def test_expired_last_attempt_does_not_block_other_jobs(
        self, uow_factory, subscription, make_job
    ):
        stuck = await enqueue(
            uow_factory, make_job(subscription.id, max_attempts=1, priority=10)
        )
        await claim(uow_factory, "worker-a")
        other = await enqueue(
            uow_factory,
            make_job(subscription.id, target_delivery_time=NOW + timedelta(days=1)),
        )

        claimed = await claim(uow_factory, "worker-b", now=NOW + LEASE)

        assert claimed is not None
        assert claimed.id == other.id
        assert (await load(uow_factory, stuck.id)).status == JobStatus.FAILED

    async def test_original_worker_loses_completion_after_reclaim(
        self, uow_factory, subscription, make_job
    ):
        job = await enqueue(uow_factory, make_job(subscription.id))
        await claim(uow_factory, "worker-a")
        later = NOW + LEASE + timedelta(seconds=30)
        await claim(uow_factory, "worker-b", now=later)

        with pytest.raises(StaleLeaseError):
            async with await uow_factory() as uow:
                await uow.jobs.complete(job.id, "worker-a", uuid4(), later)

        stored = await load(uow_factory, job.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.lease_owner == "worker-b"

    async def test_complete_after_own_lease_lapsed_raises_lease_expired(
        self, uow_factory, subscription, make_job
    ):
        job = await enqueue(uow_factory, make_job(subscription.id))
        await claim(uow_factory, "worker-a")

        with pytest.raises(LeaseExpiredError):
            async with await uow_factory() as uow:
                await uow.jobs.complete(job.id, "worker-a", uuid4(), NOW + LEASE)

    async def test_extend_lease_keeps_job_owned(self, uow_factory, subscription, make_job):
        job = await enqueue(uow_factory, make_job(subscription.id))
        await claim(uow_factory, "worker-a")

        heartbeat_at = NOW + timedelta(minutes=5)
        async with await uow_factory() as uow:
            extended = await uow.jobs.extend_lease(job.id, "worker-a", LEASE, heartbeat_at)

        assert extended.lease_expires_at == heartbeat_at + LEASE
        assert await claim(uow_factory, "worker-b", now=NOW + LEASE) is None

    async def test_extend_lease_by_other_worker_rejected(
        self, uow_factory, subscription, make_job
    ):
        job = await enqueue(uow_factory, make_job(subscription.id))
        await claim(uow_factory, "worker-a")

        with pytest.raises(StaleLeaseError):
            async with await uow_factory() as uow:
                await uow.jobs.extend_lease(job.id, "worker-b", LEASE, NOW)


@pytest.mark.asyncio
class TestCompleteAndFail:
    """Test complete/fail transitions and retry bookkeeping."""

    async def test_complete_records_artifact_and_clears_lease(
        self, uow_factory, subscription, make_job
    ):
        job = await enqueue(uow_factory, make_job(subscription.id))
        await claim(uow_factory, "worker-a")
        artifact_id = uuid4()

        async with await uow_factory() as uow:
            completed = await uow.jobs.complete(job.id, "worker-a", artifact_id, NOW)

        assert completed.status == JobStatus.COMPLETED
        assert completed.result_artifact_id == artifact_id
        assert completed.completed_at == NOW
        assert completed.lease_owner is None
        assert completed.lease_expires_at is None

    async def test_complete_by_non_owner_rejected(self, uow_factory, subscription, make_job):
        job = await enqueue(uow_factory, make_job(subscription.id))
        await claim(uow_factory, "worker-a")

        with pytest.raises(StaleLeaseError):
            async with await uow_factory() as uow:
                await uow.jobs.complete(job.id, "worker-b", uuid4(), NOW)

    async def test_complete_unknown_job(self, uow_factory):
        with pytest.raises(JobNotFoundError):
            async with await uow_factory() as uow:
                await uow.jobs.complete(uuid4(), "worker-a", uuid4(), NOW)

    async def test_retryable_failure_schedules_backoff(self, uow_factory, subscription, make_job):
        job = await enqueue(uow_factory, make_job(subscription.id, priority=5))
        await claim(uow_factory, "worker-a")

        async with await uow_factory() as uow:
            failed = await uow.jobs.fail(
                job.id,
                "worker-a",
                "transient_error: 503",
                retryable=True,
                now=NOW,
                retry_delay=timedelta(minutes=1),
            )

        assert failed.status == JobStatus.PENDING
        assert failed.attempt_count == 1
        assert failed.last_error == "transient_error: 503"
        assert failed.lease_owner is None
        assert failed.lease_expires_at is None
        assert failed.generation_start_time == NOW + timedelta(minutes=1)
        assert failed.priority == 8

        # Hidden during backoff, claimable afterwards
        assert await claim(uow_factory, "worker-b", now=NOW + timedelta(seconds=59)) is None
        retried = await claim(uow_factory, "worker-b", now=NOW + timedelta(minutes=1))
        assert retried is not None
        assert retried.id == job.id

    async def test_retry_keeps_higher_tier_priority(self, uow_factory, subscription, make_job):
        job = await enqueue(uow_factory, make_job(subscription.id, priority=10))
        await claim(uow_factory, "worker-a")

        async with await uow_factory() as uow:
            failed = await uow.jobs.fail(job.id, "worker-a", "boom", retryable=True, now=NOW)

        assert failed.priority == 10

    async def test_retry_past_target_pushes_delivery(self, uow_factory, subscription, make_job):
        target = NOW + timedelta(minutes=30)
        job = await enqueue(uow_factory, make_job(subscription.id, target_delivery_time=target))
        await claim(uow_factory, "worker-a")

        async with await uow_factory() as uow:
            failed = await uow.jobs.fail(
                job.id, "worker-a", "boom", retryable=True, now=NOW, retry_delay=timedelta(hours=1)
            )

        assert failed.generation_start_time == NOW + timedelta(hours=1)
        assert failed.target_delivery_time >= failed.generation_start_time

    async def test_max_attempts_exhausted_fails_terminally(
        self, uow_factory, subscription, make_job
    ):
        job = await enqueue(uow_factory, make_job(subscription.id, max_attempts=2))

        now = NOW
        for expected_status in (JobStatus.PENDING, JobStatus.FAILED):
            claimed = await claim(uow_factory, "worker-a", now=now)
            assert claimed is not None
            async with await uow_factory() as uow:
                failed = await uow.jobs.fail(job.id, "worker-a", "boom", retryable=True, now=now)
            assert failed.status == expected_status
            now = now + timedelta(minutes=1)

        assert failed.attempt_count == 2
        assert failed.attempt_count <= failed.max_attempts
        assert failed.failed_at is not None
        assert await claim(uow_factory, "worker-a", now=now + timedelta(days=1)) is None

    async def test_non_retryable_failure_is_terminal(self, uow_factory, subscription, make_job):
        job = await enqueue(uow_factory, make_job(subscription.id))
        await claim(uow_factory, "worker-a")

        async with await uow_factory() as uow:
            failed = await uow.jobs.fail(
                job.id, "worker-a", "budget_exceeded", retryable=False, now=NOW
            )

        assert failed.status == JobStatus.FAILED
        assert failed.attempt_count == 1
        assert failed.last_error == "budget_exceeded"

    async def test_long_errors_are_truncated(self, uow_factory, subscription, make_job):
        job = await enqueue(uow_factory, make_job(subscription.id))
        await claim(uow_factory, "worker-a")

        async with await uow_factory() as uow:
            failed = await uow.jobs.fail(job.id, "worker-a", "x" * 5000, retryable=False, now=NOW)

        assert len(failed.last_error) == 1000


@pytest.mark.asyncio
class TestCancel:
    """Test cancellation semantics."""

    async def test_cancelled_pending_job_is_never_claimed(
        self, uow_factory, subscription, make_job
    ):
        job = await enqueue(uow_factory, make_job(subscription.id))

        async with await uow_factory() as uow:
            cancelled = await uow.jobs.cancel(job.id, NOW)

        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.cancelled_at == NOW
        assert await claim(uow_factory, "worker-a", now=NOW + timedelta(days=30)) is None

    async def test_cancel_is_idempotent(self, uow_factory, subscription, make_job):
        job = await enqueue(uow_factory, make_job(subscription.id))

        async with await uow_factory() as uow:
            first = await uow.jobs.cancel(job.id, NOW)
        async with await uow_factory() as uow:
            second = await uow.jobs.cancel(job.id, NOW + timedelta(minutes=5))

        assert second.status == JobStatus.CANCELLED
        assert second.version == first.version
        assert second.cancelled_at == NOW

    async def test_cancel_completed_job_rejected(self, uow_factory, subscription, make_job):
        job = await enqueue(uow_factory, make_job(subscription.id))
        await claim(uow_factory, "worker-a")
        async with await uow_factory() as uow:
            await uow.jobs.complete(job.id, "worker-a", uuid4(), NOW)

        with pytest.raises(InvalidStateTransition):
            async with await uow_factory() as uow:
                await uow.jobs.cancel(job.id, NOW)

    async def test_cancel_processing_job_rejects_worker_completion(
        self, uow_factory, subscription, make_job
    ):
        job = await enqueue(uow_factory, make_job(subscription.id))
        await claim(uow_factory, "worker-a")

        async with await uow_factory() as uow:
            await uow.jobs.cancel(job.id, NOW, reason="operator request")

        with pytest.raises(StaleLeaseError):
            async with await uow_factory() as uow:
                await uow.jobs.complete(job.id, "worker-a", uuid4(), NOW)

        stored = await load(uow_factory, job.id)
        assert stored.status == JobStatus.CANCELLED
        assert stored.last_error == "operator request"

    async def test_cancel_for_subscription_only_touches_active_jobs(
        self, uow_factory, subscription, make_job
    ):
        pending = await enqueue(uow_factory, make_job(subscription.id))
        done = await enqueue(
            uow_factory,
            make_job(subscription.id, target_delivery_time=NOW + timedelta(days=1, hours=4)),
        )
        # Claim the earlier-created job first and complete it
        claimed = await claim(uow_factory, "worker-a")
        async with await uow_factory() as uow:
            await uow.jobs.complete(claimed.id, "worker-a", uuid4(), NOW)
        remaining_id = done.id if claimed.id == pending.id else pending.id

        async with await uow_factory() as uow:
            count = await uow.jobs.cancel_for_subscription(subscription.id, NOW)

        assert count == 1
        assert (await load(uow_factory, remaining_id)).status == JobStatus.CANCELLED
        assert (await load(uow_factory, claimed.id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
class TestEnqueueAndQueries:
    """Test enqueue validation and read queries."""

    async def test_enqueue_rejects_target_before_start(self, uow_factory, subscription, make_job):
        job = make_job(
            subscription.id,
            generation_start_time=NOW,
            target_delivery_time=NOW - timedelta(minutes=1),
        )

        with pytest.raises(ValueError, match="target_delivery_time"):
            await enqueue(uow_factory, job)

    async def test_enqueue_rejects_zero_max_attempts(self, uow_factory, subscription, make_job):
        job = make_job(subscription.id)
        job.max_attempts = 0

        with pytest.raises(ValueError, match="max_attempts"):
            await enqueue(uow_factory, job)

    async def test_round_trip_preserves_fields(self, uow_factory, subscription, make_job):
        job = await enqueue(uow_factory, make_job(subscription.id, priority=9, max_attempts=4))

        stored = await load(uow_factory, job.id)

        assert stored.subscription_id == subscription.id
        assert stored.status == JobStatus.PENDING
        assert stored.priority == 9
        assert stored.max_attempts == 4
        assert stored.generation_start_time == job.generation_start_time
        assert stored.target_delivery_time == job.target_delivery_time
        assert stored.generation_start_time.tzinfo is not None
        assert stored.idempotency_key == job.idempotency_key

    async def test_count_and_list_by_status(self, uow_factory, subscription, make_job):
        first = await enqueue(uow_factory, make_job(subscription.id))
        await enqueue(
            uow_factory,
            make_job(subscription.id, target_delivery_time=NOW + timedelta(days=1, hours=4)),
        )
        async with await uow_factory() as uow:
            await uow.jobs.cancel(first.id, NOW)

        async with await uow_factory() as uow:
            counts = await uow.jobs.count_by_status()
            cancelled = await uow.jobs.list_by_status(JobStatus.CANCELLED)
            by_subscription = await uow.jobs.list_by_subscription(subscription.id)

        assert counts[JobStatus.PENDING] == 1
        assert counts[JobStatus.CANCELLED] == 1
        assert counts[JobStatus.FAILED] == 0
        assert [job.id for job in cancelled] == [first.id]
        assert len(by_subscription) == 2


@pytest.mark.asyncio
class TestClaimableMatchesClaim:
    """ScheduleJob.is_claimable agrees with what claim_next actually does."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {},
            {"generation_start_time": NOW + timedelta(minutes=1)},
            {
                "status": JobStatus.PROCESSING,
                "lease_owner": "worker-a",
                "lease_expires_at": NOW + timedelta(minutes=1),
            },
            {"status": JobStatus.PROCESSING, "lease_owner": "worker-a", "lease_expires_at": NOW},
            {
                "status": JobStatus.PROCESSING,
                "lease_owner": "worker-a",
                "lease_expires_at": NOW,
                "attempt_count": 2,
            },
            {"status": JobStatus.COMPLETED},
            {"status": JobStatus.FAILED},
            {"status": JobStatus.CANCELLED},
        ],
        ids=[
            "pending-due",
            "pending-future",
            "live-lease",
            "lapsed-lease",
            "lapsed-lease-last-attempt",
            "completed",
            "failed",
            "cancelled",
        ],
    )
    async def test_claim_agrees_with_is_claimable(
        self, uow_factory, subscription, make_job, overrides
    ):
        job = make_job(subscription.id, max_attempts=3, **overrides)
        async with await uow_factory() as uow:
            uow.session.add(job)
        expected = job.is_claimable(NOW)

        claimed = await claim(uow_factory, "worker-b")

        assert (claimed is not None) == expected
