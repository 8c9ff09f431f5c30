"""
Tests for WorkerPool

Runs real workers against a file-backed SQLite queue with a fake provider
fetch, so claim, exclusivity, drain and cancellation go through the same code
paths as production.
"""

import asyncio
from datetime import date, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from app.models.background_job import BackgroundJob, JobStatus
from app.models.sync_job import SyncJob
from app.modules.governance.domain.jobs.processor import enqueue_ingestion_job
from app.modules.governance.domain.jobs.worker import WorkerPool
from app.schemas.focus import RawCostData
from app.schemas.ingestion import IngestionJobPayload
from app.shared.adapters.aws import AWSAdapter
from app.shared.adapters.rate_limiter import SlidingWindowRateLimiter
from app.shared.adapters.registry import get_cloud_adapter

GET_ADAPTER = "app.modules.ingestion.domain.service.get_cloud_adapter"


class ProbeFetch:
    """Stands in for the provider call and records how many run at once."""

    def __init__(self, delay=0.1, hang=False):
        self.delay = delay
        self.hang = hang
        self.active = 0
        self.peak = 0
        self.calls = 0
        self.started = asyncio.Event()

    async def __call__(self, params, credentials):
        self.calls += 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.started.set()
        try:
            if self.hang:
                await asyncio.Event().wait()
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        return [RawCostData(provider="AWS", data={
            "bill/BillingPeriodStartDate": params.start_date.isoformat(),
            "lineItem/LineItemType": "Usage",
            "lineItem/UnblendedCost": "1.00",
        })]


def probe_adapter(probe):
    with patch("aioboto3.Session"):
        adapter = AWSAdapter()
    adapter.get_costs = probe
    return adapter


def generous_limiter():
    return SlidingWindowRateLimiter(1000, 60)


async def enqueue_for(session_maker, make_account, accounts=1, windows=1, provider="AWS"):
    async with session_maker() as db:
        for _ in range(accounts):
            account = await make_account(db, provider=provider)
            for n in range(windows):
                start = date(2025, 7, 1) + timedelta(days=n)
                await enqueue_ingestion_job(db, IngestionJobPayload(
                    cloud_account_id=account.id,
                    tenant_id=account.tenant_id,
                    provider=provider,
                    start_date=start,
                    end_date=start + timedelta(days=1),
                ))


async def all_jobs(session_maker):
    async with session_maker() as db:
        return (await db.execute(select(BackgroundJob))).scalars().all()


async def all_sync_jobs(session_maker):
    async with session_maker() as db:
        return (await db.execute(select(SyncJob))).scalars().all()


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_bounded_parallelism(self, session_maker, make_account):
        """Ten accounts through three workers: never more than three fetches at once."""
        await enqueue_for(session_maker, make_account, accounts=10)
        probe = ProbeFetch(delay=0.1)
        pool = WorkerPool(session_maker, concurrency=3, rate_limiter=generous_limiter(), poll_interval=0.01)

        with patch(GET_ADAPTER, return_value=probe_adapter(probe)):
            await pool.run_until_idle()

        assert 1 < probe.peak <= 3
        jobs = await all_jobs(session_maker)
        assert len(jobs) == 10
        assert {j.status for j in jobs} == {JobStatus.COMPLETED.value}

    @pytest.mark.asyncio
    async def test_one_job_per_account_at_a_time(self, session_maker, make_account):
        """Three windows of one account run one after another."""
        await enqueue_for(session_maker, make_account, accounts=1, windows=3)
        probe = ProbeFetch(delay=0.05)
        pool = WorkerPool(session_maker, concurrency=3, rate_limiter=generous_limiter(), poll_interval=0.01)

        with patch(GET_ADAPTER, return_value=probe_adapter(probe)):
            # The account's key is busy for the other workers, they go idle and
            # the first worker drains the account's windows in turn
            await pool.run_until_idle()

        assert probe.peak == 1
        assert probe.calls == 3
        assert {j.status for j in await all_jobs(session_maker)} == {JobStatus.COMPLETED.value}

    @pytest.mark.asyncio
    async def test_job_starts_are_rate_limited(self, session_maker, make_account):
        await enqueue_for(session_maker, make_account, accounts=4)
        probe = ProbeFetch(delay=0)
        pool = WorkerPool(
            session_maker,
            concurrency=4,
            rate_limiter=SlidingWindowRateLimiter(2, 0.5),
            poll_interval=0.01,
        )
        loop = asyncio.get_running_loop()

        started = loop.time()
        with patch(GET_ADAPTER, return_value=probe_adapter(probe)):
            await pool.run_until_idle()

        # The third start has to wait for the first to leave the window
        assert loop.time() - started >= 0.5
        assert probe.calls == 4


class TestShutdown:
    @pytest.mark.asyncio
    async def test_stop_drains_in_flight_job(self, session_maker, make_account):
        await enqueue_for(session_maker, make_account)
        probe = ProbeFetch(delay=0.2)
        pool = WorkerPool(session_maker, concurrency=1, rate_limiter=generous_limiter(), poll_interval=0.01)

        with patch(GET_ADAPTER, return_value=probe_adapter(probe)):
            await pool.start()
            await asyncio.wait_for(probe.started.wait(), timeout=5)
            await pool.stop(timeout=5)

        assert pool.running is False
        (job,) = await all_jobs(session_maker)
        assert job.status == JobStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_straggler_is_cancelled_and_requeued(self, session_maker, make_account):
        await enqueue_for(session_maker, make_account)
        probe = ProbeFetch(hang=True)
        pool = WorkerPool(session_maker, concurrency=1, rate_limiter=generous_limiter(), poll_interval=0.01)

        with patch(GET_ADAPTER, return_value=probe_adapter(probe)):
            await pool.start()
            await asyncio.wait_for(probe.started.wait(), timeout=5)
            await pool.stop(timeout=0.1)

        (job,) = await all_jobs(session_maker)
        assert job.status == JobStatus.PENDING.value
        assert job.error_message == "Job was cancelled"

        (sync_job,) = await all_sync_jobs(session_maker)
        assert sync_job.status == "FAILED"
        assert sync_job.error == "Ingestion cancelled before completion"

    @pytest.mark.asyncio
    async def test_job_waiting_for_rate_limit_slot_is_released(self, session_maker, make_account):
        await enqueue_for(session_maker, make_account)
        waiting = asyncio.Event()

        class BlockedLimiter(SlidingWindowRateLimiter):
            async def acquire(self):
                waiting.set()
                await asyncio.Event().wait()

        pool = WorkerPool(session_maker, concurrency=1, rate_limiter=BlockedLimiter(), poll_interval=0.01)
        await pool.start()
        await asyncio.wait_for(waiting.wait(), timeout=5)
        await pool.stop(timeout=0.05)

        (job,) = await all_jobs(session_maker)
        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 0
        assert pool.active_keys == set()


class TestListeners:
    @pytest.mark.asyncio
    async def test_completed_and_failed_events(self, session_maker, make_account):
        await enqueue_for(session_maker, make_account)
        await enqueue_for(session_maker, make_account, provider="ORACLE")
        completed, failed = [], []

        async def on_failed(outcome):
            failed.append(outcome)

        def broken_listener(outcome):
            raise RuntimeError("listener bug")

        pool = WorkerPool(session_maker, concurrency=2, rate_limiter=generous_limiter(), poll_interval=0.01)
        pool.add_listener("completed", completed.append)
        pool.add_listener("completed", broken_listener)
        pool.add_listener("failed", on_failed)

        aws = probe_adapter(ProbeFetch(delay=0))

        def adapter_for(provider):
            return aws if provider == "AWS" else get_cloud_adapter(provider)

        with patch(GET_ADAPTER, side_effect=adapter_for):
            await pool.run_until_idle()

        assert len(completed) == 1
        assert len(failed) == 1
        assert failed[0].error_kind.value == "unsupported_provider"
        assert failed[0].retry_scheduled is False

    def test_unknown_event(self, session_maker):
        pool = WorkerPool(session_maker, concurrency=1)
        with pytest.raises(ValueError):
            pool.add_listener("started", lambda outcome: None)
