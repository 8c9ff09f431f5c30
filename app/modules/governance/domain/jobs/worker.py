"""
Worker Pool

Runs N concurrent workers against the durable job queue:
- bounded concurrency (one job per worker)
- job-start rate limit shared by all workers
- per-account exclusivity through the job concurrency key
- graceful drain on stop
"""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional, Set

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.modules.governance.domain.jobs.processor import JobOutcome, JobProcessor
from app.modules.governance.domain.jobs.retry import RetryPolicy
from app.shared.adapters.rate_limiter import SlidingWindowRateLimiter
from app.shared.core.cache import TTLCache
from app.shared.core.config import get_settings
from app.shared.core.ops_metrics import RATE_LIMIT_WAIT_SECONDS, WORKERS_BUSY

logger = structlog.get_logger()

WORKER_EVENTS = ("completed", "failed")

Listener = Callable[[JobOutcome], Any]


class WorkerPool:
    """
    Usage:
        pool = WorkerPool(session_maker, cache=TTLCache())
        pool.add_listener("failed", on_failed)
        await pool.start()
        ...
        await pool.stop()
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        concurrency: Optional[int] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        poll_interval: Optional[float] = None,
        cache: Optional[TTLCache] = None,
        engine: Optional[AsyncEngine] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        settings = get_settings()
        self.session_maker = session_maker
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            settings.JOB_RATE_LIMIT_MAX, settings.JOB_RATE_LIMIT_WINDOW_SECONDS
        )
        self.poll_interval = settings.WORKER_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.cache = cache
        self.engine = engine
        self.retry_policy = retry_policy or RetryPolicy()

        self._listeners: Dict[str, List[Listener]] = {event: [] for event in WORKER_EVENTS}
        self._claim_lock = asyncio.Lock()
        self._active_keys: Set[str] = set()
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def active_keys(self) -> Set[str]:
        return set(self._active_keys)

    def add_listener(self, event: str, callback: Listener) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown worker event: {event}. Use one of {WORKER_EVENTS}")
        self._listeners[event].append(callback)

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker(index), name=f"ingestion-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("worker_pool_started", concurrency=self.concurrency)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop claiming, let in-flight jobs finish, cancel whatever is still
        running after the timeout, then release the database engine.
        """
        timeout = get_settings().WORKER_SHUTDOWN_TIMEOUT_SECONDS if timeout is None else timeout
        self._stopping.set()
        logger.info("worker_pool_draining", in_flight=len(self._active_keys), timeout_seconds=timeout)

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("worker_pool_cancelling_stragglers", count=len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
            for task in self._tasks:
                if not task.cancelled() and task.exception() is not None:
                    logger.error("worker_crashed", worker=task.get_name(), error=str(task.exception()))
            self._tasks = []

        if self.engine is not None:
            await self.engine.dispose()
        logger.info("worker_pool_stopped")

    async def run_until_idle(self) -> None:
        """Process due jobs with full concurrency and return once none can be claimed."""
        self._stopping.clear()
        await asyncio.gather(*(self._worker(index, exit_when_idle=True) for index in range(self.concurrency)))

    async def _worker(self, index: int, exit_when_idle: bool = False) -> None:
        log = logger.bind(worker=index)
        while not self._stopping.is_set():
            try:
                processed = await self._run_once()
            except SQLAlchemyError as e:
                log.error("worker_queue_error", error=str(e)[:200])
                processed = False

            if not processed:
                if exit_when_idle:
                    return
                await self._idle()

    async def _run_once(self) -> bool:
        """Claim and execute at most one job. Returns False when nothing was claimable."""
        async with self.session_maker() as db:
            processor = JobProcessor(db, retry_policy=self.retry_policy, cache=self.cache)

            async with self._claim_lock:
                if self._stopping.is_set():
                    return False
                job = await processor.claim_next_job(exclude_keys=self._active_keys)
                if job is None:
                    return False
                key = job.concurrency_key
                if key:
                    self._active_keys.add(key)

            try:
                try:
                    waited = await self.rate_limiter.acquire()
                except asyncio.CancelledError:
                    await processor.release_job(job)
                    raise
                RATE_LIMIT_WAIT_SECONDS.observe(waited)

                WORKERS_BUSY.inc()
                try:
                    outcome = await processor.execute_job(job)
                finally:
                    WORKERS_BUSY.dec()
            finally:
                if key:
                    self._active_keys.discard(key)

        await self._emit("completed" if outcome.succeeded else "failed", outcome)
        return True

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            return

    async def _emit(self, event: str, outcome: JobOutcome) -> None:
        for callback in self._listeners[event]:
            try:
                result = callback(outcome)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:  # noqa: BLE001 - a listener must not take a worker down
                logger.error("worker_listener_failed", event=event, job_id=str(outcome.job_id), error=str(e))
