"""
Ingestion worker process.

Runs the worker pool and the scheduler in one event loop until SIGINT/SIGTERM,
then drains in-flight jobs before exiting.

    python -m app.worker
"""

import asyncio
import signal

import structlog

from app.modules.governance.domain.jobs.processor import JobOutcome
from app.modules.governance.domain.jobs.worker import WorkerPool
from app.modules.governance.domain.scheduler.orchestrator import SchedulerOrchestrator
from app.shared.core.cache import TTLCache
from app.shared.core.config import get_settings
from app.shared.core.logging import setup_logging
from app.shared.db.session import create_engine, create_session_maker

logger = structlog.get_logger()


def log_failed_job(outcome: JobOutcome) -> None:
    logger.warning(
        "worker_job_failed",
        job_id=str(outcome.job_id),
        error_kind=outcome.error_kind.value if outcome.error_kind else None,
        retry_scheduled=outcome.retry_scheduled,
    )


async def run_worker() -> None:
    settings = get_settings()
    engine = create_engine(settings)
    session_maker = create_session_maker(engine)

    pool = WorkerPool(
        session_maker,
        cache=TTLCache(settings.FETCH_CACHE_TTL_SECONDS, settings.FETCH_CACHE_MAX_ENTRIES),
        engine=engine,
    )
    pool.add_listener("failed", log_failed_job)
    scheduler = SchedulerOrchestrator(session_maker)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    await pool.start()
    scheduler.start()
    logger.info("worker_process_ready", concurrency=pool.concurrency)

    await stop_requested.wait()

    logger.info("worker_process_stopping")
    scheduler.stop()
    await pool.stop(settings.WORKER_SHUTDOWN_TIMEOUT_SECONDS)


def main() -> None:
    setup_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
