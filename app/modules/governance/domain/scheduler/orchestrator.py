from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from datetime import date, datetime, timedelta, timezone
import time
import structlog
import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from app.models.cloud import AccountStatus, CloudAccount
from app.modules.governance.domain.jobs.processor import JobProcessor, enqueue_ingestion_job
from app.schemas.ingestion import IngestionJobPayload
from app.shared.core.config import get_settings
from app.shared.core.ops_metrics import SCHEDULER_JOB_DURATION, SCHEDULER_JOB_RUNS

logger = structlog.get_logger()


class SchedulerOrchestrator:
    """Manages APScheduler and periodic enqueueing of ingestion jobs."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.scheduler = AsyncIOScheduler()
        self.session_maker = session_maker
        self._last_run_success: bool | None = None
        self._last_run_time: str | None = None

    async def daily_ingestion_job(self, today: date | None = None) -> int:
        """
        Enqueues a lookback-window ingestion for every syncable account.
        Accounts flagged for reconfiguration are left alone until someone fixes them.
        """
        job_name = "daily_ingestion"
        start_time = time.perf_counter()
        settings = get_settings()
        end_date = today or datetime.now(timezone.utc).date()
        start_date = end_date - timedelta(days=settings.INGESTION_LOOKBACK_DAYS)

        enqueued = deduplicated = 0
        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    sa.select(CloudAccount).where(
                        CloudAccount.status != AccountStatus.DISABLED.value,
                        CloudAccount.requires_reconfiguration.is_(False),
                        CloudAccount.credentials_encrypted.is_not(None),
                    )
                )
                accounts = result.scalars().all()

                for account in accounts:
                    payload = IngestionJobPayload(
                        cloud_account_id=account.id,
                        tenant_id=account.tenant_id,
                        provider=account.provider,
                        start_date=start_date,
                        end_date=end_date,
                    )
                    _, was_duplicate = await enqueue_ingestion_job(db, payload)
                    if was_duplicate:
                        deduplicated += 1
                    else:
                        enqueued += 1
        except SQLAlchemyError as e:
            self._last_run_success = False
            SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="failure").inc()
            logger.error("scheduler_ingestion_enqueue_failed", error=str(e))
            raise

        self._last_run_success = True
        self._last_run_time = datetime.now(timezone.utc).isoformat()
        SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="success").inc()
        SCHEDULER_JOB_DURATION.labels(job_name=job_name).observe(time.perf_counter() - start_time)
        logger.info(
            "scheduler_ingestion_enqueued",
            enqueued=enqueued,
            deduplicated=deduplicated,
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )
        return enqueued

    async def stale_job_sweep(self) -> dict:
        """Re-queues jobs whose worker died mid-run."""
        async with self.session_maker() as db:
            summary = await JobProcessor(db).recover_stale_jobs()
        SCHEDULER_JOB_RUNS.labels(job_name="stale_job_sweep", status="success").inc()
        return summary

    def start(self):
        """Defines cron schedules and starts APScheduler."""
        settings = get_settings()
        # Ingestion: daily at the configured UTC time
        self.scheduler.add_job(
            self.daily_ingestion_job,
            trigger=CronTrigger(hour=settings.SCHEDULER_HOUR, minute=settings.SCHEDULER_MINUTE, timezone="UTC"),
            id="daily_cost_ingestion",
            replace_existing=True
        )
        # Stale job sweep
        self.scheduler.add_job(
            self.stale_job_sweep,
            trigger=CronTrigger(minute=f"*/{settings.STALE_JOB_SWEEP_MINUTES}", timezone="UTC"),
            id="stale_job_sweep",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info("scheduler_started", jobs=[job.id for job in self.scheduler.get_jobs()])

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def get_status(self) -> dict:
        return {
            "running": self.scheduler.running,
            "last_run_success": self._last_run_success,
            "last_run_time": self._last_run_time,
            "jobs": [job.id for job in self.scheduler.get_jobs()]
        }
