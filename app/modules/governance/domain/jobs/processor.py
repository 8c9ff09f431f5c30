"""
Job Processor

Processes background jobs from the database queue.

Key Features:
- Survives worker restarts (jobs in database)
- Retries with exponential backoff, branching on the structured error kind
- At most one RUNNING job per concurrency key (one ingestion per account)
- Dead letter queue for fatal errors and exhausted attempts

Usage:
    processor = JobProcessor(db)
    job = await processor.claim_next_job()
    outcome = await processor.execute_job(job)
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Collection, Dict, Optional
from uuid import UUID

import sqlalchemy as sa
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from app.models.background_job import BackgroundJob, JobStatus, JobType
from app.models.sync_job import SyncJob, SyncJobStatus
from app.modules.governance.domain.jobs.handlers import get_handler_factory
from app.modules.governance.domain.jobs.retry import RetryPolicy
from app.schemas.ingestion import IngestionJobPayload
from app.shared.core.cache import TTLCache
from app.shared.core.config import get_settings
from app.shared.core.exceptions import ConfigurationError, ErrorKind, JobTimeoutError, classify_error
from app.shared.core.ops_metrics import (
    BACKGROUND_JOB_DURATION_SECONDS,
    BACKGROUND_JOBS_ENQUEUED,
    BACKGROUND_JOBS_FINISHED,
)

logger = structlog.get_logger()

# Job processing configuration
MAX_JOBS_PER_BATCH = 10
CANCELLED_RETRY_DELAY_SECONDS = 60

ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


@dataclass
class JobOutcome:
    job_id: UUID
    job_type: str
    succeeded: bool
    error_kind: Optional[ErrorKind] = None
    retry_scheduled: bool = False
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class JobProcessor:
    """
    Claims and executes background jobs from the database queue.

    Called by:
    1. WorkerPool tasks (one processor per claimed job)
    2. API/CLI for on-demand batch processing
    3. The scheduler's stale-job sweep
    """

    def __init__(
        self,
        db: AsyncSession,
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.db = db
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache = cache

    async def claim_next_job(self, exclude_keys: Collection[str] = ()) -> Optional[BackgroundJob]:
        """
        Claim the highest-priority due job whose concurrency key has no RUNNING job.
        Uses SELECT FOR UPDATE SKIP LOCKED for high-concurrency safety on PostgreSQL.
        """
        now = datetime.now(timezone.utc)
        running = aliased(BackgroundJob)
        key_busy = (
            select(running.id)
            .where(
                running.concurrency_key == BackgroundJob.concurrency_key,
                running.status == JobStatus.RUNNING.value,
            )
            .exists()
        )

        stmt = (
            select(BackgroundJob)
            .where(
                BackgroundJob.status == JobStatus.PENDING.value,
                BackgroundJob.scheduled_for <= now,
                ~key_busy,
            )
            # Order by priority (desc) first, then scheduled_for
            .order_by(BackgroundJob.priority.desc(), BackgroundJob.scheduled_for, BackgroundJob.created_at)
            .limit(1)
            .with_for_update(skip_locked=True, of=BackgroundJob)
        )
        if exclude_keys:
            stmt = stmt.where(
                sa.or_(
                    BackgroundJob.concurrency_key.is_(None),
                    BackgroundJob.concurrency_key.not_in(list(exclude_keys)),
                )
            )

        job = (await self.db.execute(stmt)).scalars().first()
        if job is None:
            await self.db.commit()
            return None

        job.status = JobStatus.RUNNING.value
        job.started_at = now
        job.attempts += 1
        job.progress = 0
        await self.db.commit()

        logger.info(
            "job_claimed",
            job_id=str(job.id),
            job_type=job.job_type,
            attempt=job.attempts,
            concurrency_key=job.concurrency_key,
        )
        return job

    async def release_job(self, job: BackgroundJob) -> None:
        """Hand a claimed job back untouched, e.g. when the worker stops before starting it."""
        job.status = JobStatus.PENDING.value
        job.started_at = None
        job.attempts = max(job.attempts - 1, 0)
        await self.db.commit()
        logger.info("job_released", job_id=str(job.id))

    async def execute_job(self, job: BackgroundJob) -> JobOutcome:
        """Run the registered handler for a RUNNING job and record the outcome."""
        started = time.perf_counter()
        logger.info(
            "job_processing_start",
            job_id=str(job.id),
            job_type=job.job_type,
            attempt=job.attempts,
        )

        try:
            try:
                handler_cls = get_handler_factory(job.job_type)
            except ValueError as e:
                raise ConfigurationError(str(e), code="unknown_job_type") from e
            handler = handler_cls(cache=self.cache)

            # Execute handler with timeout protection
            try:
                result = await asyncio.wait_for(
                    handler.execute(job, self.db),
                    timeout=handler.timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                logger.error(
                    "job_processing_timeout",
                    job_id=str(job.id),
                    job_type=job.job_type,
                    timeout_seconds=handler.timeout_seconds,
                )
                raise JobTimeoutError(str(job.id), handler.timeout_seconds) from e

        except asyncio.CancelledError:
            await self._requeue_cancelled(job)
            raise
        except Exception as e:  # noqa: BLE001 - every failure is recorded on the job
            outcome = await self._handle_failure(job, e)
            BACKGROUND_JOB_DURATION_SECONDS.labels(job_type=outcome.job_type).observe(time.perf_counter() - started)
            return outcome

        job.status = JobStatus.COMPLETED.value
        job.completed_at = datetime.now(timezone.utc)
        job.result = result
        job.progress = 100
        job.error_message = None
        job.error_kind = None
        await self.db.commit()

        BACKGROUND_JOBS_FINISHED.labels(job_type=job.job_type, outcome="completed").inc()
        BACKGROUND_JOB_DURATION_SECONDS.labels(job_type=job.job_type).observe(time.perf_counter() - started)
        logger.info(
            "job_processing_success",
            job_id=str(job.id),
            job_type=job.job_type,
        )
        return JobOutcome(job_id=job.id, job_type=job.job_type, succeeded=True, result=result)

    async def _handle_failure(self, job: BackgroundJob, exc: Exception) -> JobOutcome:
        kind = classify_error(exc)
        message = (str(exc) or type(exc).__name__)[:2000]

        # Discard whatever the handler left uncommitted, then reload the job row
        await self.db.rollback()
        await self.db.refresh(job)

        decision = self.retry_policy.decide(kind, job.attempts, job.max_attempts, exc)
        now = datetime.now(timezone.utc)
        job.error_message = message
        job.error_kind = kind.value

        if decision.retry:
            job.status = JobStatus.PENDING.value
            job.scheduled_for = now + timedelta(seconds=decision.delay_seconds)
            outcome_label = "retry"
            logger.warning(
                "job_failed_will_retry",
                job_id=str(job.id),
                job_type=job.job_type,
                error_kind=kind.value,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                backoff_seconds=decision.delay_seconds,
                error=message[:500],
            )
        else:
            job.status = JobStatus.DEAD_LETTER.value
            job.completed_at = now
            outcome_label = "dead_letter"
            logger.error(
                "job_moved_to_dlq",
                job_id=str(job.id),
                job_type=job.job_type,
                error_kind=kind.value,
                attempts=job.attempts,
                error=message[:500],
            )

        await self.db.commit()
        BACKGROUND_JOBS_FINISHED.labels(job_type=job.job_type, outcome=outcome_label).inc()
        return JobOutcome(
            job_id=job.id,
            job_type=job.job_type,
            succeeded=False,
            error_kind=kind,
            retry_scheduled=decision.retry,
            error=message,
        )

    async def _requeue_cancelled(self, job: BackgroundJob) -> None:
        logger.warning("job_processing_cancelled", job_id=str(job.id))
        try:
            await self.db.rollback()
            await self.db.refresh(job)
            job.status = JobStatus.PENDING.value
            job.error_message = "Job was cancelled"
            job.error_kind = ErrorKind.TIMEOUT.value
            job.scheduled_for = datetime.now(timezone.utc) + timedelta(seconds=CANCELLED_RETRY_DELAY_SECONDS)
            await self.db.commit()
        except sa.exc.SQLAlchemyError as e:
            # recover_stale_jobs picks the row up once its lock expires
            logger.error("job_requeue_failed", job_id=str(job.id), error=str(e)[:200])

    async def process_pending_jobs(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """Claim and execute due jobs one after another, up to the limit."""
        limit = limit or MAX_JOBS_PER_BATCH
        logger.info("processing_pending_jobs", limit=limit)
        results: Dict[str, Any] = {
            "processed": 0,
            "succeeded": 0,
            "failed": 0,
            "errors": []
        }

        while results["processed"] < limit:
            job = await self.claim_next_job()
            if job is None:
                break
            outcome = await self.execute_job(job)
            results["processed"] += 1
            if outcome.succeeded:
                results["succeeded"] += 1
            else:
                results["failed"] += 1
                results["errors"].append({
                    "job_id": str(outcome.job_id),
                    "error": outcome.error,
                    "kind": outcome.error_kind.value if outcome.error_kind else None,
                })

        logger.info(
            "job_processor_batch_complete",
            processed=results["processed"],
            succeeded=results["succeeded"],
            failed=results["failed"],
        )
        return results

    async def recover_stale_jobs(self, lock_timeout_minutes: Optional[int] = None) -> Dict[str, int]:
        """
        Re-queue RUNNING jobs whose worker vanished, and fail the SyncJobs they
        left RUNNING. Jobs already out of attempts go to the dead letter queue.
        """
        minutes = lock_timeout_minutes or get_settings().JOB_LOCK_TIMEOUT_MINUTES
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=minutes)

        stale = (await self.db.execute(
            select(BackgroundJob)
            .where(
                BackgroundJob.status == JobStatus.RUNNING.value,
                BackgroundJob.started_at < cutoff,
            )
            .with_for_update(skip_locked=True)
        )).scalars().all()

        requeued = dead_lettered = 0
        for job in stale:
            job.error_message = f"Job lock expired after {minutes} minutes"
            job.error_kind = ErrorKind.TIMEOUT.value
            if job.attempts >= job.max_attempts:
                job.status = JobStatus.DEAD_LETTER.value
                job.completed_at = now
                dead_lettered += 1
            else:
                job.status = JobStatus.PENDING.value
                job.scheduled_for = now
                requeued += 1

        orphaned = (await self.db.execute(
            sa.update(SyncJob)
            .where(
                SyncJob.status == SyncJobStatus.RUNNING.value,
                SyncJob.started_at < cutoff,
            )
            .values(
                status=SyncJobStatus.FAILED.value,
                completed_at=now,
                error="Worker stopped before the sync completed",
                error_kind=ErrorKind.TIMEOUT.value,
            )
            .execution_options(synchronize_session=False)
        )).rowcount or 0

        await self.db.commit()
        if stale or orphaned:
            logger.warning(
                "stale_jobs_recovered",
                requeued=requeued,
                dead_lettered=dead_lettered,
                sync_jobs_failed=orphaned,
            )
        return {"requeued": requeued, "dead_lettered": dead_lettered, "sync_jobs_failed": orphaned}


# ==================== Job Creation Helpers ====================


async def find_active_job(db: AsyncSession, deduplication_key: str) -> Optional[BackgroundJob]:
    """PENDING or RUNNING job with the given deduplication key, if any."""
    result = await db.execute(
        select(BackgroundJob)
        .where(
            BackgroundJob.deduplication_key == deduplication_key,
            BackgroundJob.status.in_(ACTIVE_STATUSES),
        )
        .order_by(BackgroundJob.created_at)
        .limit(1)
    )
    return result.scalars().first()


async def enqueue_job(
    db: AsyncSession,
    job_type: str,
    tenant_id: Optional[UUID] = None,
    payload: Optional[Dict[str, Any]] = None,
    scheduled_for: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
    priority: int = 0,
    concurrency_key: Optional[str] = None,
    deduplication_key: Optional[str] = None,
) -> BackgroundJob:
    """
    Enqueue a new background job.
    With a deduplication_key, an identical PENDING or RUNNING job is returned instead.

    Usage:
        job = await enqueue_job(
            db,
            job_type=JobType.COST_INGESTION,
            tenant_id=tenant_id,
            payload={"cloudAccountId": "...", ...}
        )
    """
    job_type = job_type.value if hasattr(job_type, "value") else job_type

    if deduplication_key:
        existing = await find_active_job(db, deduplication_key)
        if existing is not None:
            logger.info(
                "job_enqueue_deduplicated",
                job_id=str(existing.id),
                deduplication_key=deduplication_key,
            )
            return existing

    job = BackgroundJob(
        job_type=job_type,
        tenant_id=tenant_id,
        payload=payload,
        status=JobStatus.PENDING.value,
        scheduled_for=scheduled_for or datetime.now(timezone.utc),
        max_attempts=max_attempts or get_settings().JOB_MAX_ATTEMPTS,
        priority=priority,
        concurrency_key=concurrency_key,
        deduplication_key=deduplication_key,
        created_at=datetime.now(timezone.utc)
    )

    db.add(job)
    await db.commit()
    await db.refresh(job)

    BACKGROUND_JOBS_ENQUEUED.labels(job_type=job_type, priority=str(priority)).inc()
    logger.info(
        "job_enqueued",
        job_id=str(job.id),
        job_type=job_type,
        tenant_id=str(tenant_id) if tenant_id else None,
        priority=priority,
    )

    return job


async def enqueue_ingestion_job(
    db: AsyncSession,
    payload: IngestionJobPayload,
    priority: int = 0,
    scheduled_for: Optional[datetime] = None,
) -> tuple[BackgroundJob, bool]:
    """
    Enqueue a cost_ingestion job for one account and window.
    Returns the job and whether it was an already-active duplicate.
    """
    dedup_key = payload.deduplication_key()
    existing = await find_active_job(db, dedup_key)
    if existing is not None:
        logger.info("ingestion_enqueue_deduplicated", job_id=str(existing.id), deduplication_key=dedup_key)
        return existing, True

    job = await enqueue_job(
        db,
        job_type=JobType.COST_INGESTION,
        tenant_id=payload.tenant_id,
        payload=payload.model_dump(mode="json", by_alias=True),
        scheduled_for=scheduled_for,
        priority=priority,
        concurrency_key=str(payload.cloud_account_id),
        deduplication_key=dedup_key,
    )
    return job, False
