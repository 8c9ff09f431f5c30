"""
Cost Ingestion API

Provides endpoints for:
- Enqueueing an ingestion for one account and window
- Viewing queue statistics and single job progress
- Reading an account's sync history
"""

import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.background_job import BackgroundJob, JobStatus
from app.models.cloud import CloudAccount
from app.models.sync_job import SyncJob
from app.modules.governance.domain.jobs.processor import enqueue_ingestion_job
from app.schemas.ingestion import (
    BackgroundJobResponse,
    IngestionJobPayload,
    IngestionJobRequest,
    JobEnqueuedResponse,
    QueueStatusResponse,
    SyncJobResponse,
)
from app.shared.core.exceptions import AccountNotFoundError
from app.shared.db.session import get_db

router = APIRouter(tags=["Cost Ingestion"])
logger = structlog.get_logger()


@router.post("/jobs", response_model=JobEnqueuedResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_ingestion(
    request: IngestionJobRequest,
    db: AsyncSession = Depends(get_db)
):
    """
    Enqueue a cost ingestion for one cloud account and date window.

    When provider is omitted the account's own provider is used. An identical
    PENDING or RUNNING job is returned instead of creating a second one.
    """
    account = await db.get(CloudAccount, request.cloud_account_id)
    if account is None or account.tenant_id != request.tenant_id:
        raise AccountNotFoundError(str(request.cloud_account_id))

    payload = IngestionJobPayload(
        cloud_account_id=request.cloud_account_id,
        tenant_id=request.tenant_id,
        provider=request.provider or account.provider,
        start_date=request.start_date,
        end_date=request.end_date,
    )
    job, deduplicated = await enqueue_ingestion_job(db, payload, priority=request.priority)

    logger.info(
        "ingestion_requested",
        job_id=str(job.id),
        cloud_account_id=str(account.id),
        deduplicated=deduplicated,
    )
    return JobEnqueuedResponse(job_id=job.id, status=job.status, deduplicated=deduplicated)


@router.get("/jobs/status", response_model=QueueStatusResponse)
async def get_queue_status(
    db: AsyncSession = Depends(get_db),
    tenant_id: Optional[uuid.UUID] = Query(default=None, description="Restrict counts to one tenant")
):
    """Get current job queue statistics."""
    query = select(BackgroundJob.status, func.count(BackgroundJob.id)).group_by(BackgroundJob.status)
    if tenant_id is not None:
        query = query.where(BackgroundJob.tenant_id == tenant_id)

    result = await db.execute(query)
    counts = {row[0]: row[1] for row in result.all()}

    return QueueStatusResponse(
        pending=counts.get(JobStatus.PENDING.value, 0),
        running=counts.get(JobStatus.RUNNING.value, 0),
        completed=counts.get(JobStatus.COMPLETED.value, 0),
        failed=counts.get(JobStatus.FAILED.value, 0),
        dead_letter=counts.get(JobStatus.DEAD_LETTER.value, 0)
    )


@router.get("/jobs/{job_id}", response_model=BackgroundJobResponse)
async def get_job(job_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    job = await db.get(BackgroundJob, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.get("/accounts/{account_id}/sync-jobs", response_model=list[SyncJobResponse])
async def list_sync_jobs(
    account_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    limit: int = Query(default=20, ge=1, le=100)
):
    """Sync history for one account, newest first."""
    if await db.get(CloudAccount, account_id) is None:
        raise AccountNotFoundError(str(account_id))

    result = await db.execute(
        select(SyncJob)
        .where(SyncJob.cloud_account_id == account_id)
        .order_by(desc(SyncJob.started_at))
        .limit(limit)
    )
    return result.scalars().all()
