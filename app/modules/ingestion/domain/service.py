"""
Cost Ingestion Service

Runs one ingestion for a (cloud account, window): fetch raw provider billing
data, normalize it to FOCUS, persist idempotently, and record the outcome on
a SyncJob and on the CloudAccount.

Retries replay the whole run. Batches already committed are absorbed by the
store's natural-key constraint.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.cloud import AccountStatus, CloudAccount
from app.models.sync_job import SyncJob, SyncJobStatus
from app.modules.ingestion.domain.persistence import CostLineItemStore
from app.schemas.focus import CostQueryParams, FocusCostItem, Granularity, RawCostData
from app.schemas.ingestion import IngestionJobPayload, IngestionResult
from app.shared.adapters.base import CloudAdapter
from app.shared.adapters.registry import get_cloud_adapter
from app.shared.core.cache import TTLCache
from app.shared.core.config import get_settings
from app.shared.core.constants import COST_INGESTION_JOB_TYPE
from app.shared.core.exceptions import (
    AccountNotFoundError,
    ConfigurationError,
    ErrorKind,
    NormalizationError,
    ProviderTimeoutError,
    RECONFIGURATION_KINDS,
    classify_error,
)
from app.shared.core.ops_metrics import COST_RECORDS_INGESTED, PROVIDER_ERRORS, PROVIDER_FETCH_LATENCY
from app.shared.core.security import decrypt_credentials

logger = structlog.get_logger()

ProgressCallback = Callable[[int], Awaitable[None]]

FETCHED_PROGRESS = 10
NORMALIZED_PROGRESS = 50


class IngestionService:
    """
    Usage:
        service = IngestionService(db, cache=cache)
        result = await service.run(payload)
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[TTLCache] = None,
        fetch_timeout_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
    ):
        settings = get_settings()
        self.db = db
        self.cache = cache
        self.fetch_timeout_seconds = fetch_timeout_seconds or settings.INGESTION_FETCH_TIMEOUT_SECONDS
        self.batch_size = batch_size or settings.INGESTION_BATCH_SIZE
        self.store = CostLineItemStore(db)

    async def run(
        self,
        payload: IngestionJobPayload,
        progress: Optional[ProgressCallback] = None,
        background_job_id: Optional[UUID] = None,
    ) -> IngestionResult:
        account = await self.db.get(CloudAccount, payload.cloud_account_id)
        if account is None or account.tenant_id != payload.tenant_id:
            raise AccountNotFoundError(str(payload.cloud_account_id))

        sync_job = SyncJob(
            cloud_account_id=account.id,
            background_job_id=background_job_id,
            job_type=COST_INGESTION_JOB_TYPE,
            status=SyncJobStatus.RUNNING.value,
            started_at=datetime.now(timezone.utc),
            sync_metadata={
                "provider": payload.provider,
                "startDate": payload.start_date.isoformat(),
                "endDate": payload.end_date.isoformat(),
            },
        )
        self.db.add(sync_job)
        await self.db.commit()

        account_id, sync_job_id = account.id, sync_job.id
        log = logger.bind(
            cloud_account_id=str(account_id),
            sync_job_id=str(sync_job_id),
            provider=payload.provider,
        )
        log.info("ingestion_started", start_date=str(payload.start_date), end_date=str(payload.end_date))

        try:
            result = await self._ingest(account, sync_job, payload, progress)
        except (Exception, asyncio.CancelledError) as e:
            await self._record_failure(account_id, sync_job_id, payload.provider, e)
            raise

        log.info(
            "ingestion_completed",
            items=result.item_count,
            inserted=result.inserted,
            duplicates=result.duplicates,
            skipped=result.skipped,
        )
        return result

    async def _ingest(
        self,
        account: CloudAccount,
        sync_job: SyncJob,
        payload: IngestionJobPayload,
        progress: Optional[ProgressCallback],
    ) -> IngestionResult:
        # Unregistered provider tags stop here, before any provider call
        adapter = get_cloud_adapter(payload.provider)
        if adapter.provider.value != (account.provider or "").upper():
            raise ConfigurationError(
                f"Job provider {adapter.provider.value} does not match account provider {account.provider}",
                code="provider_mismatch",
                details={"cloud_account_id": str(account.id)},
            )

        params = CostQueryParams(
            start_date=payload.start_date,
            end_date=payload.end_date,
            granularity=Granularity.DAILY,
        )
        raw = await self._fetch(adapter, account, params)
        await self._report(progress, FETCHED_PROGRESS)

        items, skipped, skipped_chunks = self._normalize(adapter, raw)
        await self._report(progress, NORMALIZED_PROGRESS)

        inserted = 0
        total = len(items)
        for offset in range(0, total, self.batch_size):
            batch = items[offset : offset + self.batch_size]
            inserted += await self.store.insert_skip_duplicates(
                account.tenant_id, account.id, batch, sync_job_id=sync_job.id
            )
            await self.db.commit()
            done = min(offset + self.batch_size, total)
            await self._report(progress, NORMALIZED_PROGRESS + (100 - NORMALIZED_PROGRESS) * done // total)

        now = datetime.now(timezone.utc)
        account.last_sync_at = now
        account.last_sync_error = None
        account.status = AccountStatus.CONNECTED.value
        account.requires_reconfiguration = False

        sync_job.status = SyncJobStatus.COMPLETED.value
        sync_job.completed_at = now
        sync_job.sync_metadata = {
            **(sync_job.sync_metadata or {}),
            "itemCount": total,
            "inserted": inserted,
            "duplicates": total - inserted,
            "skipped": skipped,
            "skippedChunks": skipped_chunks,
        }
        await self.db.commit()
        await self._report(progress, 100)

        provider = adapter.provider.value
        COST_RECORDS_INGESTED.labels(provider=provider, result="inserted").inc(inserted)
        COST_RECORDS_INGESTED.labels(provider=provider, result="duplicate").inc(total - inserted)
        COST_RECORDS_INGESTED.labels(provider=provider, result="skipped").inc(skipped)

        return IngestionResult(
            sync_job_id=sync_job.id,
            cloud_account_id=account.id,
            fetched=len(raw),
            item_count=total,
            inserted=inserted,
            duplicates=total - inserted,
            skipped=skipped,
            skipped_chunks=skipped_chunks,
        )

    async def _fetch(self, adapter: CloudAdapter, account: CloudAccount, params: CostQueryParams) -> List[RawCostData]:
        cache_key = params.cache_key(str(account.id))
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                logger.info("ingestion_fetch_cache_hit", cloud_account_id=str(account.id))
                return cached

        credentials = decrypt_credentials(account.credentials_encrypted)
        provider = adapter.provider.value
        started = time.perf_counter()
        try:
            raw = await asyncio.wait_for(
                adapter.get_costs(params, credentials),
                timeout=self.fetch_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                f"{provider} cost fetch exceeded {self.fetch_timeout_seconds}s",
                code="fetch_timeout",
                details={"cloud_account_id": str(account.id)},
            ) from e
        finally:
            PROVIDER_FETCH_LATENCY.labels(provider=provider).observe(time.perf_counter() - started)

        if self.cache is not None:
            await self.cache.set(cache_key, raw)
        return raw

    def _normalize(self, adapter: CloudAdapter, raw: List[RawCostData]) -> tuple[List[FocusCostItem], int, int]:
        items: List[FocusCostItem] = []
        skipped = 0
        skipped_chunks = 0
        for offset in range(0, len(raw), self.batch_size):
            chunk = raw[offset : offset + self.batch_size]
            try:
                report = adapter.normalize_with_report(chunk)
            except NormalizationError as e:
                skipped += e.skipped
                skipped_chunks += 1
                logger.warning(
                    "ingestion_chunk_skipped",
                    provider=adapter.provider.value,
                    chunk_offset=offset,
                    records=len(chunk),
                    error=e.message,
                )
                continue
            items.extend(report.items)
            skipped += report.skipped
        return items, skipped, skipped_chunks

    async def _record_failure(
        self,
        account_id: UUID,
        sync_job_id: UUID,
        provider: str,
        exc: BaseException,
    ) -> None:
        if isinstance(exc, asyncio.CancelledError):
            # Cancellation comes from the handler timeout or a shutdown drain deadline
            kind = ErrorKind.TIMEOUT
            message = "Ingestion cancelled before completion"
        else:
            kind = classify_error(exc)
            message = (str(exc) or type(exc).__name__)[:2000]

        logger.error(
            "ingestion_failed",
            cloud_account_id=str(account_id),
            sync_job_id=str(sync_job_id),
            provider=provider,
            error_kind=kind.value,
            error=message[:500],
        )
        PROVIDER_ERRORS.labels(provider=(provider or "unknown").upper(), kind=kind.value).inc()

        try:
            await self.db.rollback()
            sync_job = await self.db.get(SyncJob, sync_job_id, populate_existing=True)
            account = await self.db.get(CloudAccount, account_id, populate_existing=True)
            now = datetime.now(timezone.utc)
            if sync_job is not None:
                sync_job.status = SyncJobStatus.FAILED.value
                sync_job.completed_at = now
                sync_job.error = message
                sync_job.error_kind = kind.value
            if account is not None:
                account.status = AccountStatus.ERROR.value
                account.last_sync_error = message
                if kind in RECONFIGURATION_KINDS:
                    account.requires_reconfiguration = True
            await self.db.commit()
        except SQLAlchemyError as record_error:
            # The original failure is what the queue must see
            logger.error(
                "ingestion_failure_not_recorded",
                sync_job_id=str(sync_job_id),
                error=str(record_error)[:200],
            )

    @staticmethod
    async def _report(progress: Optional[ProgressCallback], value: int) -> None:
        if progress is not None:
            await progress(value)
