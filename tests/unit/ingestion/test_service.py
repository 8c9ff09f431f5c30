"""
Tests for IngestionService

Covers:
- Fetch -> normalize -> persist for one account and window
- SyncJob and CloudAccount bookkeeping on success and on each failure kind
- Partial chunk failures, fetch timeout, cancellation and the fetch cache
"""

import asyncio
import uuid
from datetime import date
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from app.models.cloud import AccountStatus, CostLineItem
from app.models.sync_job import SyncJob, SyncJobStatus
from app.modules.ingestion.domain.service import IngestionService
from app.schemas.focus import RawCostData
from app.schemas.ingestion import IngestionJobPayload
from app.shared.adapters.aws import AWSAdapter
from app.shared.core.cache import TTLCache
from app.shared.core.exceptions import (
    AccountNotFoundError,
    ConfigurationError,
    ProviderAuthError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    UnsupportedProviderError,
)

GET_ADAPTER = "app.modules.ingestion.domain.service.get_cloud_adapter"


def cur_record(line_item_type="Usage", amount="10.00", day="2025-07-01", product="Amazon EC2"):
    return RawCostData(provider="AWS", data={
        "bill/BillingPeriodStartDate": day,
        "lineItem/LineItemType": line_item_type,
        "lineItem/UnblendedCost": amount,
        "lineItem/ProductCode": product,
    })


JULY_RECORDS = [
    cur_record("Usage", "120.00"),
    cur_record("Tax", "9.60"),
    cur_record("FooBarFee", "2.00"),
]


def fake_adapter(records=None, side_effect=None):
    with patch("aioboto3.Session"):
        adapter = AWSAdapter()
    adapter.get_costs = AsyncMock(return_value=records or [], side_effect=side_effect)
    return adapter


def payload_for(account, provider="AWS", start=date(2025, 7, 1), end=date(2025, 7, 31)):
    return IngestionJobPayload(
        cloud_account_id=account.id,
        tenant_id=account.tenant_id,
        provider=provider,
        start_date=start,
        end_date=end,
    )


async def sync_jobs(db):
    return (await db.execute(select(SyncJob).order_by(SyncJob.started_at))).scalars().all()


class TestSuccessfulIngestion:
    @pytest.mark.asyncio
    async def test_persists_items_and_records_outcome(self, db, make_account):
        account = await make_account(db)
        adapter = fake_adapter(JULY_RECORDS)
        progress = []

        async def on_progress(value):
            progress.append(value)

        with patch(GET_ADAPTER, return_value=adapter):
            result = await IngestionService(db).run(payload_for(account), progress=on_progress)

        assert result.fetched == 3
        assert result.item_count == 3
        assert result.inserted == 3
        assert result.duplicates == 0

        rows = (await db.execute(select(CostLineItem).order_by(CostLineItem.billed_cost))).scalars().all()
        assert sorted(r.charge_category for r in rows) == ["TAX", "USAGE", "USAGE"]
        assert all(r.provider_name == "AWS" for r in rows)
        assert all(r.sync_job_id == result.sync_job_id for r in rows)

        (sync_job,) = await sync_jobs(db)
        assert sync_job.status == SyncJobStatus.COMPLETED.value
        assert sync_job.sync_metadata["itemCount"] == 3
        assert sync_job.sync_metadata["startDate"] == "2025-07-01"
        assert sync_job.completed_at is not None

        assert account.status == AccountStatus.CONNECTED.value
        assert account.last_sync_at is not None
        assert account.last_sync_error is None

        assert progress[0] == 10
        assert progress[1] == 50
        assert progress[-1] == 100
        assert progress == sorted(progress)

    @pytest.mark.asyncio
    async def test_rerun_of_same_window_inserts_nothing(self, db, make_account):
        account = await make_account(db)

        with patch(GET_ADAPTER, return_value=fake_adapter(JULY_RECORDS)):
            await IngestionService(db).run(payload_for(account))
            second = await IngestionService(db).run(payload_for(account))

        assert second.inserted == 0
        assert second.duplicates == 3
        assert (await db.execute(select(func.count(CostLineItem.id)))).scalar_one() == 3
        assert [j.status for j in await sync_jobs(db)] == ["COMPLETED", "COMPLETED"]

    @pytest.mark.asyncio
    async def test_empty_window_completes(self, db, make_account):
        account = await make_account(db)

        with patch(GET_ADAPTER, return_value=fake_adapter([])):
            result = await IngestionService(db).run(payload_for(account))

        assert result.item_count == 0
        assert (await sync_jobs(db))[0].status == "COMPLETED"

    @pytest.mark.asyncio
    async def test_clears_previous_reconfiguration_flag(self, db, make_account):
        account = await make_account(db, status=AccountStatus.ERROR.value)
        account.requires_reconfiguration = True
        account.last_sync_error = "old failure"
        await db.commit()

        with patch(GET_ADAPTER, return_value=fake_adapter(JULY_RECORDS)):
            await IngestionService(db).run(payload_for(account))

        assert account.requires_reconfiguration is False
        assert account.status == "CONNECTED"
        assert account.last_sync_error is None

    @pytest.mark.asyncio
    async def test_unusable_chunk_is_skipped_not_fatal(self, db, make_account):
        """One bad chunk costs its records, the rest of the window still lands."""
        account = await make_account(db)
        records = [
            RawCostData(provider="AWS", data={"lineItem/UnblendedCost": "1"}),
            RawCostData(provider="AWS", data={"lineItem/UnblendedCost": "2"}),
            cur_record("Usage", "3.00"),
        ]

        with patch(GET_ADAPTER, return_value=fake_adapter(records)):
            result = await IngestionService(db, batch_size=2).run(payload_for(account))

        assert result.inserted == 1
        assert result.skipped == 2
        assert result.skipped_chunks == 1
        assert (await sync_jobs(db))[0].sync_metadata["skippedChunks"] == 1

    @pytest.mark.asyncio
    async def test_fetch_cache_avoids_second_provider_call(self, db, make_account):
        account = await make_account(db)
        adapter = fake_adapter(JULY_RECORDS)
        cache = TTLCache()

        with patch(GET_ADAPTER, return_value=adapter):
            await IngestionService(db, cache=cache).run(payload_for(account))
            await IngestionService(db, cache=cache).run(payload_for(account))

        assert adapter.get_costs.await_count == 1
        assert cache.hits == 1


class TestFailedIngestion:
    @pytest.mark.asyncio
    async def test_unknown_account(self, db):
        payload = IngestionJobPayload(
            cloud_account_id=uuid.uuid4(),
            tenant_id=uuid.uuid4(),
            provider="AWS",
            start_date=date(2025, 7, 1),
            end_date=date(2025, 7, 2),
        )
        with pytest.raises(AccountNotFoundError):
            await IngestionService(db).run(payload)
        assert await sync_jobs(db) == []

    @pytest.mark.asyncio
    async def test_other_tenants_account_is_not_found(self, db, make_account):
        account = await make_account(db)
        payload = payload_for(account).model_copy(update={"tenant_id": uuid.uuid4()})

        with pytest.raises(AccountNotFoundError):
            await IngestionService(db).run(payload)

    @pytest.mark.asyncio
    async def test_unsupported_provider(self, db, make_account):
        """ORACLE has no adapter: FAILED sync, account flagged for reconfiguration."""
        account = await make_account(db, provider="ORACLE")

        with pytest.raises(UnsupportedProviderError):
            await IngestionService(db).run(payload_for(account, provider="ORACLE"))

        (sync_job,) = await sync_jobs(db)
        assert sync_job.status == SyncJobStatus.FAILED.value
        assert sync_job.error_kind == "unsupported_provider"
        assert "ORACLE" in sync_job.error
        assert account.status == AccountStatus.ERROR.value
        assert account.requires_reconfiguration is True
        assert (await db.execute(select(func.count(CostLineItem.id)))).scalar_one() == 0

    @pytest.mark.asyncio
    async def test_provider_mismatch(self, db, make_account):
        account = await make_account(db)

        with pytest.raises(ConfigurationError) as excinfo:
            await IngestionService(db).run(payload_for(account, provider="AZURE"))

        assert excinfo.value.code == "provider_mismatch"
        assert (await sync_jobs(db))[0].error_kind == "configuration"

    @pytest.mark.asyncio
    async def test_auth_failure_flags_account(self, db, make_account):
        account = await make_account(db)
        adapter = fake_adapter(side_effect=ProviderAuthError("AWS Cost Explorer failed: AccessDenied"))

        with patch(GET_ADAPTER, return_value=adapter):
            with pytest.raises(ProviderAuthError):
                await IngestionService(db).run(payload_for(account))

        assert (await sync_jobs(db))[0].error_kind == "auth"
        assert account.requires_reconfiguration is True
        assert "AccessDenied" in account.last_sync_error

    @pytest.mark.asyncio
    async def test_rate_limit_does_not_flag_account(self, db, make_account):
        account = await make_account(db)
        adapter = fake_adapter(side_effect=ProviderRateLimitError("throttled", retry_after=30))

        with patch(GET_ADAPTER, return_value=adapter):
            with pytest.raises(ProviderRateLimitError):
                await IngestionService(db).run(payload_for(account))

        assert account.status == AccountStatus.ERROR.value
        assert account.requires_reconfiguration is False
        assert (await sync_jobs(db))[0].error_kind == "rate_limit"

    @pytest.mark.asyncio
    async def test_slow_fetch_times_out(self, db, make_account):
        account = await make_account(db)

        async def slow_fetch(params, credentials):
            await asyncio.sleep(5)
            return []

        adapter = fake_adapter()
        adapter.get_costs = slow_fetch

        with patch(GET_ADAPTER, return_value=adapter):
            with pytest.raises(ProviderTimeoutError) as excinfo:
                await IngestionService(db, fetch_timeout_seconds=0.05).run(payload_for(account))

        assert excinfo.value.code == "fetch_timeout"
        assert (await sync_jobs(db))[0].error_kind == "timeout"

    @pytest.mark.asyncio
    async def test_undecryptable_credentials(self, db, make_account):
        account = await make_account(db)
        account.credentials_encrypted = "garbage"
        await db.commit()

        with patch(GET_ADAPTER, return_value=fake_adapter(JULY_RECORDS)):
            with pytest.raises(ConfigurationError):
                await IngestionService(db).run(payload_for(account))

        assert account.requires_reconfiguration is True

    @pytest.mark.asyncio
    async def test_cancellation_fails_sync_job(self, db, make_account):
        account = await make_account(db)
        started = asyncio.Event()

        async def hang(params, credentials):
            started.set()
            await asyncio.Event().wait()

        adapter = fake_adapter()
        adapter.get_costs = hang

        with patch(GET_ADAPTER, return_value=adapter):
            task = asyncio.create_task(IngestionService(db).run(payload_for(account)))
            await started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        (sync_job,) = await sync_jobs(db)
        assert sync_job.status == SyncJobStatus.FAILED.value
        assert sync_job.error == "Ingestion cancelled before completion"
        assert sync_job.error_kind == "timeout"

    @pytest.mark.asyncio
    async def test_handler_timeout_is_recorded_as_timeout(self, db, make_account):
        account = await make_account(db)

        async def hang(params, credentials):
            await asyncio.Event().wait()

        adapter = fake_adapter()
        adapter.get_costs = hang

        with patch(GET_ADAPTER, return_value=adapter):
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(IngestionService(db).run(payload_for(account)), timeout=0.5)

        (sync_job,) = await sync_jobs(db)
        assert sync_job.status == SyncJobStatus.FAILED.value
        assert sync_job.error_kind == "timeout"
        await db.refresh(account)
        assert account.status == AccountStatus.ERROR.value
        assert account.requires_reconfiguration is False
