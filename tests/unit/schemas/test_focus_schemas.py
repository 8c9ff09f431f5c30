from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from pydantic import ValidationError

from app.schemas.focus import ChargeCategory, CostQueryParams, FocusCostItem, Granularity, get_service_category
from app.schemas.ingestion import IngestionJobPayload, IngestionJobRequest, SyncJobResponse


class TestFocusCostItem:
    def test_defaults(self):
        item = FocusCostItem(
            billing_period_start=datetime(2025, 7, 1, tzinfo=timezone.utc),
            billing_period_end=datetime(2025, 7, 2, tzinfo=timezone.utc),
            provider_name="AWS",
            service_name="Amazon S3",
        )
        assert item.charge_category == ChargeCategory.USAGE
        assert item.billed_cost == Decimal("0")
        assert item.billing_currency == "USD"
        assert item.service_category == "Storage"
        assert item.tags == {}

    def test_provider_is_required(self):
        with pytest.raises(ValidationError):
            FocusCostItem(
                billing_period_start=datetime(2025, 7, 1, tzinfo=timezone.utc),
                billing_period_end=datetime(2025, 7, 2, tzinfo=timezone.utc),
                provider_name="",
            )

    def test_charge_category_is_closed(self):
        with pytest.raises(ValidationError):
            FocusCostItem(
                billing_period_start=datetime(2025, 7, 1, tzinfo=timezone.utc),
                billing_period_end=datetime(2025, 7, 2, tzinfo=timezone.utc),
                provider_name="AWS",
                charge_category="DISCOUNT",
            )

    def test_unknown_service_category(self):
        assert get_service_category(None) == "Other"
        assert get_service_category("Some New Service") == "Other"


class TestCostQueryParams:
    def test_inverted_window_rejected(self):
        with pytest.raises(ValidationError):
            CostQueryParams(start_date=date(2025, 7, 2), end_date=date(2025, 7, 1))

    def test_cache_key_is_stable_across_filter_order(self):
        a = CostQueryParams(start_date=date(2025, 7, 1), end_date=date(2025, 7, 2), filters={"region": {"b", "a"}})
        b = CostQueryParams(start_date=date(2025, 7, 1), end_date=date(2025, 7, 2), filters={"region": {"a", "b"}})
        assert a.cache_key("acct") == b.cache_key("acct")
        assert a.cache_key("acct") == "costs:acct:2025-07-01:2025-07-02:DAILY:region=a|b"
        assert a.granularity == Granularity.DAILY


class TestIngestionJobPayload:
    def test_accepts_camel_case(self):
        account_id, tenant_id = uuid4(), uuid4()
        payload = IngestionJobPayload.model_validate({
            "cloudAccountId": str(account_id),
            "tenantId": str(tenant_id),
            "provider": "AWS",
            "startDate": "2025-07-01",
            "endDate": "2025-07-31",
        })
        assert payload.cloud_account_id == account_id
        assert payload.deduplication_key() == f"cost_ingestion:{account_id}:2025-07-01:2025-07-31"

        dumped = payload.model_dump(mode="json", by_alias=True)
        assert dumped["cloudAccountId"] == str(account_id)
        assert dumped["startDate"] == "2025-07-01"

    def test_rejects_inverted_window(self):
        with pytest.raises(ValidationError):
            IngestionJobPayload(
                cloud_account_id=uuid4(),
                tenant_id=uuid4(),
                provider="AWS",
                start_date=date(2025, 7, 31),
                end_date=date(2025, 7, 1),
            )

    def test_request_provider_is_optional(self):
        request = IngestionJobRequest(
            cloud_account_id=uuid4(),
            tenant_id=uuid4(),
            start_date=date(2025, 7, 1),
            end_date=date(2025, 7, 2),
        )
        assert request.provider is None
        assert request.priority == 0


def test_sync_job_response_reads_metadata_attribute():
    class Row:
        id = uuid4()
        cloud_account_id = uuid4()
        background_job_id = None
        job_type = "cost_ingestion"
        status = "COMPLETED"
        started_at = datetime(2025, 7, 1, tzinfo=timezone.utc)
        completed_at = None
        sync_metadata = {"itemCount": 3}
        error = None
        error_kind = None

    response = SyncJobResponse.model_validate(Row())
    assert response.metadata == {"itemCount": 3}
