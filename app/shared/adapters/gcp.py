"""
Google Cloud Platform Adapter using the BigQuery billing export for costs and
Cloud Asset Inventory for resources.

Standard industry practice for GCP FinOps is to export billing data to
BigQuery. The google-cloud clients are blocking, so every call runs in a
worker thread.
"""

import asyncio
import json
import re
from datetime import datetime, time, timedelta, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import structlog
import tenacity
from google.api_core.exceptions import (
    BadRequest,
    DeadlineExceeded,
    Forbidden,
    GoogleAPICallError,
    NotFound,
    PermissionDenied,
    ResourceExhausted,
    ServiceUnavailable,
    TooManyRequests,
    Unauthenticated,
)
from google.auth.exceptions import GoogleAuthError
from google.cloud import asset_v1, bigquery
from google.oauth2 import service_account

from app.schemas.focus import (
    ChargeCategory,
    CloudResource,
    CostQueryParams,
    FocusCostItem,
    Granularity,
    RawCostData,
    UNKNOWN_SERVICE,
    get_service_category,
)
from app.schemas.ingestion import GCPCredentials
from app.shared.adapters.base import (
    CloudAdapter,
    ResourceLister,
    coerce_tags,
    log_retry_attempt,
    month_window,
    optional_decimal,
    optional_str,
    parse_period,
    to_decimal,
)
from app.shared.core.config import get_settings
from app.shared.core.constants import CloudProvider
from app.shared.core.exceptions import (
    AdapterError,
    ConfigurationError,
    ProviderAuthError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)

logger = structlog.get_logger()

# Retry decorator for GCP transient failures
gcp_retry = tenacity.retry(
    retry=tenacity.retry_if_exception_type((ServiceUnavailable, DeadlineExceeded)),
    wait=tenacity.wait_exponential(multiplier=1, min=2, max=10),
    stop=tenacity.stop_after_attempt(3),
    before_sleep=log_retry_attempt("gcp_retrying"),
    reraise=True,
)

PROJECT_ID_PATTERN = re.compile(r"^[a-z][a-z0-9\-]{4,28}[a-z0-9]$")
TABLE_SEGMENT_PATTERN = re.compile(r"^[a-zA-Z0-9.\-_]+$")

QUERY_TIMEOUT_SECONDS = 240

# BigQuery alias -> billing export dotted column name
ALIAS_COLUMN_MAP = {
    "invoice_month": "invoice.month",
    "credits_amount": "credits.amount",
    "service_description": "service.description",
    "sku_description": "sku.description",
    "location_region": "location.region",
    "location_zone": "location.zone",
    "usage_amount": "usage.amount",
    "usage_unit": "usage.unit",
    "project_id": "project.id",
    "project_name": "project.name",
    "period_start": "usage_start_time",
    "period_end": "usage_end_time",
}

PERIOD_SQL = {
    Granularity.DAILY: (
        "TIMESTAMP_TRUNC(usage_start_time, DAY)",
        "TIMESTAMP_ADD(TIMESTAMP_TRUNC(usage_start_time, DAY), INTERVAL 1 DAY)",
    ),
    Granularity.MONTHLY: (
        "TIMESTAMP_TRUNC(usage_start_time, MONTH)",
        "TIMESTAMP(DATE_ADD(DATE(TIMESTAMP_TRUNC(usage_start_time, MONTH)), INTERVAL 1 MONTH))",
    ),
}


def validate_project_id(project_id: str) -> bool:
    """Validate GCP project ID format."""
    return bool(PROJECT_ID_PATTERN.match(project_id))


def map_gcp_error(e: Exception, operation: str) -> Exception:
    message = f"GCP {operation} failed: {e}"
    if isinstance(e, (Unauthenticated, PermissionDenied, Forbidden, GoogleAuthError)):
        return ProviderAuthError(message, code=type(e).__name__)
    if isinstance(e, (TooManyRequests, ResourceExhausted)):
        return ProviderRateLimitError(message, code=type(e).__name__)
    if isinstance(e, (ServiceUnavailable, DeadlineExceeded)):
        return ProviderTimeoutError(message, code=type(e).__name__)
    if isinstance(e, (BadRequest, NotFound)):
        return ConfigurationError(message, code=type(e).__name__)
    return AdapterError(message, code=type(e).__name__)


def _load_credentials(creds: GCPCredentials) -> service_account.Credentials:
    try:
        info = json.loads(creds.service_account_key)
        return service_account.Credentials.from_service_account_info(info)
    except (ValueError, KeyError) as e:
        logger.error("gcp_credentials_load_error", project_id=creds.project_id)
        raise ConfigurationError("GCP service account key is not valid JSON key material", code="invalid_service_account_key") from e


class GCPAdapter(CloudAdapter, ResourceLister):
    """GCP adapter backed by the BigQuery billing export."""

    provider = CloudProvider.GCP
    charge_category_map = MappingProxyType({
        "regular": ChargeCategory.USAGE,
        "tax": ChargeCategory.TAX,
        "adjustment": ChargeCategory.ADJUSTMENT,
        "rounding_error": ChargeCategory.ADJUSTMENT,
        "credit": ChargeCategory.CREDIT,
    })

    def _table_path(self, creds: GCPCredentials) -> str:
        table = creds.billing_export_table or get_settings().GCP_BILLING_EXPORT_TABLE
        if not table:
            raise ConfigurationError(
                "GCP billing export table is not configured",
                code="gcp_billing_export_missing",
                details={"project_id": creds.project_id},
            )
        segments = table.split(".")
        if len(segments) == 2:
            segments = [creds.project_id] + segments
        if len(segments) != 3 or not all(TABLE_SEGMENT_PATTERN.match(s) for s in segments):
            logger.error("gcp_bq_invalid_table_path", table=table)
            raise ConfigurationError(f"Invalid BigQuery table path: '{table}'", code="gcp_billing_export_invalid")
        return ".".join(segments)

    async def get_costs(self, params: CostQueryParams, credentials: Mapping[str, Any]) -> List[RawCostData]:
        creds = self.parse_credentials(credentials)
        if not validate_project_id(creds.project_id):
            raise ConfigurationError(f"Invalid GCP project ID format: '{creds.project_id}'", code="invalid_project_id")
        table_path = self._table_path(creds)
        try:
            rows = await self._query_billing_export(params, creds, table_path)
        except (GoogleAPICallError, GoogleAuthError) as e:
            logger.error("gcp_bq_query_failed", table=table_path, error=str(e)[:200])
            raise map_gcp_error(e, "billing export query") from e

        records = []
        for row in rows:
            data = {ALIAS_COLUMN_MAP.get(k, k): v for k, v in row.items()}
            records.append(RawCostData(provider="GCP", data=data))
        logger.info("gcp_costs_fetched", records=len(records), table=table_path)
        return records

    @gcp_retry
    async def _query_billing_export(self, params: CostQueryParams, creds: GCPCredentials, table_path: str) -> List[Dict[str, Any]]:
        period_start_sql, period_end_sql = PERIOD_SQL[params.granularity]
        query = f"""
            SELECT
                invoice.month AS invoice_month,
                cost_type,
                currency,
                service.description AS service_description,
                sku.description AS sku_description,
                location.region AS location_region,
                location.zone AS location_zone,
                project.id AS project_id,
                project.name AS project_name,
                TO_JSON_STRING(labels) AS labels,
                {period_start_sql} AS period_start,
                {period_end_sql} AS period_end,
                SUM(cost) AS cost,
                SUM(IFNULL((SELECT SUM(c.amount) FROM UNNEST(credits) AS c), 0)) AS credits_amount,
                SUM(usage.amount) AS usage_amount,
                MAX(usage.unit) AS usage_unit
            FROM `{table_path}`
            WHERE usage_start_time >= @start_date
              AND usage_start_time < @end_date
            GROUP BY invoice_month, cost_type, currency, service_description, sku_description,
                     location_region, location_zone, project_id, project_name, labels,
                     period_start, period_end
        """  # nosec: B608 (table path validated above)

        end_date = params.end_date if params.end_date > params.start_date else params.start_date + timedelta(days=1)
        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("start_date", "TIMESTAMP", datetime.combine(params.start_date, time.min, tzinfo=timezone.utc)),
                bigquery.ScalarQueryParameter("end_date", "TIMESTAMP", datetime.combine(end_date, time.min, tzinfo=timezone.utc)),
            ]
        )

        client = bigquery.Client(project=creds.project_id, credentials=_load_credentials(creds))

        def run() -> List[Dict[str, Any]]:
            try:
                result = client.query(query, job_config=job_config).result(timeout=QUERY_TIMEOUT_SECONDS)
                return [dict(row.items()) for row in result]
            finally:
                client.close()

        return await asyncio.to_thread(run)

    def _normalize_record(self, data: Dict[str, Any]) -> FocusCostItem:
        if data.get("usage_start_time") not in (None, ""):
            period_start, period_end = parse_period(data.get("usage_start_time"), data.get("usage_end_time"))
        else:
            period_start, period_end = month_window(data.get("invoice.month"))

        cost_type = optional_str(data.get("cost_type"))
        billed = to_decimal(data.get("cost"))
        service_name = optional_str(data.get("service.description")) or UNKNOWN_SERVICE
        resource_name = optional_str(data.get("resource.name"))

        return FocusCostItem(
            billing_period_start=period_start,
            billing_period_end=period_end,
            charge_category=self.map_charge_category(cost_type.lower() if cost_type else None),
            charge_type=cost_type or "regular",
            billed_cost=billed,
            # Credits are negative amounts in the export
            effective_cost=billed + to_decimal(data.get("credits.amount")),
            billing_currency=optional_str(data.get("currency")) or "USD",
            service_category=get_service_category(service_name),
            service_name=service_name,
            region_id=optional_str(data.get("location.region")),
            region_name=optional_str(data.get("location.region")),
            availability_zone=optional_str(data.get("location.zone")),
            resource_id=optional_str(data.get("resource.global_name")) or resource_name,
            resource_name=resource_name,
            resource_type=optional_str(data.get("sku.description")),
            pricing_category=optional_str(data.get("price.pricing_type")),
            usage_quantity=optional_decimal(data.get("usage.amount")),
            usage_unit=optional_str(data.get("usage.unit")),
            provider_name=self.provider.value,
            publisher_name="Google",
            sub_account_id=optional_str(data.get("project.id")),
            sub_account_name=optional_str(data.get("project.name")),
            tags=coerce_tags(data.get("labels")),
        )

    async def _verify_live(self, credentials: GCPCredentials) -> bool:
        client = bigquery.Client(project=credentials.project_id, credentials=_load_credentials(credentials))

        def probe() -> bool:
            try:
                list(client.list_datasets(project=credentials.project_id, max_results=1))
                return True
            finally:
                client.close()

        return await asyncio.to_thread(probe)

    async def list_resources(
        self,
        credentials: Mapping[str, Any],
        regions: Optional[List[str]] = None,
        resource_types: Optional[List[str]] = None,
    ) -> List[CloudResource]:
        creds = self.parse_credentials(credentials)
        client = asset_v1.AssetServiceClient(credentials=_load_credentials(creds))
        wanted_regions = {r.lower() for r in regions or []}

        def fetch() -> List[CloudResource]:
            response = client.list_assets(
                request={
                    "parent": f"projects/{creds.project_id}",
                    "asset_types": resource_types or [],
                    "content_type": asset_v1.ContentType.RESOURCE,
                }
            )
            resources = []
            for asset in response:
                location = asset.resource.location or "global"
                if wanted_regions and location.lower() not in wanted_regions:
                    continue
                resources.append(CloudResource(
                    resource_id=asset.name,
                    resource_name=asset.name.split("/")[-1],
                    resource_type=asset.asset_type,
                    region=location,
                    metadata={"project_id": creds.project_id},
                ))
            return resources

        try:
            return await asyncio.to_thread(fetch)
        except (GoogleAPICallError, GoogleAuthError) as e:
            logger.error("gcp_discovery_failed", error=str(e)[:200])
            raise map_gcp_error(e, "asset listing") from e
