"""
Kubernetes Cost Adapter (OpenCost allocation API)

Every allocation is in-cluster usage, so the FOCUS mapping is flat: one USAGE
line item per allocation per step window.
"""

from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

import httpx
import structlog
import tenacity

from app.schemas.focus import CostQueryParams, FocusCostItem, Granularity, RawCostData
from app.schemas.ingestion import KubernetesCredentials
from app.shared.adapters.base import (
    CloudAdapter,
    log_retry_attempt,
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

OPENCOST_LABEL_PREFIX = "label_"
REQUEST_TIMEOUT_SECONDS = 60.0

TRANSIENT_HTTP_ERRORS = (httpx.TimeoutException, httpx.NetworkError)

opencost_retry = tenacity.retry(
    retry=tenacity.retry_if_exception_type(TRANSIENT_HTTP_ERRORS),
    wait=tenacity.wait_exponential(multiplier=1, min=2, max=10),
    stop=tenacity.stop_after_attempt(3),
    before_sleep=log_retry_attempt("opencost_retrying"),
    reraise=True,
)


def map_http_error(e: httpx.HTTPError, operation: str) -> Exception:
    if isinstance(e, TRANSIENT_HTTP_ERRORS):
        return ProviderTimeoutError(f"OpenCost {operation} unreachable: {type(e).__name__}")
    if isinstance(e, httpx.HTTPStatusError):
        status = e.response.status_code
        message = f"OpenCost {operation} failed with HTTP {status}"
        if status in (401, 403):
            return ProviderAuthError(message, code=str(status))
        if status == 429:
            retry_after = e.response.headers.get("Retry-After")
            return ProviderRateLimitError(
                message,
                code=str(status),
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status in (400, 404):
            return ConfigurationError(message, code=str(status))
        return AdapterError(message, code=str(status))
    return AdapterError(f"OpenCost {operation} failed: {e}")


def _rfc3339(day) -> str:
    return datetime.combine(day, time.min, tzinfo=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class KubernetesAdapter(CloudAdapter):
    """OpenCost adapter. The cluster endpoint is the OpenCost API base URL."""

    provider = CloudProvider.KUBERNETES

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _client(self, creds: KubernetesCredentials) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=creds.cluster_endpoint.rstrip("/"),
            headers={"Authorization": f"Bearer {creds.token}"},
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    async def get_costs(self, params: CostQueryParams, credentials: Mapping[str, Any]) -> List[RawCostData]:
        creds = self.parse_credentials(credentials)
        try:
            payload = await self._fetch_allocations(params, creds)
        except httpx.HTTPError as e:
            logger.error("opencost_fetch_failed", error=str(e)[:200])
            raise map_http_error(e, "allocation query") from e

        records = []
        for step in payload.get("data") or []:
            if not isinstance(step, dict):
                continue
            for name, allocation in step.items():
                if not isinstance(allocation, dict) or name == "__idle__":
                    continue
                records.append(RawCostData(provider="KUBERNETES", data={"name": name, **allocation}))

        logger.info("opencost_allocations_fetched", records=len(records))
        return records

    @opencost_retry
    async def _fetch_allocations(self, params: CostQueryParams, creds: KubernetesCredentials) -> Dict[str, Any]:
        end_date = params.end_date if params.end_date > params.start_date else params.start_date + timedelta(days=1)
        query = {
            "window": f"{_rfc3339(params.start_date)},{_rfc3339(end_date)}",
            "aggregate": get_settings().OPENCOST_AGGREGATE,
            "step": "1d" if params.granularity == Granularity.DAILY else "30d",
            "accumulate": "false",
        }
        namespaces = params.filters.get("namespace")
        if namespaces:
            query["filter"] = "namespace:" + ",".join(f'"{ns}"' for ns in sorted(namespaces))

        async with self._client(creds) as client:
            response = await client.get("/allocation/compute", params=query)
            response.raise_for_status()
            return response.json()

    def _normalize_record(self, data: Dict[str, Any]) -> FocusCostItem:
        window = data.get("window") or {}
        period_start, period_end = parse_period(
            window.get("start") or data.get("start"),
            window.get("end") or data.get("end"),
        )
        properties = data.get("properties") or {}
        name = optional_str(data.get("name")) or "unallocated"
        namespace = optional_str(properties.get("namespace"))
        total = to_decimal(data.get("totalCost"))

        labels = properties.get("labels") or {}
        tags = {
            str(key).removeprefix(OPENCOST_LABEL_PREFIX): str(value)
            for key, value in labels.items()
            if value not in (None, "")
        }

        return FocusCostItem(
            billing_period_start=period_start,
            billing_period_end=period_end,
            charge_type="Usage",
            billed_cost=total,
            effective_cost=total,
            service_category="Containers",
            service_name="Kubernetes",
            region_id=optional_str(properties.get("region")),
            availability_zone=optional_str(properties.get("zone")),
            resource_id=f"{namespace}/{name}" if namespace and namespace != name else name,
            resource_name=name,
            resource_type=get_settings().OPENCOST_AGGREGATE,
            usage_quantity=optional_decimal(data.get("cpuCoreHours")),
            usage_unit="CPU core-hours",
            provider_name=self.provider.value,
            publisher_name="OpenCost",
            sub_account_id=optional_str(properties.get("cluster")),
            sub_account_name=optional_str(properties.get("cluster")),
            tags=tags,
        )

    async def _verify_live(self, credentials: KubernetesCredentials) -> bool:
        async with self._client(credentials) as client:
            response = await client.get("/version")
        return response.status_code == 200
