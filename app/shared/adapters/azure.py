"""
Azure Cost Adapter using the official Azure SDK (async).

Cost Management Query API rows are keyed by the cost-export column names
(CostInBillingCurrency, MeterCategory, ...) so the FOCUS mapping is shared
between live queries and exported CSVs.
"""

from datetime import datetime, time, timedelta, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import structlog
import tenacity
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.core.rest import HttpRequest
from azure.identity.aio import ClientSecretCredential
from azure.mgmt.costmanagement.aio import CostManagementClient
from azure.mgmt.costmanagement.models import (
    QueryAggregation,
    QueryComparisonExpression,
    QueryDataset,
    QueryDefinition,
    QueryFilter,
    QueryGrouping,
    QueryTimePeriod,
)
from azure.mgmt.resource.resources.aio import ResourceManagementClient

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
from app.schemas.ingestion import AzureCredentials
from app.shared.adapters.base import (
    CloudAdapter,
    ResourceLister,
    coerce_tags,
    log_retry_attempt,
    optional_decimal,
    optional_str,
    parse_period,
    parse_timestamp,
    to_decimal,
)
from app.shared.core.constants import CloudProvider
from app.shared.core.exceptions import (
    AdapterError,
    ConfigurationError,
    ProviderAuthError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)

logger = structlog.get_logger()

# Retry decorator for Azure transient failures
azure_retry = tenacity.retry(
    retry=tenacity.retry_if_exception_type((ServiceRequestError, ServiceResponseError)),
    wait=tenacity.wait_exponential(multiplier=1, min=2, max=10),
    stop=tenacity.stop_after_attempt(3),
    before_sleep=log_retry_attempt("azure_retrying"),
    reraise=True,
)

# Each page holds up to 5000 rows
MAX_QUERY_PAGES = 50

# Query API column name -> cost export column name
QUERY_COLUMN_MAP = {
    "Cost": "CostInBillingCurrency",
    "PreTaxCost": "CostInBillingCurrency",
    "CostUSD": "CostInUsd",
    "UsageQuantity": "Quantity",
    "UsageDate": "Date",
    "BillingMonth": "BillingPeriodStartDate",
    "Currency": "BillingCurrency",
    "ChargeType": "ChargeType",
    "MeterCategory": "MeterCategory",
    "MeterSubcategory": "MeterSubCategory",
    "ResourceLocation": "ResourceLocation",
    "ResourceId": "ResourceId",
    "ResourceType": "ResourceType",
    "PricingModel": "PricingModel",
    "PublisherType": "PublisherType",
}

RETRY_AFTER_HEADERS = (
    "x-ms-ratelimit-microsoft.costmanagement-entity-retry-after",
    "x-ms-ratelimit-microsoft.costmanagement-tenant-retry-after",
    "Retry-After",
)


def map_azure_error(e: Exception, operation: str) -> Exception:
    """Translate Azure SDK errors into structured adapter errors by status code."""
    if isinstance(e, ClientAuthenticationError):
        return ProviderAuthError(f"Azure {operation} authentication failed: {e.message}", code="ClientAuthenticationError")

    if isinstance(e, HttpResponseError):
        status = e.status_code or 0
        code = getattr(e.error, "code", None) or str(status)
        message = f"Azure {operation} failed: {e.message}"
        if status in (401, 403):
            return ProviderAuthError(message, code=code)
        if status == 429:
            retry_after = None
            if e.response is not None:
                for header in RETRY_AFTER_HEADERS:
                    value = e.response.headers.get(header)
                    if value and str(value).isdigit():
                        retry_after = float(value)
                        break
            return ProviderRateLimitError(message, code=code, retry_after=retry_after)
        if status == 400:
            return ConfigurationError(message, code=code)
        return AdapterError(message, code=code)

    if isinstance(e, (ServiceRequestError, ServiceResponseError)):
        return ProviderTimeoutError(f"Azure {operation} unreachable: {e}")

    return AdapterError(f"Azure {operation} failed: {e}")


def build_query_filter(filters: Mapping[str, set]) -> Optional[QueryFilter]:
    expressions = []
    for key, values in sorted(filters.items()):
        if not values:
            continue
        if key.startswith("tag:"):
            expressions.append(QueryFilter(tags=QueryComparisonExpression(name=key[4:], operator="In", values=sorted(values))))
        else:
            expressions.append(QueryFilter(dimensions=QueryComparisonExpression(name=key, operator="In", values=sorted(values))))

    if not expressions:
        return None
    if len(expressions) == 1:
        return expressions[0]
    return QueryFilter(and_property=expressions)


class AzureAdapter(CloudAdapter, ResourceLister):
    """
    Azure Cost Management Adapter.
    Clients are opened per call and closed before returning.
    """

    provider = CloudProvider.AZURE
    charge_category_map = MappingProxyType({
        "Usage": ChargeCategory.USAGE,
        "UnusedReservation": ChargeCategory.USAGE,
        "UnusedSavingsPlan": ChargeCategory.USAGE,
        "Purchase": ChargeCategory.PURCHASE,
        "Tax": ChargeCategory.TAX,
        "Credit": ChargeCategory.CREDIT,
        "Adjustment": ChargeCategory.ADJUSTMENT,
        "Refund": ChargeCategory.ADJUSTMENT,
    })

    @staticmethod
    def _credential(creds: AzureCredentials) -> ClientSecretCredential:
        return ClientSecretCredential(
            tenant_id=creds.tenant_id,
            client_id=creds.client_id,
            client_secret=creds.client_secret,
        )

    async def get_costs(self, params: CostQueryParams, credentials: Mapping[str, Any]) -> List[RawCostData]:
        creds = self.parse_credentials(credentials)
        try:
            return await self._query_usage(params, creds)
        except (ClientAuthenticationError, HttpResponseError, ServiceRequestError, ServiceResponseError) as e:
            logger.error("azure_cost_fetch_failed", error=str(e)[:200], subscription_id=creds.subscription_id)
            raise map_azure_error(e, "Cost Management query") from e

    @azure_retry
    async def _query_usage(self, params: CostQueryParams, creds: AzureCredentials) -> List[RawCostData]:
        scope = f"/subscriptions/{creds.subscription_id}"
        end_date = params.end_date if params.end_date > params.start_date else params.start_date + timedelta(days=1)

        query_definition = QueryDefinition(
            type="ActualCost",
            timeframe="Custom",
            time_period=QueryTimePeriod(
                from_property=datetime.combine(params.start_date, time.min, tzinfo=timezone.utc),
                to=datetime.combine(end_date, time.min, tzinfo=timezone.utc),
            ),
            dataset=QueryDataset(
                granularity="Daily" if params.granularity == Granularity.DAILY else "Monthly",
                aggregation={
                    "totalCost": QueryAggregation(name="Cost", function="Sum"),
                    "totalQuantity": QueryAggregation(name="UsageQuantity", function="Sum"),
                },
                grouping=[
                    QueryGrouping(type="Dimension", name="ChargeType"),
                    QueryGrouping(type="Dimension", name="MeterCategory"),
                    QueryGrouping(type="Dimension", name="MeterSubcategory"),
                    QueryGrouping(type="Dimension", name="ResourceLocation"),
                ],
                filter=build_query_filter(params.filters),
            ),
        )

        async with self._credential(creds) as credential:
            async with CostManagementClient(credential=credential) as client:
                response = await client.query.usage(scope=scope, parameters=query_definition)
                if not response or not response.rows:
                    return []

                columns = [QUERY_COLUMN_MAP.get(col.name, col.name) for col in response.columns]
                rows = list(response.rows)
                next_link = response.next_link
                pages = 1
                while next_link:
                    if pages >= MAX_QUERY_PAGES:
                        raise AdapterError(
                            f"Azure cost query exceeded {MAX_QUERY_PAGES} result pages; narrow the window",
                            code="azure_query_too_large",
                        )
                    page = await self._fetch_next_page(client, next_link, query_definition)
                    rows.extend(page.get("rows") or [])
                    next_link = page.get("nextLink")
                    pages += 1

        records = []
        for row in rows:
            data = dict(zip(columns, row))
            data["SubscriptionId"] = creds.subscription_id
            records.append(RawCostData(provider="AZURE", data=data))

        logger.info("azure_costs_fetched", records=len(records), pages=pages)
        return records

    @staticmethod
    async def _fetch_next_page(
        client: CostManagementClient, next_link: str, query_definition: QueryDefinition
    ) -> Dict[str, Any]:
        """POST the same query to the skiptoken link and return the page properties."""
        request = HttpRequest("POST", next_link, json=query_definition.serialize())
        response = await client.send_request(request)
        response.raise_for_status()
        return response.json().get("properties") or {}

    def _normalize_record(self, data: Dict[str, Any]) -> FocusCostItem:
        if data.get("Date") not in (None, ""):
            day = parse_timestamp(data["Date"])
            period_start, period_end = day, day + timedelta(days=1)
        else:
            period_start, period_end = parse_period(
                data.get("BillingPeriodStartDate"),
                data.get("BillingPeriodEndDate"),
            )

        charge_type = optional_str(data.get("ChargeType"))
        billed = to_decimal(data.get("CostInBillingCurrency", data.get("Cost")))
        quantity = optional_decimal(data.get("Quantity"))
        effective_price = optional_decimal(data.get("EffectivePrice"))
        effective = effective_price * quantity if effective_price is not None and quantity is not None else billed

        meter_category = optional_str(data.get("MeterCategory"))
        service_name = optional_str(data.get("MeterSubCategory")) or meter_category or optional_str(data.get("ServiceName")) or UNKNOWN_SERVICE

        return FocusCostItem(
            billing_period_start=period_start,
            billing_period_end=period_end,
            charge_category=self.map_charge_category(charge_type),
            charge_type=charge_type or "Usage",
            billed_cost=billed,
            effective_cost=effective,
            list_cost=optional_decimal(data.get("PayGPrice")),
            billing_currency=optional_str(data.get("BillingCurrency")) or "USD",
            service_category=meter_category or get_service_category(service_name),
            service_name=service_name,
            region_id=optional_str(data.get("ResourceLocation")),
            region_name=optional_str(data.get("ResourceLocationNormalized")) or optional_str(data.get("ResourceLocation")),
            resource_id=optional_str(data.get("ResourceId")),
            resource_name=optional_str(data.get("ResourceName")),
            resource_type=optional_str(data.get("ResourceType")),
            pricing_category=optional_str(data.get("PricingModel")),
            usage_quantity=quantity,
            usage_unit=optional_str(data.get("UnitOfMeasure")),
            commitment_discount_id=optional_str(data.get("ReservationId")) or optional_str(data.get("BenefitId")),
            commitment_discount_name=optional_str(data.get("ReservationName")) or optional_str(data.get("BenefitName")),
            provider_name=self.provider.value,
            publisher_name=optional_str(data.get("PublisherName")),
            invoice_section_id=optional_str(data.get("InvoiceSectionId")),
            sub_account_id=optional_str(data.get("SubscriptionId")),
            sub_account_name=optional_str(data.get("SubscriptionName")),
            tags=coerce_tags(data.get("Tags")),
        )

    async def _verify_live(self, credentials: AzureCredentials) -> bool:
        async with self._credential(credentials) as credential:
            async with ResourceManagementClient(credential=credential, subscription_id=credentials.subscription_id) as client:
                async for _ in client.resource_groups.list():
                    break
        return True

    async def list_resources(
        self,
        credentials: Mapping[str, Any],
        regions: Optional[List[str]] = None,
        resource_types: Optional[List[str]] = None,
    ) -> List[CloudResource]:
        creds = self.parse_credentials(credentials)
        wanted_regions = {r.lower() for r in regions or []}
        wanted_types = [t.lower() for t in resource_types or []]

        resources = []
        try:
            async with self._credential(creds) as credential:
                async with ResourceManagementClient(credential=credential, subscription_id=creds.subscription_id) as client:
                    async for resource in client.resources.list():
                        if wanted_types and not any(t in resource.type.lower() for t in wanted_types):
                            continue
                        if wanted_regions and (resource.location or "").lower() not in wanted_regions:
                            continue
                        resources.append(CloudResource(
                            resource_id=resource.id,
                            resource_name=resource.name,
                            resource_type=resource.type,
                            region=resource.location,
                            tags=dict(resource.tags or {}),
                        ))
        except (ClientAuthenticationError, HttpResponseError, ServiceRequestError, ServiceResponseError) as e:
            raise map_azure_error(e, "resource listing") from e
        return resources
