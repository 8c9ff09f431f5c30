"""
AWS Cost Adapter (Native Async)

Fetches daily costs from Cost Explorer via aioboto3, grouped by SERVICE and
RECORD_TYPE, and reshapes each group into a CUR-shaped record so the FOCUS
mapping reads the same columns as a Cost & Usage Report export.

Security:
- Long-lived keys are only used to call STS when a roleArn is configured
- Temporary credentials are never cached across jobs
"""

from datetime import timedelta
from decimal import Decimal
from functools import wraps
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import aioboto3
import structlog
import tenacity
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from app.schemas.focus import (
    ChargeCategory,
    CloudResource,
    CostQueryParams,
    FocusCostItem,
    ProviderRecommendation,
    RawCostData,
    UNKNOWN_SERVICE,
    get_service_category,
)
from app.schemas.ingestion import AWSCredentials
from app.shared.adapters.base import (
    CloudAdapter,
    RecommendationProvider,
    ResourceLister,
    extract_prefixed_tags,
    gather_settled,
    log_retry_attempt,
    optional_decimal,
    optional_str,
    parse_period,
    to_decimal,
)
from app.shared.adapters.rate_limiter import RateLimiter
from app.shared.core.config import get_settings
from app.shared.core.constants import AWS_COST_EXPLORER_REGION, AWS_SUPPORTED_REGIONS, CloudProvider
from app.shared.core.exceptions import (
    AdapterError,
    ConfigurationError,
    ProviderAuthError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)

logger = structlog.get_logger()

# Socket timeouts for all AWS API calls
BOTO_CONFIG = BotoConfig(
    read_timeout=30,
    connect_timeout=10,
    retries={"max_attempts": 3, "mode": "adaptive"}
)

STS_CONFIG = BotoConfig(
    read_timeout=10,
    connect_timeout=5,
    retries={"max_attempts": 2}
)

# Safety limit against runaway pagination (300 pages = years of daily data)
MAX_COST_EXPLORER_PAGES = 300

CUR_TAG_PREFIX = "resourceTags/user:"

AUTH_ERROR_CODES = frozenset({
    "AccessDenied",
    "AccessDeniedException",
    "UnrecognizedClientException",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "ExpiredTokenException",
    "OptInRequired",
    "AuthFailure",
})

THROTTLE_ERROR_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "LimitExceededException",
    "RequestLimitExceeded",
})

TRANSIENT_NETWORK_ERRORS = (ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError)

# Maps boto3 CamelCase temporary credentials to client kwargs
AWS_CREDENTIAL_MAPPING = {
    "AccessKeyId": "aws_access_key_id",
    "SecretAccessKey": "aws_secret_access_key",
    "SessionToken": "aws_session_token",
}


def with_aws_retry(func):
    """
    Exponential backoff retry decorator for AWS API calls.
    Targets transient network failures (ConnectTimeout, EndpointConnectionError).
    """
    retry_config = {
        "retry": tenacity.retry_if_exception_type(TRANSIENT_NETWORK_ERRORS),
        "wait": tenacity.wait_exponential(multiplier=1, min=2, max=10),
        "stop": tenacity.stop_after_attempt(4),
        "before_sleep": log_retry_attempt("aws_retrying", "debug"),
        "reraise": True,
    }

    @tenacity.retry(**retry_config)
    @wraps(func)
    async def wrapper(*args, **kwargs):
        return await func(*args, **kwargs)
    return wrapper


def map_client_error(e: ClientError, operation: str) -> Exception:
    """Translate a botocore ClientError into a structured adapter error by error code."""
    error = e.response.get("Error", {})
    code = error.get("Code", "Unknown")
    message = f"AWS {operation} failed: {error.get('Message', code)}"

    if code in AUTH_ERROR_CODES:
        return ProviderAuthError(message, code=code)
    if code in THROTTLE_ERROR_CODES:
        headers = e.response.get("ResponseMetadata", {}).get("HTTPHeaders", {})
        retry_after = headers.get("retry-after")
        return ProviderRateLimitError(
            message,
            code=code,
            retry_after=float(retry_after) if retry_after and str(retry_after).isdigit() else None,
        )
    if code == "ValidationException":
        return ConfigurationError(message, code=code)
    return AdapterError(message, code=code)


def build_ce_filter(filters: Mapping[str, set]) -> Optional[Dict[str, Any]]:
    """
    Convert {"REGION": {...}, "tag:team": {...}} into a Cost Explorer Expression.
    Keys prefixed with 'tag:' become tag filters, the rest are dimensions.
    """
    expressions = []
    for key, values in sorted(filters.items()):
        if not values:
            continue
        if key.startswith("tag:"):
            expressions.append({"Tags": {"Key": key[4:], "Values": sorted(values)}})
        else:
            expressions.append({"Dimensions": {"Key": key.upper(), "Values": sorted(values)}})

    if not expressions:
        return None
    if len(expressions) == 1:
        return expressions[0]
    return {"And": expressions}


class AWSAdapter(CloudAdapter, ResourceLister, RecommendationProvider):
    """AWS adapter backed by Cost Explorer, STS and Compute Optimizer."""

    provider = CloudProvider.AWS
    charge_category_map = MappingProxyType({
        "Usage": ChargeCategory.USAGE,
        "DiscountedUsage": ChargeCategory.USAGE,
        "SavingsPlanCoveredUsage": ChargeCategory.USAGE,
        "Tax": ChargeCategory.TAX,
        "Credit": ChargeCategory.CREDIT,
        "SavingsPlanNegation": ChargeCategory.CREDIT,
        "Fee": ChargeCategory.PURCHASE,
        "RIFee": ChargeCategory.PURCHASE,
        "SavingsPlanRecurringFee": ChargeCategory.PURCHASE,
        "SavingsPlanUpfrontFee": ChargeCategory.PURCHASE,
        "Refund": ChargeCategory.ADJUSTMENT,
        "Support": ChargeCategory.SUPPORT,
    })

    def __init__(self, rate_limiter: Optional[RateLimiter] = None):
        self.settings = get_settings()
        self.session = aioboto3.Session()
        self.rate_limiter = rate_limiter or RateLimiter(self.settings.AWS_CE_REQUESTS_PER_SECOND)

    def _client(self, service: str, credentials: Dict[str, str], region: Optional[str] = None, config: BotoConfig = BOTO_CONFIG):
        kwargs: Dict[str, Any] = {
            "region_name": region or AWS_COST_EXPLORER_REGION,
            "config": config,
            **credentials,
        }
        if self.settings.AWS_ENDPOINT_URL:
            kwargs["endpoint_url"] = self.settings.AWS_ENDPOINT_URL
        return self.session.client(service, **kwargs)

    @with_aws_retry
    async def _resolve_credentials(self, creds: AWSCredentials) -> Dict[str, str]:
        """Static keys, or temporary credentials via STS AssumeRole when roleArn is set."""
        base = {
            "aws_access_key_id": creds.access_key_id,
            "aws_secret_access_key": creds.secret_access_key,
        }
        if not creds.role_arn:
            return base

        request: Dict[str, Any] = {
            "RoleArn": creds.role_arn,
            "RoleSessionName": "NimbusCostIngestion",
            "DurationSeconds": 3600,
        }
        if creds.external_id:
            request["ExternalId"] = creds.external_id

        async with self._client("sts", base, config=STS_CONFIG) as sts_client:
            try:
                response = await sts_client.assume_role(**request)
            except ClientError as e:
                logger.error("sts_assume_role_failed", error_code=e.response.get("Error", {}).get("Code"))
                raise map_client_error(e, "STS AssumeRole") from e

        temporary = response["Credentials"]
        logger.info("sts_assume_role_success", expires_at=str(temporary.get("Expiration")))
        return {dst: temporary[src] for src, dst in AWS_CREDENTIAL_MAPPING.items()}

    async def get_costs(self, params: CostQueryParams, credentials: Mapping[str, Any]) -> List[RawCostData]:
        creds = self.parse_credentials(credentials)
        try:
            client_credentials = await self._resolve_credentials(creds)
            return await self._fetch_cost_pages(params, client_credentials)
        except TRANSIENT_NETWORK_ERRORS as e:
            raise ProviderTimeoutError(f"AWS Cost Explorer unreachable: {e}") from e

    @with_aws_retry
    async def _fetch_cost_pages(self, params: CostQueryParams, client_credentials: Dict[str, str]) -> List[RawCostData]:
        # Cost Explorer End is exclusive and must be after Start
        end_date = params.end_date if params.end_date > params.start_date else params.start_date + timedelta(days=1)
        request: Dict[str, Any] = {
            "TimePeriod": {
                "Start": params.start_date.isoformat(),
                "End": end_date.isoformat(),
            },
            "Granularity": params.granularity.value,
            "Metrics": ["BlendedCost", "UnblendedCost", "UsageQuantity"],
            "GroupBy": [
                {"Type": "DIMENSION", "Key": "SERVICE"},
                {"Type": "DIMENSION", "Key": "RECORD_TYPE"},
            ],
        }
        ce_filter = build_ce_filter(params.filters)
        if ce_filter:
            request["Filter"] = ce_filter

        records: List[RawCostData] = []
        async with self._client("ce", client_credentials) as client:
            pages_fetched = 0
            while pages_fetched < MAX_COST_EXPLORER_PAGES:
                await self.rate_limiter.acquire()
                try:
                    response = await client.get_cost_and_usage(**request)
                except ClientError as e:
                    code = e.response.get("Error", {}).get("Code")
                    if code == "DataUnavailableException":
                        logger.info("aws_cost_data_unavailable", start=request["TimePeriod"]["Start"])
                        return []
                    logger.error("aws_cost_fetch_failed", error_code=code)
                    raise map_client_error(e, "Cost Explorer GetCostAndUsage") from e

                for result in response.get("ResultsByTime", []):
                    records.extend(self._reshape_result(result))

                pages_fetched += 1
                if response.get("NextPageToken"):
                    request["NextPageToken"] = response["NextPageToken"]
                else:
                    break

        logger.info("aws_costs_fetched", records=len(records), pages=pages_fetched)
        return records

    @staticmethod
    def _reshape_result(result: Dict[str, Any]) -> List[RawCostData]:
        period = result.get("TimePeriod", {})
        reshaped = []
        for group in result.get("Groups", []):
            keys = group.get("Keys", [])
            metrics = group.get("Metrics", {})
            unblended = metrics.get("UnblendedCost", {})
            usage = metrics.get("UsageQuantity", {})
            reshaped.append(RawCostData(provider="AWS", data={
                "bill/BillingPeriodStartDate": period.get("Start"),
                "bill/BillingPeriodEndDate": period.get("End"),
                "bill/BillingEntity": "AWS",
                "lineItem/ProductCode": keys[0] if keys else None,
                "lineItem/LineItemType": keys[1] if len(keys) > 1 else None,
                "lineItem/BlendedCost": metrics.get("BlendedCost", {}).get("Amount"),
                "lineItem/UnblendedCost": unblended.get("Amount"),
                "lineItem/CurrencyCode": unblended.get("Unit"),
                "lineItem/UsageAmount": usage.get("Amount"),
                "pricing/unit": usage.get("Unit"),
            }))
        return reshaped

    def _normalize_record(self, data: Dict[str, Any]) -> FocusCostItem:
        period_start, period_end = parse_period(
            data.get("bill/BillingPeriodStartDate"),
            data.get("bill/BillingPeriodEndDate"),
        )
        line_item_type = optional_str(data.get("lineItem/LineItemType"))
        unblended = to_decimal(data.get("lineItem/UnblendedCost"))
        billed = to_decimal(data.get("lineItem/BlendedCost"), default=unblended)
        service_name = optional_str(data.get("lineItem/ProductCode")) or optional_str(data.get("product/ProductName")) or UNKNOWN_SERVICE

        commitment_id = optional_str(data.get("reservation/ReservationARN"))
        commitment_type = "Reservation" if commitment_id else None
        if not commitment_id:
            commitment_id = optional_str(data.get("savingsPlan/SavingsPlanARN"))
            commitment_type = "Savings Plan" if commitment_id else None

        return FocusCostItem(
            billing_period_start=period_start,
            billing_period_end=period_end,
            charge_category=self.map_charge_category(line_item_type),
            charge_type=line_item_type or "Usage",
            billed_cost=billed,
            effective_cost=to_decimal(data.get("lineItem/UnblendedCost"), default=billed),
            list_cost=optional_decimal(data.get("lineItem/ListCost")),
            billing_currency=optional_str(data.get("lineItem/CurrencyCode")) or "USD",
            service_category=optional_str(data.get("product/productFamily")) or get_service_category(service_name),
            service_name=service_name,
            region_id=optional_str(data.get("product/region")),
            region_name=optional_str(data.get("product/regionDescription")),
            availability_zone=optional_str(data.get("lineItem/AvailabilityZone")),
            resource_id=optional_str(data.get("lineItem/ResourceId")),
            resource_type=optional_str(data.get("product/instanceType")),
            pricing_category=optional_str(data.get("pricing/term")),
            pricing_unit=optional_str(data.get("pricing/unit")),
            usage_quantity=optional_decimal(data.get("lineItem/UsageAmount")),
            usage_unit=optional_str(data.get("pricing/unit")),
            commitment_discount_id=commitment_id,
            commitment_discount_type=commitment_type,
            provider_name=self.provider.value,
            publisher_name=optional_str(data.get("bill/BillingEntity")),
            sub_account_id=optional_str(data.get("lineItem/UsageAccountId")),
            sub_account_name=optional_str(data.get("lineItem/UsageAccountName")),
            tags=extract_prefixed_tags(data, CUR_TAG_PREFIX),
        )

    async def _verify_live(self, credentials: AWSCredentials) -> bool:
        client_credentials = await self._resolve_credentials(credentials)
        async with self._client("sts", client_credentials, config=STS_CONFIG) as sts_client:
            identity = await sts_client.get_caller_identity()
        logger.info("aws_identity_verified", account=identity.get("Account"))
        return bool(identity.get("Account"))

    # --- Resource listing ---

    async def list_resources(
        self,
        credentials: Mapping[str, Any],
        regions: Optional[List[str]] = None,
        resource_types: Optional[List[str]] = None,
    ) -> List[CloudResource]:
        creds = self.parse_credentials(credentials)
        target_regions = regions or [creds.region or self.settings.AWS_DEFAULT_REGION]
        unsupported = [r for r in target_regions if r not in AWS_SUPPORTED_REGIONS]
        if unsupported:
            logger.warning("unsupported_aws_region_skip_scan", regions=unsupported)
        target_regions = [r for r in target_regions if r in AWS_SUPPORTED_REGIONS]

        client_credentials = await self._resolve_credentials(creds)
        return await gather_settled(
            *(self._list_region_resources(client_credentials, region, resource_types) for region in target_regions),
            source="aws_list_resources",
        )

    async def _list_region_resources(
        self,
        client_credentials: Dict[str, str],
        region: str,
        resource_types: Optional[List[str]],
    ) -> List[CloudResource]:
        request: Dict[str, Any] = {}
        if resource_types:
            request["ResourceTypeFilters"] = resource_types

        resources = []
        async with self._client("resourcegroupstaggingapi", client_credentials, region=region) as client:
            paginator = client.get_paginator("get_resources")
            try:
                async for page in paginator.paginate(**request):
                    for mapping in page.get("ResourceTagMappingList", []):
                        arn = mapping["ResourceARN"]
                        # arn:partition:service:region:account:resource
                        parts = arn.split(":", 5)
                        resource_part = parts[5] if len(parts) > 5 else arn
                        resource_kind = resource_part.split("/", 1)[0] if "/" in resource_part else resource_part.split(":", 1)[0]
                        resources.append(CloudResource(
                            resource_id=arn,
                            resource_name=resource_part.rsplit("/", 1)[-1],
                            resource_type=f"{parts[2]}:{resource_kind}" if len(parts) > 2 else "unknown",
                            region=region,
                            tags={t["Key"]: t["Value"] for t in mapping.get("Tags", [])},
                        ))
            except ClientError as e:
                raise map_client_error(e, "Tagging GetResources") from e
        return resources

    # --- Recommendations (all settle, keep successes) ---

    async def get_recommendations(self, credentials: Mapping[str, Any]) -> List[ProviderRecommendation]:
        creds = self.parse_credentials(credentials)
        client_credentials = await self._resolve_credentials(creds)
        return await gather_settled(
            self._reservation_recommendations(client_credentials),
            self._savings_plan_recommendations(client_credentials),
            self._compute_optimizer_recommendations(client_credentials, creds.region),
            source="aws_recommendations",
        )

    async def _reservation_recommendations(self, client_credentials: Dict[str, str]) -> List[ProviderRecommendation]:
        async with self._client("ce", client_credentials) as client:
            await self.rate_limiter.acquire()
            response = await client.get_reservation_purchase_recommendation(
                Service="Amazon Elastic Compute Cloud - Compute",
                LookbackPeriodInDays="THIRTY_DAYS",
                TermInYears="ONE_YEAR",
                PaymentOption="NO_UPFRONT",
            )

        recommendations = []
        for rec in response.get("Recommendations", []):
            summary = rec.get("RecommendationSummary", {})
            savings = to_decimal(summary.get("TotalEstimatedMonthlySavingsAmount"))
            if savings <= 0:
                continue
            recommendations.append(ProviderRecommendation(
                title="Purchase EC2 Reserved Instances",
                description=f"Reserved Instance purchase could save {savings} per month",
                category="RESERVED_INSTANCES",
                estimated_savings=savings,
                currency=summary.get("CurrencyCode") or "USD",
                severity=_severity_for(savings),
                source="aws_cost_explorer",
            ))
        return recommendations

    async def _savings_plan_recommendations(self, client_credentials: Dict[str, str]) -> List[ProviderRecommendation]:
        async with self._client("ce", client_credentials) as client:
            await self.rate_limiter.acquire()
            response = await client.get_savings_plans_purchase_recommendation(
                SavingsPlansType="COMPUTE_SP",
                TermInYears="ONE_YEAR",
                PaymentOption="NO_UPFRONT",
                LookbackPeriodInDays="THIRTY_DAYS",
            )

        summary = (
            response.get("SavingsPlansPurchaseRecommendation", {})
            .get("SavingsPlansPurchaseRecommendationSummary", {})
        )
        savings = to_decimal(summary.get("EstimatedMonthlySavingsAmount"))
        if savings <= 0:
            return []
        return [ProviderRecommendation(
            title="Purchase a Compute Savings Plan",
            description=f"Committing {summary.get('HourlyCommitmentToPurchase', '?')}/hour could save {savings} per month",
            category="SAVINGS_PLANS",
            estimated_savings=savings,
            currency=summary.get("CurrencyCode") or "USD",
            severity=_severity_for(savings),
            source="aws_cost_explorer",
        )]

    async def _compute_optimizer_recommendations(
        self,
        client_credentials: Dict[str, str],
        region: Optional[str],
    ) -> List[ProviderRecommendation]:
        async with self._client("compute-optimizer", client_credentials, region=region or self.settings.AWS_DEFAULT_REGION) as client:
            response = await client.get_ec2_instance_recommendations()

        recommendations = []
        for rec in response.get("instanceRecommendations", []):
            if rec.get("finding") not in ("OVER_PROVISIONED", "Overprovisioned"):
                continue
            options = rec.get("recommendationOptions") or [{}]
            opportunity = options[0].get("savingsOpportunity", {}).get("estimatedMonthlySavings", {})
            savings = to_decimal(opportunity.get("value"))
            recommendations.append(ProviderRecommendation(
                title=f"Rightsize {rec.get('instanceName') or rec.get('instanceArn')}",
                description=f"Instance {rec.get('currentInstanceType')} is over-provisioned",
                category="RIGHTSIZING",
                estimated_savings=savings,
                currency=opportunity.get("currency") or "USD",
                resource_ids=[rec["instanceArn"]] if rec.get("instanceArn") else [],
                severity=_severity_for(savings),
                source="aws_compute_optimizer",
            ))
        return recommendations


def _severity_for(monthly_savings: Decimal) -> str:
    if monthly_savings >= 1000:
        return "CRITICAL"
    if monthly_savings >= 250:
        return "HIGH"
    if monthly_savings >= 50:
        return "MEDIUM"
    return "LOW"
