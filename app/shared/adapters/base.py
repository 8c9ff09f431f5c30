"""
Cloud Adapter Contract

Standardizes the interface for:
- Cost Ingestion (raw fetch + FOCUS normalization)
- Credential Validation (shape check, optional live identity check)
- Optional capabilities (Resource Listing, Recommendations)
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

import structlog
import tenacity
from pydantic import BaseModel, ValidationError

from app.schemas.focus import (
    ChargeCategory,
    CloudResource,
    CostQueryParams,
    FocusCostItem,
    NormalizationReport,
    ProviderRecommendation,
    RawCostData,
)
from app.schemas.ingestion import CREDENTIAL_MODELS
from app.shared.core.constants import CloudProvider
from app.shared.core.exceptions import ConfigurationError, NormalizationError

logger = structlog.get_logger()

T = TypeVar("T")


class CloudAdapter(ABC):
    """
    Abstract Base Class for provider cost adapters.

    Adapters hold no per-account state. Credentials are passed per call, so a
    single instance is shared across concurrent jobs.
    """

    provider: CloudProvider
    charge_category_map: Mapping[str, ChargeCategory] = {}

    @abstractmethod
    async def get_costs(
        self,
        params: CostQueryParams,
        credentials: Mapping[str, Any],
    ) -> List[RawCostData]:
        """
        Fetch provider-native billing records for the window.
        Returns [] when the provider has no data for the range.
        """
        pass

    @abstractmethod
    def _normalize_record(self, data: Dict[str, Any]) -> FocusCostItem:
        """Map one provider-native record to FOCUS. Missing fields take defaults."""
        pass

    @abstractmethod
    async def _verify_live(self, credentials: BaseModel) -> bool:
        """Cheap identity call against the provider."""
        pass

    def normalize_to_focus(self, raw: Sequence[RawCostData]) -> List[FocusCostItem]:
        return self.normalize_with_report(raw).items

    def normalize_with_report(self, raw: Sequence[RawCostData]) -> NormalizationReport:
        """
        Normalize a chunk of raw records.

        Records with an unusable envelope (wrong provider, non-mapping data, no
        billing period) are skipped and counted. Raises NormalizationError only
        when every record in a non-empty chunk is unusable.
        """
        report = NormalizationReport()
        for record in raw:
            if record.provider.upper() != self.provider.value or not isinstance(record.data, dict):
                report.skipped += 1
                continue
            try:
                report.items.append(self._normalize_record(record.data))
            except (ValueError, TypeError, KeyError, ValidationError) as e:
                report.skipped += 1
                logger.warning(
                    "focus_record_skipped",
                    provider=self.provider.value,
                    error=str(e)[:200],
                )

        if raw and not report.items:
            raise NormalizationError(
                f"No usable {self.provider.value} records in chunk of {len(raw)}",
                skipped=report.skipped,
                details={"provider": self.provider.value, "records": len(raw)},
            )
        return report

    def map_charge_category(self, native: Optional[str]) -> ChargeCategory:
        """Unrecognized provider charge types map to USAGE."""
        if not native:
            return ChargeCategory.USAGE
        return self.charge_category_map.get(str(native).strip(), ChargeCategory.USAGE)

    def parse_credentials(self, credentials: Mapping[str, Any]) -> BaseModel:
        """Validate the credential shape for this provider or raise ConfigurationError."""
        model = CREDENTIAL_MODELS[self.provider]
        try:
            return model.model_validate(dict(credentials or {}))
        except ValidationError as e:
            missing = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
            raise ConfigurationError(
                f"Invalid {self.provider.value} credentials",
                code="invalid_credentials",
                details={"fields": missing},
            ) from e

    async def validate_credentials(self, credentials: Mapping[str, Any], live: bool = False) -> bool:
        """
        Shape check against the provider's credential model.
        With live=True also confirms the identity with the provider. Never raises.
        """
        try:
            parsed = self.parse_credentials(credentials)
        except ConfigurationError:
            return False

        if not live:
            return True

        try:
            return await self._verify_live(parsed)
        except Exception as e:
            logger.warning("credential_live_check_failed", provider=self.provider.value, error=str(e)[:200])
            return False


# --- Optional capabilities ---

class ResourceLister(ABC):
    @abstractmethod
    async def list_resources(
        self,
        credentials: Mapping[str, Any],
        regions: Optional[List[str]] = None,
        resource_types: Optional[List[str]] = None,
    ) -> List[CloudResource]:
        pass


class RecommendationProvider(ABC):
    @abstractmethod
    async def get_recommendations(self, credentials: Mapping[str, Any]) -> List[ProviderRecommendation]:
        pass


def supports(adapter: CloudAdapter, capability: type) -> bool:
    """Absent capability means unsupported for that provider, not an error."""
    return isinstance(adapter, capability)


async def gather_settled(*aws: Awaitable[List[T]], source: str) -> List[T]:
    """
    Run independent sub-fetches concurrently.
    Keeps the successes, logs the failures.
    """
    results = await asyncio.gather(*aws, return_exceptions=True)
    merged: List[T] = []
    for index, result in enumerate(results):
        if isinstance(result, BaseException):
            if isinstance(result, asyncio.CancelledError):
                raise result
            logger.warning("sub_fetch_failed", source=source, index=index, error=str(result)[:200])
            continue
        merged.extend(result)
    return merged


def log_retry_attempt(event: str, level: str = "warning") -> Callable[[tenacity.RetryCallState], None]:
    """tenacity before_sleep hook that logs the attempt through structlog."""
    def before_sleep(retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        getattr(logger, level)(
            event,
            attempt=retry_state.attempt_number,
            wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(exc)[:200] if exc else None,
            function=getattr(retry_state.fn, "__name__", "unknown"),
        )
    return before_sleep


# --- Field helpers shared by the provider mappings ---

def to_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    if value is None or value == "":
        return default
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default
    if not result.is_finite():
        return default
    return result


def optional_decimal(value: Any) -> Optional[Decimal]:
    """Zero and unparsable quantities collapse to None."""
    result = to_decimal(value)
    return result if result != 0 else None


def optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_timestamp(value: Any) -> datetime:
    """
    Accepts datetimes, dates, ISO strings, YYYYMMDD and YYYYMM.
    Naive values are taken as UTC. Raises ValueError when nothing parses.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if value is None:
        raise ValueError("billing period is missing")

    text = str(value).strip()
    if text.isdigit() and len(text) == 8:
        return datetime.strptime(text, "%Y%m%d").replace(tzinfo=timezone.utc)
    if text.isdigit() and len(text) == 6:
        return datetime.strptime(text, "%Y%m").replace(tzinfo=timezone.utc)

    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_period(start: Any, end: Any) -> tuple[datetime, datetime]:
    """Missing or inverted end defaults to one day after start."""
    period_start = parse_timestamp(start)
    try:
        period_end = parse_timestamp(end) if end not in (None, "") else None
    except ValueError:
        period_end = None
    if period_end is None or period_end <= period_start:
        period_end = period_start + timedelta(days=1)
    return period_start, period_end


def month_window(value: Any) -> tuple[datetime, datetime]:
    start = parse_timestamp(value).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        return start, start.replace(year=start.year + 1, month=1)
    return start, start.replace(month=start.month + 1)


def extract_prefixed_tags(data: Mapping[str, Any], prefix: str) -> Dict[str, str]:
    """Strip the provider tag-key prefix. Empty values are dropped."""
    tags: Dict[str, str] = {}
    for key, value in data.items():
        if key.startswith(prefix) and value not in (None, ""):
            tag_key = key[len(prefix):]
            if tag_key:
                tags[tag_key] = str(value)
    return tags


def coerce_tags(value: Any) -> Dict[str, str]:
    """Tags arrive as a dict, a JSON object string, or a list of key/value pairs."""
    if value in (None, ""):
        return {}
    if isinstance(value, str):
        text = value.strip()
        if not text.startswith(("{", "[")):
            text = "{" + text + "}"
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            return {}
    if isinstance(value, list):
        pairs = {}
        for entry in value:
            if isinstance(entry, dict) and "key" in entry:
                pairs[str(entry["key"])] = entry.get("value")
        value = pairs
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items() if v is not None}
