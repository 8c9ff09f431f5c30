"""
FOCUS Cost Schemas - Normalization Layer

FinOps Open Cost & Usage Specification aligned line items. Every provider
adapter normalizes its native billing records into FocusCostItem.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChargeCategory(str, Enum):
    """Closed set of FOCUS charge categories."""
    USAGE = "USAGE"
    PURCHASE = "PURCHASE"
    TAX = "TAX"
    CREDIT = "CREDIT"
    ADJUSTMENT = "ADJUSTMENT"
    SUPPORT = "SUPPORT"


class Granularity(str, Enum):
    DAILY = "DAILY"
    MONTHLY = "MONTHLY"


# Standardizes service names across providers
SERVICE_CATEGORIES: Dict[str, str] = {
    # AWS
    "Amazon EC2": "Compute",
    "Amazon Elastic Compute Cloud - Compute": "Compute",
    "Amazon S3": "Storage",
    "Amazon Simple Storage Service": "Storage",
    "Amazon RDS": "Database",
    "Amazon Relational Database Service": "Database",
    "Amazon Lambda": "Compute",
    "AWS Lambda": "Compute",
    "Amazon EKS": "Containers",
    "Amazon Elastic Container Service for Kubernetes": "Containers",
    "Amazon CloudFront": "Networking",
    "Amazon DynamoDB": "Database",
    "Amazon DynamoDB Accelerator (DAX)": "Database",
    "Amazon ElastiCache": "Database",
    "Amazon Athena": "Analytics",
    "Amazon Redshift": "Analytics",

    # Azure
    "Virtual Machines": "Compute",
    "Storage Accounts": "Storage",
    "Storage": "Storage",
    "SQL Database": "Database",
    "Functions": "Compute",
    "Kubernetes Service": "Containers",
    "Azure Kubernetes Service": "Containers",
    "CDN": "Networking",
    "Bandwidth": "Networking",
    "Cosmos DB": "Database",

    # GCP
    "Compute Engine": "Compute",
    "Cloud Storage": "Storage",
    "Cloud SQL": "Database",
    "Cloud Functions": "Compute",
    "Kubernetes Engine": "Containers",
    "Cloud CDN": "Networking",
    "BigQuery": "Analytics",

    # OpenCost
    "Kubernetes": "Containers",
}

DEFAULT_SERVICE_CATEGORY = "Other"
UNKNOWN_SERVICE = "Unknown"


def get_service_category(service_name: Optional[str]) -> str:
    if not service_name:
        return DEFAULT_SERVICE_CATEGORY
    return SERVICE_CATEGORIES.get(service_name, DEFAULT_SERVICE_CATEGORY)


class FocusCostItem(BaseModel):
    """One billed unit of cloud usage in vendor-neutral shape."""
    model_config = ConfigDict(use_enum_values=False)

    # Core billing columns (start inclusive, end exclusive)
    billing_period_start: datetime
    billing_period_end: datetime
    charge_category: ChargeCategory = ChargeCategory.USAGE
    charge_type: str = "Usage"
    billed_cost: Decimal = Decimal("0")
    effective_cost: Decimal = Decimal("0")
    list_cost: Optional[Decimal] = None
    billing_currency: str = "USD"

    # Resource identification
    service_category: Optional[str] = None
    service_name: Optional[str] = None
    region_id: Optional[str] = None
    region_name: Optional[str] = None
    availability_zone: Optional[str] = None
    resource_id: Optional[str] = None
    resource_name: Optional[str] = None
    resource_type: Optional[str] = None

    # Pricing & usage
    pricing_category: Optional[str] = None
    pricing_quantity: Optional[Decimal] = None
    pricing_unit: Optional[str] = None
    usage_quantity: Optional[Decimal] = None
    usage_unit: Optional[str] = None

    # Commitment discounts (RI, Savings Plans, CUDs)
    commitment_discount_id: Optional[str] = None
    commitment_discount_name: Optional[str] = None
    commitment_discount_type: Optional[str] = None

    # Provider info
    provider_name: str = Field(..., min_length=1)
    publisher_name: Optional[str] = None
    invoice_section_id: Optional[str] = None
    sub_account_id: Optional[str] = None
    sub_account_name: Optional[str] = None

    tags: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def fill_service_category(self) -> "FocusCostItem":
        if not self.service_category:
            self.service_category = get_service_category(self.service_name)
        return self


class RawCostData(BaseModel):
    """
    One provider-native billing record prior to normalization.
    Created by an adapter's get_costs and consumed by the same adapter. Never persisted.
    """
    provider: str
    data: Dict[str, Any] = Field(default_factory=dict)


class CostQueryParams(BaseModel):
    start_date: date
    end_date: date
    granularity: Granularity = Granularity.DAILY
    filters: Dict[str, Set[str]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_window(self) -> "CostQueryParams":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

    def cache_key(self, cloud_account_id: str) -> str:
        filters = ",".join(
            f"{k}={'|'.join(sorted(v))}" for k, v in sorted(self.filters.items())
        )
        return f"costs:{cloud_account_id}:{self.start_date}:{self.end_date}:{self.granularity.value}:{filters}"


class NormalizationReport(BaseModel):
    items: List[FocusCostItem] = Field(default_factory=list)
    skipped: int = 0


class CloudResource(BaseModel):
    """Inventory entry returned by adapters that can list resources."""
    resource_id: str
    resource_name: Optional[str] = None
    resource_type: str
    region: Optional[str] = None
    status: Optional[str] = None
    monthly_cost: Optional[Decimal] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProviderRecommendation(BaseModel):
    """Provider-native optimization recommendation."""
    title: str
    description: str
    category: str
    estimated_savings: Decimal = Decimal("0")
    currency: str = "USD"
    resource_ids: List[str] = Field(default_factory=list)
    severity: Literal["CRITICAL", "HIGH", "MEDIUM", "LOW"] = "MEDIUM"
    source: str
