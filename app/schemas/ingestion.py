from datetime import date, datetime
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from app.shared.core.constants import CloudProvider


class CamelModel(BaseModel):
    """Accepts camelCase keys from the enqueue contract, populates snake_case fields."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IngestionJobPayload(CamelModel):
    """
    Payload of a cost_ingestion job.
    provider stays free text so unregistered tags reach the adapter registry and fail there.
    """
    cloud_account_id: UUID
    tenant_id: UUID
    provider: str = Field(..., min_length=1)
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def check_window(self) -> "IngestionJobPayload":
        if self.end_date < self.start_date:
            raise ValueError("endDate must not be before startDate")
        return self

    def deduplication_key(self) -> str:
        return f"cost_ingestion:{self.cloud_account_id}:{self.start_date.isoformat()}:{self.end_date.isoformat()}"


class IngestionJobRequest(IngestionJobPayload):
    """Manual trigger body. provider is optional, the account's own provider is used when omitted."""
    provider: Optional[str] = None  # type: ignore[assignment]
    priority: int = Field(default=0, ge=0, le=100)


class IngestionResult(BaseModel):
    sync_job_id: UUID
    cloud_account_id: UUID
    fetched: int = 0
    item_count: int = 0
    inserted: int = 0
    duplicates: int = 0
    skipped: int = 0
    skipped_chunks: int = 0


# --- Credential shapes (one per provider tag) ---

class AWSCredentials(CamelModel):
    access_key_id: str = Field(..., min_length=1)
    secret_access_key: str = Field(..., min_length=1)
    role_arn: Optional[str] = None
    external_id: Optional[str] = None
    region: Optional[str] = None


class AzureCredentials(CamelModel):
    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1)
    # Azure directory id, unrelated to the Nimbus tenant
    tenant_id: str = Field(..., min_length=1)
    subscription_id: str = Field(..., min_length=1)


class GCPCredentials(CamelModel):
    project_id: str = Field(..., min_length=1)
    service_account_key: str = Field(..., min_length=1)
    billing_export_table: Optional[str] = None


class KubernetesCredentials(CamelModel):
    cluster_endpoint: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1)


CREDENTIAL_MODELS: Dict[CloudProvider, type[CamelModel]] = {
    CloudProvider.AWS: AWSCredentials,
    CloudProvider.AZURE: AzureCredentials,
    CloudProvider.GCP: GCPCredentials,
    CloudProvider.KUBERNETES: KubernetesCredentials,
}


# --- API responses ---

class JobEnqueuedResponse(BaseModel):
    job_id: UUID
    status: str
    deduplicated: bool = False


class QueueStatusResponse(BaseModel):
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    dead_letter: int = 0


class SyncJobResponse(BaseModel):
    id: UUID
    cloud_account_id: UUID
    background_job_id: Optional[UUID]
    job_type: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime]
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="sync_metadata")
    error: Optional[str]
    error_kind: Optional[str]

    model_config = ConfigDict(from_attributes=True)


class BackgroundJobResponse(BaseModel):
    id: UUID
    job_type: str
    status: str
    attempts: int
    max_attempts: int
    priority: int
    progress: int
    scheduled_for: datetime
    created_at: datetime
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    error_kind: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
