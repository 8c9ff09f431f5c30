import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.shared.db.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    PENDING = "PENDING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"
    DISABLED = "DISABLED"


class CloudAccount(Base):
    """
    A connected provider account (AWS account, Azure subscription, GCP project, cluster).
    Sync status fields are written only by the ingestion job.
    """
    __tablename__ = "cloud_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    provider: Mapped[str] = mapped_column(String(20))  # AWS, AZURE, GCP, KUBERNETES
    name: Mapped[str] = mapped_column(String(255))     # e.g., "Production AWS"
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)  # account/subscription/project id

    # Fernet-encrypted JSON blob of provider credentials
    credentials_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=AccountStatus.PENDING.value, index=True)
    # Set on fatal failures (bad credentials, unsupported provider), cleared on the next success
    requires_reconfiguration: Mapped[bool] = mapped_column(Boolean, default=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    cost_line_items: Mapped[list["CostLineItem"]] = relationship(back_populates="account", passive_deletes=True)

    def __repr__(self) -> str:
        return f"<CloudAccount {self.id} provider={self.provider} status={self.status}>"


class CostLineItem(Base):
    """
    One persisted FOCUS line item.
    (tenant_id, cloud_account_id, natural_key) is the dedup guarantee for re-ingested windows.
    """
    __tablename__ = "cost_line_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    cloud_account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("cloud_accounts.id", ondelete="CASCADE"), nullable=False
    )
    sync_job_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("sync_jobs.id", ondelete="SET NULL"), nullable=True
    )
    natural_key: Mapped[str] = mapped_column(String(64), nullable=False)

    billing_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    billing_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    charge_category: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    charge_type: Mapped[str] = mapped_column(String(100), nullable=False)

    # Financials (DECIMAL for money!)
    billed_cost: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    effective_cost: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    list_cost: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    billing_currency: Mapped[str] = mapped_column(String(3), default="USD")

    service_category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    service_name: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    region_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    region_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    availability_zone: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    resource_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    resource_type: Mapped[str | None] = mapped_column(String(255), nullable=True)

    pricing_category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    pricing_quantity: Mapped[Decimal | None] = mapped_column(Numeric(24, 8), nullable=True)
    pricing_unit: Mapped[str | None] = mapped_column(String(100), nullable=True)
    usage_quantity: Mapped[Decimal | None] = mapped_column(Numeric(24, 8), nullable=True)
    usage_unit: Mapped[str | None] = mapped_column(String(100), nullable=True)

    commitment_discount_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    commitment_discount_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    commitment_discount_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

    provider_name: Mapped[str] = mapped_column(String(20), nullable=False)
    publisher_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    invoice_section_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sub_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sub_account_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    tags: Mapped[dict] = mapped_column(JSON().with_variant(JSONB, "postgresql"), default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    account: Mapped["CloudAccount"] = relationship(back_populates="cost_line_items")

    __table_args__ = (
        UniqueConstraint("tenant_id", "cloud_account_id", "natural_key", name="uix_cost_line_item_natural_key"),
        Index("ix_cost_line_items_tenant_period", "tenant_id", "billing_period_start"),
        Index("ix_cost_line_items_account_period", "cloud_account_id", "billing_period_start"),
    )
