"""
Background Job SQLAlchemy Model

Represents jobs in the background_jobs table for durable job processing.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, Uuid, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.models.cloud import utcnow
from app.shared.db.base import Base


class JobStatus(str, Enum):
    """Job lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"  # Fatal error or max attempts exceeded


class JobType(str, Enum):
    """Supported background job types."""
    COST_INGESTION = "cost_ingestion"


class BackgroundJob(Base):
    """
    Durable background job stored in the database.

    - Survives worker restarts
    - Automatic retries with backoff
    - Full audit trail of attempts and failure kinds
    """
    __tablename__ = "background_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    # Identical PENDING/RUNNING jobs share a key, enqueue returns the existing one
    deduplication_key: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    # At most one RUNNING job per key (the cloud account for ingestion)
    concurrency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING.value, index=True)
    payload: Mapped[dict | None] = mapped_column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    result: Mapped[dict | None] = mapped_column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    # Higher = more urgent, 0 = normal
    priority: Mapped[int] = mapped_column(Integer, default=0, index=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("ix_background_jobs_claim", "status", "scheduled_for", "priority"),
        Index("ix_background_jobs_concurrency", "concurrency_key", "status"),
    )

    def __repr__(self) -> str:
        return f"<BackgroundJob {self.id} type={self.job_type} status={self.status}>"


@event.listens_for(BackgroundJob, "before_delete")
def audit_job_deletion(_mapper, _connection, target):
    """Log job deletion to the audit trail before it's gone."""
    import structlog
    audit_logger = structlog.get_logger("audit.deletion")
    audit_logger.info(
        "resource_permanently_deleted",
        resource_type="background_job",
        resource_id=str(target.id),
        tenant_id=str(target.tenant_id),
        job_type=str(target.job_type)
    )
