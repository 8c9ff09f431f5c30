"""
Cost Line Item Store

Idempotent storage of normalized FOCUS items. Re-ingesting a window inserts
nothing twice: every row carries a natural key and the
(tenant_id, cloud_account_id, natural_key) constraint absorbs duplicates.
"""

import hashlib
import json
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

import structlog
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.cloud import CostLineItem
from app.schemas.focus import FocusCostItem
from app.shared.core.exceptions import PersistenceError

logger = structlog.get_logger()

# Keeps each statement well under the bind-parameter limit of both dialects
STATEMENT_ROWS = 500

NATURAL_KEY_FIELDS = (
    "resource_id",
    "resource_type",
    "service_category",
    "service_name",
    "region_id",
    "availability_zone",
    "sub_account_id",
    "billing_period_start",
    "billing_period_end",
    "charge_category",
    "charge_type",
    "pricing_category",
    "commitment_discount_id",
    "billing_currency",
)

DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _key_part(value: Any) -> str:
    if value is None:
        return ""
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def compute_natural_key(item: FocusCostItem) -> str:
    """sha256 over the fields that identify one billed unit within an account.

    Tags are part of the unit: providers split a resource's cost per tag set.
    """
    parts = [_key_part(getattr(item, field)) for field in NATURAL_KEY_FIELDS]
    parts.append(json.dumps(item.tags, sort_keys=True))
    raw = "|".join(parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def to_row(
    item: FocusCostItem,
    tenant_id: UUID,
    cloud_account_id: UUID,
    sync_job_id: Optional[UUID] = None,
) -> Dict[str, Any]:
    row = item.model_dump()
    row["charge_category"] = item.charge_category.value
    row.update(
        tenant_id=tenant_id,
        cloud_account_id=cloud_account_id,
        sync_job_id=sync_job_id,
        natural_key=compute_natural_key(item),
    )
    return row


class CostLineItemStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def insert_skip_duplicates(
        self,
        tenant_id: UUID,
        cloud_account_id: UUID,
        items: Sequence[FocusCostItem],
        sync_job_id: Optional[UUID] = None,
    ) -> int:
        """
        Insert items, silently skipping rows whose natural key already exists.
        Returns the number of rows actually inserted. Does not commit.
        """
        if not items:
            return 0

        # Duplicates inside one batch would collide within a single statement
        rows: Dict[str, Dict[str, Any]] = {}
        for item in items:
            row = to_row(item, tenant_id, cloud_account_id, sync_job_id)
            rows.setdefault(row["natural_key"], row)
        values: List[Dict[str, Any]] = list(rows.values())

        insert = self._insert_factory()
        inserted = 0
        try:
            for i in range(0, len(values), STATEMENT_ROWS):
                chunk = values[i : i + STATEMENT_ROWS]
                stmt = insert(CostLineItem).values(chunk).on_conflict_do_nothing(
                    index_elements=["tenant_id", "cloud_account_id", "natural_key"]
                )
                result = await self.db.execute(stmt)
                inserted += max(result.rowcount or 0, 0)
        except SQLAlchemyError as e:
            logger.error(
                "cost_persistence_failed",
                cloud_account_id=str(cloud_account_id),
                rows=len(values),
                error=str(e)[:200],
            )
            raise PersistenceError(
                "Failed to persist cost line items",
                details={"cloud_account_id": str(cloud_account_id), "rows": len(values)},
            ) from e

        logger.info(
            "cost_persistence_batch",
            tenant_id=str(tenant_id),
            cloud_account_id=str(cloud_account_id),
            submitted=len(items),
            inserted=inserted,
        )
        return inserted

    def _insert_factory(self):
        dialect = self.db.get_bind().dialect.name
        try:
            return DIALECT_INSERTS[dialect]
        except KeyError:
            raise PersistenceError(
                f"Idempotent insert is not supported on dialect '{dialect}'",
                details={"dialect": dialect},
            ) from None
