"""
Cost ingestion job handler.
"""

from typing import Any, Dict, Optional

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.background_job import BackgroundJob
from app.modules.governance.domain.jobs.handlers.base import BaseJobHandler
from app.modules.ingestion.domain.service import IngestionService
from app.schemas.ingestion import IngestionJobPayload
from app.shared.core.cache import TTLCache
from app.shared.core.config import get_settings
from app.shared.core.exceptions import ConfigurationError

logger = structlog.get_logger()


class CostIngestionHandler(BaseJobHandler):
    """Runs one IngestionService pass for the account and window in the job payload."""

    def __init__(self, cache: Optional[TTLCache] = None):
        super().__init__(cache=cache)
        self.timeout_seconds = get_settings().INGESTION_JOB_TIMEOUT_SECONDS

    async def execute(self, job: BackgroundJob, db: AsyncSession) -> Dict[str, Any]:
        try:
            payload = IngestionJobPayload.model_validate(job.payload or {})
        except ValidationError as e:
            raise ConfigurationError(
                "Invalid cost ingestion payload",
                code="invalid_job_payload",
                details={"job_id": str(job.id), "errors": e.errors(include_url=False, include_context=False)},
            ) from e

        async def report_progress(value: int) -> None:
            job.progress = value

        service = IngestionService(db, cache=self.cache)
        result = await service.run(payload, progress=report_progress, background_job_id=job.id)
        return result.model_dump(mode="json")
