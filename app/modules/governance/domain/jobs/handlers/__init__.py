"""
Job type -> handler class. The processor instantiates one handler per execution.
"""
from typing import Dict, Type

from app.models.background_job import JobType
from app.modules.governance.domain.jobs.handlers.base import BaseJobHandler
from app.modules.governance.domain.jobs.handlers.costs import CostIngestionHandler

HANDLER_REGISTRY: Dict[str, Type[BaseJobHandler]] = {
    JobType.COST_INGESTION.value: CostIngestionHandler,
}


def get_handler_factory(job_type: str) -> Type[BaseJobHandler]:
    """Raises ValueError for job types nothing handles."""
    try:
        return HANDLER_REGISTRY[job_type]
    except KeyError:
        raise ValueError(f"No handler registered for job type: {job_type}") from None
