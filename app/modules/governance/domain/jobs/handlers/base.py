"""
Base Job Handler

Handlers hold the job-type specific logic. The JobProcessor owns the status
transitions and enforces timeout_seconds around execute().
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.background_job import BackgroundJob
from app.shared.core.cache import TTLCache


class BaseJobHandler(ABC):
    """
    Abstract base class for all background job handlers.

    Subclasses must:
    1. Define timeout_seconds (class attribute or in __init__)
    2. Implement execute()
    3. Raise NimbusException subclasses for expected failures so the
       retry policy can branch on the error kind
    """

    timeout_seconds: float = 300

    def __init__(self, cache: Optional[TTLCache] = None):
        self.cache = cache

    @abstractmethod
    async def execute(self, job: BackgroundJob, db: AsyncSession) -> Dict[str, Any]:
        """
        Execute the job logic.

        Args:
            job: The BackgroundJob model instance (already RUNNING)
            db: Database session owned by the executing worker

        Returns:
            Result dictionary stored on the job
        """
        pass
