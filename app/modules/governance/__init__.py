from .domain.jobs.worker import WorkerPool
from .domain.scheduler.orchestrator import SchedulerOrchestrator

__all__ = ["WorkerPool", "SchedulerOrchestrator"]
