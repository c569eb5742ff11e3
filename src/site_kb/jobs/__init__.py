"""
Indexing jobs: state machine, durable store, worker pool and coordinator.
"""

from .coordinator import IndexingJobCoordinator
from .models import IndexingJob, JobProgress, JobRef, JobStatus
from .store import SqlJobStore
from .worker_pool import TaskHandle, TaskState, WorkerPool

__all__ = [
    "IndexingJobCoordinator",
    "IndexingJob",
    "JobProgress",
    "JobRef",
    "JobStatus",
    "SqlJobStore",
    "TaskHandle",
    "TaskState",
    "WorkerPool",
]
