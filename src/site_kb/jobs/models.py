"""
Indexing Job Models

The job state machine and the snapshot objects returned to callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from .worker_pool import TaskHandle


class JobStatus(str, Enum):
    QUEUED = "queued"
    SCRAPING = "scraping"
    PROCESSING = "processing"
    INDEXING = "indexing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_transition_to(self, target: "JobStatus") -> bool:
        """
        Forward-only: any later running state, or any terminal state.
        """
        if self.is_terminal:
            return False
        if target.is_terminal:
            return True
        return _RANK[target] > _RANK[self]


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

_RANK = {
    JobStatus.QUEUED: 0,
    JobStatus.SCRAPING: 1,
    JobStatus.PROCESSING: 2,
    JobStatus.INDEXING: 3,
}


class IndexingJob(BaseModel):
    """
    Point-in-time snapshot of one indexing job.
    """
    job_id: str
    tenant_id: str
    collection_id: str
    domain: str
    status: JobStatus
    options: Dict[str, Any] = Field(default_factory=dict)

    pages_found: int = 0
    pages_processed: int = 0
    pages_failed: int = 0
    pages_skipped: int = 0
    documents_indexed: int = 0

    cancel_requested: bool = False
    error: Optional[str] = None

    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal


class JobProgress(BaseModel):
    """
    Counter update applied to a running job. Unset fields are left alone.
    """
    pages_found: Optional[int] = None
    pages_processed: Optional[int] = None
    pages_failed: Optional[int] = None
    pages_skipped: Optional[int] = None
    documents_indexed: Optional[int] = None

    def as_updates(self) -> Dict[str, int]:
        return {k: v for k, v in self.model_dump().items() if v is not None}


@dataclass(frozen=True)
class JobRef:
    """
    Handle returned by `start_indexing` / `reindex`.

    `created` is False when single-flight handed back an existing job.
    `handle` tracks the pool task for jobs started by this process.
    """
    job_id: str
    status: JobStatus
    created: bool
    handle: Optional[TaskHandle] = field(default=None, compare=False, repr=False)
