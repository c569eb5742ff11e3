"""
API Models

Pydantic models used for request/response validation across the indexing
and retrieval endpoints.

Design Goals
------------
- Strong typing
- Safe defaults (no shared mutable state)
- No tenant identifiers in request bodies
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..crawler import CrawlOptions, seed_url
from ..index import SearchFilter
from ..jobs import IndexingJob, JobRef, JobStatus
from ..retrieval import Source


# ---------------------------------------------------------------------
# Indexing
# ---------------------------------------------------------------------

class StartIndexingRequest(BaseModel):
    """
    Request to crawl and index a domain into a collection.
    """
    domain: str = Field(..., min_length=1, max_length=2048)
    max_pages: Optional[int] = Field(default=None, ge=1, le=10_000)
    timeout: Optional[float] = Field(default=None, gt=0, le=300)
    respect_robots: Optional[bool] = None
    strip_query: Optional[bool] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str) -> str:
        # seed_url raises ValueError, which pydantic reports as a 422
        seed_url(v)
        return v.strip()

    def crawl_options(self, defaults: CrawlOptions) -> CrawlOptions:
        overrides = self.model_dump(exclude={"domain"}, exclude_none=True)
        return defaults.model_copy(update=overrides)


class JobRefResponse(BaseModel):
    job_id: str
    status: JobStatus
    created: bool

    @classmethod
    def from_ref(cls, ref: JobRef) -> "JobRefResponse":
        return cls(job_id=ref.job_id, status=ref.status, created=ref.created)


class JobStatusResponse(BaseModel):
    job_id: str
    collection_id: str
    domain: str
    status: JobStatus
    pages_found: int
    pages_processed: int
    pages_failed: int
    pages_skipped: int
    documents_indexed: int
    cancel_requested: bool
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: IndexingJob) -> "JobStatusResponse":
        return cls(**job.model_dump(exclude={"tenant_id", "options"}))


class DeleteCollectionResponse(BaseModel):
    status: Literal["deleted"] = "deleted"
    vectors_removed: int = Field(..., ge=0)
    documents_removed: int = Field(..., ge=0)


# ---------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------

class RetrieveRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=4000)
    top_k: Optional[int] = Field(default=None, ge=1, le=20)
    min_score: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    filter: Optional[SearchFilter] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("query")
    @classmethod
    def validate_query(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("query must not be blank")
        return v.strip()


class RetrieveResponse(BaseModel):
    status: Literal["ok", "no_knowledge"]
    has_knowledge: bool
    context: Optional[str] = None
    sources: List[Source] = Field(default_factory=list)
