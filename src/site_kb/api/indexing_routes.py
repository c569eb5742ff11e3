"""
Indexing Routes

Endpoints the platform calls to start, poll, cancel and re-run indexing
jobs, and to delete a collection's content. The tenant always comes from
the verified token.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from .dependencies import get_coordinator
from .models import (
    DeleteCollectionResponse,
    JobRefResponse,
    JobStatusResponse,
    StartIndexingRequest,
)
from ..auth.models import CallerContext
from ..auth.security import SCOPE_INDEXING, require_scopes
from ..core.errors import JobConflictError, NotIndexedError
from ..jobs import IndexingJobCoordinator

router = APIRouter(prefix="/collections", tags=["indexing"])

Caller = Annotated[CallerContext, Depends(require_scopes(SCOPE_INDEXING))]
Coordinator = Annotated[IndexingJobCoordinator, Depends(get_coordinator)]


@router.post(
    "/{collection_id}/indexing",
    response_model=JobRefResponse,
    summary="Start indexing a domain into a collection",
)
async def start_indexing(
    collection_id: str,
    req: StartIndexingRequest,
    response: Response,
    caller: Caller,
    coordinator: Coordinator,
) -> JobRefResponse:
    """
    Start a job, or return the running one.

    Returns 202 when a job was created and 200 when single-flight handed
    back an existing job.
    """
    ref = await coordinator.start_indexing(
        caller.tenant_id,
        collection_id,
        req.domain,
        req.crawl_options(coordinator.default_options),
    )
    response.status_code = status.HTTP_202_ACCEPTED if ref.created else status.HTTP_200_OK
    return JobRefResponse.from_ref(ref)


@router.get(
    "/{collection_id}/indexing",
    response_model=JobStatusResponse,
    summary="Current or latest indexing job of a collection",
)
async def get_indexing_status(
    collection_id: str,
    caller: Caller,
    coordinator: Coordinator,
) -> JobStatusResponse:
    job = await coordinator.get_status(caller.tenant_id, collection_id)
    if job is None:
        raise NotIndexedError(f"Collection {collection_id} has never been indexed")
    return JobStatusResponse.from_job(job)


@router.post(
    "/{collection_id}/indexing/cancel",
    response_model=JobStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Request cancellation of the running job",
)
async def cancel_indexing(
    collection_id: str,
    caller: Caller,
    coordinator: Coordinator,
) -> JobStatusResponse:
    job = await coordinator.cancel(caller.tenant_id, collection_id)
    if job is None:
        raise JobConflictError(f"No indexing job is running for {collection_id}")
    return JobStatusResponse.from_job(job)


@router.post(
    "/{collection_id}/reindex",
    response_model=JobRefResponse,
    summary="Delete and re-crawl a collection",
)
async def reindex(
    collection_id: str,
    response: Response,
    caller: Caller,
    coordinator: Coordinator,
) -> JobRefResponse:
    ref = await coordinator.reindex(caller.tenant_id, collection_id)
    response.status_code = status.HTTP_202_ACCEPTED if ref.created else status.HTTP_200_OK
    return JobRefResponse.from_ref(ref)


@router.delete(
    "/{collection_id}",
    response_model=DeleteCollectionResponse,
    summary="Delete all indexed content of a collection",
)
async def delete_collection(
    collection_id: str,
    caller: Caller,
    coordinator: Coordinator,
) -> DeleteCollectionResponse:
    report = await coordinator.delete_collection(caller.tenant_id, collection_id)
    return DeleteCollectionResponse(
        vectors_removed=report.vectors_removed,
        documents_removed=report.documents_removed,
    )
