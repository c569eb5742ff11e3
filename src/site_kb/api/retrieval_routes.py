"""
Retrieval Routes

Context retrieval for the external answer generator (chat widget backend).
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from .dependencies import get_retrieval_service
from .models import RetrieveRequest, RetrieveResponse
from ..auth.models import CallerContext
from ..auth.security import SCOPE_RETRIEVAL, require_scopes
from ..retrieval import RetrievalService

router = APIRouter(prefix="/collections", tags=["retrieval"])


@router.post(
    "/{collection_id}/retrieve",
    response_model=RetrieveResponse,
    summary="Retrieve bounded context for a query",
)
async def retrieve(
    collection_id: str,
    req: RetrieveRequest,
    caller: Annotated[CallerContext, Depends(require_scopes(SCOPE_RETRIEVAL))],
    service: Annotated[RetrievalService, Depends(get_retrieval_service)],
) -> RetrieveResponse:
    """
    A query with no matches answers 200 with `status="no_knowledge"`;
    callers branch on `has_knowledge`.
    """
    result = await service.retrieve(
        caller.tenant_id,
        collection_id,
        req.query,
        top_k=req.top_k,
        min_score=req.min_score,
        search_filter=req.filter,
    )
    return RetrieveResponse(
        status=result.status.value,
        has_knowledge=result.has_knowledge,
        context=result.context,
        sources=result.sources,
    )
