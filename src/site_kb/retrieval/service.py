"""
Retrieval Service

Turns a user query into a bounded context block for an external answer
generator:

1. Embed the query through the shared EmbeddingCache
2. Search the tenant's collection for the top-K chunks
3. Concatenate chunks (best first) up to a character budget

A query that matches nothing yields the no-knowledge signal, never an
exception.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, computed_field

from ..embeddings.cache import EmbeddingCache
from ..index import SearchFilter, SearchResult, TenantVectorIndex
from ..tenants import validate_scope

logger = logging.getLogger("kb.retrieval")

CONTEXT_SEPARATOR = "\n\n---\n\n"
MAX_TOP_K = 20


class RetrievalStatus(str, Enum):
    OK = "ok"
    NO_KNOWLEDGE = "no_knowledge"


class Source(BaseModel):
    document_id: str
    url: str
    title: str
    type: str
    score: float


class RetrievalResult(BaseModel):
    status: RetrievalStatus
    context: Optional[str] = None
    sources: List[Source] = Field(default_factory=list)

    @computed_field  # type: ignore[misc]
    @property
    def has_knowledge(self) -> bool:
        return self.status is RetrievalStatus.OK


def _format_block(result: SearchResult) -> str:
    title = result.metadata.get("title") or result.metadata.get("url", "")
    url = result.metadata.get("url", "")
    return f"[{title}]({url})\n{result.content}"


def assemble_context(
    results: List[SearchResult],
    max_chars: int,
) -> Tuple[Optional[str], List[SearchResult]]:
    """
    Concatenate blocks, highest score first, without exceeding `max_chars`.

    The first block is truncated when it alone is over budget; later
    blocks are only added whole. Returns the context and the results it
    contains.
    """
    parts: List[str] = []
    included: List[SearchResult] = []
    used = 0

    for result in sorted(results, key=lambda r: r.score, reverse=True):
        block = _format_block(result)

        if not parts:
            if len(block) > max_chars:
                block = block[:max_chars]
            parts.append(block)
            included.append(result)
            used = len(block)
            continue

        cost = len(CONTEXT_SEPARATOR) + len(block)
        if used + cost > max_chars:
            break
        parts.append(block)
        included.append(result)
        used += cost

    return (CONTEXT_SEPARATOR.join(parts) if parts else None), included


class RetrievalService:
    """
    Read-only; safe to run concurrently with indexing jobs.
    """

    def __init__(
        self,
        embeddings: EmbeddingCache,
        index: TenantVectorIndex,
        top_k: int = 5,
        max_context_chars: int = 4000,
    ) -> None:
        self.embeddings = embeddings
        self.index = index
        self.top_k = top_k
        self.max_context_chars = max_context_chars

    async def retrieve(
        self,
        tenant_id: str,
        collection_id: str,
        query: str,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
        search_filter: Optional[SearchFilter] = None,
    ) -> RetrievalResult:
        """
        Retrieve context for `query` from one tenant collection.

        Raises
        ------
        ValueError
            If the query is empty or `top_k` is outside 1-20.
        EmbeddingProviderError
            If the query could not be embedded.
        """
        scope = validate_scope(tenant_id, collection_id)

        query = (query or "").strip()
        if not query:
            raise ValueError("query must not be empty")

        k = self.top_k if top_k is None else top_k
        if not 1 <= k <= MAX_TOP_K:
            raise ValueError(f"top_k must be between 1 and {MAX_TOP_K}")

        vector = await self.embeddings.embed_one(query)
        results = await self.index.search(
            scope.tenant_id,
            scope.collection_id,
            vector,
            top_k=k,
            search_filter=search_filter,
        )

        if min_score is not None:
            results = [r for r in results if r.score >= min_score]

        if not results:
            logger.info("No knowledge for %s/%s", scope.tenant_id, scope.collection_id)
            return RetrievalResult(status=RetrievalStatus.NO_KNOWLEDGE)

        context, included = assemble_context(results, self.max_context_chars)
        sources = [
            Source(
                document_id=r.document_id,
                url=r.metadata.get("url", ""),
                title=r.metadata.get("title", ""),
                type=r.metadata.get("type", "webpage"),
                score=r.score,
            )
            for r in included
        ]

        logger.debug(
            "Retrieved %d chunks (%d chars) for %s/%s",
            len(included),
            len(context or ""),
            scope.tenant_id,
            scope.collection_id,
        )
        return RetrievalResult(status=RetrievalStatus.OK, context=context, sources=sources)
