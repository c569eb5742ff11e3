"""
Vector Index Data Models

Value objects exchanged between `TenantVectorIndex`, its backends and its
callers, plus the backend capability definition.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..processing.models import DocumentType


@dataclass(frozen=True)
class VectorRecord:
    """One vector as handed to a backend."""
    id: str
    collection_id: str
    vector: List[float]


class VectorBackend(Protocol):
    """
    Namespace-scoped vector storage.

    Every method takes the tenant namespace as its first argument; there is
    no way to address vectors outside a namespace.
    """

    async def upsert(self, namespace: str, records: Sequence[VectorRecord]) -> None:
        ...

    async def query(
        self,
        namespace: str,
        collection_id: str,
        vector: List[float],
        k: int,
    ) -> List[Tuple[str, float]]:
        ...

    async def delete(
        self,
        namespace: str,
        collection_id: Optional[str] = None,
        ids: Optional[Sequence[str]] = None,
    ) -> int:
        ...

    async def ids(self, namespace: str, collection_id: Optional[str] = None) -> Set[str]:
        ...

    async def dimension(self, namespace: str, collection_id: str) -> Optional[int]:
        ...

    async def count(self, namespace: str, collection_id: str) -> int:
        ...


class UpsertReport(BaseModel):
    """
    Per-document outcome of one upsert call.
    """
    upserted: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)


class SearchFilter(BaseModel):
    type: Optional[DocumentType] = None
    url: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    def matches(self, metadata: Dict[str, Any]) -> bool:
        if self.type is not None and metadata.get("type") != self.type.value:
            return False
        if self.url is not None and metadata.get("url") != self.url:
            return False
        return True


class SearchResult(BaseModel):
    document_id: str
    score: float
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class DeleteReport(BaseModel):
    vectors_removed: int = 0
    documents_removed: int = 0


class ReconcileReport(BaseModel):
    namespace: str
    orphan_vectors_removed: int = 0
    orphan_documents_removed: int = 0


class IndexStats(BaseModel):
    tenant_id: str
    collection_id: str
    vectors: int
    documents: int
