"""
Document Data Models

This module defines the canonical data model used to represent a single
indexable chunk of one crawled page.

Each instance corresponds to ONE embedding vector and ONE chunk of text.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DocumentType(str, Enum):
    WEBPAGE = "webpage"
    FAQ = "faq"
    PRODUCT = "product"
    ARTICLE = "article"


def document_id_for(tenant_id: str, collection_id: str, url: str, chunk_index: int) -> str:
    """
    Deterministic document id.

    Re-crawling the same page yields the same ids, which makes upserts
    idempotent across runs.
    """
    digest = hashlib.sha256(
        f"{tenant_id}\x1f{collection_id}\x1f{url}\x1f{chunk_index}".encode("utf-8")
    ).hexdigest()
    return digest[:40]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Document(BaseModel):
    """
    A single indexable document chunk.

    This model is the authoritative schema for:
    - Metadata persistence (documents table)
    - Vector upserts
    - Search result mapping
    """

    id: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1, max_length=64)
    collection_id: str = Field(..., min_length=1, max_length=64)

    url: str = Field(..., min_length=1)
    title: str = ""
    description: Optional[str] = None
    content: str = Field(..., min_length=1)
    type: DocumentType = DocumentType.WEBPAGE

    chunk_index: int = Field(default=0, ge=0)
    total_chunks: int = Field(default=1, ge=1)

    metadata: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(
        extra="forbid",          # Prevent schema injection
        frozen=True,            # Make instances immutable once created
        use_enum_values=False,
    )

    def search_metadata(self) -> Dict[str, Any]:
        """
        Metadata exposed alongside a search hit.
        """
        return {
            "tenant_id": self.tenant_id,
            "collection_id": self.collection_id,
            "url": self.url,
            "title": self.title,
            "description": self.description,
            "type": self.type.value,
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
            **{k: v for k, v in self.metadata.items() if v is not None},
        }


class ProcessingResult(BaseModel):
    """
    Output of processing one crawl's pages.
    """
    documents: List[Document] = Field(default_factory=list)
    pages_processed: int = 0
    pages_dropped: int = 0
    pages_failed: int = 0
    dropped_urls: List[str] = Field(default_factory=list)
    failed_urls: Dict[str, str] = Field(default_factory=dict)

    def documents_by_url(self) -> Dict[str, List[Document]]:
        grouped: Dict[str, List[Document]] = {}
        for doc in self.documents:
            grouped.setdefault(doc.url, []).append(doc)
        return grouped
