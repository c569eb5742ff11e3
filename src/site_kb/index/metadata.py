"""
Document Metadata Store

SQLAlchemy-backed persistence for Document rows. Search results are joined
against this store to recover content and to re-check tenant ownership.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.errors import VectorIndexError
from ..db.models import DocumentRecord
from ..processing.models import Document, DocumentType

logger = logging.getLogger("kb.index")


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _to_document(row: DocumentRecord) -> Document:
    return Document(
        id=row.id,
        tenant_id=row.tenant_id,
        collection_id=row.collection_id,
        url=row.url,
        title=row.title or "",
        description=row.description,
        content=row.content,
        type=DocumentType(row.type),
        chunk_index=row.chunk_index,
        total_chunks=row.total_chunks,
        metadata=row.metadata_ or {},
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


class SqlMetadataStore:
    """
    Metadata store over the `documents` table.

    Every method opens its own session so the store can be shared by
    concurrent jobs and requests.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def upsert(self, documents: Sequence[Document]) -> int:
        """
        Insert or replace rows by document id (last write wins).

        `created_at` of an existing row is preserved.
        """
        if not documents:
            return 0

        now = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as session:
                existing = await session.execute(
                    select(DocumentRecord.id, DocumentRecord.created_at).where(
                        DocumentRecord.id.in_([d.id for d in documents])
                    )
                )
                created = {row.id: row.created_at for row in existing.all()}

                for doc in documents:
                    await session.merge(
                        DocumentRecord(
                            id=doc.id,
                            tenant_id=doc.tenant_id,
                            collection_id=doc.collection_id,
                            url=doc.url,
                            title=doc.title,
                            description=doc.description,
                            content=doc.content,
                            type=doc.type.value,
                            chunk_index=doc.chunk_index,
                            total_chunks=doc.total_chunks,
                            metadata_=dict(doc.metadata),
                            created_at=created.get(doc.id, doc.created_at),
                            updated_at=now,
                        )
                    )
                await session.commit()
        except SQLAlchemyError as exc:
            raise VectorIndexError(
                f"Metadata write failed: {type(exc).__name__}"
            ) from exc

        return len(documents)

    async def get_many(self, ids: Iterable[str]) -> Dict[str, Document]:
        """
        Load documents by id regardless of owner.

        Ownership is checked by the caller; filtering here would hide a
        cross-tenant vector instead of surfacing it.
        """
        id_list = list(ids)
        if not id_list:
            return {}

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(DocumentRecord).where(DocumentRecord.id.in_(id_list))
                )
                rows = result.scalars().all()
        except SQLAlchemyError as exc:
            raise VectorIndexError(f"Metadata read failed: {type(exc).__name__}") from exc

        return {row.id: _to_document(row) for row in rows}

    async def ids(self, tenant_id: str, collection_id: Optional[str] = None) -> Set[str]:
        stmt = select(DocumentRecord.id).where(DocumentRecord.tenant_id == tenant_id)
        if collection_id is not None:
            stmt = stmt.where(DocumentRecord.collection_id == collection_id)

        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return {row[0] for row in result.all()}
        except SQLAlchemyError as exc:
            raise VectorIndexError(f"Metadata read failed: {type(exc).__name__}") from exc

    async def count(self, tenant_id: str, collection_id: str) -> int:
        stmt = select(func.count()).select_from(DocumentRecord).where(
            DocumentRecord.tenant_id == tenant_id,
            DocumentRecord.collection_id == collection_id,
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return result.scalar() or 0
        except SQLAlchemyError as exc:
            raise VectorIndexError(f"Metadata read failed: {type(exc).__name__}") from exc

    async def delete_collection(self, tenant_id: str, collection_id: str) -> int:
        stmt = delete(DocumentRecord).where(
            DocumentRecord.tenant_id == tenant_id,
            DocumentRecord.collection_id == collection_id,
        )
        return await self._execute_delete(stmt)

    async def delete_ids(self, tenant_id: str, ids: Iterable[str]) -> int:
        id_list: List[str] = list(ids)
        if not id_list:
            return 0
        stmt = delete(DocumentRecord).where(
            DocumentRecord.tenant_id == tenant_id,
            DocumentRecord.id.in_(id_list),
        )
        return await self._execute_delete(stmt)

    async def _execute_delete(self, stmt) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise VectorIndexError(f"Metadata delete failed: {type(exc).__name__}") from exc
