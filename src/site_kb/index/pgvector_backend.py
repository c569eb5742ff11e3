"""
pgvector Backend

PostgreSQL + pgvector vector storage and similarity search. Rows carry the
tenant namespace and every statement filters on it.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Set, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.errors import VectorIndexError
from ..db.models import VectorEmbedding
from ..tenants import validate_namespace
from .models import VectorRecord


class PgVectorBackend:
    """
    PostgreSQL-backed vector store using pgvector for similarity search.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def upsert(self, namespace: str, records: Sequence[VectorRecord]) -> None:
        validate_namespace(namespace)
        if not records:
            return

        try:
            async with self._session_factory() as session:
                for record in records:
                    await session.merge(
                        VectorEmbedding(
                            id=record.id,
                            namespace=namespace,
                            collection_id=record.collection_id,
                            dim=len(record.vector),
                            embedding=record.vector,
                        )
                    )
                await session.commit()
        except SQLAlchemyError as exc:
            raise VectorIndexError(f"pgvector upsert failed: {type(exc).__name__}") from exc

    async def query(
        self,
        namespace: str,
        collection_id: str,
        vector: List[float],
        k: int,
    ) -> List[Tuple[str, float]]:
        """
        Search for similar vectors using cosine similarity.
        """
        validate_namespace(namespace)

        # pgvector's <=> operator
        cosine_distance = VectorEmbedding.embedding.cosine_distance(vector)

        stmt = (
            select(
                VectorEmbedding.id,
                (1 - cosine_distance).label("score"),
            )
            .where(
                VectorEmbedding.namespace == namespace,
                VectorEmbedding.collection_id == collection_id,
                VectorEmbedding.dim == len(vector),
            )
            .order_by(cosine_distance)
            .limit(k)
        )

        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.all()
        except SQLAlchemyError as exc:
            raise VectorIndexError(f"pgvector query failed: {type(exc).__name__}") from exc

        return [(row.id, float(row.score)) for row in rows]

    async def delete(
        self,
        namespace: str,
        collection_id: Optional[str] = None,
        ids: Optional[Sequence[str]] = None,
    ) -> int:
        validate_namespace(namespace)

        stmt = delete(VectorEmbedding).where(VectorEmbedding.namespace == namespace)
        if collection_id is not None:
            stmt = stmt.where(VectorEmbedding.collection_id == collection_id)
        if ids is not None:
            if not ids:
                return 0
            stmt = stmt.where(VectorEmbedding.id.in_(list(ids)))

        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise VectorIndexError(f"pgvector delete failed: {type(exc).__name__}") from exc

    async def ids(self, namespace: str, collection_id: Optional[str] = None) -> Set[str]:
        validate_namespace(namespace)

        stmt = select(VectorEmbedding.id).where(VectorEmbedding.namespace == namespace)
        if collection_id is not None:
            stmt = stmt.where(VectorEmbedding.collection_id == collection_id)

        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return {row[0] for row in result.all()}
        except SQLAlchemyError as exc:
            raise VectorIndexError(f"pgvector read failed: {type(exc).__name__}") from exc

    async def dimension(self, namespace: str, collection_id: str) -> Optional[int]:
        validate_namespace(namespace)

        stmt = (
            select(VectorEmbedding.dim)
            .where(
                VectorEmbedding.namespace == namespace,
                VectorEmbedding.collection_id == collection_id,
            )
            .limit(1)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return result.scalar()
        except SQLAlchemyError as exc:
            raise VectorIndexError(f"pgvector read failed: {type(exc).__name__}") from exc

    async def count(self, namespace: str, collection_id: str) -> int:
        validate_namespace(namespace)

        stmt = select(func.count()).select_from(VectorEmbedding).where(
            VectorEmbedding.namespace == namespace,
            VectorEmbedding.collection_id == collection_id,
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return result.scalar() or 0
        except SQLAlchemyError as exc:
            raise VectorIndexError(f"pgvector read failed: {type(exc).__name__}") from exc
