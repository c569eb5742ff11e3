"""
Database Session Management

Provides the async SQLAlchemy engine and session factory. Both are built
explicitly from a database URL (no import-time engine) so the app, the
CLI and the tests can each point at their own database.
"""

from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from .models import (
    Base,
    DocumentRecord,
    IndexingJobLease,
    IndexingJobRecord,
    VectorEmbedding,
)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create the async engine.

    SQLite (tests, local runs) shares one connection so an in-memory
    database survives across sessions.
    """
    kwargs: Dict[str, Any] = {"echo": echo}

    if database_url.startswith("sqlite"):
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_pre_ping"] = True
        kwargs["pool_size"] = 5
        kwargs["max_overflow"] = 10

    return create_async_engine(database_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_models(engine: AsyncEngine, with_vectors: bool = False) -> None:
    """
    Create tables that do not exist yet.

    The `vector_embedding` table (and the pgvector extension) are only
    created when the pgvector backend is in use.
    """
    tables = [
        DocumentRecord.__table__,
        IndexingJobRecord.__table__,
        IndexingJobLease.__table__,
    ]
    if with_vectors:
        tables.append(VectorEmbedding.__table__)

    async with engine.begin() as conn:
        if with_vectors and engine.dialect.name == "postgresql":
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all, tables=tables)
