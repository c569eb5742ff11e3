"""
Database Package

Provides SQLAlchemy async engine/session factories and model definitions
for PostgreSQL (pgvector) in production and SQLite in tests.
"""

from .session import create_engine, create_session_factory, init_models
from .models import (
    Base,
    DocumentRecord,
    IndexingJobLease,
    IndexingJobRecord,
    VectorEmbedding,
)

__all__ = [
    "create_engine",
    "create_session_factory",
    "init_models",
    "Base",
    "DocumentRecord",
    "IndexingJobLease",
    "IndexingJobRecord",
    "VectorEmbedding",
]
