"""
Tenant-isolated vector index: backends, metadata store and the
`TenantVectorIndex` facade.
"""

from .faiss_backend import FaissVectorBackend
from .metadata import SqlMetadataStore
from .models import (
    DeleteReport,
    IndexStats,
    ReconcileReport,
    SearchFilter,
    SearchResult,
    UpsertReport,
    VectorBackend,
    VectorRecord,
)
from .pgvector_backend import PgVectorBackend
from .tenant_index import TenantVectorIndex

__all__ = [
    "FaissVectorBackend",
    "PgVectorBackend",
    "SqlMetadataStore",
    "TenantVectorIndex",
    "VectorBackend",
    "VectorRecord",
    "UpsertReport",
    "SearchFilter",
    "SearchResult",
    "DeleteReport",
    "ReconcileReport",
    "IndexStats",
]
