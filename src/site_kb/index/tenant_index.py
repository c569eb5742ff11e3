"""
Tenant Vector Index

Tenant-isolated document storage on top of a vector backend and the
metadata store.

Isolation Model
---------------
- Vectors are written to, and read from, the namespace derived from
  `tenant_id` only (`tenant_<tenant_id>`)
- Documents whose tenant/collection differ from the call's scope are
  rejected before anything is written
- Search hits are joined with metadata and re-checked; a hit owned by
  another tenant aborts the search
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from ..core.errors import TenantIsolationViolation, VectorIndexError
from ..processing.models import Document
from ..tenants import tenant_namespace, validate_scope
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

logger = logging.getLogger("kb.index")

# Extra candidates fetched when a metadata filter will discard some hits
FILTER_OVERFETCH = 4


class TenantVectorIndex:

    def __init__(self, backend: VectorBackend, metadata: SqlMetadataStore) -> None:
        self.backend = backend
        self.metadata = metadata

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(
        self,
        tenant_id: str,
        collection_id: str,
        documents: Sequence[Document],
        vectors: Sequence[List[float]],
    ) -> UpsertReport:
        """
        Write documents and their vectors (vectors first, then metadata).

        Returns
        -------
        UpsertReport
            Ids written and per-document failure reasons.

        Raises
        ------
        TenantIsolationViolation
            If any document is scoped to another tenant or collection.
        VectorIndexError
            If every document failed or the metadata write failed.
        """
        scope = validate_scope(tenant_id, collection_id)
        namespace = scope.namespace

        if len(documents) != len(vectors):
            raise VectorIndexError(
                f"Got {len(documents)} documents but {len(vectors)} vectors"
            )

        for doc in documents:
            if doc.tenant_id != scope.tenant_id or doc.collection_id != scope.collection_id:
                logger.critical(
                    "Refusing upsert into %s/%s: document %s belongs to %s/%s",
                    scope.tenant_id,
                    scope.collection_id,
                    doc.id,
                    doc.tenant_id,
                    doc.collection_id,
                )
                raise TenantIsolationViolation(
                    f"Document {doc.id} is not scoped to the requested collection"
                )

        report = UpsertReport()
        if not documents:
            return report

        expected_dim = await self.backend.dimension(namespace, scope.collection_id)
        if expected_dim is None:
            expected_dim = next((len(v) for v in vectors if v), None)

        accepted: List[Document] = []
        records: List[VectorRecord] = []
        for doc, vector in zip(documents, vectors):
            if not vector:
                report.failed[doc.id] = "empty vector"
            elif len(vector) != expected_dim:
                report.failed[doc.id] = (
                    f"dimension {len(vector)} does not match collection dimension {expected_dim}"
                )
            else:
                accepted.append(doc)
                records.append(VectorRecord(doc.id, scope.collection_id, list(vector)))

        written = await self._write_vectors(namespace, accepted, records, report)

        if not written:
            raise VectorIndexError(
                f"All {len(documents)} documents failed to upsert: "
                + "; ".join(sorted(set(report.failed.values())))
            )

        # Metadata failure fails the batch; the written vectors become
        # orphans until reconcile() sweeps them
        await self.metadata.upsert(written)

        report.upserted.extend(doc.id for doc in written)
        logger.debug(
            "Upserted %d documents into %s/%s (%d failed)",
            len(report.upserted),
            namespace,
            scope.collection_id,
            len(report.failed),
        )
        return report

    async def _write_vectors(
        self,
        namespace: str,
        documents: List[Document],
        records: List[VectorRecord],
        report: UpsertReport,
    ) -> List[Document]:
        if not records:
            return []

        try:
            await self.backend.upsert(namespace, records)
            return documents
        except VectorIndexError as exc:
            logger.warning(
                "Batch vector upsert of %d failed (%s); retrying item by item",
                len(records),
                exc,
            )

        written: List[Document] = []
        for doc, record in zip(documents, records):
            try:
                await self.backend.upsert(namespace, [record])
            except VectorIndexError as exc:
                report.failed[doc.id] = str(exc)
            else:
                written.append(doc)
        return written

    async def delete(self, tenant_id: str, collection_id: str) -> DeleteReport:
        """
        Remove all vectors, then all metadata, of one collection.

        The two phases are not atomic. A crash in between leaves metadata
        rows without vectors, which `reconcile()` removes.
        """
        scope = validate_scope(tenant_id, collection_id)

        vectors_removed = await self.backend.delete(scope.namespace, collection_id=scope.collection_id)
        documents_removed = await self.metadata.delete_collection(scope.tenant_id, scope.collection_id)

        logger.info(
            "Deleted collection %s/%s (%d vectors, %d documents)",
            scope.namespace,
            scope.collection_id,
            vectors_removed,
            documents_removed,
        )
        return DeleteReport(vectors_removed=vectors_removed, documents_removed=documents_removed)

    async def reconcile(self, tenant_id: str) -> ReconcileReport:
        """
        Sweep one tenant namespace for vectors without metadata and
        metadata without vectors, deleting both kinds of orphan.
        """
        namespace = tenant_namespace(tenant_id)

        vector_ids = await self.backend.ids(namespace)
        document_ids = await self.metadata.ids(tenant_id)

        orphan_vectors = sorted(vector_ids - document_ids)
        orphan_documents = sorted(document_ids - vector_ids)

        report = ReconcileReport(namespace=namespace)
        if orphan_vectors:
            report.orphan_vectors_removed = await self.backend.delete(namespace, ids=orphan_vectors)
        if orphan_documents:
            report.orphan_documents_removed = await self.metadata.delete_ids(tenant_id, orphan_documents)

        if orphan_vectors or orphan_documents:
            logger.warning(
                "Reconciled %s: removed %d orphan vectors, %d orphan documents",
                namespace,
                report.orphan_vectors_removed,
                report.orphan_documents_removed,
            )
        return report

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search(
        self,
        tenant_id: str,
        collection_id: str,
        query_vector: List[float],
        top_k: int = 5,
        search_filter: Optional[SearchFilter] = None,
    ) -> List[SearchResult]:
        """
        Rank documents of one collection by cosine similarity.

        Raises
        ------
        TenantIsolationViolation
            If a hit's metadata belongs to another tenant.
        """
        scope = validate_scope(tenant_id, collection_id)
        if top_k < 1:
            return []

        fetch_k = top_k * FILTER_OVERFETCH if search_filter is not None else top_k
        hits = await self.backend.query(scope.namespace, scope.collection_id, query_vector, fetch_k)
        if not hits:
            return []

        documents: Dict[str, Document] = await self.metadata.get_many(doc_id for doc_id, _ in hits)

        results: List[SearchResult] = []
        for doc_id, score in hits:
            doc = documents.get(doc_id)
            if doc is None:
                # Vector written but metadata not (yet); reconcile() cleans up
                logger.debug("Skipping vector %s without metadata", doc_id)
                continue

            if doc.tenant_id != scope.tenant_id:
                logger.critical(
                    "Vector %s in %s resolved to a document of another tenant",
                    doc_id,
                    scope.namespace,
                )
                raise TenantIsolationViolation(
                    f"Search in {scope.namespace} returned a foreign document"
                )

            if doc.collection_id != scope.collection_id:
                logger.warning(
                    "Dropping hit %s from collection %s while searching %s",
                    doc_id,
                    doc.collection_id,
                    scope.collection_id,
                )
                continue

            metadata = doc.search_metadata()
            if search_filter is not None and not search_filter.matches(metadata):
                continue

            results.append(
                SearchResult(
                    document_id=doc.id,
                    score=score,
                    content=doc.content,
                    metadata=metadata,
                )
            )
            if len(results) >= top_k:
                break

        results.sort(key=lambda r: r.score, reverse=True)
        return results

    async def stats(self, tenant_id: str, collection_id: str) -> IndexStats:
        scope = validate_scope(tenant_id, collection_id)
        return IndexStats(
            tenant_id=scope.tenant_id,
            collection_id=scope.collection_id,
            vectors=await self.backend.count(scope.namespace, scope.collection_id),
            documents=await self.metadata.count(scope.tenant_id, scope.collection_id),
        )
