"""
FAISS Vector Backend

Tenant-namespaced FAISS storage. Each (namespace, collection) pair gets its
own index, so a query can only ever scan vectors of one tenant's
collection.

Key Properties
--------------
- Explicit ID management via IndexIDMap2 (string document ids are mapped
  to stable int64 ids)
- Cosine similarity via inner product on L2-normalized vectors
- Last-write-wins upserts (remove-then-add)
- Optional persistence under `<data_root>/<namespace>/<collection>.faiss`
- Concurrency-safe (thread locking)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional, Sequence, Set, Tuple

import faiss
import numpy as np

from ..core.errors import VectorIndexError
from ..tenants import get_namespace_data_path, validate_namespace
from .models import VectorRecord

logger = logging.getLogger("kb.index")


# ---------------------------------------------------------------------
# Per-collection index
# ---------------------------------------------------------------------

class _CollectionIndex:
    """
    FAISS index for one collection inside one namespace.
    """

    def __init__(
        self,
        index_path: Optional[Path] = None,
        meta_path: Optional[Path] = None,
    ) -> None:
        self._index_path = index_path
        self._meta_path = meta_path

        self._index: Optional[faiss.IndexIDMap2] = None
        self._int_ids: Dict[str, int] = {}
        self._doc_ids: Dict[int, str] = {}
        self._next_id: int = 0

        self._lock = RLock()

    @property
    def dim(self) -> Optional[int]:
        return self._index.d if self._index is not None else None

    def __len__(self) -> int:
        return len(self._int_ids)

    def _init_index(self, dim: int) -> None:
        base = faiss.IndexFlatIP(dim)
        self._index = faiss.IndexIDMap2(base)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def upsert(self, records: Sequence[VectorRecord]) -> None:
        if not records:
            return

        dim = len(records[0].vector)
        if dim == 0:
            raise VectorIndexError("Embedding vectors must be non-empty.")
        for record in records:
            if len(record.vector) != dim:
                raise VectorIndexError(
                    f"Inconsistent embedding dimensionality for {record.id}."
                )

        with self._lock:
            if self._index is None or (not self._int_ids and self._index.d != dim):
                self._init_index(dim)
            elif self._index.d != dim:
                raise VectorIndexError(
                    f"Dimension {dim} does not match collection dimension {self._index.d}."
                )

            # Re-upserted ids keep their int id; the old vector is removed first
            ids: List[int] = []
            replaced: List[int] = []
            new_keys: Dict[str, int] = {}
            for record in records:
                int_id = self._int_ids.get(record.id)
                if int_id is None:
                    int_id = new_keys.get(record.id)
                if int_id is None:
                    int_id = self._next_id + len(new_keys)
                    new_keys[record.id] = int_id
                else:
                    replaced.append(int_id)
                ids.append(int_id)

            # Within one call the last vector for an id wins
            latest: Dict[int, List[float]] = {}
            for int_id, record in zip(ids, records):
                latest[int_id] = record.vector

            vectors = np.asarray(list(latest.values()), dtype="float32")
            faiss.normalize_L2(vectors)
            id_array = np.asarray(list(latest.keys()), dtype="int64")

            try:
                if replaced:
                    self._index.remove_ids(np.asarray(sorted(set(replaced)), dtype="int64"))
                self._index.add_with_ids(vectors, id_array)
            except Exception as exc:
                raise VectorIndexError(
                    f"Failed to add vectors to FAISS: {type(exc).__name__}"
                ) from exc

            self._next_id += len(new_keys)
            for doc_id, int_id in new_keys.items():
                self._int_ids[doc_id] = int_id
                self._doc_ids[int_id] = doc_id

    def remove(self, doc_ids: Sequence[str]) -> int:
        with self._lock:
            int_ids = [self._int_ids[d] for d in doc_ids if d in self._int_ids]
            if not int_ids or self._index is None:
                return 0

            try:
                self._index.remove_ids(np.asarray(int_ids, dtype="int64"))
            except Exception as exc:
                raise VectorIndexError(
                    f"Failed to remove IDs from FAISS: {type(exc).__name__}"
                ) from exc

            for int_id in int_ids:
                doc_id = self._doc_ids.pop(int_id)
                self._int_ids.pop(doc_id, None)
            return len(int_ids)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def search(self, vector: List[float], k: int) -> List[Tuple[str, float]]:
        with self._lock:
            if self._index is None or not self._int_ids:
                return []
            if len(vector) != self._index.d:
                raise VectorIndexError(
                    f"Query dimension {len(vector)} does not match collection dimension {self._index.d}."
                )

            q = np.asarray([vector], dtype="float32")
            faiss.normalize_L2(q)

            scores, idxs = self._index.search(q, min(k, self._index.ntotal))

            results: List[Tuple[str, float]] = []
            for score, idx in zip(scores[0], idxs[0]):
                idx = int(idx)
                if idx == -1:
                    continue
                doc_id = self._doc_ids.get(idx)
                if doc_id is None:
                    continue
                results.append((doc_id, float(score)))
            return results

    def ids(self) -> Set[str]:
        with self._lock:
            return set(self._int_ids)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self) -> None:
        with self._lock:
            if self._index_path is None or self._meta_path is None:
                return

            if self._index is None:
                return

            self._index_path.parent.mkdir(parents=True, exist_ok=True)

            try:
                faiss.write_index(self._index, str(self._index_path))
            except Exception as exc:
                raise VectorIndexError(
                    f"Failed to write FAISS index: {type(exc).__name__}"
                ) from exc

            meta = {"next_id": self._next_id, "ids": self._int_ids}

            try:
                with self._meta_path.open("w", encoding="utf-8") as f:
                    json.dump(meta, f)
            except OSError as exc:
                raise VectorIndexError(
                    f"Failed to write FAISS metadata: {type(exc).__name__}"
                ) from exc

    def load(self) -> None:
        with self._lock:
            if self._index_path is None or not self._index_path.exists():
                return

            try:
                self._index = faiss.read_index(str(self._index_path))
            except Exception as exc:
                raise VectorIndexError(
                    f"Failed to read FAISS index: {type(exc).__name__}"
                ) from exc

            if self._meta_path is None or not self._meta_path.exists():
                raise VectorIndexError(f"Missing FAISS metadata next to {self._index_path}")

            try:
                with self._meta_path.open("r", encoding="utf-8") as f:
                    data = json.load(f)
                self._next_id = int(data.get("next_id", 0))
                self._int_ids = {str(k): int(v) for k, v in data.get("ids", {}).items()}
                self._doc_ids = {v: k for k, v in self._int_ids.items()}
            except (OSError, ValueError, AttributeError) as exc:
                raise VectorIndexError(
                    f"Failed to load FAISS metadata: {type(exc).__name__}"
                ) from exc

    def destroy(self) -> None:
        with self._lock:
            for path in (self._index_path, self._meta_path):
                if path is not None and path.exists():
                    path.unlink()
            self._index = None
            self._int_ids.clear()
            self._doc_ids.clear()
            self._next_id = 0


# ---------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------

class FaissVectorBackend:
    """
    Registry of per-(namespace, collection) FAISS indexes.

    Parameters
    ----------
    data_root : Optional[str]
        Directory for persisted indexes. Indexes are kept in memory only
        when omitted.
    """

    def __init__(self, data_root: Optional[str] = None) -> None:
        self._data_root = data_root
        self._registry: Dict[str, Dict[str, _CollectionIndex]] = {}
        self._lock = RLock()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def _paths(self, namespace: str, collection_id: str) -> Tuple[Optional[Path], Optional[Path]]:
        if self._data_root is None:
            return None, None
        directory = get_namespace_data_path(self._data_root, namespace)
        return directory / f"{collection_id}.faiss", directory / f"{collection_id}.json"

    def _namespace(self, namespace: str) -> Dict[str, _CollectionIndex]:
        """
        Collections of a namespace, loading persisted ones on first access.
        """
        validate_namespace(namespace)

        with self._lock:
            collections = self._registry.get(namespace)
            if collections is not None:
                return collections

            collections = {}
            if self._data_root is not None:
                directory = get_namespace_data_path(self._data_root, namespace)
                if directory.is_dir():
                    for index_path in sorted(directory.glob("*.faiss")):
                        collection_id = index_path.stem
                        index = _CollectionIndex(*self._paths(namespace, collection_id))
                        index.load()
                        collections[collection_id] = index
                        logger.info(
                            "Loaded FAISS index %s/%s (%d vectors)",
                            namespace,
                            collection_id,
                            len(index),
                        )

            self._registry[namespace] = collections
            return collections

    def _collection(self, namespace: str, collection_id: str, create: bool) -> Optional[_CollectionIndex]:
        with self._lock:
            collections = self._namespace(namespace)
            index = collections.get(collection_id)
            if index is None and create:
                index = _CollectionIndex(*self._paths(namespace, collection_id))
                collections[collection_id] = index
            return index

    # ------------------------------------------------------------------
    # VectorBackend
    # ------------------------------------------------------------------

    async def upsert(self, namespace: str, records: Sequence[VectorRecord]) -> None:
        by_collection: Dict[str, List[VectorRecord]] = {}
        for record in records:
            by_collection.setdefault(record.collection_id, []).append(record)

        for collection_id, items in by_collection.items():
            index = self._collection(namespace, collection_id, create=True)
            index.upsert(items)
            index.save()

    async def query(
        self,
        namespace: str,
        collection_id: str,
        vector: List[float],
        k: int,
    ) -> List[Tuple[str, float]]:
        index = self._collection(namespace, collection_id, create=False)
        if index is None:
            return []
        return index.search(vector, k)

    async def delete(
        self,
        namespace: str,
        collection_id: Optional[str] = None,
        ids: Optional[Sequence[str]] = None,
    ) -> int:
        with self._lock:
            collections = self._namespace(namespace)
            targets = (
                [collection_id] if collection_id is not None else list(collections)
            )

            removed = 0
            for target in targets:
                index = collections.get(target)
                if index is None:
                    continue

                if ids is None:
                    removed += len(index)
                    index.destroy()
                    collections.pop(target, None)
                else:
                    count = index.remove(ids)
                    if count:
                        removed += count
                        index.save()
            return removed

    async def ids(self, namespace: str, collection_id: Optional[str] = None) -> Set[str]:
        with self._lock:
            collections = self._namespace(namespace)
            if collection_id is not None:
                index = collections.get(collection_id)
                return index.ids() if index is not None else set()

            found: Set[str] = set()
            for index in collections.values():
                found |= index.ids()
            return found

    async def dimension(self, namespace: str, collection_id: str) -> Optional[int]:
        index = self._collection(namespace, collection_id, create=False)
        return index.dim if index is not None and len(index) else None

    async def count(self, namespace: str, collection_id: str) -> int:
        index = self._collection(namespace, collection_id, create=False)
        return len(index) if index is not None else 0
