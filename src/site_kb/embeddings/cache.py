"""
Embedding Cache

Content-addressed cache in front of an embedding provider.

Responsibilities
----------------
- Key vectors by `sha256` of the normalized text, namespaced by model
- Coalesce concurrent requests for the same uncached text (single-flight)
- Cap provider batches and space them out across every caller
- Retry failed batches with exponential backoff, then isolate failures
  to the individual item that caused them

Cache store errors are logged and treated as misses; they never fail an
embedding.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..core.errors import EmbeddingProviderError
from .embedder import EmbeddingProvider

logger = logging.getLogger("kb.embeddings")


# ---------------------------------------------------------------------
# Cache stores
# ---------------------------------------------------------------------

class CacheStore(Protocol):
    async def get(self, key: str) -> Optional[List[float]]:
        ...

    async def set(self, key: str, value: List[float], ttl: int) -> None:
        ...


class InMemoryCacheStore:
    """
    Process-local TTL store. Default when no Redis is configured.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._data: Dict[str, Tuple[float, List[float]]] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[List[float]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return list(value)

    async def set(self, key: str, value: List[float], ttl: int) -> None:
        self._data[key] = (self._clock() + ttl, list(value))

    def __len__(self) -> int:
        return len(self._data)


class RedisCacheStore:
    """
    Shared cache backed by Redis. Vectors are stored as JSON arrays.
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheStore":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[List[float]]:
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            logger.warning("Redis cache read failed for %s: %s", key, exc)
            return None

        if raw is None:
            return None

        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("Discarding corrupt cache entry %s", key)
            return None

        if not isinstance(value, list) or not value:
            return None
        return [float(x) for x in value]

    async def set(self, key: str, value: List[float], ttl: int) -> None:
        try:
            await self._redis.setex(key, ttl, json.dumps(value))
        except RedisError as exc:
            logger.warning("Redis cache write failed for %s: %s", key, exc)

    async def aclose(self) -> None:
        await self._redis.aclose()


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class EmbeddingOutcome:
    """Result of embedding one input text."""
    vector: Optional[List[float]] = None
    error: Optional[str] = None
    cached: bool = False

    @property
    def ok(self) -> bool:
        return self.vector is not None


def normalize_text(text: str) -> str:
    return " ".join((text or "").split())


# ---------------------------------------------------------------------
# Embedding Cache
# ---------------------------------------------------------------------

class EmbeddingCache:
    """
    Caching, batching and single-flight front for an `EmbeddingProvider`.

    One instance is shared by every job and every retrieval in the
    process, which is what makes the inter-batch delay global.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        store: Optional[CacheStore] = None,
        batch_size: int = 20,
        batch_delay: float = 0.5,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        ttl: int = 7 * 24 * 3600,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        self.provider = provider
        self.store: CacheStore = store if store is not None else InMemoryCacheStore()
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.max_retry_delay = max_retry_delay
        self.ttl = ttl

        self._inflight: Dict[str, asyncio.Future] = {}
        self._pace_lock = asyncio.Lock()
        self._last_call: Optional[float] = None

    @property
    def model(self) -> str:
        return self.provider.model

    def cache_key(self, text: str) -> str:
        digest = hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()
        return f"emb:{self.model}:{digest}"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed_one(self, text: str) -> List[float]:
        """
        Embed a single text.

        Raises
        ------
        EmbeddingProviderError
            If the text could not be embedded.
        """
        outcome = (await self.embed_many([text]))[0]
        if outcome.vector is None:
            raise EmbeddingProviderError(outcome.error or "Embedding failed")
        return outcome.vector

    async def embed_many(self, texts: Sequence[str]) -> List[EmbeddingOutcome]:
        """
        Embed many texts, returning one outcome per input in input order.

        Failures are reported per item; this method raises only for
        unexpected (non-provider) errors.
        """
        keys = [self.cache_key(text) for text in texts]

        unique: Dict[str, str] = {}
        for key, text in zip(keys, texts):
            unique.setdefault(key, normalize_text(text))

        resolved: Dict[str, EmbeddingOutcome] = {}
        waiting: Dict[str, asyncio.Future] = {}
        owned: Dict[str, asyncio.Future] = {}
        to_fetch: List[Tuple[str, str]] = []

        for key, text in unique.items():
            if not text:
                resolved[key] = EmbeddingOutcome(error="cannot embed empty text")
                continue

            if key in self._inflight:
                waiting[key] = self._inflight[key]
                continue

            cached = await self.store.get(key)
            if cached is not None:
                resolved[key] = EmbeddingOutcome(vector=cached, cached=True)
                continue

            # Another caller may have claimed the key while we awaited the store
            if key in self._inflight:
                waiting[key] = self._inflight[key]
                continue

            future = asyncio.get_running_loop().create_future()
            self._inflight[key] = future
            owned[key] = future
            to_fetch.append((key, text))

        try:
            for start in range(0, len(to_fetch), self.batch_size):
                batch = to_fetch[start : start + self.batch_size]
                outcomes = await self._embed_batch([text for _, text in batch])

                for (key, _), outcome in zip(batch, outcomes):
                    if outcome.vector is not None:
                        await self.store.set(key, outcome.vector, self.ttl)
                    resolved[key] = outcome
                    owned[key].set_result(outcome)
        finally:
            for key, future in owned.items():
                self._inflight.pop(key, None)
                if not future.done():
                    future.set_result(EmbeddingOutcome(error="embedding request abandoned"))

        for key, future in waiting.items():
            resolved[key] = await asyncio.shield(future)

        return [resolved[key] for key in keys]

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _embed_batch(self, texts: List[str]) -> List[EmbeddingOutcome]:
        try:
            vectors = await self._call_with_retries(texts)
        except EmbeddingProviderError as exc:
            if len(texts) == 1:
                return [EmbeddingOutcome(error=str(exc))]

            logger.warning(
                "Batch of %d failed after retries (%s); embedding items individually",
                len(texts),
                exc,
            )
            outcomes: List[EmbeddingOutcome] = []
            for text in texts:
                try:
                    vector = (await self._call_provider([text]))[0]
                except EmbeddingProviderError as item_exc:
                    outcomes.append(EmbeddingOutcome(error=str(item_exc)))
                else:
                    outcomes.append(EmbeddingOutcome(vector=vector))
            return outcomes

        return [EmbeddingOutcome(vector=vector) for vector in vectors]

    async def _call_with_retries(self, texts: List[str]) -> List[List[float]]:
        attempt = 0
        while True:
            try:
                return await self._call_provider(texts)
            except EmbeddingProviderError as exc:
                if attempt >= self.max_retries:
                    raise
                delay = self._calculate_retry_delay(attempt)
                logger.warning(
                    "Embedding batch failed (attempt %d/%d): %s; retrying in %.2fs",
                    attempt + 1,
                    self.max_retries + 1,
                    exc,
                    delay,
                )
                attempt += 1
                await asyncio.sleep(delay)

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Exponential backoff with jitter."""
        base_delay = self.retry_base_delay * (2 ** attempt)
        jitter = random.uniform(0.1, 0.3) * base_delay
        return min(base_delay + jitter, self.max_retry_delay)

    async def _call_provider(self, texts: List[str]) -> List[List[float]]:
        await self._wait_for_slot()
        vectors = await self.provider.embed(texts)
        return self._validate(vectors, len(texts))

    async def _wait_for_slot(self) -> None:
        """
        Space provider calls at least `batch_delay` apart, across callers.
        """
        async with self._pace_lock:
            if self._last_call is not None and self.batch_delay > 0:
                remaining = self._last_call + self.batch_delay - time.monotonic()
                if remaining > 0:
                    await asyncio.sleep(remaining)
            self._last_call = time.monotonic()

    @staticmethod
    def _validate(vectors: object, expected: int) -> List[List[float]]:
        if not isinstance(vectors, list) or len(vectors) != expected:
            raise EmbeddingProviderError(
                f"Provider returned {len(vectors) if isinstance(vectors, list) else 'no'} "
                f"vectors for {expected} inputs"
            )

        validated: List[List[float]] = []
        for index, vector in enumerate(vectors):
            if not isinstance(vector, (list, tuple)) or not vector:
                raise EmbeddingProviderError(f"Empty or malformed vector at index {index}")
            try:
                validated.append([float(x) for x in vector])
            except (TypeError, ValueError) as exc:
                raise EmbeddingProviderError(f"Non-numeric vector at index {index}") from exc
        return validated
