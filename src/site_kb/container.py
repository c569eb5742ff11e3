"""
Service Container

Builds every long-lived service from Settings and wires them together.
The FastAPI app keeps the container on `app.state`; the CLI builds its
own. Nothing here is a module-level singleton.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from .config import Settings
from .crawler import Crawler, CrawlOptions
from .db import create_engine, create_session_factory, init_models
from .embeddings.cache import CacheStore, EmbeddingCache, InMemoryCacheStore, RedisCacheStore
from .embeddings.embedder import EmbeddingProvider, OpenAIEmbedder
from .index import (
    FaissVectorBackend,
    PgVectorBackend,
    SqlMetadataStore,
    TenantVectorIndex,
    VectorBackend,
)
from .jobs import IndexingJobCoordinator, SqlJobStore, WorkerPool
from .processing.processor import ContentProcessor
from .retrieval import RetrievalService

logger = logging.getLogger("kb.app")


@dataclass
class ServiceContainer:
    settings: Settings
    engine: AsyncEngine
    embeddings: EmbeddingCache
    index: TenantVectorIndex
    jobs: SqlJobStore
    pool: WorkerPool
    coordinator: IndexingJobCoordinator
    retrieval: RetrievalService
    _closeables: List[Any] = field(default_factory=list, repr=False)

    async def start(self) -> None:
        await init_models(self.engine, with_vectors=self.settings.vector_backend == "pgvector")
        self.pool.start()

    async def close(self) -> None:
        await self.pool.stop()
        for resource in self._closeables:
            await resource.aclose()
        await self.engine.dispose()


def build_services(
    settings: Settings,
    provider: Optional[EmbeddingProvider] = None,
    cache_store: Optional[CacheStore] = None,
    crawler: Optional[Crawler] = None,
) -> ServiceContainer:
    """
    Assemble the pipeline.

    `provider`, `cache_store` and `crawler` override the configured
    defaults (tests, alternative providers).
    """
    closeables: List[Any] = []

    engine = create_engine(settings.database_url)
    session_factory = create_session_factory(engine)

    if provider is None:
        if settings.openai_api_key is None:
            raise ValueError("OPENAI_API_KEY is required when no embedding provider is injected")
        embedder = OpenAIEmbedder(
            api_key=settings.openai_api_key.get_secret_value(),
            model=settings.embedding_model,
            base_url=settings.embedding_api_url,
            dimensions=settings.embedding_dimensions,
        )
        closeables.append(embedder)
        provider = embedder

    if cache_store is None:
        if settings.redis_url:
            redis_store = RedisCacheStore.from_url(settings.redis_url)
            closeables.append(redis_store)
            cache_store = redis_store
        else:
            cache_store = InMemoryCacheStore()

    embeddings = EmbeddingCache(
        provider,
        store=cache_store,
        batch_size=settings.embedding_batch_size,
        batch_delay=settings.embedding_batch_delay,
        max_retries=settings.embedding_max_retries,
        retry_base_delay=settings.embedding_retry_base_delay,
        ttl=settings.embedding_cache_ttl,
    )

    backend: VectorBackend
    if settings.vector_backend == "pgvector":
        backend = PgVectorBackend(session_factory)
    else:
        backend = FaissVectorBackend(settings.data_root_path)

    index = TenantVectorIndex(backend, SqlMetadataStore(session_factory))
    jobs = SqlJobStore(session_factory, lease_ttl=settings.job_lease_ttl)
    pool = WorkerPool(settings.worker_pool_size)

    coordinator = IndexingJobCoordinator(
        store=jobs,
        crawler=crawler or Crawler(
            user_agent=settings.crawl_user_agent,
            politeness_delay=settings.crawl_politeness_delay,
        ),
        processor=ContentProcessor(
            min_content_length=settings.min_content_length,
            max_chunk_length=settings.max_chunk_length,
        ),
        embeddings=embeddings,
        index=index,
        pool=pool,
        default_options=CrawlOptions(
            max_pages=settings.crawl_max_pages,
            timeout=settings.crawl_timeout,
            respect_robots=settings.crawl_respect_robots,
        ),
        deadline_seconds=settings.job_deadline_seconds,
    )

    retrieval = RetrievalService(
        embeddings,
        index,
        top_k=settings.retrieval_top_k,
        max_context_chars=settings.retrieval_max_context_chars,
    )

    logger.info(
        "Services built (vector backend=%s, cache=%s, workers=%d)",
        settings.vector_backend,
        type(cache_store).__name__,
        settings.worker_pool_size,
    )

    return ServiceContainer(
        settings=settings,
        engine=engine,
        embeddings=embeddings,
        index=index,
        jobs=jobs,
        pool=pool,
        coordinator=coordinator,
        retrieval=retrieval,
        _closeables=closeables,
    )
