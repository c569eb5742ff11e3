import asyncio
import re
import time
from typing import Callable, List, Optional, Sequence

import jwt
import pytest
import pytest_asyncio

from site_kb.config import Settings
from site_kb.core.errors import EmbeddingProviderError
from site_kb.crawler import CrawlResult, RawPage, seed_url
from site_kb.db import create_engine, create_session_factory, init_models
from site_kb.embeddings.cache import EmbeddingCache, InMemoryCacheStore
from site_kb.index import FaissVectorBackend, SqlMetadataStore, TenantVectorIndex
from site_kb.jobs import SqlJobStore, WorkerPool
from site_kb.processing.models import Document, DocumentType, document_id_for

TEST_JWT_SECRET = "test-secret-platform-must-be-long-enough-32chars"
TEST_JWT_ALGO = "HS256"

VOCABULARY = (
    "refund", "return", "shipping", "delivery", "pricing", "price",
    "contact", "support", "hours", "warranty", "product", "faq",
)


# ---------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------

class FakeEmbeddingProvider:
    """
    Bag-of-words embeddings over a fixed vocabulary.

    Texts containing any word in `fail_on` make the whole call fail.
    `on_call` runs (awaited) before every call.
    """

    model = "fake-bow"

    def __init__(self, fail_on: Sequence[str] = (), on_call=None):
        self.fail_on = set(fail_on)
        self.on_call = on_call
        self.calls: List[List[str]] = []

    @staticmethod
    def vector(text: str) -> List[float]:
        words = re.findall(r"[a-z]+", text.lower())
        # small constant component keeps every vector non-zero
        return [float(words.count(w)) for w in VOCABULARY] + [0.05]

    async def embed(self, texts):
        self.calls.append(list(texts))
        if self.on_call is not None:
            await self.on_call(list(texts))
        for text in texts:
            if any(word in text.lower() for word in self.fail_on):
                raise EmbeddingProviderError("provider rejected input")
        return [self.vector(t) for t in texts]


class FakeCrawler:
    """
    Returns canned pages. Optionally blocks until `release()` is called.
    """

    def __init__(self, pages: Optional[List[RawPage]] = None, error: Optional[Exception] = None, gated: bool = False):
        self.pages = pages or []
        self.error = error
        self.entered = asyncio.Event()
        self._gate = asyncio.Event()
        if not gated:
            self._gate.set()
        self.crawled: List[str] = []

    def release(self) -> None:
        self._gate.set()

    async def crawl(self, domain, options=None, should_cancel=None, on_progress=None):
        self.crawled.append(domain)
        self.entered.set()
        await self._gate.wait()

        if self.error is not None:
            raise self.error

        result = CrawlResult(root_url=seed_url(domain))
        if should_cancel is not None and should_cancel():
            result.cancelled = True
            return result

        result.pages = list(self.pages)
        result.visited = [p.url for p in self.pages]
        return result


# ---------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------

@pytest.fixture
def make_page() -> Callable[..., RawPage]:
    def _make(url: str, text: str, title: str = "Page") -> RawPage:
        return RawPage(url=url, title=title, text=text)
    return _make


@pytest.fixture
def make_doc() -> Callable[..., Document]:
    def _make(
        content: str,
        tenant_id: str = "acme",
        collection_id: str = "site",
        url: str = "https://acme.test/page",
        chunk_index: int = 0,
        doc_type: DocumentType = DocumentType.WEBPAGE,
        title: str = "Page",
    ) -> Document:
        return Document(
            id=document_id_for(tenant_id, collection_id, url, chunk_index),
            tenant_id=tenant_id,
            collection_id=collection_id,
            url=url,
            title=title,
            content=content,
            type=doc_type,
            chunk_index=chunk_index,
        )
    return _make


@pytest.fixture
def make_token() -> Callable[..., str]:
    def _make(
        tenant_id="acme",
        scopes=None,
        issuer="site-kb-platform",
        audience="site-kb",
        expired=False,
        secret=TEST_JWT_SECRET,
        **extra,
    ) -> str:
        if scopes is None:
            scopes = ["indexing", "retrieval"]
        now = int(time.time())
        iat = now - 3600 if expired else now
        exp = iat - 10 if expired else now + 300
        payload = {
            "iss": issuer,
            "aud": audience,
            "iat": iat,
            "exp": exp,
            "sub": "dashboard-user",
            "tenant_id": tenant_id,
            "scope": scopes,
            "client_id": "dashboard",
        }
        payload.update(extra)
        payload = {k: v for k, v in payload.items() if v is not None}
        return jwt.encode(payload, secret, algorithm=TEST_JWT_ALGO)
    return _make


# ---------------------------------------------------------------------
# Pipeline fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        jwt_secret=TEST_JWT_SECRET,
        embedding_batch_delay=0.0,
        embedding_retry_base_delay=0.0,
        crawl_politeness_delay=0.0,
        min_content_length=20,
        worker_pool_size=1,
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_engine("sqlite+aiosqlite://")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def embeddings(provider) -> EmbeddingCache:
    return EmbeddingCache(
        provider,
        store=InMemoryCacheStore(),
        batch_size=20,
        batch_delay=0.0,
        max_retries=1,
        retry_base_delay=0.0,
    )


@pytest.fixture
def metadata_store(session_factory) -> SqlMetadataStore:
    return SqlMetadataStore(session_factory)


@pytest.fixture
def backend() -> FaissVectorBackend:
    return FaissVectorBackend()


@pytest.fixture
def index(backend, metadata_store) -> TenantVectorIndex:
    return TenantVectorIndex(backend, metadata_store)


@pytest.fixture
def job_store(session_factory) -> SqlJobStore:
    return SqlJobStore(session_factory, lease_ttl=60, owner="test-host:1")


@pytest_asyncio.fixture
async def pool():
    pool = WorkerPool(size=1)
    pool.start()
    yield pool
    await pool.stop()
