import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from conftest import FakeCrawler, FakeEmbeddingProvider
from site_kb.container import build_services
from site_kb.main import create_app

LONG = "This page explains our refund and return policy in plenty of detail."


@pytest.fixture
def pages(make_page):
    return [
        make_page("https://acme.test/", f"Welcome. {LONG}", title="Home"),
        make_page("https://acme.test/refunds", f"Refund rules. {LONG}", title="Refunds"),
        make_page("https://acme.test/shipping", "Shipping and delivery take five days, worldwide.", title="Shipping"),
    ]


@pytest_asyncio.fixture
async def services(settings, pages):
    services = build_services(settings, provider=FakeEmbeddingProvider(), crawler=FakeCrawler(pages))
    await services.start()
    yield services
    await services.close()


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services=services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def auth(make_token):
    def _headers(**kwargs):
        return {"Authorization": f"Bearer {make_token(**kwargs)}"}
    return _headers


async def index_site(client, services, auth, collection="site"):
    resp = await client.post(
        f"/collections/{collection}/indexing",
        json={"domain": "acme.test"},
        headers=auth(),
    )
    assert resp.status_code == 202
    await services.pool.join()
    return resp.json()


# ---------------------------------------------------------------------
# Health & auth
# ---------------------------------------------------------------------

def test_lifespan_starts_and_stops_services(settings, pages):
    services = build_services(settings, provider=FakeEmbeddingProvider(), crawler=FakeCrawler(pages))

    with TestClient(create_app(services=services)) as c:
        resp = c.get("/health")
        assert resp.status_code == 200
        assert services.pool.running

    assert resp.json() == {
        "status": "ok",
        "vector_backend": "faiss",
        "embedding_model": "fake-bow",
        "workers": 1,
        "queued_jobs": 0,
    }
    assert not services.pool.running


async def test_missing_token_rejected(client):
    resp = await client.get("/collections/site/indexing")
    assert resp.status_code in (401, 403)


async def test_missing_scope_forbidden(client, auth):
    resp = await client.post(
        "/collections/site/indexing",
        json={"domain": "acme.test"},
        headers=auth(scopes=["retrieval"]),
    )
    assert resp.status_code == 403

    resp = await client.post(
        "/collections/site/retrieve",
        json={"query": "refund"},
        headers=auth(scopes=["indexing"]),
    )
    assert resp.status_code == 403


# ---------------------------------------------------------------------
# Indexing
# ---------------------------------------------------------------------

async def test_start_and_poll_indexing(client, services, auth):
    started = await index_site(client, services, auth)
    assert started["created"] is True
    assert started["status"] == "queued"

    resp = await client.get("/collections/site/indexing", headers=auth())

    assert resp.status_code == 200
    body = resp.json()
    assert body["job_id"] == started["job_id"]
    assert body["status"] == "completed"
    assert body["domain"] == "https://acme.test/"
    assert body["pages_found"] == 3
    assert body["documents_indexed"] == 3
    assert "tenant_id" not in body


async def test_second_start_returns_existing_job(client, services, auth, pages):
    crawler = FakeCrawler(pages, gated=True)
    services.coordinator.crawler = crawler

    first = await client.post("/collections/site/indexing", json={"domain": "acme.test"}, headers=auth())
    await crawler.entered.wait()
    second = await client.post("/collections/site/indexing", json={"domain": "acme.test"}, headers=auth())

    assert first.status_code == 202
    assert second.status_code == 200
    assert second.json()["created"] is False
    assert second.json()["job_id"] == first.json()["job_id"]

    crawler.release()
    await services.pool.join()


async def test_crawl_options_override_defaults(client, services, auth):
    resp = await client.post(
        "/collections/site/indexing",
        json={"domain": "acme.test", "max_pages": 3, "respect_robots": False},
        headers=auth(),
    )
    assert resp.status_code == 202
    await services.pool.join()

    job = await services.jobs.get_job(resp.json()["job_id"])
    assert job.options["max_pages"] == 3
    assert job.options["respect_robots"] is False


@pytest.mark.parametrize(
    "payload",
    [{"domain": "ftp://acme.test"}, {"domain": ""}, {"domain": "acme.test", "tenant_id": "globex"}],
)
async def test_invalid_start_requests(client, auth, payload):
    resp = await client.post("/collections/site/indexing", json=payload, headers=auth())
    assert resp.status_code == 422


async def test_status_of_unknown_collection(client, auth):
    resp = await client.get("/collections/never/indexing", headers=auth())

    assert resp.status_code == 404
    assert resp.json()["error"] == "not_indexed"


async def test_invalid_collection_id(client, auth):
    resp = await client.get("/collections/bad id/indexing", headers=auth())

    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_tenant"


async def test_cancel_without_running_job(client, auth):
    resp = await client.post("/collections/site/indexing/cancel", headers=auth())

    assert resp.status_code == 409
    assert resp.json()["error"] == "job_conflict"


async def test_cancel_running_job(client, services, auth, pages):
    crawler = FakeCrawler(pages, gated=True)
    services.coordinator.crawler = crawler

    await client.post("/collections/site/indexing", json={"domain": "acme.test"}, headers=auth())
    await crawler.entered.wait()

    resp = await client.post("/collections/site/indexing/cancel", headers=auth())
    assert resp.status_code == 202
    assert resp.json()["cancel_requested"] is True

    crawler.release()
    await services.pool.join()

    status = await client.get("/collections/site/indexing", headers=auth())
    assert status.json()["status"] == "cancelled"


async def test_reindex(client, services, auth):
    resp = await client.post("/collections/site/reindex", headers=auth())
    assert resp.status_code == 404

    await index_site(client, services, auth)

    resp = await client.post("/collections/site/reindex", headers=auth())
    assert resp.status_code == 202
    assert resp.json()["created"] is True
    await services.pool.join()


async def test_delete_collection(client, services, auth):
    await index_site(client, services, auth)

    resp = await client.delete("/collections/site", headers=auth())

    assert resp.status_code == 200
    assert resp.json() == {"status": "deleted", "vectors_removed": 3, "documents_removed": 3}


# ---------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------

async def test_retrieve_context(client, services, auth):
    await index_site(client, services, auth)

    resp = await client.post(
        "/collections/site/retrieve",
        json={"query": "What is the refund policy?", "top_k": 2},
        headers=auth(),
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["has_knowledge"] is True
    assert len(body["sources"]) == 2
    assert body["sources"][0]["url"] in ("https://acme.test/", "https://acme.test/refunds")
    assert "refund" in body["context"].lower()


async def test_retrieve_without_knowledge(client, auth):
    resp = await client.post("/collections/site/retrieve", json={"query": "refund"}, headers=auth())

    assert resp.status_code == 200
    assert resp.json() == {"status": "no_knowledge", "has_knowledge": False, "context": None, "sources": []}


async def test_retrieve_is_tenant_scoped(client, services, auth):
    await index_site(client, services, auth)

    resp = await client.post(
        "/collections/site/retrieve",
        json={"query": "refund"},
        headers=auth(tenant_id="globex"),
    )

    assert resp.json()["has_knowledge"] is False


@pytest.mark.parametrize("payload", [{"query": "   "}, {"query": "refund", "top_k": 0}, {"query": "refund", "top_k": 21}])
async def test_invalid_retrieve_requests(client, auth, payload):
    resp = await client.post("/collections/site/retrieve", json=payload, headers=auth())
    assert resp.status_code == 422
