from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeCrawler, FakeEmbeddingProvider
from site_kb.core.errors import InvalidTenantError, JobConflictError, NotIndexedError
from site_kb.crawler import CrawlOptions
from site_kb.embeddings.cache import EmbeddingCache, InMemoryCacheStore
from site_kb.jobs import IndexingJobCoordinator, JobStatus, SqlJobStore
from site_kb.jobs.coordinator import NO_PAGES_ERROR
from site_kb.processing.processor import ContentProcessor

LONG = "This page explains our refund and return policy in plenty of detail."


@pytest.fixture
def pages(make_page):
    return [
        make_page("https://acme.test/", f"Welcome. {LONG}", title="Home"),
        make_page("https://acme.test/refunds", f"Refund rules. {LONG}", title="Refunds"),
        make_page("https://acme.test/shipping", "Shipping and delivery take five days, worldwide.", title="Shipping"),
    ]


@pytest.fixture
def build(job_store, index, pool):
    """Coordinator factory over the shared store, index and pool."""
    def _build(crawler, provider=None, batch_size=20, deadline_seconds=None):
        embeddings = EmbeddingCache(
            provider or FakeEmbeddingProvider(),
            store=InMemoryCacheStore(),
            batch_size=batch_size,
            batch_delay=0.0,
            max_retries=0,
            retry_base_delay=0.0,
        )
        return IndexingJobCoordinator(
            store=job_store,
            crawler=crawler,
            processor=ContentProcessor(min_content_length=20, max_chunk_length=2000),
            embeddings=embeddings,
            index=index,
            pool=pool,
            default_options=CrawlOptions(max_pages=10),
            deadline_seconds=deadline_seconds,
        )
    return _build


async def run_to_end(coordinator, ref):
    await ref.handle.wait(timeout=5)
    return await coordinator.store.get_job(ref.job_id)


async def test_job_runs_to_completion(build, pages, index):
    coordinator = build(FakeCrawler(pages))

    ref = await coordinator.start_indexing("acme", "site", "acme.test")
    assert ref.created
    assert ref.status is JobStatus.QUEUED

    job = await run_to_end(coordinator, ref)

    assert job.status is JobStatus.COMPLETED
    assert job.domain == "https://acme.test/"
    assert job.pages_found == 3
    assert job.pages_processed == 3
    assert job.pages_failed == 0
    assert job.documents_indexed == 3
    assert job.started_at is not None and job.completed_at is not None
    assert (await index.stats("acme", "site")).documents == 3

    status = await coordinator.get_status("acme", "site")
    assert status.job_id == ref.job_id


async def test_second_start_returns_running_job(build, pages):
    crawler = FakeCrawler(pages, gated=True)
    coordinator = build(crawler)

    first = await coordinator.start_indexing("acme", "site", "acme.test")
    await crawler.entered.wait()
    second = await coordinator.start_indexing("acme", "site", "acme.test")

    assert not second.created
    assert second.job_id == first.job_id
    assert second.status is JobStatus.SCRAPING

    crawler.release()
    job = await run_to_end(coordinator, first)
    assert job.status is JobStatus.COMPLETED
    assert crawler.crawled == ["https://acme.test/"]


async def test_cancel_during_crawl(build, pages):
    crawler = FakeCrawler(pages, gated=True)
    coordinator = build(crawler)

    ref = await coordinator.start_indexing("acme", "site", "acme.test")
    await crawler.entered.wait()
    flagged = await coordinator.cancel("acme", "site")
    assert flagged.cancel_requested
    crawler.release()

    job = await run_to_end(coordinator, ref)

    assert job.status is JobStatus.CANCELLED
    assert job.documents_indexed == 0
    assert await coordinator.store.active_job("acme", "site") is None


async def test_cancel_between_embedding_batches(build, pages, index):
    coordinator = None

    async def cancel_on_first_batch(texts):
        if len(provider.calls) == 1:
            await coordinator.cancel("acme", "site")

    provider = FakeEmbeddingProvider(on_call=cancel_on_first_batch)
    coordinator = build(FakeCrawler(pages), provider=provider, batch_size=1)

    ref = await coordinator.start_indexing("acme", "site", "acme.test")
    job = await run_to_end(coordinator, ref)

    assert job.status is JobStatus.CANCELLED
    assert job.documents_indexed == 1
    assert len(provider.calls) == 1
    # work finished before cancellation is kept
    assert (await index.stats("acme", "site")).documents == 1
    hits = await index.search("acme", "site", FakeEmbeddingProvider.vector("refund policy"), top_k=5)
    assert [hit.metadata["url"] for hit in hits] == ["https://acme.test/"]


async def test_no_pages_fails_job(build):
    coordinator = build(FakeCrawler([]))

    ref = await coordinator.start_indexing("acme", "site", "acme.test")
    job = await run_to_end(coordinator, ref)

    assert job.status is JobStatus.FAILED
    assert job.error == NO_PAGES_ERROR
    assert await coordinator.store.active_job("acme", "site") is None


async def test_only_short_pages_fails_job(build, make_page):
    coordinator = build(FakeCrawler([make_page("https://acme.test/", "Hi.")]))

    ref = await coordinator.start_indexing("acme", "site", "acme.test")
    job = await run_to_end(coordinator, ref)

    assert job.status is JobStatus.FAILED
    assert job.error == NO_PAGES_ERROR
    assert job.pages_skipped == 1


async def test_crawler_error_fails_job_and_releases_lease(build, pages):
    coordinator = build(FakeCrawler(error=RuntimeError("network down")))

    ref = await coordinator.start_indexing("acme", "site", "acme.test")
    job = await run_to_end(coordinator, ref)

    assert job.status is JobStatus.FAILED
    assert "RuntimeError" in job.error
    assert "network down" in job.error

    coordinator.crawler = FakeCrawler(pages)
    retry = await coordinator.start_indexing("acme", "site", "acme.test")
    assert retry.created
    assert (await run_to_end(coordinator, retry)).status is JobStatus.COMPLETED


async def test_failed_embedding_counts_page_as_failed(build, pages):
    provider = FakeEmbeddingProvider(fail_on=["shipping"])
    coordinator = build(FakeCrawler(pages), provider=provider)

    ref = await coordinator.start_indexing("acme", "site", "acme.test")
    job = await run_to_end(coordinator, ref)

    assert job.status is JobStatus.COMPLETED
    assert job.documents_indexed == 2
    assert job.pages_processed == 2
    assert job.pages_failed == 1


async def test_deadline_fails_job(build, pages):
    crawler = FakeCrawler(pages, gated=True)
    coordinator = build(crawler, deadline_seconds=0.05)

    ref = await coordinator.start_indexing("acme", "site", "acme.test")
    job = await run_to_end(coordinator, ref)

    assert job.status is JobStatus.FAILED
    assert "deadline" in job.error


async def test_reindex_replaces_content(build, pages, index, make_page):
    crawler = FakeCrawler(pages)
    coordinator = build(crawler)
    first = await coordinator.start_indexing("acme", "site", "acme.test", CrawlOptions(max_pages=7))
    await run_to_end(coordinator, first)

    crawler.pages = pages[:1]
    ref = await coordinator.reindex("acme", "site")
    assert ref.created
    job = await run_to_end(coordinator, ref)

    assert job.status is JobStatus.COMPLETED
    assert job.options["max_pages"] == 7
    assert (await index.stats("acme", "site")).documents == 1


async def test_reindex_requires_previous_job(build):
    coordinator = build(FakeCrawler([]))

    with pytest.raises(NotIndexedError):
        await coordinator.reindex("acme", "site")


async def test_delete_refused_while_job_runs(build, pages, index):
    crawler = FakeCrawler(pages, gated=True)
    coordinator = build(crawler)

    ref = await coordinator.start_indexing("acme", "site", "acme.test")
    await crawler.entered.wait()
    with pytest.raises(JobConflictError):
        await coordinator.delete_collection("acme", "site")
    with pytest.raises(JobConflictError):
        await coordinator.reconcile("acme")

    crawler.release()
    await run_to_end(coordinator, ref)

    report = await coordinator.delete_collection("acme", "site")
    assert report.documents_removed == 3
    assert (await index.stats("acme", "site")).vectors == 0


async def test_abandoned_job_does_not_block_collection(build, pages, session_factory):
    now = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
    store = SqlJobStore(session_factory, lease_ttl=30, owner="dead-host:1", clock=lambda: now[0])
    dead = await store.create_job("acme", "site", "https://acme.test/", {"max_pages": 10})
    await store.transition(dead.job_id, JobStatus.SCRAPING)

    # the owning process never reports again
    now[0] += timedelta(hours=1)

    coordinator = build(FakeCrawler(pages))
    coordinator.store = store

    status = await coordinator.get_status("acme", "site")
    assert status.job_id == dead.job_id
    assert status.status is JobStatus.FAILED
    assert await coordinator.cancel("acme", "site") is None

    report = await coordinator.delete_collection("acme", "site")
    assert report.documents_removed == 0

    ref = await coordinator.reindex("acme", "site")
    assert ref.created
    assert ref.job_id != dead.job_id
    job = await run_to_end(coordinator, ref)
    assert job.status is JobStatus.COMPLETED


async def test_invalid_identifiers_rejected_before_job_creation(build):
    coordinator = build(FakeCrawler([]))

    with pytest.raises(InvalidTenantError):
        await coordinator.start_indexing("acme", "../x", "acme.test")
    with pytest.raises(ValueError):
        await coordinator.start_indexing("acme", "site", "ftp://acme.test")
    assert await coordinator.get_status("acme", "site") is None
