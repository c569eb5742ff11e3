"""
Indexing Job Coordinator

Orchestrates one crawl -> process -> embed -> index run per
(tenant, collection).

Responsibilities
----------------
- Single-flight: a second `start_indexing` for a collection with a live
  job returns that job instead of starting another crawl
- Forward-only status transitions, persisted on every step
- Live progress counters, persisted (and the lease renewed) after every
  page and every embedding batch
- Cooperative cancellation between page fetches and embedding batches
- Failure capture: any unrecoverable error ends the job `failed` with a
  message, which also releases the lease
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Set, Tuple

from ..core.errors import (
    DuplicateJobError,
    InvalidJobTransition,
    JobCancelled,
    JobConflictError,
    NotIndexedError,
    describe_error,
)
from ..crawler import Crawler, CrawlOptions, CrawlProgress, seed_url
from ..embeddings.cache import EmbeddingCache
from ..index import DeleteReport, ReconcileReport, TenantVectorIndex
from ..processing.models import Document
from ..processing.processor import ContentProcessor, split_batches
from ..tenants import validate_scope
from .models import IndexingJob, JobProgress, JobRef, JobStatus
from .store import SqlJobStore
from .worker_pool import TaskHandle, WorkerPool

logger = logging.getLogger("kb.jobs")

NO_PAGES_ERROR = "No pages found to index"


class _Counters:
    """Running totals of one job."""

    def __init__(self) -> None:
        self.pages_found = 0
        self.pages_processed = 0
        self.crawl_failed = 0
        self.process_failed = 0
        self.pages_skipped = 0
        self.documents_indexed = 0
        self.failed_urls: Set[str] = set()

    def progress(self) -> JobProgress:
        return JobProgress(
            pages_found=self.pages_found,
            pages_processed=self.pages_processed,
            pages_failed=self.crawl_failed + self.process_failed + len(self.failed_urls),
            pages_skipped=self.pages_skipped,
            documents_indexed=self.documents_indexed,
        )


class IndexingJobCoordinator:

    def __init__(
        self,
        store: SqlJobStore,
        crawler: Crawler,
        processor: ContentProcessor,
        embeddings: EmbeddingCache,
        index: TenantVectorIndex,
        pool: WorkerPool,
        default_options: Optional[CrawlOptions] = None,
        deadline_seconds: Optional[float] = None,
    ) -> None:
        self.store = store
        self.crawler = crawler
        self.processor = processor
        self.embeddings = embeddings
        self.index = index
        self.pool = pool
        self.default_options = default_options or CrawlOptions()
        self.deadline_seconds = deadline_seconds

        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._handles: Dict[str, TaskHandle] = {}
        self._cancel_flags: Set[str] = set()

    def _lock_for(self, tenant_id: str, collection_id: str) -> asyncio.Lock:
        return self._locks.setdefault((tenant_id, collection_id), asyncio.Lock())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_indexing(
        self,
        tenant_id: str,
        collection_id: str,
        domain: str,
        options: Optional[CrawlOptions] = None,
    ) -> JobRef:
        """
        Start a crawl-to-index job, or return the live one.

        Raises
        ------
        InvalidTenantError
            If an identifier is malformed.
        ValueError
            If `domain` is not a crawlable host or URL.
        """
        scope = validate_scope(tenant_id, collection_id)
        root_url = seed_url(domain)
        options = options or self.default_options

        # Held only around the check-and-set, never around the crawl
        async with self._lock_for(scope.tenant_id, scope.collection_id):
            try:
                job = await self.store.create_job(
                    scope.tenant_id,
                    scope.collection_id,
                    root_url,
                    options.model_dump(),
                )
            except DuplicateJobError as exc:
                existing = exc.existing
                logger.info(
                    "Job %s already %s for %s/%s; not starting another",
                    existing.job_id,
                    existing.status.value,
                    scope.tenant_id,
                    scope.collection_id,
                )
                return JobRef(
                    job_id=existing.job_id,
                    status=existing.status,
                    created=False,
                    handle=self._handles.get(existing.job_id),
                )

        try:
            handle = await self.pool.submit(
                f"index:{scope.tenant_id}/{scope.collection_id}:{job.job_id}",
                lambda: self._run_job(job, options),
            )
        except RuntimeError as exc:
            await self._finish(job.job_id, JobStatus.FAILED, describe_error(exc))
            raise

        self._handles[job.job_id] = handle
        logger.info(
            "Started job %s for %s/%s (%s)",
            job.job_id,
            scope.tenant_id,
            scope.collection_id,
            root_url,
        )
        return JobRef(job_id=job.job_id, status=job.status, created=True, handle=handle)

    async def get_status(self, tenant_id: str, collection_id: str) -> Optional[IndexingJob]:
        """
        The live job if there is one, otherwise the latest terminal job.
        """
        scope = validate_scope(tenant_id, collection_id)
        active = await self.store.active_job(scope.tenant_id, scope.collection_id)
        if active is not None:
            return active
        return await self.store.latest_job(scope.tenant_id, scope.collection_id)

    async def reindex(self, tenant_id: str, collection_id: str) -> JobRef:
        """
        Delete the collection's content and crawl its domain again.

        Returns the live job untouched when one exists.

        Raises
        ------
        NotIndexedError
            If the collection has never been indexed.
        """
        scope = validate_scope(tenant_id, collection_id)

        async with self._lock_for(scope.tenant_id, scope.collection_id):
            active = await self.store.active_job(scope.tenant_id, scope.collection_id)
            if active is not None:
                return JobRef(
                    job_id=active.job_id,
                    status=active.status,
                    created=False,
                    handle=self._handles.get(active.job_id),
                )

            latest = await self.store.latest_job(scope.tenant_id, scope.collection_id)
            if latest is None:
                raise NotIndexedError(
                    f"Collection {scope.collection_id} has never been indexed"
                )

            await self.index.delete(scope.tenant_id, scope.collection_id)

        options = CrawlOptions(**latest.options) if latest.options else None
        return await self.start_indexing(scope.tenant_id, scope.collection_id, latest.domain, options)

    async def cancel(self, tenant_id: str, collection_id: str) -> Optional[IndexingJob]:
        """
        Request cooperative cancellation of the live job.

        Returns the flagged job, or None when nothing is running.
        """
        scope = validate_scope(tenant_id, collection_id)
        job = await self.store.request_cancel(scope.tenant_id, scope.collection_id)
        if job is not None:
            self._cancel_flags.add(job.job_id)
        return job

    async def delete_collection(self, tenant_id: str, collection_id: str) -> DeleteReport:
        """
        Remove every indexed document of a collection.

        Raises
        ------
        JobConflictError
            If a job is running for the collection.
        """
        scope = validate_scope(tenant_id, collection_id)

        async with self._lock_for(scope.tenant_id, scope.collection_id):
            active = await self.store.active_job(scope.tenant_id, scope.collection_id)
            if active is not None:
                raise JobConflictError(
                    f"Job {active.job_id} is {active.status.value}; cancel it before deleting"
                )
            return await self.index.delete(scope.tenant_id, scope.collection_id)

    async def reconcile(self, tenant_id: str) -> ReconcileReport:
        """
        Sweep orphaned vectors and metadata of a tenant.

        Refused while any of the tenant's jobs is running, since a running
        job legitimately has vectors whose metadata is not written yet.
        """
        active = await self.store.active_jobs_for_tenant(tenant_id)
        if active:
            raise JobConflictError(
                f"{len(active)} indexing job(s) running for tenant {tenant_id}"
            )
        return await self.index.reconcile(tenant_id)

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def _run_job(self, job: IndexingJob, options: CrawlOptions) -> None:
        try:
            if self.deadline_seconds:
                await asyncio.wait_for(self._execute(job, options), self.deadline_seconds)
            else:
                await self._execute(job, options)
        except JobCancelled:
            logger.info("Job %s cancelled", job.job_id)
            await self._finish(job.job_id, JobStatus.CANCELLED)
        except asyncio.TimeoutError:
            logger.error("Job %s exceeded its deadline of %ss", job.job_id, self.deadline_seconds)
            await self._finish(
                job.job_id,
                JobStatus.FAILED,
                f"Job exceeded deadline of {self.deadline_seconds}s",
            )
        except asyncio.CancelledError:
            await self._finish(job.job_id, JobStatus.FAILED, "Job interrupted by shutdown")
            raise
        except Exception as exc:
            logger.exception("Job %s failed", job.job_id)
            await self._finish(job.job_id, JobStatus.FAILED, describe_error(exc))
        finally:
            self._handles.pop(job.job_id, None)
            self._cancel_flags.discard(job.job_id)

    async def _execute(self, job: IndexingJob, options: CrawlOptions) -> None:
        job_id = job.job_id
        counters = _Counters()

        await self._check_cancelled(job_id)
        await self.store.transition(job_id, JobStatus.SCRAPING)

        # 1. Crawl
        async def on_crawl_progress(progress: CrawlProgress) -> None:
            counters.pages_found = progress.pages_fetched
            counters.crawl_failed = progress.pages_failed
            await self._report(job_id, counters)

        crawl = await self.crawler.crawl(
            job.domain,
            options,
            should_cancel=lambda: job_id in self._cancel_flags,
            on_progress=on_crawl_progress,
        )
        counters.pages_found = len(crawl.pages)
        counters.crawl_failed = len(crawl.failed_urls)
        await self._report(job_id, counters)

        if crawl.cancelled:
            raise JobCancelled(f"Job {job_id} cancelled during crawl")

        if not crawl.pages:
            await self._finish(job_id, JobStatus.FAILED, NO_PAGES_ERROR)
            return

        # 2. Process
        await self._check_cancelled(job_id)
        await self.store.transition(job_id, JobStatus.PROCESSING)

        processed = self.processor.process(crawl.pages, job.tenant_id, job.collection_id)
        counters.pages_skipped = processed.pages_dropped
        counters.process_failed = processed.pages_failed
        await self._report(job_id, counters)

        if not processed.documents:
            await self._finish(job_id, JobStatus.FAILED, NO_PAGES_ERROR)
            return

        # 3. Embed + index, one embedding batch at a time
        await self._check_cancelled(job_id)
        await self.store.transition(job_id, JobStatus.INDEXING)

        indexed_urls: Set[str] = set()
        for batch in split_batches(processed.documents, self.embeddings.batch_size):
            await self._check_cancelled(job_id)
            await self._index_batch(job, list(batch), counters, indexed_urls)
            counters.pages_processed = len(indexed_urls - counters.failed_urls)
            await self._report(job_id, counters)

        logger.info(
            "Job %s indexed %d documents from %d pages (%d failed, %d skipped)",
            job_id,
            counters.documents_indexed,
            counters.pages_processed,
            counters.crawl_failed + counters.process_failed + len(counters.failed_urls),
            counters.pages_skipped,
        )
        await self._finish(job_id, JobStatus.COMPLETED)

    async def _index_batch(
        self,
        job: IndexingJob,
        batch: List[Document],
        counters: _Counters,
        indexed_urls: Set[str],
    ) -> None:
        outcomes = await self.embeddings.embed_many([doc.content for doc in batch])

        ready: List[Document] = []
        vectors: List[List[float]] = []
        for doc, outcome in zip(batch, outcomes):
            if outcome.vector is None:
                logger.warning("Embedding failed for %s (chunk %d): %s", doc.url, doc.chunk_index, outcome.error)
                counters.failed_urls.add(doc.url)
            else:
                ready.append(doc)
                vectors.append(outcome.vector)

        if not ready:
            return

        report = await self.index.upsert(job.tenant_id, job.collection_id, ready, vectors)
        by_id = {doc.id: doc for doc in ready}
        for doc_id, reason in report.failed.items():
            logger.warning("Upsert failed for %s: %s", by_id[doc_id].url, reason)
            counters.failed_urls.add(by_id[doc_id].url)

        counters.documents_indexed += len(report.upserted)
        indexed_urls.update(by_id[doc_id].url for doc_id in report.upserted)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _report(self, job_id: str, counters: _Counters) -> None:
        snapshot = await self.store.update_progress(job_id, counters.progress())
        if snapshot.cancel_requested:
            self._cancel_flags.add(job_id)

    async def _check_cancelled(self, job_id: str) -> None:
        if job_id not in self._cancel_flags:
            job = await self.store.get_job(job_id)
            if job is not None and job.cancel_requested:
                self._cancel_flags.add(job_id)

        if job_id in self._cancel_flags:
            raise JobCancelled(f"Job {job_id} cancelled")

    async def _finish(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> None:
        try:
            await self.store.transition(job_id, status, error=error)
        except InvalidJobTransition as exc:
            logger.warning("Could not mark job %s %s: %s", job_id, status.value, exc)
