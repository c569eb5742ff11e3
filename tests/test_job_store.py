from datetime import datetime, timedelta, timezone

import pytest

from site_kb.core.errors import DuplicateJobError, InvalidJobTransition
from site_kb.jobs import JobProgress, JobStatus, SqlJobStore


# ---------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------

def test_status_moves_forward_only():
    assert JobStatus.QUEUED.can_transition_to(JobStatus.SCRAPING)
    assert JobStatus.SCRAPING.can_transition_to(JobStatus.INDEXING)
    assert not JobStatus.INDEXING.can_transition_to(JobStatus.SCRAPING)
    assert not JobStatus.PROCESSING.can_transition_to(JobStatus.QUEUED)


def test_terminal_states():
    for status in (JobStatus.QUEUED, JobStatus.SCRAPING, JobStatus.INDEXING):
        assert status.can_transition_to(JobStatus.FAILED)
        assert status.can_transition_to(JobStatus.CANCELLED)
    for status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
        assert status.is_terminal
        assert not status.can_transition_to(JobStatus.SCRAPING)
        assert not status.can_transition_to(JobStatus.FAILED)


# ---------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------

async def test_create_job_is_single_flight(job_store):
    job = await job_store.create_job("acme", "site", "https://acme.test/", {"max_pages": 5})

    assert job.status is JobStatus.QUEUED
    assert job.options == {"max_pages": 5}

    with pytest.raises(DuplicateJobError) as excinfo:
        await job_store.create_job("acme", "site", "https://acme.test/")
    assert excinfo.value.existing.job_id == job.job_id

    # other collections and tenants are independent
    await job_store.create_job("acme", "blog", "https://blog.acme.test/")
    await job_store.create_job("globex", "site", "https://globex.test/")


async def test_terminal_transition_releases_lease(job_store):
    job = await job_store.create_job("acme", "site", "https://acme.test/")

    scraping = await job_store.transition(job.job_id, JobStatus.SCRAPING)
    assert scraping.started_at is not None

    done = await job_store.transition(job.job_id, JobStatus.COMPLETED)
    assert done.completed_at is not None
    assert await job_store.active_job("acme", "site") is None

    second = await job_store.create_job("acme", "site", "https://acme.test/")
    assert second.job_id != job.job_id
    latest = await job_store.latest_job("acme", "site")
    assert latest.job_id == second.job_id


async def test_backwards_transition_is_rejected(job_store):
    job = await job_store.create_job("acme", "site", "https://acme.test/")
    await job_store.transition(job.job_id, JobStatus.INDEXING)

    with pytest.raises(InvalidJobTransition):
        await job_store.transition(job.job_id, JobStatus.SCRAPING)

    await job_store.transition(job.job_id, JobStatus.FAILED, error="boom")
    with pytest.raises(InvalidJobTransition):
        await job_store.transition(job.job_id, JobStatus.COMPLETED)

    failed = await job_store.get_job(job.job_id)
    assert failed.status is JobStatus.FAILED
    assert failed.error == "boom"


async def test_same_status_transition_is_a_no_op(job_store):
    job = await job_store.create_job("acme", "site", "https://acme.test/")
    await job_store.transition(job.job_id, JobStatus.SCRAPING)

    again = await job_store.transition(job.job_id, JobStatus.SCRAPING)

    assert again.status is JobStatus.SCRAPING


async def test_progress_and_cancel_flag(job_store):
    job = await job_store.create_job("acme", "site", "https://acme.test/")

    updated = await job_store.update_progress(job.job_id, JobProgress(pages_found=3, pages_failed=1))
    assert (updated.pages_found, updated.pages_failed, updated.pages_processed) == (3, 1, 0)
    assert not updated.cancel_requested

    flagged = await job_store.request_cancel("acme", "site")
    assert flagged.job_id == job.job_id

    snapshot = await job_store.update_progress(job.job_id, JobProgress(pages_processed=2))
    assert snapshot.cancel_requested
    assert snapshot.pages_found == 3

    assert await job_store.request_cancel("acme", "other") is None


async def test_expired_lease_is_taken_over(session_factory):
    now = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
    store = SqlJobStore(session_factory, lease_ttl=30, owner="host-a:1", clock=lambda: now[0])

    stale = await store.create_job("acme", "site", "https://acme.test/")
    await store.transition(stale.job_id, JobStatus.SCRAPING)

    now[0] += timedelta(seconds=10)
    with pytest.raises(DuplicateJobError):
        await store.create_job("acme", "site", "https://acme.test/")

    now[0] += timedelta(seconds=60)
    fresh = await store.create_job("acme", "site", "https://acme.test/")

    abandoned = await store.get_job(stale.job_id)
    assert abandoned.status is JobStatus.FAILED
    assert abandoned.error == "Job abandoned: lease expired"
    assert (await store.active_job("acme", "site")).job_id == fresh.job_id


async def test_active_jobs_for_tenant(job_store):
    a = await job_store.create_job("acme", "site", "https://acme.test/")
    b = await job_store.create_job("acme", "blog", "https://blog.acme.test/")
    await job_store.create_job("globex", "site", "https://globex.test/")
    await job_store.transition(b.job_id, JobStatus.CANCELLED)

    active = await job_store.active_jobs_for_tenant("acme")

    assert [j.job_id for j in active] == [a.job_id]


async def test_expired_lease_no_longer_counts_as_active(session_factory):
    now = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
    store = SqlJobStore(session_factory, lease_ttl=30, owner="host-a:1", clock=lambda: now[0])

    dead = await store.create_job("acme", "site", "https://acme.test/")
    await store.transition(dead.job_id, JobStatus.SCRAPING)

    now[0] += timedelta(days=1)

    assert await store.active_jobs_for_tenant("acme") == []
    assert await store.active_job("acme", "site") is None
    assert await store.request_cancel("acme", "site") is None

    abandoned = await store.get_job(dead.job_id)
    assert abandoned.status is JobStatus.FAILED
    assert abandoned.error == "Job abandoned: lease expired"
    assert (await store.latest_job("acme", "site")).job_id == dead.job_id

    # the collection is free for a new job
    fresh = await store.create_job("acme", "site", "https://acme.test/")
    assert fresh.job_id != dead.job_id
