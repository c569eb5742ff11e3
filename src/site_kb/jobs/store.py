"""
Durable Job Store

Persists indexing jobs and the single-flight lease.

Single-Flight Model
-------------------
- `indexing_job_leases` has one row per (tenant, collection); its primary
  key is what makes a second live job impossible, across processes
- The lease expiry is renewed on every progress update
- A lease whose expiry has passed belongs to a dead worker: the next
  `create_job` marks that job failed and takes the lease over
- Moving a job to a terminal status deletes its lease in the same
  transaction
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.errors import DuplicateJobError, InvalidJobTransition, JobConflictError
from ..db.models import IndexingJobLease, IndexingJobRecord
from .models import IndexingJob, JobProgress, JobStatus

logger = logging.getLogger("kb.jobs")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_job(row: IndexingJobRecord) -> IndexingJob:
    return IndexingJob(
        job_id=row.job_id,
        tenant_id=row.tenant_id,
        collection_id=row.collection_id,
        domain=row.domain,
        status=JobStatus(row.status),
        options=row.options or {},
        pages_found=row.pages_found,
        pages_processed=row.pages_processed,
        pages_failed=row.pages_failed,
        pages_skipped=row.pages_skipped,
        documents_indexed=row.documents_indexed,
        cancel_requested=row.cancel_requested,
        error=row.error,
        created_at=_as_utc(row.created_at),
        started_at=_as_utc(row.started_at),
        completed_at=_as_utc(row.completed_at),
    )


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class SqlJobStore:
    """
    Job table and lease table access.

    Parameters
    ----------
    session_factory
        SQLAlchemy async session factory.

    lease_ttl : int
        Seconds a lease stays valid without a progress update.

    owner : Optional[str]
        Identifier of this process written on leases it takes.

    clock : Callable[[], datetime]
        Time source (tests).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lease_ttl: int = 300,
        owner: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.lease_ttl = lease_ttl
        self.owner = owner or default_owner()
        self._clock = clock

    def _lease_expiry(self) -> datetime:
        return self._clock() + timedelta(seconds=self.lease_ttl)

    # ------------------------------------------------------------------
    # Creation (single-flight)
    # ------------------------------------------------------------------

    async def create_job(
        self,
        tenant_id: str,
        collection_id: str,
        domain: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> IndexingJob:
        """
        Create a queued job and take the lease for its collection.

        Raises
        ------
        DuplicateJobError
            If a live job already holds the lease.
        """
        now = self._clock()

        async with self._session_factory() as session:
            lease = await session.get(IndexingJobLease, (tenant_id, collection_id))
            if lease is not None:
                holder = await session.get(IndexingJobRecord, lease.job_id)

                if holder is not None and not JobStatus(holder.status).is_terminal:
                    if _as_utc(lease.expires_at) > now:
                        raise DuplicateJobError(_to_job(holder))
                    self._abandon(holder, lease, now)

                await session.delete(lease)
                await session.flush()

            row = IndexingJobRecord(
                job_id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                collection_id=collection_id,
                domain=domain,
                status=JobStatus.QUEUED.value,
                options=options or {},
                pages_found=0,
                pages_processed=0,
                pages_failed=0,
                pages_skipped=0,
                documents_indexed=0,
                cancel_requested=False,
                created_at=now,
            )
            session.add(row)
            session.add(
                IndexingJobLease(
                    tenant_id=tenant_id,
                    collection_id=collection_id,
                    job_id=row.job_id,
                    owner=self.owner,
                    expires_at=self._lease_expiry(),
                )
            )

            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                # Another instance won the race for the lease
                existing = await self.active_job(tenant_id, collection_id)
                if existing is None:
                    raise JobConflictError(
                        f"Concurrent job creation for {tenant_id}/{collection_id}"
                    )
                raise DuplicateJobError(existing)

            return _to_job(row)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    async def transition(
        self,
        job_id: str,
        target: JobStatus,
        error: Optional[str] = None,
    ) -> IndexingJob:
        """
        Move a job forward. Terminal transitions release the lease.

        Raises
        ------
        InvalidJobTransition
            If the move would go backwards or leave a terminal state.
        """
        now = self._clock()

        async with self._session_factory() as session:
            row = await session.get(IndexingJobRecord, job_id)
            if row is None:
                raise InvalidJobTransition(f"Unknown job {job_id}")

            current = JobStatus(row.status)
            if current is target:
                return _to_job(row)
            if not current.can_transition_to(target):
                raise InvalidJobTransition(
                    f"Job {job_id} cannot move from {current.value} to {target.value}"
                )

            row.status = target.value
            if row.started_at is None and not target.is_terminal:
                row.started_at = now

            if target.is_terminal:
                row.completed_at = now
                row.error = error
                await session.execute(
                    delete(IndexingJobLease).where(IndexingJobLease.job_id == job_id)
                )
            else:
                await session.execute(
                    update(IndexingJobLease)
                    .where(IndexingJobLease.job_id == job_id)
                    .values(expires_at=self._lease_expiry())
                )

            await session.commit()
            logger.info("Job %s: %s -> %s", job_id, current.value, target.value)
            return _to_job(row)

    async def update_progress(self, job_id: str, progress: JobProgress) -> IndexingJob:
        """
        Write counters and renew the lease.

        The returned snapshot carries the current `cancel_requested` flag.
        """
        async with self._session_factory() as session:
            row = await session.get(IndexingJobRecord, job_id)
            if row is None:
                raise InvalidJobTransition(f"Unknown job {job_id}")

            for name, value in progress.as_updates().items():
                setattr(row, name, value)

            await session.execute(
                update(IndexingJobLease)
                .where(IndexingJobLease.job_id == job_id)
                .values(expires_at=self._lease_expiry())
            )
            await session.commit()
            return _to_job(row)

    async def request_cancel(self, tenant_id: str, collection_id: str) -> Optional[IndexingJob]:
        """
        Flag the active job of a collection for cancellation.

        Returns the flagged job, or None when no job is active.
        """
        async with self._session_factory() as session:
            row = await self._active_row(session, tenant_id, collection_id)
            if row is None:
                return None
            row.cancel_requested = True
            await session.commit()
            logger.info("Cancellation requested for job %s", row.job_id)
            return _to_job(row)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[IndexingJob]:
        async with self._session_factory() as session:
            row = await session.get(IndexingJobRecord, job_id)
            return _to_job(row) if row is not None else None

    async def active_job(self, tenant_id: str, collection_id: str) -> Optional[IndexingJob]:
        async with self._session_factory() as session:
            row = await self._active_row(session, tenant_id, collection_id)
            return _to_job(row) if row is not None else None

    async def active_jobs_for_tenant(self, tenant_id: str) -> List[IndexingJob]:
        stmt = (
            select(IndexingJobRecord)
            .join(IndexingJobLease, IndexingJobLease.job_id == IndexingJobRecord.job_id)
            .where(IndexingJobLease.tenant_id == tenant_id)
            .where(IndexingJobLease.expires_at > self._clock())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [
                _to_job(row)
                for row in result.scalars().all()
                if not JobStatus(row.status).is_terminal
            ]

    async def latest_job(self, tenant_id: str, collection_id: str) -> Optional[IndexingJob]:
        stmt = (
            select(IndexingJobRecord)
            .where(
                IndexingJobRecord.tenant_id == tenant_id,
                IndexingJobRecord.collection_id == collection_id,
            )
            .order_by(IndexingJobRecord.created_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.scalars().first()
            return _to_job(row) if row is not None else None

    async def _active_row(
        self,
        session: AsyncSession,
        tenant_id: str,
        collection_id: str,
    ) -> Optional[IndexingJobRecord]:
        """
        The live job holding the collection's lease.

        A job whose lease has expired is not live: it is marked failed and
        its lease released (committed here) so status, reindex and delete
        see the collection as idle.
        """
        lease = await session.get(IndexingJobLease, (tenant_id, collection_id))
        if lease is None:
            return None
        row = await session.get(IndexingJobRecord, lease.job_id)
        if row is None or JobStatus(row.status).is_terminal:
            return None

        now = self._clock()
        if _as_utc(lease.expires_at) <= now:
            self._abandon(row, lease, now)
            await session.delete(lease)
            await session.commit()
            return None
        return row

    @staticmethod
    def _abandon(holder: IndexingJobRecord, lease: IndexingJobLease, now: datetime) -> None:
        logger.warning(
            "Taking over expired lease of job %s (%s/%s, owner %s)",
            holder.job_id,
            lease.tenant_id,
            lease.collection_id,
            lease.owner,
        )
        holder.status = JobStatus.FAILED.value
        holder.error = "Job abandoned: lease expired"
        holder.completed_at = now
