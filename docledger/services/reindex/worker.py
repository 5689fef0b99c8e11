from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docledger.core.config import get_settings
from docledger.core.errors import SlaViolation
from docledger.domain.models import Document, ReindexJob
from docledger.services.reindex.artifacts import regenerate_search_artifacts
from docledger.services.reindex.queue import (
    STATUS_COMPLETED,
    STATUS_DEAD,
    STATUS_FAILED,
    STATUS_PROCESSING,
    ReindexQueue,
)
from docledger.services.storage.object_store import ObjectStore


logger = logging.getLogger(__name__)


@dataclass
class WorkerRunResult:
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    dead: int = 0
    requeued: int = 0
    sla_violations: list[SlaViolation] = field(default_factory=list)


class ReindexWorker:
    """Claims due reindex jobs and regenerates search artifacts for them.

    Delivery is at-least-once: a job may be processed more than once, and the
    regeneration step overwrites per document so duplicates are harmless.
    """

    def __init__(
        self,
        *,
        store: ObjectStore,
        queue: ReindexQueue,
        session_factory: async_sessionmaker[AsyncSession],
        batch_size: int | None = None,
        concurrency: int | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._queue = queue
        self._session_factory = session_factory
        self._batch_size = max(1, batch_size or settings.reindex_worker_batch_size)
        self._semaphore = asyncio.Semaphore(max(1, concurrency or settings.reindex_worker_concurrency))

    async def process(self, job_id: str) -> tuple[str | None, SlaViolation | None]:
        # Each job gets its own session so one failure cannot poison a batch.
        async with self._semaphore, self._session_factory() as session:
            job = await session.get(ReindexJob, job_id)
            if job is None or job.status != STATUS_PROCESSING:
                return None, None
            try:
                await regenerate_search_artifacts(
                    session,
                    self._store,
                    document_id=job.document_id,
                    version_id=job.version_id,
                )
                document = await session.get(Document, job.document_id)
                if document is not None:
                    document.last_reindexed_at = self._queue.now()
            except Exception as exc:  # noqa: BLE001 - recorded on the job for retry or dead-lettering
                await session.rollback()
                job = await session.get(ReindexJob, job_id)
                if job is None:
                    return None, None
                return await self._queue.fail(session, job, exc), None
            violation = await self._queue.complete(session, job)
            return STATUS_COMPLETED, violation

    async def run_once(self) -> WorkerRunResult:
        result = WorkerRunResult()
        async with self._session_factory() as session:
            result.requeued += await self._queue.requeue_stale(session)
            result.requeued += await self._queue.requeue_failed(session)
            jobs = await self._queue.claim_due(session, limit=self._batch_size)
        result.claimed = len(jobs)
        if not jobs:
            return result
        outcomes = await asyncio.gather(*(self.process(job.id) for job in jobs))
        for status, violation in outcomes:
            if status == STATUS_COMPLETED:
                result.completed += 1
            elif status == STATUS_FAILED:
                result.failed += 1
            elif status == STATUS_DEAD:
                result.dead += 1
            if violation is not None:
                result.sla_violations.append(violation)
        logger.info(
            "reindex_worker_batch claimed=%s completed=%s failed=%s dead=%s",
            result.claimed,
            result.completed,
            result.failed,
            result.dead,
        )
        return result

    async def drain(self, *, max_batches: int = 100) -> WorkerRunResult:
        # Run until no due job remains; used by tests and the arq wake-up handler.
        total = WorkerRunResult()
        for _ in range(max(1, max_batches)):
            batch = await self.run_once()
            total.claimed += batch.claimed
            total.completed += batch.completed
            total.failed += batch.failed
            total.dead += batch.dead
            total.requeued += batch.requeued
            total.sla_violations.extend(batch.sla_violations)
            if batch.claimed == 0:
                break
        return total
