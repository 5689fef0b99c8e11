from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docledger.core.config import get_settings
from docledger.core.errors import SlaViolation
from docledger.domain.models import ReindexJob
from docledger.services.telemetry import increment_counter, record_reindex_latency, set_gauge


logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_DEAD = "dead"
JOB_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED, STATUS_DEAD)
_OPEN_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_FAILED)

REINDEX_REASONS = ("create", "rename", "version", "trash", "restore", "delete", "manual")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReindexWakeupPayload(BaseModel):
    # Wake-ups only point at a job row; the row itself is the durable record.
    job_id: str
    document_id: str | None = None
    correlation_id: str | None = None


@dataclass(frozen=True)
class QueueStats:
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    dead: int = 0

    @property
    def depth(self) -> int:
        # Work still owed to the search index.
        return self.pending + self.processing + self.failed

    def as_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "dead": self.dead,
        }


class ReindexDispatcher:
    """Pushes arq wake-ups so workers pick up new jobs before their next poll.

    Owns its Redis pool; construct one per process and pass it to the queue.
    """

    def __init__(self, *, redis_url: str | None = None, queue_name: str | None = None) -> None:
        settings = get_settings()
        self._redis_url = redis_url or settings.redis_url
        self._queue_name = queue_name or settings.reindex_queue_name
        self._pool: ArqRedis | None = None

    async def _get_pool(self) -> ArqRedis:
        if self._pool is None:
            self._pool = await create_pool(
                RedisSettings.from_dsn(self._redis_url),
                default_queue_name=self._queue_name,
            )
        return self._pool

    async def wake(self, payloads: list[ReindexWakeupPayload]) -> int:
        # Best effort: the jobs table is the source of truth and workers also poll it.
        sent = 0
        for payload in payloads:
            job_id = payload.job_id
            try:
                pool = await self._get_pool()
                await pool.enqueue_job("process_reindex_job", payload.model_dump(), _queue_name=self._queue_name)
                sent += 1
            except Exception as exc:  # noqa: BLE001 - polling picks the job up regardless
                logger.warning("reindex_wakeup_failed job_id=%s error=%s", job_id, exc)
        return sent

    async def close(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()


class ReindexQueue:
    def __init__(
        self,
        *,
        dispatcher: ReindexDispatcher | None = None,
        time_provider: Callable[[], datetime] | None = None,
        max_attempts: int | None = None,
        retry_delays_s: list[int] | None = None,
        sla_seconds: int | None = None,
    ) -> None:
        settings = get_settings()
        self._dispatcher = dispatcher
        # Allow time injection for deterministic SLA and backoff tests.
        self._time_provider = time_provider or _utc_now
        self._max_attempts = max(1, max_attempts or settings.reindex_max_attempts)
        self._retry_delays_s = list(retry_delays_s or settings.reindex_retry_delays_s) or [30]
        self._sla_seconds = sla_seconds or settings.reindex_sla_seconds

    @property
    def sla_seconds(self) -> int:
        return self._sla_seconds

    def now(self) -> datetime:
        return self._time_provider()

    def retry_delay_s(self, attempt: int) -> int:
        # Delay after the given failed attempt; the last configured delay repeats.
        index = min(max(attempt, 1), len(self._retry_delays_s)) - 1
        return int(self._retry_delays_s[index])

    async def enqueue(
        self,
        session: AsyncSession,
        *,
        document_id: str,
        tenant_id: str,
        version_id: str | None,
        correlation_id: str | None = None,
        reason: str = "manual",
    ) -> ReindexJob:
        # Added to the caller's transaction so the mutation and its job commit together.
        if reason not in REINDEX_REASONS:
            raise ValueError(f"unknown reindex reason: {reason}")
        now = self._time_provider()
        job = ReindexJob(
            id=uuid4().hex,
            document_id=document_id,
            tenant_id=tenant_id,
            version_id=version_id,
            correlation_id=correlation_id or uuid4().hex,
            reason=reason,
            status=STATUS_PENDING,
            attempts=0,
            enqueued_at=now,
            next_attempt_at=now,
        )
        session.add(job)
        await session.flush()
        increment_counter("reindex_jobs_enqueued_total")
        logger.info(
            "reindex_job_enqueued job_id=%s document_id=%s reason=%s correlation_id=%s",
            job.id,
            document_id,
            reason,
            job.correlation_id,
        )
        return job

    async def dispatch(self, jobs: list[ReindexJob]) -> int:
        # Call after commit; without a dispatcher workers find jobs by polling.
        if self._dispatcher is None or not jobs:
            return 0
        payloads = [
            ReindexWakeupPayload(job_id=job.id, document_id=job.document_id, correlation_id=job.correlation_id)
            for job in jobs
        ]
        return await self._dispatcher.wake(payloads)

    async def stats(self, session: AsyncSession, *, tenant_id: str | None = None) -> QueueStats:
        stmt = select(ReindexJob.status, func.count()).group_by(ReindexJob.status)
        if tenant_id is not None:
            stmt = stmt.where(ReindexJob.tenant_id == tenant_id)
        rows = (await session.execute(stmt)).all()
        counts = {status: 0 for status in JOB_STATUSES}
        for status, count in rows:
            counts[str(status)] = int(count)
        stats = QueueStats(**{status: counts[status] for status in JOB_STATUSES})
        if tenant_id is None:
            set_gauge("reindex_queue_depth", stats.depth)
            set_gauge("reindex_queue_dead", stats.dead)
        return stats

    async def claim_due(self, session: AsyncSession, *, limit: int = 10) -> list[ReindexJob]:
        # Row locks with SKIP LOCKED let several workers claim disjoint batches.
        now = self._time_provider()
        jobs = (
            await session.execute(
                select(ReindexJob)
                .where(ReindexJob.status == STATUS_PENDING, ReindexJob.next_attempt_at <= now)
                .order_by(ReindexJob.enqueued_at.asc(), ReindexJob.id.asc())
                .limit(max(1, limit))
                .with_for_update(skip_locked=True)
            )
        ).scalars().all()
        for job in jobs:
            job.status = STATUS_PROCESSING
            job.claimed_at = now
            job.attempts = int(job.attempts or 0) + 1
        await session.commit()
        return list(jobs)

    def check_sla(self, job: ReindexJob, *, observed_at: datetime, completed: bool = True) -> SlaViolation | None:
        elapsed_s = (observed_at - job.enqueued_at).total_seconds()
        if elapsed_s <= self._sla_seconds:
            return None
        return SlaViolation(
            job_id=job.id,
            document_id=job.document_id,
            tenant_id=job.tenant_id,
            enqueued_at=job.enqueued_at,
            observed_at=observed_at,
            elapsed_s=elapsed_s,
            sla_s=self._sla_seconds,
            completed=completed,
        )

    def _record_violation(self, job: ReindexJob, violation: SlaViolation) -> None:
        # Lateness is a signal for operators, separate from job failure.
        if not job.sla_violated:
            increment_counter("reindex_sla_violations_total")
        job.sla_violated = True
        logger.warning(
            "reindex_sla_violation job_id=%s document_id=%s elapsed_s=%.1f sla_s=%s completed=%s",
            violation.job_id,
            violation.document_id,
            violation.elapsed_s,
            violation.sla_s,
            violation.completed,
        )

    async def complete(self, session: AsyncSession, job: ReindexJob) -> SlaViolation | None:
        now = self._time_provider()
        job.status = STATUS_COMPLETED
        job.completed_at = now
        job.last_error = None
        violation = self.check_sla(job, observed_at=now)
        if violation is not None:
            self._record_violation(job, violation)
        await session.commit()
        record_reindex_latency((now - job.enqueued_at).total_seconds())
        increment_counter("reindex_jobs_completed_total")
        logger.info("reindex_job_completed job_id=%s document_id=%s", job.id, job.document_id)
        return violation

    async def fail(self, session: AsyncSession, job: ReindexJob, error: BaseException | str) -> str:
        # Failed jobs wait out their backoff; the attempt ceiling parks them as dead.
        now = self._time_provider()
        job.last_error = str(error)[:2000]
        if int(job.attempts or 0) >= self._max_attempts:
            job.status = STATUS_DEAD
            increment_counter("reindex_jobs_dead_total")
            logger.error(
                "reindex_job_dead job_id=%s document_id=%s attempts=%s error=%s",
                job.id,
                job.document_id,
                job.attempts,
                job.last_error,
            )
        else:
            job.status = STATUS_FAILED
            job.next_attempt_at = now + timedelta(seconds=self.retry_delay_s(int(job.attempts or 1)))
            increment_counter("reindex_jobs_failed_total")
            logger.warning(
                "reindex_job_failed job_id=%s document_id=%s attempts=%s retry_at=%s error=%s",
                job.id,
                job.document_id,
                job.attempts,
                job.next_attempt_at.isoformat(),
                job.last_error,
            )
        await session.commit()
        return job.status

    async def requeue_failed(self, session: AsyncSession) -> int:
        now = self._time_provider()
        result = await session.execute(
            update(ReindexJob)
            .where(ReindexJob.status == STATUS_FAILED, ReindexJob.next_attempt_at <= now)
            .values(status=STATUS_PENDING, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return int(result.rowcount or 0)

    async def requeue_stale(self, session: AsyncSession, *, visibility_timeout_s: int | None = None) -> int:
        # Claims abandoned by a crashed worker go back to pending, or dead at the ceiling.
        timeout_s = visibility_timeout_s or get_settings().reindex_visibility_timeout_s
        now = self._time_provider()
        cutoff = now - timedelta(seconds=timeout_s)
        stale = (
            await session.execute(
                select(ReindexJob)
                .where(ReindexJob.status == STATUS_PROCESSING, ReindexJob.claimed_at < cutoff)
                .with_for_update(skip_locked=True)
            )
        ).scalars().all()
        for job in stale:
            if int(job.attempts or 0) >= self._max_attempts:
                job.status = STATUS_DEAD
                job.last_error = job.last_error or "worker claim expired"
                increment_counter("reindex_jobs_dead_total")
            else:
                job.status = STATUS_PENDING
                job.next_attempt_at = now
            logger.warning("reindex_job_claim_expired job_id=%s status=%s", job.id, job.status)
        await session.commit()
        return len(stale)

    async def replay_dead(self, session: AsyncSession, job_id: str) -> ReindexJob | None:
        # Operator action: retry a dead job from scratch.
        job = await session.get(ReindexJob, job_id)
        if job is None or job.status != STATUS_DEAD:
            return None
        now = self._time_provider()
        job.status = STATUS_PENDING
        job.attempts = 0
        job.next_attempt_at = now
        job.claimed_at = None
        await session.commit()
        logger.info("reindex_job_replayed job_id=%s", job_id)
        await self.dispatch([job])
        return job

    async def gc_completed(self, session: AsyncSession, *, retention_s: int | None = None) -> int:
        retention = retention_s if retention_s is not None else get_settings().reindex_completed_retention_s
        cutoff = self._time_provider() - timedelta(seconds=retention)
        result = await session.execute(
            delete(ReindexJob)
            .where(ReindexJob.status == STATUS_COMPLETED, ReindexJob.completed_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return int(result.rowcount or 0)

    async def oldest_open_age_s(self, session: AsyncSession) -> float | None:
        oldest = await session.scalar(
            select(func.min(ReindexJob.enqueued_at)).where(ReindexJob.status.in_(_OPEN_STATUSES))
        )
        if oldest is None:
            return None
        if oldest.tzinfo is None:
            oldest = oldest.replace(tzinfo=timezone.utc)
        age = (self._time_provider() - oldest).total_seconds()
        set_gauge("reindex_oldest_open_age_s", age)
        return age

    async def check_backlog_sla(self, session: AsyncSession) -> list[SlaViolation]:
        # Flag jobs already past the SLA before they finish, once per job.
        now = self._time_provider()
        cutoff = now - timedelta(seconds=self._sla_seconds)
        jobs = (
            await session.execute(
                select(ReindexJob).where(
                    ReindexJob.status.in_(_OPEN_STATUSES),
                    ReindexJob.enqueued_at < cutoff,
                    ReindexJob.sla_violated.is_(False),
                )
            )
        ).scalars().all()
        violations: list[SlaViolation] = []
        for job in jobs:
            violation = self.check_sla(job, observed_at=now, completed=False)
            if violation is not None:
                self._record_violation(job, violation)
                violations.append(violation)
        await session.commit()
        return violations

    async def close(self) -> None:
        if self._dispatcher is not None:
            await self._dispatcher.close()

    async def list_jobs(
        self,
        session: AsyncSession,
        *,
        document_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[ReindexJob]:
        stmt = select(ReindexJob)
        if document_id is not None:
            stmt = stmt.where(ReindexJob.document_id == document_id)
        if status is not None:
            stmt = stmt.where(ReindexJob.status == status)
        rows = await session.execute(stmt.order_by(ReindexJob.enqueued_at.asc()).limit(max(1, limit)))
        return list(rows.scalars().all())


def build_reindex_queue(**kwargs: Any) -> ReindexQueue:
    # Attach an arq dispatcher only when the deployment runs arq workers.
    settings = get_settings()
    dispatcher = ReindexDispatcher() if settings.reindex_dispatch_mode == "arq" else None
    return ReindexQueue(dispatcher=dispatcher, **kwargs)
