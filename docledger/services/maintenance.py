from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from docledger.core.config import get_settings
from docledger.domain.models import StorageDeletion
from docledger.services.documents import DocumentOrchestrator
from docledger.services.storage.deletions import deletion_stats, process_due_deletions
from docledger.services.storage.reconcile import reconcile_storage


logger = logging.getLogger(__name__)


MaintenanceTask = Literal[
    "reconcile_quotas",
    "reconcile_storage",
    "gc_reindex_jobs",
    "requeue_reindex_jobs",
    "check_reindex_sla",
    "process_storage_deletions",
    "prune_storage_deletions",
    "purge_expired_trash",
]

MAINTENANCE_TASKS: tuple[str, ...] = (
    "reconcile_quotas",
    "reconcile_storage",
    "gc_reindex_jobs",
    "requeue_reindex_jobs",
    "check_reindex_sla",
    "process_storage_deletions",
    "prune_storage_deletions",
    "purge_expired_trash",
)


async def reconcile_quotas(session: AsyncSession, orchestrator: DocumentOrchestrator) -> dict[str, Any]:
    # Safe to run alongside live traffic; each tenant is overwritten with fresh truth.
    results = await orchestrator.ledger.reconcile_all(session)
    await session.commit()
    drifted = [result.tenant_id for result in results if result.drifted]
    return {"tenants": len(results), "drifted": drifted}


async def prune_storage_deletions(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Resolved deletion rows only matter for short-term auditing.
    settings = get_settings()
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=settings.reindex_completed_retention_s)
    result = await session.execute(
        delete(StorageDeletion).where(
            StorageDeletion.status.in_(("completed", "cancelled")),
            StorageDeletion.completed_at < cutoff,
        )
    )
    await session.commit()
    return result.rowcount or 0


async def run_maintenance_task(
    task: MaintenanceTask,
    session: AsyncSession,
    orchestrator: DocumentOrchestrator,
) -> dict[str, Any]:
    queue = orchestrator.queue
    if task == "reconcile_quotas":
        summary = await reconcile_quotas(session, orchestrator)
    elif task == "reconcile_storage":
        report = await reconcile_storage(
            session,
            orchestrator.store,
            dry_run=get_settings().storage_reconcile_dry_run,
            queue=queue,
            now=queue.now(),
        )
        summary = report.as_dict()
    elif task == "gc_reindex_jobs":
        summary = {"deleted": await queue.gc_completed(session)}
    elif task == "requeue_reindex_jobs":
        stale = await queue.requeue_stale(session)
        failed = await queue.requeue_failed(session)
        summary = {"stale": stale, "failed": failed}
    elif task == "check_reindex_sla":
        violations = await queue.check_backlog_sla(session)
        summary = {
            "violations": len(violations),
            "oldest_open_age_s": await queue.oldest_open_age_s(session),
            "stats": (await queue.stats(session)).as_dict(),
        }
    elif task == "process_storage_deletions":
        result = await process_due_deletions(session, orchestrator.store, now=queue.now())
        summary = {
            "completed": result.completed,
            "retried": result.retried,
            "escalated": result.escalated,
            "skipped": result.skipped,
            **(await deletion_stats(session)),
        }
    elif task == "prune_storage_deletions":
        summary = {"deleted": await prune_storage_deletions(session, now=queue.now())}
    elif task == "purge_expired_trash":
        summary = {"purged": await orchestrator.purge_expired_trash(session)}
    else:
        raise ValueError(f"unknown maintenance task: {task}")
    logger.info("maintenance_task_completed task=%s summary=%s", task, summary)
    return summary


async def run_all_maintenance(session: AsyncSession, orchestrator: DocumentOrchestrator) -> dict[str, Any]:
    results: dict[str, Any] = {}
    for task in MAINTENANCE_TASKS:
        results[task] = await run_maintenance_task(task, session, orchestrator)
    return results
