from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docledger.core.config import get_settings
from docledger.core.errors import ObjectNotFoundError, StorageError
from docledger.domain.models import Document, StorageDeletion
from docledger.services.storage.object_store import ObjectStore
from docledger.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeletionRunResult:
    completed: int
    retried: int
    escalated: int
    skipped: int = 0


def deletion_backoff_s(attempts: int) -> int:
    settings = get_settings()
    base = max(1, int(settings.storage_deletion_backoff_s))
    cap = max(base, int(settings.storage_deletion_backoff_max_s))
    return min(cap, base * (2 ** max(0, attempts - 1)))


async def schedule_deletion(
    session: AsyncSession,
    *,
    tenant_id: str,
    path: str,
    document_id: str | None = None,
    now: datetime | None = None,
) -> StorageDeletion:
    # Storage reclamation trails the metadata delete; one pending row per path.
    existing = (
        await session.execute(
            select(StorageDeletion).where(StorageDeletion.path == path, StorageDeletion.status == "pending")
        )
    ).scalar_one_or_none()
    if existing is not None:
        return existing
    now = now or _utc_now()
    row = StorageDeletion(
        id=uuid4().hex,
        tenant_id=tenant_id,
        document_id=document_id,
        path=path,
        status="pending",
        attempts=0,
        next_attempt_at=now,
        created_at=now,
    )
    session.add(row)
    await session.flush()
    logger.info("storage_deletion_scheduled path=%s document_id=%s", path, document_id)
    return row


async def cancel_pending_deletions(
    session: AsyncSession,
    path: str,
    *,
    now: datetime | None = None,
) -> int:
    # The path is about to hold a live object again; an older reclamation must not remove it.
    result = await session.execute(
        update(StorageDeletion)
        .where(StorageDeletion.path == path, StorageDeletion.status == "pending")
        .values(status="cancelled", completed_at=now or _utc_now(), last_error=None)
        .execution_options(synchronize_session=False)
    )
    cancelled = result.rowcount or 0
    if cancelled:
        increment_counter("storage_deletions_cancelled_total", cancelled)
        logger.info("storage_deletion_cancelled path=%s rows=%s", path, cancelled)
    return cancelled


async def process_due_deletions(
    session: AsyncSession,
    store: ObjectStore,
    *,
    limit: int = 50,
    now: datetime | None = None,
) -> DeletionRunResult:
    """Retry scheduled object deletions until storage confirms they are gone.

    An already-missing object counts as deleted. Paths still referenced by a
    document that is not deleted are never touched; their rows are cancelled.
    Storage failures push the row out with exponential backoff and rows that
    keep failing are escalated.
    """
    settings = get_settings()
    now = now or _utc_now()
    rows = (
        await session.execute(
            select(StorageDeletion)
            .where(StorageDeletion.status == "pending", StorageDeletion.next_attempt_at <= now)
            .order_by(StorageDeletion.next_attempt_at.asc(), StorageDeletion.created_at.asc())
            .limit(max(1, limit))
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    live_paths: set[str] = set()
    if rows:
        live_paths = set(
            (
                await session.execute(
                    select(Document.storage_path).where(
                        Document.storage_path.in_(sorted({row.path for row in rows})),
                        Document.status != "deleted",
                    )
                )
            ).scalars()
        )
    completed = retried = escalated = skipped = 0
    for row in rows:
        if row.path in live_paths:
            row.status = "cancelled"
            row.completed_at = now
            skipped += 1
            logger.warning(
                "storage_deletion_skipped_live_path path=%s document_id=%s",
                row.path,
                row.document_id,
            )
            continue
        row.attempts = int(row.attempts or 0) + 1
        try:
            await store.delete(row.path)
        except ObjectNotFoundError:
            pass
        except StorageError as exc:
            row.last_error = f"{exc.code}: {exc.message}"
            row.next_attempt_at = now + timedelta(seconds=deletion_backoff_s(row.attempts))
            retried += 1
            increment_counter("storage_deletion_retries_total")
            if row.attempts >= settings.storage_deletion_alert_after_attempts:
                escalated += 1
                increment_counter("storage_deletion_escalations_total")
                logger.error(
                    "storage_deletion_stuck path=%s attempts=%s error=%s",
                    row.path,
                    row.attempts,
                    row.last_error,
                )
            else:
                logger.warning(
                    "storage_deletion_retry path=%s attempts=%s error=%s",
                    row.path,
                    row.attempts,
                    row.last_error,
                )
            continue
        row.status = "completed"
        row.completed_at = now
        row.last_error = None
        completed += 1
    await session.commit()
    return DeletionRunResult(completed=completed, retried=retried, escalated=escalated, skipped=skipped)


async def deletion_stats(session: AsyncSession) -> dict[str, Any]:
    settings = get_settings()
    pending = await session.scalar(
        select(func.count()).select_from(StorageDeletion).where(StorageDeletion.status == "pending")
    )
    stuck = await session.scalar(
        select(func.count())
        .select_from(StorageDeletion)
        .where(
            StorageDeletion.status == "pending",
            StorageDeletion.attempts >= settings.storage_deletion_alert_after_attempts,
        )
    )
    oldest = await session.scalar(
        select(func.min(StorageDeletion.created_at)).where(StorageDeletion.status == "pending")
    )
    set_gauge("storage_deletions_pending", int(pending or 0))
    return {
        "pending": int(pending or 0),
        "stuck": int(stuck or 0),
        "oldest_pending_at": oldest.isoformat() if oldest is not None else None,
    }
