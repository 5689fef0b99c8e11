from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docledger.core.config import get_settings
from docledger.core.errors import InvalidObjectPathError
from docledger.domain.models import Document, DocumentVersion, ReindexJob
from docledger.services.reindex.queue import ReindexQueue
from docledger.services.storage.backends import ListedObject
from docledger.services.storage.deletions import cancel_pending_deletions, schedule_deletion
from docledger.services.storage.object_store import ObjectStore
from docledger.services.storage.paths import CanonicalPath, parse_canonical_path
from docledger.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PathFix:
    document_id: str
    tenant_id: str
    old_path: str
    new_path: str


@dataclass(frozen=True)
class MissingObject:
    # A live document whose bytes cannot be found anywhere under its prefix.
    document_id: str
    tenant_id: str
    name: str
    storage_path: str


@dataclass
class StorageReconcileReport:
    dry_run: bool
    objects_scanned: int = 0
    documents_scanned: int = 0
    path_fixes: list[PathFix] = field(default_factory=list)
    orphan_objects: list[str] = field(default_factory=list)
    orphan_documents: list[MissingObject] = field(default_factory=list)
    unrecognized_objects: list[str] = field(default_factory=list)
    within_grace: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "objects_scanned": self.objects_scanned,
            "documents_scanned": self.documents_scanned,
            "path_fixes": len(self.path_fixes),
            "orphan_objects": len(self.orphan_objects),
            "orphan_documents": len(self.orphan_documents),
            "unrecognized_objects": len(self.unrecognized_objects),
            "within_grace": self.within_grace,
        }


def _preferred_object(candidates: list[ListedObject], original_filename: str) -> ListedObject:
    for candidate in candidates:
        if candidate.path.rsplit("/", 1)[-1] == original_filename:
            return candidate
    return candidates[0]


async def _repoint(session: AsyncSession, document: Document, new_path: str, now: datetime) -> None:
    old_path = document.storage_path
    document.storage_path = new_path
    await cancel_pending_deletions(session, new_path, now=now)
    if document.current_version_id is None:
        return
    version = await session.get(DocumentVersion, document.current_version_id)
    if version is not None and version.storage_path == old_path:
        version.storage_path = new_path


async def reconcile_storage(
    session: AsyncSession,
    store: ObjectStore,
    *,
    dry_run: bool = True,
    queue: ReindexQueue | None = None,
    prefix: str | None = None,
    grace_s: int | None = None,
    now: datetime | None = None,
) -> StorageReconcileReport:
    """Compare stored objects with document metadata and repair the drift.

    Objects are matched to documents through the document id in their
    canonical path. A document whose recorded path has no object but which
    owns another object under its prefix is repointed at it, preferring the
    object named like the original upload. Objects no live document claims
    are orphans and documents with no object at all are reported.

    A dry run changes nothing. Otherwise path fixes are written and reindexed
    and orphans go through the storage deletion queue. Objects younger than
    the grace period are never treated as orphans because their upload may
    still be committing metadata.
    """
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    prefix = settings.storage_reconcile_prefix if prefix is None else prefix
    grace = timedelta(seconds=settings.storage_reconcile_grace_s if grace_s is None else grace_s)
    report = StorageReconcileReport(dry_run=dry_run)

    listed = await store.list_objects(prefix)
    report.objects_scanned = len(listed)
    by_document: dict[str, list[tuple[ListedObject, CanonicalPath]]] = defaultdict(list)
    for stored in listed:
        try:
            parsed = parse_canonical_path(stored.path)
        except InvalidObjectPathError:
            report.unrecognized_objects.append(stored.path)
            continue
        by_document[parsed.document_id].append((stored, parsed))

    documents = (
        await session.execute(
            select(Document)
            .where(Document.status != "deleted")
            .order_by(Document.tenant_id, Document.id)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    report.documents_scanned = len(documents)

    claimed: set[str] = set()
    repointed: list[Document] = []
    for document in documents:
        # A path under another tenant never satisfies this document.
        candidates = [
            stored for stored, parsed in by_document.get(document.id, []) if parsed.tenant_id == document.tenant_id
        ]
        if any(stored.path == document.storage_path for stored in candidates):
            claimed.add(document.storage_path)
            continue
        if not candidates:
            report.orphan_documents.append(
                MissingObject(
                    document_id=document.id,
                    tenant_id=document.tenant_id,
                    name=document.name,
                    storage_path=document.storage_path,
                )
            )
            logger.warning(
                "storage_reconcile_missing_object tenant_id=%s document_id=%s path=%s",
                document.tenant_id,
                document.id,
                document.storage_path,
            )
            continue
        chosen = _preferred_object(candidates, document.original_filename)
        claimed.add(chosen.path)
        report.path_fixes.append(
            PathFix(
                document_id=document.id,
                tenant_id=document.tenant_id,
                old_path=document.storage_path,
                new_path=chosen.path,
            )
        )
        logger.warning(
            "storage_reconcile_path_mismatch document_id=%s recorded=%s found=%s",
            document.id,
            document.storage_path,
            chosen.path,
        )
        if not dry_run:
            await _repoint(session, document, chosen.path, now)
            repointed.append(document)

    cutoff = now - grace
    orphans: list[tuple[ListedObject, CanonicalPath]] = []
    for entries in by_document.values():
        for stored, parsed in entries:
            if stored.path in claimed:
                continue
            if stored.last_modified > cutoff:
                report.within_grace += 1
                continue
            orphans.append((stored, parsed))
            report.orphan_objects.append(stored.path)
    report.orphan_objects.sort()

    jobs: list[ReindexJob] = []
    if not dry_run:
        for stored, parsed in orphans:
            await schedule_deletion(
                session,
                tenant_id=parsed.tenant_id,
                document_id=parsed.document_id,
                path=stored.path,
                now=now,
            )
        if queue is not None:
            for document in repointed:
                jobs.append(
                    await queue.enqueue(
                        session,
                        document_id=document.id,
                        tenant_id=document.tenant_id,
                        version_id=document.current_version_id,
                        reason="manual",
                    )
                )
        await session.commit()
        if queue is not None:
            await queue.dispatch(jobs)

    increment_counter("storage_reconcile_runs_total")
    set_gauge("storage_orphan_objects", len(report.orphan_objects))
    set_gauge("storage_orphan_documents", len(report.orphan_documents))
    logger.info(
        "storage_reconcile_completed dry_run=%s objects=%s documents=%s fixes=%s orphan_objects=%s orphan_documents=%s",
        dry_run,
        report.objects_scanned,
        report.documents_scanned,
        len(report.path_fixes),
        len(report.orphan_objects),
        len(report.orphan_documents),
    )
    return report
