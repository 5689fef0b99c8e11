from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from docledger.domain.models import Document, DocumentVersion, StorageDeletion
from docledger.services.maintenance import run_maintenance_task
from docledger.services.storage.deletions import process_due_deletions
from docledger.services.storage.paths import PathKind, path_for
from docledger.services.storage.reconcile import PathFix, reconcile_storage
from docledger.services.telemetry import gauges_snapshot

TENANT = "tenant_sync"


def _later() -> datetime:
    # Filesystem mtimes are real time; look far enough ahead that every object is past the grace period.
    return datetime.now(timezone.utc) + timedelta(days=1)


async def _upload(session, orchestrator, name: str):
    return await orchestrator.upload_document(
        session,
        tenant_id=TENANT,
        file_name=name,
        data=f"body of {name}".encode(),
        content_type="text/plain",
    )


async def _pending_deletions(session) -> list[str]:
    rows = await session.execute(
        select(StorageDeletion.path).where(StorageDeletion.status == "pending").order_by(StorageDeletion.path)
    )
    return list(rows.scalars().all())


async def _drifted_tenant(session, orchestrator, store) -> dict[str, str]:
    healthy = await _upload(session, orchestrator, "healthy.txt")
    moved = await _upload(session, orchestrator, "moved.txt")
    missing = await _upload(session, orchestrator, "missing.txt")

    relocated = path_for(PathKind.DOCUMENT, TENANT, moved.document.id, "moved-copy.txt")
    await store.upload_bytes(b"relocated body", relocated, "text/plain")
    await store.delete(moved.document.storage_path)
    await store.delete(missing.document.storage_path)
    stray = path_for(PathKind.DOCUMENT, TENANT, str(uuid4()), "stray.txt")
    await store.upload_bytes(b"nobody owns me", stray, "text/plain")
    preview = path_for(PathKind.PREVIEW, TENANT, healthy.document.id)
    await store.upload_bytes(b"jpeg", preview, "image/jpeg")
    return {
        "healthy_path": healthy.document.storage_path,
        "moved_id": moved.document.id,
        "moved_path": moved.document.storage_path,
        "relocated": relocated,
        "missing_id": missing.document.id,
        "stray": stray,
        "preview": preview,
    }


@pytest.mark.asyncio
async def test_dry_run_reports_drift_without_changing_anything(session, orchestrator, store) -> None:
    drift = await _drifted_tenant(session, orchestrator, store)

    report = await reconcile_storage(session, store, now=_later())

    assert report.dry_run is True
    assert report.objects_scanned == 4
    assert report.documents_scanned == 3
    assert report.path_fixes == [
        PathFix(
            document_id=drift["moved_id"],
            tenant_id=TENANT,
            old_path=drift["moved_path"],
            new_path=drift["relocated"],
        )
    ]
    assert report.orphan_objects == [drift["stray"]]
    assert [missing.document_id for missing in report.orphan_documents] == [drift["missing_id"]]
    assert report.unrecognized_objects == [drift["preview"]]
    document = await session.get(Document, drift["moved_id"], populate_existing=True)
    assert document.storage_path == drift["moved_path"]
    assert await _pending_deletions(session) == []
    assert gauges_snapshot()["storage_orphan_objects"] == 1.0


@pytest.mark.asyncio
async def test_live_run_repoints_documents_and_reclaims_orphans(session, orchestrator, store, queue, clock) -> None:
    drift = await _drifted_tenant(session, orchestrator, store)
    now = _later()
    clock.advance(seconds=1)

    report = await reconcile_storage(session, store, dry_run=False, queue=queue, now=now)

    assert len(report.path_fixes) == 1
    document = await session.get(Document, drift["moved_id"], populate_existing=True)
    assert document.storage_path == drift["relocated"]
    version = await session.get(DocumentVersion, document.current_version_id, populate_existing=True)
    assert version.storage_path == drift["relocated"]
    jobs = await queue.list_jobs(session, document_id=drift["moved_id"])
    assert [job.reason for job in jobs] == ["create", "manual"]
    assert await _pending_deletions(session) == [drift["stray"]]

    result = await process_due_deletions(session, store, now=now)
    assert result.completed == 1
    assert await store.exists(drift["stray"]) is False
    assert await store.exists(drift["relocated"]) is True
    assert await store.exists(drift["preview"]) is True

    again = await reconcile_storage(session, store, dry_run=False, queue=queue, now=now)
    assert again.path_fixes == []
    assert again.orphan_objects == []


@pytest.mark.asyncio
async def test_recent_objects_are_not_orphans(session, store) -> None:
    stray = path_for(PathKind.DOCUMENT, TENANT, str(uuid4()), "in-flight.txt")
    await store.upload_bytes(b"metadata not committed yet", stray, "text/plain")

    report = await reconcile_storage(session, store, dry_run=False, now=datetime.now(timezone.utc))

    assert report.orphan_objects == []
    assert report.within_grace == 1
    assert await _pending_deletions(session) == []


@pytest.mark.asyncio
async def test_objects_of_deleted_documents_share_the_pending_deletion(session, orchestrator, store) -> None:
    change = await _upload(session, orchestrator, "gone.txt")
    await orchestrator.delete_document(session, tenant_id=TENANT, document_id=change.document.id)

    report = await reconcile_storage(session, store, dry_run=False, now=_later())

    assert report.orphan_objects == [change.document.storage_path]
    assert report.documents_scanned == 0
    assert await _pending_deletions(session) == [change.document.storage_path]


@pytest.mark.asyncio
async def test_objects_under_another_tenant_are_never_adopted(session, orchestrator, store) -> None:
    change = await _upload(session, orchestrator, "mine.txt")
    await store.delete(change.document.storage_path)
    foreign = path_for(PathKind.DOCUMENT, "tenant_other", change.document.id, "mine.txt")
    await store.upload_bytes(b"not yours", foreign, "text/plain")

    report = await reconcile_storage(session, store, now=_later())

    assert report.path_fixes == []
    assert [missing.document_id for missing in report.orphan_documents] == [change.document.id]
    assert report.orphan_objects == [foreign]


@pytest.mark.asyncio
async def test_storage_reconcile_maintenance_task_defaults_to_dry_run(session, orchestrator, store) -> None:
    await _upload(session, orchestrator, "ok.txt")

    summary = await run_maintenance_task("reconcile_storage", session, orchestrator)

    assert summary["dry_run"] is True
    assert summary["documents_scanned"] == 1
    assert summary["orphan_documents"] == 0
    assert summary["path_fixes"] == 0
