from __future__ import annotations

import pytest
from sqlalchemy import select

from docledger.core.errors import (
    DocumentNotFoundError,
    DocumentStateError,
    InvalidObjectPathError,
    QuotaExceededError,
    StorageTempUnavailableError,
)
from docledger.domain.models import Document, StorageDeletion
from docledger.persistence.repos.documents import list_documents, list_versions
from docledger.services.documents import DocumentOrchestrator
from docledger.services.storage.deletions import process_due_deletions, schedule_deletion
from docledger.tests.utils.fakes import MemorySink

TENANT = "tenant_docs"


async def _upload(session, orchestrator, *, data: bytes = b"hello world", file_name: str = "report.txt", **kwargs):
    return await orchestrator.upload_document(
        session,
        tenant_id=TENANT,
        file_name=file_name,
        data=data,
        content_type="text/plain",
        **kwargs,
    )


async def _pending_deletions(session) -> list[str]:
    rows = await session.execute(
        select(StorageDeletion.path).where(StorageDeletion.status == "pending").order_by(StorageDeletion.path)
    )
    return list(rows.scalars().all())


async def _depth(session, queue) -> int:
    return (await queue.stats(session)).depth


@pytest.mark.asyncio
async def test_upload_writes_object_updates_ledger_and_enqueues(session, orchestrator, ledger, queue, store) -> None:
    assert await _depth(session, queue) == 0

    change = await _upload(session, orchestrator, display_name="Q1 report")

    document = change.document
    assert document.name == "Q1 report"
    assert document.original_filename == "report.txt"
    assert document.storage_path == f"tenants/{TENANT}/docs/{document.id}/report.txt"
    assert document.current_version_id == change.version.id
    assert change.version.version_number == 1
    assert change.job.reason == "create"
    assert await _depth(session, queue) == 1
    assert await store.read_all(document.storage_path) == b"hello world"
    snapshot = await ledger.snapshot(session, TENANT)
    assert snapshot.storage_used_bytes == 11
    assert snapshot.document_count == 1


@pytest.mark.asyncio
async def test_storage_quota_denial_happens_before_any_write(session, orchestrator, ledger, backend, queue) -> None:
    await ledger.set_limits(session, TENANT, storage_limit_bytes=10)
    await session.commit()

    with pytest.raises(QuotaExceededError) as exc_info:
        await _upload(session, orchestrator, data=b"x" * 25)

    assert exc_info.value.resource == "storage"
    assert exc_info.value.details["overage_bytes"] == 15
    assert "put" not in backend.calls
    assert await list_documents(session, TENANT) == []
    assert await _depth(session, queue) == 0


@pytest.mark.asyncio
async def test_document_limit_is_enforced(session, orchestrator, ledger) -> None:
    await ledger.set_limits(session, TENANT, document_limit=1)
    await session.commit()
    await _upload(session, orchestrator)

    with pytest.raises(QuotaExceededError) as exc_info:
        await _upload(session, orchestrator, file_name="second.txt")

    assert exc_info.value.resource == "documents"
    assert (await ledger.snapshot(session, TENANT)).document_count == 1


@pytest.mark.asyncio
async def test_failed_storage_write_releases_the_reservation(session, orchestrator, ledger, backend) -> None:
    backend.fail_always("put", ConnectionError("connection reset"))

    with pytest.raises(StorageTempUnavailableError):
        await _upload(session, orchestrator)

    snapshot = await ledger.snapshot(session, TENANT)
    assert snapshot.storage_used_bytes == 0
    assert snapshot.document_count == 0
    assert await list_documents(session, TENANT) == []


@pytest.mark.asyncio
async def test_non_strict_mode_applies_usage_after_the_write(session, store, queue, ledger, clock) -> None:
    orchestrator = DocumentOrchestrator(
        store=store,
        queue=queue,
        ledger=ledger,
        strict_reservation=False,
        time_provider=clock.now,
    )

    await _upload(session, orchestrator, data=b"12345")

    snapshot = await ledger.snapshot(session, TENANT)
    assert snapshot.storage_used_bytes == 5
    assert snapshot.document_count == 1


@pytest.mark.asyncio
async def test_rename_changes_display_name_only(session, orchestrator, queue) -> None:
    change = await _upload(session, orchestrator)
    path = change.document.storage_path

    renamed = await orchestrator.rename_document(
        session,
        tenant_id=TENANT,
        document_id=change.document.id,
        new_name="  Final report  ",
    )

    assert renamed.document.name == "Final report"
    assert renamed.document.storage_path == path
    assert renamed.job.reason == "rename"
    assert await _depth(session, queue) == 2


@pytest.mark.asyncio
async def test_rename_rejects_names_with_slashes(session, orchestrator) -> None:
    change = await _upload(session, orchestrator)

    with pytest.raises(InvalidObjectPathError):
        await orchestrator.rename_document(
            session,
            tenant_id=TENANT,
            document_id=change.document.id,
            new_name="../escape",
        )


@pytest.mark.asyncio
async def test_new_version_adjusts_usage_and_retires_old_object(session, orchestrator, ledger, queue) -> None:
    change = await _upload(session, orchestrator)
    old_path = change.document.storage_path

    updated = await orchestrator.upload_new_version(
        session,
        tenant_id=TENANT,
        document_id=change.document.id,
        file_name="report-v2.txt",
        data=b"hello brave new world",
        content_type="text/plain",
    )

    assert updated.version.version_number == 2
    assert updated.document.current_version_id == updated.version.id
    assert updated.document.file_size_bytes == 21
    assert updated.job.reason == "version"
    assert (await ledger.snapshot(session, TENANT)).storage_used_bytes == 21
    assert await _pending_deletions(session) == [old_path]
    versions = await list_versions(session, TENANT, change.document.id)
    assert [version.version_number for version in versions] == [1, 2]
    assert await _depth(session, queue) == 2


@pytest.mark.asyncio
async def test_smaller_version_at_same_path_releases_bytes(session, orchestrator, ledger, store) -> None:
    change = await _upload(session, orchestrator)

    await orchestrator.upload_new_version(
        session,
        tenant_id=TENANT,
        document_id=change.document.id,
        file_name="report.txt",
        data=b"hi",
        content_type="text/plain",
    )

    assert (await ledger.snapshot(session, TENANT)).storage_used_bytes == 2
    assert await _pending_deletions(session) == []
    assert await store.read_all(change.document.storage_path) == b"hi"


@pytest.mark.asyncio
async def test_new_version_respects_storage_quota(session, orchestrator, ledger, backend) -> None:
    change = await _upload(session, orchestrator)
    await ledger.set_limits(session, TENANT, storage_limit_bytes=12)
    await session.commit()
    puts_before = backend.calls["put"]

    with pytest.raises(QuotaExceededError):
        await orchestrator.upload_new_version(
            session,
            tenant_id=TENANT,
            document_id=change.document.id,
            file_name="report.txt",
            data=b"x" * 20,
            content_type="text/plain",
        )

    assert backend.calls["put"] == puts_before
    assert (await ledger.snapshot(session, TENANT)).storage_used_bytes == 11


@pytest.mark.asyncio
async def test_delete_releases_quota_and_schedules_object_removal(session, orchestrator, ledger, queue, store, clock) -> None:
    change = await _upload(session, orchestrator)
    document_id = change.document.id
    path = change.document.storage_path

    clock.advance(seconds=1)
    deleted = await orchestrator.delete_document(session, tenant_id=TENANT, document_id=document_id)

    assert deleted.document.status == "deleted"
    assert deleted.job.reason == "delete"
    jobs = await queue.list_jobs(session, document_id=document_id)
    assert [job.reason for job in jobs] == ["create", "delete"]
    assert await _depth(session, queue) == 2
    snapshot = await ledger.snapshot(session, TENANT)
    assert snapshot.storage_used_bytes == 0
    assert snapshot.document_count == 0
    assert await _pending_deletions(session) == [path]
    with pytest.raises(DocumentNotFoundError):
        await orchestrator.issue_download_grant(session, tenant_id=TENANT, document_id=document_id)

    # The object outlives the metadata until the deletion sweep runs.
    assert await store.exists(path) is True
    result = await process_due_deletions(session, store, now=clock.now())
    assert result.completed == 1
    assert await store.exists(path) is False
    assert await _pending_deletions(session) == []


@pytest.mark.asyncio
async def test_delete_twice_is_not_found(session, orchestrator, ledger) -> None:
    change = await _upload(session, orchestrator)
    await orchestrator.delete_document(session, tenant_id=TENANT, document_id=change.document.id)

    with pytest.raises(DocumentNotFoundError):
        await orchestrator.delete_document(session, tenant_id=TENANT, document_id=change.document.id)

    assert (await ledger.snapshot(session, TENANT)).storage_used_bytes == 0


@pytest.mark.asyncio
async def test_other_tenants_cannot_see_documents(session, orchestrator) -> None:
    change = await _upload(session, orchestrator)

    with pytest.raises(DocumentNotFoundError):
        await orchestrator.rename_document(
            session,
            tenant_id="tenant_other",
            document_id=change.document.id,
            new_name="mine now",
        )


@pytest.mark.asyncio
async def test_trash_and_restore_within_window(session, orchestrator, ledger, clock, queue) -> None:
    change = await _upload(session, orchestrator)

    trashed = await orchestrator.trash_document(session, tenant_id=TENANT, document_id=change.document.id)
    assert trashed.document.status == "trashed"
    assert (await ledger.snapshot(session, TENANT)).storage_used_bytes == 0
    with pytest.raises(DocumentStateError):
        await orchestrator.rename_document(
            session,
            tenant_id=TENANT,
            document_id=change.document.id,
            new_name="nope",
        )

    clock.advance(days=6)
    restored = await orchestrator.restore_document(session, tenant_id=TENANT, document_id=change.document.id)

    assert restored.document.status == "active"
    assert restored.document.trashed_at is None
    snapshot = await ledger.snapshot(session, TENANT)
    assert snapshot.storage_used_bytes == 11
    assert snapshot.document_count == 1
    assert await _depth(session, queue) == 3


@pytest.mark.asyncio
async def test_restore_after_retention_window_fails_and_purge_deletes(session, orchestrator, clock) -> None:
    change = await _upload(session, orchestrator)
    await orchestrator.trash_document(session, tenant_id=TENANT, document_id=change.document.id)

    clock.advance(days=8)
    with pytest.raises(DocumentStateError):
        await orchestrator.restore_document(session, tenant_id=TENANT, document_id=change.document.id)

    assert await orchestrator.purge_expired_trash(session) == 1
    document = await session.get(Document, change.document.id, populate_existing=True)
    assert document.status == "deleted"
    assert await _pending_deletions(session) == [change.document.storage_path]


@pytest.mark.asyncio
async def test_direct_upload_flow(session, orchestrator, store, ledger, queue) -> None:
    ticket = await orchestrator.begin_direct_upload(
        session,
        tenant_id=TENANT,
        file_name="scan.pdf",
        content_type="application/pdf",
        size_bytes=5,
    )
    assert ticket.grant.method == "PUT"
    claims = store.verify_grant(ticket.grant.url, "PUT")
    assert claims.path == ticket.path
    assert (await ledger.snapshot(session, TENANT)).storage_used_bytes == 0

    # The client uploads through the grant.
    await store.upload_bytes(b"%PDF-", ticket.path, "application/pdf")
    change = await orchestrator.complete_direct_upload(
        session,
        tenant_id=TENANT,
        document_id=ticket.document_id,
        path=ticket.path,
        file_name="scan.pdf",
    )

    assert change.document.id == ticket.document_id
    assert change.document.content_type == "application/pdf"
    assert change.document.file_size_bytes == 5
    assert (await ledger.snapshot(session, TENANT)).storage_used_bytes == 5
    assert await _depth(session, queue) == 1


@pytest.mark.asyncio
async def test_direct_upload_rejects_foreign_tenant_path(session, orchestrator, store) -> None:
    ticket = await orchestrator.begin_direct_upload(
        session,
        tenant_id=TENANT,
        file_name="scan.pdf",
        content_type="application/pdf",
        size_bytes=5,
    )
    await store.upload_bytes(b"%PDF-", ticket.path, "application/pdf")

    with pytest.raises(InvalidObjectPathError):
        await orchestrator.complete_direct_upload(
            session,
            tenant_id="tenant_thief",
            document_id=ticket.document_id,
            path=ticket.path,
            file_name="scan.pdf",
        )


@pytest.mark.asyncio
async def test_direct_upload_over_quota_schedules_cleanup(session, orchestrator, store, ledger) -> None:
    ticket = await orchestrator.begin_direct_upload(
        session,
        tenant_id=TENANT,
        file_name="big.bin",
        content_type="application/octet-stream",
        size_bytes=4,
    )
    # The client sends more than it announced.
    await store.upload_bytes(b"x" * 64, ticket.path, "application/octet-stream")
    await ledger.set_limits(session, TENANT, storage_limit_bytes=32)
    await session.commit()

    with pytest.raises(QuotaExceededError):
        await orchestrator.complete_direct_upload(
            session,
            tenant_id=TENANT,
            document_id=ticket.document_id,
            path=ticket.path,
            file_name="big.bin",
        )

    assert await _pending_deletions(session) == [ticket.path]
    assert await list_documents(session, TENANT) == []


@pytest.mark.asyncio
async def test_download_grant_and_stream_use_display_name(session, orchestrator, store) -> None:
    change = await _upload(session, orchestrator, display_name='Board "final" deck')

    grant = await orchestrator.issue_download_grant(session, tenant_id=TENANT, document_id=change.document.id)
    assert grant.method == "GET"
    assert grant.disposition == "attachment; filename=\"Board 'final' deck\""
    assert store.verify_grant(grant.url, "GET").disposition == grant.disposition

    sink = MemorySink()
    stored = await orchestrator.stream_document(
        session,
        tenant_id=TENANT,
        document_id=change.document.id,
        sink=sink,
    )

    assert stored.size_bytes == 11
    assert sink.body == b"hello world"
    assert sink.headers["Content-Disposition"] == grant.disposition


@pytest.mark.asyncio
async def test_quota_summary_reports_usage(session, orchestrator, ledger) -> None:
    await ledger.set_limits(session, TENANT, storage_limit_bytes=44, document_limit=4)
    await session.commit()
    await _upload(session, orchestrator)

    summary = await orchestrator.quota_summary(session, TENANT)

    assert summary["storage"] == {"used_bytes": 11, "limit_bytes": 44, "percentage": 25}
    assert summary["documents"] == {"count": 1, "limit": 4, "percentage": 25}


@pytest.mark.asyncio
async def test_reconcile_repairs_drift_from_lost_updates(session, orchestrator, ledger) -> None:
    await _upload(session, orchestrator)
    await _upload(session, orchestrator, file_name="other.txt", data=b"abc")
    await ledger.adjust_storage(session, TENANT, 1000)
    await session.commit()

    result = await ledger.reconcile(session, TENANT)
    await session.commit()

    assert result.drifted is True
    assert result.after.storage_used_bytes == 14
    assert result.after.document_count == 2


@pytest.mark.asyncio
async def test_returning_to_an_earlier_file_name_keeps_the_live_object(session, orchestrator, store, clock) -> None:
    change = await _upload(session, orchestrator, file_name="a.txt", data=b"first")
    document_id = change.document.id
    first_path = change.document.storage_path

    second = await orchestrator.upload_new_version(
        session,
        tenant_id=TENANT,
        document_id=document_id,
        file_name="b.txt",
        data=b"second",
        content_type="text/plain",
    )
    assert await _pending_deletions(session) == [first_path]

    third = await orchestrator.upload_new_version(
        session,
        tenant_id=TENANT,
        document_id=document_id,
        file_name="a.txt",
        data=b"third",
        content_type="text/plain",
    )

    assert third.document.storage_path == first_path
    assert await _pending_deletions(session) == [second.document.storage_path]
    result = await process_due_deletions(session, store, now=clock.now())
    assert result.completed == 1
    assert await store.read_all(first_path) == b"third"
    assert await store.exists(second.document.storage_path) is False


@pytest.mark.asyncio
async def test_sweep_leaves_objects_referenced_by_documents(session, orchestrator, store, clock) -> None:
    change = await _upload(session, orchestrator)
    path = change.document.storage_path
    await schedule_deletion(session, tenant_id=TENANT, path=path, now=clock.now())
    await session.commit()

    result = await process_due_deletions(session, store, now=clock.now())

    assert result.skipped == 1
    assert result.completed == 0
    assert await store.exists(path) is True
    statuses = await session.execute(select(StorageDeletion.status).where(StorageDeletion.path == path))
    assert statuses.scalars().all() == ["cancelled"]


@pytest.mark.asyncio
async def test_direct_upload_retry_after_quota_denial_keeps_object(session, orchestrator, store, ledger, clock) -> None:
    ticket = await orchestrator.begin_direct_upload(
        session,
        tenant_id=TENANT,
        file_name="big.bin",
        content_type="application/octet-stream",
        size_bytes=4,
    )
    await store.upload_bytes(b"x" * 64, ticket.path, "application/octet-stream")
    await ledger.set_limits(session, TENANT, storage_limit_bytes=32)
    await session.commit()
    with pytest.raises(QuotaExceededError):
        await orchestrator.complete_direct_upload(
            session,
            tenant_id=TENANT,
            document_id=ticket.document_id,
            path=ticket.path,
            file_name="big.bin",
        )

    await ledger.set_limits(session, TENANT, storage_limit_bytes=1024)
    await session.commit()
    change = await orchestrator.complete_direct_upload(
        session,
        tenant_id=TENANT,
        document_id=ticket.document_id,
        path=ticket.path,
        file_name="big.bin",
    )

    assert change.document.file_size_bytes == 64
    assert await _pending_deletions(session) == []
    await process_due_deletions(session, store, now=clock.now())
    assert await store.exists(ticket.path) is True
