from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docledger.core.config import get_settings
from docledger.core.errors import (
    DocumentNotFoundError,
    DocumentStateError,
    InvalidObjectPathError,
    QuotaExceededError,
)
from docledger.domain.models import Document, DocumentVersion, ReindexJob
from docledger.persistence.repos import documents as documents_repo
from docledger.services.quota import QuotaLedger, get_quota_ledger
from docledger.services.reindex.queue import ReindexQueue
from docledger.services.storage.deletions import cancel_pending_deletions, schedule_deletion
from docledger.services.storage.object_store import AccessGrant, ObjectStore, StreamSink
from docledger.services.storage.paths import PathKind, path_for, validate_canonical_path


logger = logging.getLogger(__name__)

_MAX_NAME_LENGTH = 255


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DocumentChange:
    # Result of a mutating operation: the document and the reindex job it produced.
    document: Document
    job: ReindexJob
    version: DocumentVersion | None = None


@dataclass(frozen=True)
class DirectUploadTicket:
    document_id: str
    path: str
    grant: AccessGrant


def _clean_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned or len(cleaned) > _MAX_NAME_LENGTH or "/" in cleaned:
        raise InvalidObjectPathError("document names must be 1-255 characters without '/'")
    return cleaned


class DocumentOrchestrator:
    """Coordinates the object store, quota ledger and reindex queue.

    Storage and metadata are not covered by one transaction. Reservations are
    committed before bytes are written and released if the write or the
    metadata commit fails; anything left over is corrected by reconciliation
    and the storage deletion sweep.

    In strict mode a reservation is committed before its document row exists.
    A quota reconcile that runs inside that window recomputes usage from
    documents alone and drops the reservation; the upload then persists
    without counting itself, so the tenant stays under-counted until the next
    reconcile. Before a write lands, the target path has any pending storage
    deletion cancelled so an earlier reclamation cannot remove the new object.
    """

    def __init__(
        self,
        *,
        store: ObjectStore,
        queue: ReindexQueue,
        ledger: QuotaLedger | None = None,
        strict_reservation: bool | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.queue = queue
        self.ledger = ledger or get_quota_ledger()
        self._strict = settings.quota_strict_reservation if strict_reservation is None else strict_reservation
        self._time_provider = time_provider or _utc_now

    async def _require_document(
        self,
        session: AsyncSession,
        tenant_id: str,
        document_id: str,
        *,
        statuses: tuple[str, ...] = ("active",),
    ) -> Document:
        document = await documents_repo.get_document(session, tenant_id, document_id)
        if document is None or document.status == "deleted":
            raise DocumentNotFoundError(document_id)
        if document.status not in statuses:
            raise DocumentStateError(f"Document is {document.status}.", document_id=document_id)
        return document

    async def _precheck(self, session: AsyncSession, tenant_id: str, size_bytes: int) -> None:
        # Doomed uploads are rejected before any storage write.
        (await self.ledger.check_document_count(session, tenant_id)).raise_if_denied()
        (await self.ledger.check_storage(session, tenant_id, size_bytes)).raise_if_denied()

    async def _reserve(self, session: AsyncSession, tenant_id: str, size_bytes: int, *, documents: int = 1) -> bool:
        # Strict mode holds capacity up front; the commit makes it visible to concurrent uploads.
        if not self._strict:
            return False
        decision = await self.ledger.reserve_upload(session, tenant_id, size_bytes, documents=documents)
        if not decision.allowed:
            await session.rollback()
            decision.raise_if_denied()
        await session.commit()
        return True

    async def _release(self, session: AsyncSession, tenant_id: str, size_bytes: int, *, documents: int = 1) -> None:
        await session.rollback()
        if documents:
            await self.ledger.apply_delete(session, tenant_id, size_bytes)
        else:
            await self.ledger.adjust_storage(session, tenant_id, -size_bytes)
        await session.commit()
        logger.info("quota_reservation_released tenant_id=%s size_bytes=%s", tenant_id, size_bytes)

    async def _claim_path(self, session: AsyncSession, path: str) -> int:
        # Committed before bytes land so a sweep never reclaims the object written next.
        cancelled = await cancel_pending_deletions(session, path, now=self._time_provider())
        await session.commit()
        return cancelled

    async def _finish(self, session: AsyncSession, job: ReindexJob) -> None:
        await session.commit()
        await self.queue.dispatch([job])

    async def _persist_new_document(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        document_id: str,
        file_name: str,
        display_name: str | None,
        content_type: str,
        size_bytes: int,
        path: str,
        reserved: bool,
        correlation_id: str | None,
    ) -> DocumentChange:
        await cancel_pending_deletions(session, path, now=self._time_provider())
        document = await documents_repo.create_document(
            session,
            document_id=document_id,
            tenant_id=tenant_id,
            name=_clean_name(display_name or file_name),
            original_filename=file_name,
            content_type=content_type,
            file_size_bytes=size_bytes,
            storage_path=path,
        )
        version = await documents_repo.add_version(
            session,
            version_id=str(uuid4()),
            document=document,
            original_filename=file_name,
            content_type=content_type,
            file_size_bytes=size_bytes,
            storage_path=path,
        )
        if not reserved:
            await self.ledger.apply_upload(session, tenant_id, size_bytes)
        job = await self.queue.enqueue(
            session,
            document_id=document_id,
            tenant_id=tenant_id,
            version_id=version.id,
            correlation_id=correlation_id,
            reason="create",
        )
        return DocumentChange(document=document, job=job, version=version)

    async def upload_document(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        file_name: str,
        data: bytes,
        content_type: str,
        display_name: str | None = None,
        correlation_id: str | None = None,
    ) -> DocumentChange:
        # quota check, reserve, write bytes, persist metadata, enqueue reindex.
        size_bytes = len(data)
        document_id = str(uuid4())
        path = path_for(PathKind.DOCUMENT, tenant_id, document_id, file_name)
        await self._precheck(session, tenant_id, size_bytes)
        reserved = await self._reserve(session, tenant_id, size_bytes)
        try:
            await self.store.upload_bytes(data, path, content_type)
        except Exception:
            if reserved:
                await self._release(session, tenant_id, size_bytes)
            raise
        try:
            change = await self._persist_new_document(
                session,
                tenant_id=tenant_id,
                document_id=document_id,
                file_name=file_name,
                display_name=display_name,
                content_type=content_type,
                size_bytes=size_bytes,
                path=path,
                reserved=reserved,
                correlation_id=correlation_id,
            )
            await session.commit()
        except Exception:
            await self._compensate_orphan(session, tenant_id, size_bytes, path, reserved)
            raise
        await self.queue.dispatch([change.job])
        logger.info(
            "document_uploaded tenant_id=%s document_id=%s size_bytes=%s",
            tenant_id,
            document_id,
            size_bytes,
        )
        return change

    async def _compensate_orphan(
        self,
        session: AsyncSession,
        tenant_id: str,
        size_bytes: int,
        path: str,
        reserved: bool,
    ) -> None:
        # Bytes landed but metadata did not: release capacity and reclaim the object later.
        await session.rollback()
        if reserved:
            await self.ledger.apply_delete(session, tenant_id, size_bytes)
        await schedule_deletion(session, tenant_id=tenant_id, path=path, now=self._time_provider())
        await session.commit()
        logger.warning("document_upload_orphaned tenant_id=%s path=%s", tenant_id, path)

    async def begin_direct_upload(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        file_name: str,
        content_type: str,
        size_bytes: int,
    ) -> DirectUploadTicket:
        # The client writes the bytes itself through the grant; nothing is reserved yet.
        await self._precheck(session, tenant_id, size_bytes)
        await session.commit()
        document_id = str(uuid4())
        path = path_for(PathKind.DOCUMENT, tenant_id, document_id, file_name)
        grant = await self.store.issue_upload_grant(path, content_type)
        return DirectUploadTicket(document_id=document_id, path=path, grant=grant)

    async def complete_direct_upload(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        document_id: str,
        path: str,
        file_name: str,
        display_name: str | None = None,
        correlation_id: str | None = None,
    ) -> DocumentChange:
        parsed = validate_canonical_path(path, tenant_id, file_name)
        if parsed.document_id != document_id:
            raise InvalidObjectPathError("path does not belong to this document")
        await self._claim_path(session, path)
        stored = await self.store.head(path)
        try:
            reserved = await self._reserve(session, tenant_id, stored.size_bytes)
            if not reserved:
                await self._precheck(session, tenant_id, stored.size_bytes)
        except QuotaExceededError:
            await session.rollback()
            await schedule_deletion(session, tenant_id=tenant_id, path=path, now=self._time_provider())
            await session.commit()
            raise
        try:
            change = await self._persist_new_document(
                session,
                tenant_id=tenant_id,
                document_id=document_id,
                file_name=file_name,
                display_name=display_name,
                content_type=stored.content_type,
                size_bytes=stored.size_bytes,
                path=path,
                reserved=reserved,
                correlation_id=correlation_id,
            )
            await session.commit()
        except Exception:
            await self._compensate_orphan(session, tenant_id, stored.size_bytes, path, reserved)
            raise
        await self.queue.dispatch([change.job])
        return change

    async def rename_document(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        document_id: str,
        new_name: str,
        correlation_id: str | None = None,
    ) -> DocumentChange:
        # Display name only; the stored object keeps its canonical path.
        document = await self._require_document(session, tenant_id, document_id)
        document.name = _clean_name(new_name)
        job = await self.queue.enqueue(
            session,
            document_id=document.id,
            tenant_id=tenant_id,
            version_id=document.current_version_id,
            correlation_id=correlation_id,
            reason="rename",
        )
        await self._finish(session, job)
        return DocumentChange(document=document, job=job)

    async def upload_new_version(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        document_id: str,
        file_name: str,
        data: bytes,
        content_type: str,
        correlation_id: str | None = None,
    ) -> DocumentChange:
        document = await self._require_document(session, tenant_id, document_id)
        size_bytes = len(data)
        delta = size_bytes - int(document.file_size_bytes)
        old_path = document.storage_path
        path = path_for(PathKind.DOCUMENT, tenant_id, document.id, file_name)
        reserved = False
        if delta > 0:
            (await self.ledger.check_storage(session, tenant_id, delta)).raise_if_denied()
            reserved = await self._reserve(session, tenant_id, delta, documents=0)
        revived = await self._claim_path(session, path) if path != old_path else 0
        try:
            await self.store.upload_bytes(data, path, content_type)
        except Exception:
            if reserved:
                await self._release(session, tenant_id, delta, documents=0)
            if revived:
                # Whatever an earlier version left at this path is unreferenced again.
                await session.rollback()
                await schedule_deletion(
                    session,
                    tenant_id=tenant_id,
                    document_id=document_id,
                    path=path,
                    now=self._time_provider(),
                )
                await session.commit()
            raise
        document = await self._require_document(session, tenant_id, document_id)
        version = await documents_repo.add_version(
            session,
            version_id=str(uuid4()),
            document=document,
            original_filename=file_name,
            content_type=content_type,
            file_size_bytes=size_bytes,
            storage_path=path,
        )
        document.original_filename = file_name
        document.content_type = content_type
        document.file_size_bytes = size_bytes
        document.storage_path = path
        if delta < 0 or not reserved:
            await self.ledger.adjust_storage(session, tenant_id, delta)
        if old_path != path:
            # Storage holds the current version only.
            await schedule_deletion(
                session,
                tenant_id=tenant_id,
                document_id=document.id,
                path=old_path,
                now=self._time_provider(),
            )
        job = await self.queue.enqueue(
            session,
            document_id=document.id,
            tenant_id=tenant_id,
            version_id=version.id,
            correlation_id=correlation_id,
            reason="version",
        )
        await self._finish(session, job)
        return DocumentChange(document=document, job=job, version=version)

    async def trash_document(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        document_id: str,
        correlation_id: str | None = None,
    ) -> DocumentChange:
        # Soft delete: hidden and released from quota, bytes kept for restore.
        document = await self._require_document(session, tenant_id, document_id)
        document.status = "trashed"
        document.trashed_at = self._time_provider()
        await self.ledger.apply_delete(session, tenant_id, int(document.file_size_bytes))
        job = await self.queue.enqueue(
            session,
            document_id=document.id,
            tenant_id=tenant_id,
            version_id=document.current_version_id,
            correlation_id=correlation_id,
            reason="trash",
        )
        await self._finish(session, job)
        return DocumentChange(document=document, job=job)

    async def restore_document(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        document_id: str,
        correlation_id: str | None = None,
    ) -> DocumentChange:
        document = await self._require_document(session, tenant_id, document_id, statuses=("trashed",))
        retention = timedelta(days=get_settings().trash_retention_days)
        if document.trashed_at is None or self._time_provider() - document.trashed_at > retention:
            raise DocumentStateError("Restore window has passed.", document_id=document_id)
        size_bytes = int(document.file_size_bytes)
        reserved = await self._reserve(session, tenant_id, size_bytes)
        if not reserved:
            await self._precheck(session, tenant_id, size_bytes)
        document = await self._require_document(session, tenant_id, document_id, statuses=("trashed",))
        document.status = "active"
        document.trashed_at = None
        if not reserved:
            await self.ledger.apply_upload(session, tenant_id, size_bytes)
        job = await self.queue.enqueue(
            session,
            document_id=document.id,
            tenant_id=tenant_id,
            version_id=document.current_version_id,
            correlation_id=correlation_id,
            reason="restore",
        )
        await self._finish(session, job)
        return DocumentChange(document=document, job=job)

    async def delete_document(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        document_id: str,
        correlation_id: str | None = None,
    ) -> DocumentChange:
        """Permanently delete a document.

        The metadata change is immediate; index removal happens through the
        reindex job and the stored objects are reclaimed by the deletion sweep.
        """
        document = await self._require_document(
            session,
            tenant_id,
            document_id,
            statuses=("active", "trashed"),
        )
        if document.status == "active":
            await self.ledger.apply_delete(session, tenant_id, int(document.file_size_bytes))
        now = self._time_provider()
        document.status = "deleted"
        document.deleted_at = now
        paths = {document.storage_path}
        versions = await documents_repo.list_versions(session, tenant_id, document.id)
        paths.update(version.storage_path for version in versions)
        for path in sorted(paths):
            await schedule_deletion(session, tenant_id=tenant_id, document_id=document.id, path=path, now=now)
        job = await self.queue.enqueue(
            session,
            document_id=document.id,
            tenant_id=tenant_id,
            version_id=document.current_version_id,
            correlation_id=correlation_id,
            reason="delete",
        )
        await self._finish(session, job)
        logger.info("document_deleted tenant_id=%s document_id=%s", tenant_id, document.id)
        return DocumentChange(document=document, job=job)

    async def purge_expired_trash(self, session: AsyncSession) -> int:
        cutoff = self._time_provider() - timedelta(days=get_settings().trash_retention_days)
        expired = (
            await session.execute(
                select(Document.tenant_id, Document.id).where(
                    Document.status == "trashed",
                    Document.trashed_at < cutoff,
                )
            )
        ).all()
        for tenant_id, document_id in expired:
            await self.delete_document(session, tenant_id=tenant_id, document_id=document_id)
        if expired:
            logger.info("trash_purged count=%s", len(expired))
        return len(expired)

    async def issue_download_grant(self, session: AsyncSession, *, tenant_id: str, document_id: str) -> AccessGrant:
        document = await self._require_document(session, tenant_id, document_id)
        return await self.store.issue_download_grant(document.storage_path, document.name)

    async def stream_document(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        document_id: str,
        sink: StreamSink,
    ) -> Any:
        document = await self._require_document(session, tenant_id, document_id)
        return await self.store.stream_to(document.storage_path, sink, document.name)

    async def quota_summary(self, session: AsyncSession, tenant_id: str) -> dict[str, Any]:
        return await self.ledger.summary(session, tenant_id)
