from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from docledger.domain.models import Document, DocumentVersion, SearchChunk
from docledger.persistence.guards import tenant_predicate


async def create_document(
    session: AsyncSession,
    *,
    document_id: str,
    tenant_id: str,
    name: str,
    original_filename: str,
    content_type: str,
    file_size_bytes: int,
    storage_path: str,
) -> Document:
    # Create the document row explicitly so status transitions are tracked.
    doc = Document(
        id=document_id,
        tenant_id=tenant_id,
        name=name,
        original_filename=original_filename,
        content_type=content_type,
        file_size_bytes=file_size_bytes,
        storage_path=storage_path,
        status="active",
    )
    session.add(doc)
    return doc


async def add_version(
    session: AsyncSession,
    *,
    version_id: str,
    document: Document,
    original_filename: str,
    content_type: str,
    file_size_bytes: int,
    storage_path: str,
) -> DocumentVersion:
    # Version numbers are dense per document, starting at 1.
    current = await session.scalar(
        select(func.max(DocumentVersion.version_number)).where(DocumentVersion.document_id == document.id)
    )
    version = DocumentVersion(
        id=version_id,
        document_id=document.id,
        tenant_id=document.tenant_id,
        version_number=int(current or 0) + 1,
        original_filename=original_filename,
        content_type=content_type,
        file_size_bytes=file_size_bytes,
        storage_path=storage_path,
    )
    session.add(version)
    document.current_version_id = version_id
    return version


async def list_documents(
    session: AsyncSession,
    tenant_id: str,
    *,
    status: str | None = "active",
) -> list[Document]:
    # Tenant scoping prevents cross-tenant leakage; deleted rows are hidden by default.
    stmt = select(Document).where(tenant_predicate(Document, tenant_id))
    if status:
        stmt = stmt.where(Document.status == status)
    result = await session.execute(stmt.order_by(Document.created_at, Document.id))
    return list(result.scalars().all())


async def get_document(session: AsyncSession, tenant_id: str, document_id: str) -> Document | None:
    # Return None for tenant mismatch to keep not-found semantics.
    result = await session.execute(
        select(Document).where(Document.id == document_id, tenant_predicate(Document, tenant_id))
    )
    return result.scalar_one_or_none()


async def list_versions(session: AsyncSession, tenant_id: str, document_id: str) -> list[DocumentVersion]:
    result = await session.execute(
        select(DocumentVersion)
        .where(
            DocumentVersion.document_id == document_id,
            tenant_predicate(DocumentVersion, tenant_id),
        )
        .order_by(DocumentVersion.version_number)
    )
    return list(result.scalars().all())


async def list_search_chunks(session: AsyncSession, document_id: str) -> list[SearchChunk]:
    result = await session.execute(
        select(SearchChunk).where(SearchChunk.document_id == document_id).order_by(SearchChunk.chunk_index)
    )
    return list(result.scalars().all())
