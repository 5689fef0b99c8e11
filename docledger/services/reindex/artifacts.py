from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from docledger.domain.models import Document, SearchChunk
from docledger.ingestion.chunking import chunk_text
from docledger.ingestion.embeddings import embed_text
from docledger.services.storage.object_store import ObjectStore


logger = logging.getLogger(__name__)

_TEXT_CONTENT_TYPES = {"application/json", "application/xml", "application/x-yaml", "application/yaml"}


@dataclass(frozen=True)
class ArtifactResult:
    document_id: str
    version_id: str | None
    chunk_count: int
    removed: bool


def is_text_content(content_type: str) -> bool:
    base = (content_type or "").split(";", 1)[0].strip().lower()
    return base.startswith("text/") or base in _TEXT_CONTENT_TYPES


def _chunk_id(document_id: str, chunk_index: int) -> str:
    # Deterministic ids keep repeated regenerations byte-for-byte identical.
    return f"{document_id}:{chunk_index}"


async def _document_body(store: ObjectStore, document: Document) -> str:
    if not is_text_content(document.content_type):
        return ""
    raw = await store.read_all(document.storage_path)
    return raw.decode("utf-8", errors="replace")


async def regenerate_search_artifacts(
    session: AsyncSession,
    store: ObjectStore,
    *,
    document_id: str,
    version_id: str | None,
) -> ArtifactResult:
    """Rebuild the search chunks for one document.

    Existing chunks are always deleted before new ones are written, so running
    this any number of times for the same document converges to the same rows.
    Documents that are missing or no longer active end up with no chunks.
    The caller commits.
    """
    await session.execute(delete(SearchChunk).where(SearchChunk.document_id == document_id))
    document = await session.get(Document, document_id, populate_existing=True)
    if document is None or document.status != "active":
        logger.info("search_artifacts_removed document_id=%s", document_id)
        return ArtifactResult(document_id=document_id, version_id=version_id, chunk_count=0, removed=True)

    if version_id is not None and version_id != document.current_version_id:
        # Artifacts always follow the current version; an older job just converges to it.
        logger.info(
            "reindex_version_superseded document_id=%s requested=%s current=%s",
            document_id,
            version_id,
            document.current_version_id,
        )

    body = await _document_body(store, document)
    texts = [document.name]
    texts.extend(chunk.text for chunk in chunk_text(body))
    for index, text in enumerate(texts):
        session.add(
            SearchChunk(
                id=_chunk_id(document_id, index),
                document_id=document_id,
                tenant_id=document.tenant_id,
                version_id=document.current_version_id or "",
                chunk_index=index,
                text=text,
                embedding=embed_text(text),
                metadata_json={"name": document.name, "content_type": document.content_type},
            )
        )
    await session.flush()
    return ArtifactResult(
        document_id=document_id,
        version_id=document.current_version_id,
        chunk_count=len(texts),
        removed=False,
    )
