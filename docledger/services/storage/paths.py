from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from uuid import uuid4

from docledger.core.errors import InvalidObjectPathError


class PathKind(str, Enum):
    DOCUMENT = "document"
    PREVIEW = "preview"
    METADATA = "metadata"
    EMBEDDING = "embedding"
    TEMP_UPLOAD = "temp_upload"


_TENANT_RE = re.compile(r"[A-Za-z0-9_-]+")
_DOC_ID_RE = re.compile(r"[a-f0-9-]{36}")
# Patterns are applied with fullmatch so a trailing newline never passes.
CANONICAL_PATH_RE = re.compile(r"tenants/([A-Za-z0-9_-]+)/docs/([a-f0-9-]{36})/([^/]+)")
_RESERVED_NAMES = frozenset({".", ".."})


@dataclass(frozen=True)
class CanonicalPath:
    tenant_id: str
    document_id: str
    file_name: str


def _require_tenant(tenant_id: str | None) -> str:
    if not tenant_id or not _TENANT_RE.fullmatch(tenant_id):
        raise InvalidObjectPathError("tenant id must match [A-Za-z0-9_-]+")
    return tenant_id


def _require_doc_id(document_id: str | None) -> str:
    if not document_id or not _DOC_ID_RE.fullmatch(document_id):
        raise InvalidObjectPathError("document id must be a 36 character UUID")
    return document_id


def _require_name(name: str | None) -> str:
    if not name or "/" in name or name in _RESERVED_NAMES:
        raise InvalidObjectPathError("file name must be non-empty and contain no '/'")
    return name


def path_for(
    kind: PathKind | str,
    tenant_id: str | None = None,
    document_id: str | None = None,
    name: str | None = None,
) -> str:
    # The only object names the rest of the system is allowed to trust.
    kind = PathKind(kind)
    if kind is PathKind.DOCUMENT:
        return (
            f"tenants/{_require_tenant(tenant_id)}/docs/"
            f"{_require_doc_id(document_id)}/{_require_name(name)}"
        )
    if kind is PathKind.PREVIEW:
        return f"tenants/{_require_tenant(tenant_id)}/previews/{_require_doc_id(document_id)}.jpg"
    if kind is PathKind.METADATA:
        return f"tenants/{_require_tenant(tenant_id)}/metadata/{_require_doc_id(document_id)}.json"
    if kind is PathKind.EMBEDDING:
        return f"system/embeddings/{_require_doc_id(document_id)}.json"
    return f"temp/uploads/{uuid4()}"


def parse_canonical_path(path: str) -> CanonicalPath:
    match = CANONICAL_PATH_RE.fullmatch(path or "")
    if match is None or match.group(3) in _RESERVED_NAMES:
        raise InvalidObjectPathError("path does not match tenants/{tenant}/docs/{document}/{file}")
    return CanonicalPath(tenant_id=match.group(1), document_id=match.group(2), file_name=match.group(3))


def validate_canonical_path(
    path: str,
    tenant_id: str,
    expected_name: str | None = None,
) -> CanonicalPath:
    # Reject wrong shape, foreign tenant segment, or an unexpected file name.
    parsed = parse_canonical_path(path)
    if parsed.tenant_id != tenant_id:
        raise InvalidObjectPathError("path does not belong to the requesting tenant")
    if expected_name is not None and parsed.file_name != expected_name:
        raise InvalidObjectPathError("file name in path does not match the expected name")
    return parsed


def check_canonical_path(path: str, tenant_id: str, expected_name: str | None = None) -> str | None:
    # Non-raising variant: None when valid, otherwise the rejection reason.
    try:
        validate_canonical_path(path, tenant_id, expected_name)
    except InvalidObjectPathError as exc:
        return exc.reason
    return None
