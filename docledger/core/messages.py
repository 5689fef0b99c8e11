from __future__ import annotations

from typing import Any


_BYTES_PER_MB = 1024 * 1024
_BYTES_PER_GB = 1024 * 1024 * 1024

# Several phrasings per kind are allowed; selection is a pure function of the seed.
MESSAGE_TEMPLATES: dict[str, tuple[str, ...]] = {
    "storage_quota_exceeded": (
        "This upload needs {requested} but only {remaining} of your {limit} storage is left.",
        "Your {limit} storage allowance cannot fit another {requested}.",
    ),
    "document_quota_exceeded": (
        "You have reached the limit of {limit} documents.",
        "Your plan allows {limit} documents and all of them are in use.",
    ),
    "storage_unavailable": (
        "Storage temporarily unavailable. Please try again shortly.",
        "File storage is not responding right now. Please try again shortly.",
    ),
    "storage_auth_failed": (
        "Storage is misconfigured and cannot be reached.",
    ),
    "object_not_found": (
        "The requested file no longer exists.",
    ),
    "invalid_object_path": (
        "Invalid object path: {reason}.",
    ),
    "grant_expired": (
        "This file link has expired.",
    ),
    "grant_invalid": (
        "This file link is not valid.",
    ),
    "storage_operation_unsupported": (
        "This storage provider does not support {operation}.",
    ),
    "document_not_found": (
        "Document not found.",
    ),
    "document_state_conflict": (
        "{reason}",
    ),
}

REMEDIATION_TEMPLATES: dict[str, str] = {
    "storage_quota_exceeded": "Free up {overage} ({overage_bytes} bytes) and retry.",
    "document_quota_exceeded": "Delete at least one document and retry.",
    "storage_unavailable": "Retry the request in a few seconds.",
    "storage_auth_failed": "Contact support; operators have been alerted.",
    "object_not_found": "Upload the file again.",
    "invalid_object_path": "Request a new upload link and retry.",
    "grant_expired": "Request a new link and retry.",
    "grant_invalid": "Request a new link and retry.",
    "storage_operation_unsupported": "Use the storage provider's own check for {operation}.",
    "document_not_found": "Refresh the document list.",
    "document_state_conflict": "Refresh the document and retry.",
}


def render_message(kind: str, *, seed: int | None = None, **fields: Any) -> str:
    variants = MESSAGE_TEMPLATES.get(kind)
    if not variants:
        raise KeyError(f"unknown message kind: {kind}")
    template = variants[(seed or 0) % len(variants)]
    return template.format(**fields)


def render_remediation(kind: str, **fields: Any) -> str | None:
    template = REMEDIATION_TEMPLATES.get(kind)
    if template is None:
        return None
    return template.format(**fields)


def bytes_to_mb(value: int) -> float:
    # Display-only conversion; ledger math stays in integer bytes.
    return round(value / _BYTES_PER_MB, 2)


def format_bytes(value: int) -> str:
    if value >= _BYTES_PER_GB:
        return f"{value / _BYTES_PER_GB:.2f} GB"
    if value >= _BYTES_PER_MB:
        return f"{value / _BYTES_PER_MB:.2f} MB"
    if value >= 1024:
        return f"{value / 1024:.2f} KB"
    return f"{value} B"


def percentage(used: int, limit: int) -> int:
    if limit <= 0:
        return 100 if used > 0 else 0
    return int(round(used * 100 / limit))
