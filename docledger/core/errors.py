from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from docledger.core.messages import format_bytes, render_message, render_remediation


class DocLedgerError(Exception):
    """Base error for docledger."""

    code = "INTERNAL_ERROR"
    kind: str | None = None
    retryable = False

    def __init__(
        self,
        message: str | None = None,
        *,
        remediation: str | None = None,
        details: dict[str, Any] | None = None,
        seed: int | None = None,
        **fields: Any,
    ) -> None:
        if message is None and self.kind is not None:
            message = render_message(self.kind, seed=seed, **fields)
        if remediation is None and self.kind is not None:
            remediation = render_remediation(self.kind, **fields)
        super().__init__(message or self.code)
        self.message = message or self.code
        self.remediation = remediation
        self.details = dict(details or {})

    def as_payload(self) -> dict[str, Any]:
        # Machine-readable code plus a human remediation hint for callers.
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.remediation:
            payload["remediation"] = self.remediation
        payload.update(self.details)
        return payload


class StorageError(DocLedgerError):
    """Object storage failure."""

    code = "STORAGE_ERROR"


class ObjectNotFoundError(StorageError):
    """Object is absent; never retried."""

    code = "OBJECT_NOT_FOUND"
    kind = "object_not_found"

    def __init__(self, path: str) -> None:
        super().__init__(details={"path": path})
        self.path = path


class StorageAuthError(StorageError):
    """Credential or configuration fault; escalated without retries."""

    code = "STORAGE_AUTH_FAILED"
    kind = "storage_auth_failed"


class StorageTempUnavailableError(StorageError):
    """Transient storage failure after the retry budget ran out."""

    code = "STORAGE_UNAVAILABLE"
    kind = "storage_unavailable"
    retryable = True


class InvalidObjectPathError(StorageError):
    code = "INVALID_OBJECT_PATH"
    kind = "invalid_object_path"

    def __init__(self, reason: str) -> None:
        super().__init__(reason=reason, details={"reason": reason})
        self.reason = reason


class GrantExpiredError(StorageError):
    code = "GRANT_EXPIRED"
    kind = "grant_expired"


class GrantInvalidError(StorageError):
    code = "GRANT_INVALID"
    kind = "grant_invalid"


class StorageOperationUnsupportedError(StorageError):
    """The configured backend cannot perform this operation."""

    code = "STORAGE_OPERATION_UNSUPPORTED"
    kind = "storage_operation_unsupported"


class QuotaExceededError(DocLedgerError):
    """Upload rejected by the tenant ledger."""

    code = "QUOTA_EXCEEDED"

    def __init__(
        self,
        *,
        kind: str,
        current_usage: int,
        limit: int,
        overage_bytes: int | None = None,
        requested_bytes: int | None = None,
        seed: int | None = None,
    ) -> None:
        self.kind = "storage_quota_exceeded" if kind == "storage" else "document_quota_exceeded"
        self.resource = kind
        self.current_usage = current_usage
        self.limit = limit
        self.overage_bytes = overage_bytes
        details: dict[str, Any] = {"resource": kind, "current_usage": current_usage, "limit": limit}
        if kind == "storage":
            overage = int(overage_bytes or 0)
            details["overage_bytes"] = overage
            super().__init__(
                details=details,
                seed=seed,
                requested=format_bytes(int(requested_bytes or 0)),
                remaining=format_bytes(max(0, limit - current_usage)),
                limit=format_bytes(limit),
                overage=format_bytes(overage),
                overage_bytes=overage,
            )
        else:
            super().__init__(details=details, seed=seed, limit=limit)


class DocumentNotFoundError(DocLedgerError):
    code = "DOCUMENT_NOT_FOUND"
    kind = "document_not_found"

    def __init__(self, document_id: str) -> None:
        super().__init__(details={"document_id": document_id})
        self.document_id = document_id


class DocumentStateError(DocLedgerError):
    """Operation not allowed in the document's current state."""

    code = "DOCUMENT_STATE_CONFLICT"
    kind = "document_state_conflict"

    def __init__(self, reason: str, *, document_id: str | None = None) -> None:
        super().__init__(reason=reason, details={"document_id": document_id} if document_id else None)


@dataclass(frozen=True)
class SlaViolation:
    # Operational signal: the job completed, but later than the SLA allows.
    job_id: str
    document_id: str
    tenant_id: str
    enqueued_at: datetime
    observed_at: datetime
    elapsed_s: float
    sla_s: int
    completed: bool = True
