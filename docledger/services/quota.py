from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import case, func, select, union, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from docledger.core.config import get_settings
from docledger.core.errors import QuotaExceededError
from docledger.core.messages import percentage
from docledger.domain.models import Document, TenantQuota
from docledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Byte counters never go negative and are stored in signed BIGINT columns,
# so the usable range is 0 through 2**63 - 1.
MAX_BYTES = 2**63 - 1

RESOURCE_STORAGE = "storage"
RESOURCE_DOCUMENTS = "documents"


@dataclass(frozen=True)
class QuotaSnapshot:
    # Point-in-time view of one tenant ledger row.
    tenant_id: str
    storage_limit_bytes: int
    storage_used_bytes: int
    document_limit: int
    document_count: int
    tier: str

    @property
    def remaining_bytes(self) -> int:
        return max(0, self.storage_limit_bytes - self.storage_used_bytes)


@dataclass(frozen=True)
class QuotaDecision:
    # Allowed, or Denied with the numbers a caller needs for an actionable message.
    allowed: bool
    resource: str
    current_usage: int
    limit: int
    requested: int
    overage_bytes: int = 0

    def raise_if_denied(self, *, seed: int | None = None) -> None:
        if self.allowed:
            return
        raise QuotaExceededError(
            kind=self.resource,
            current_usage=self.current_usage,
            limit=self.limit,
            overage_bytes=self.overage_bytes if self.resource == RESOURCE_STORAGE else None,
            requested_bytes=self.requested if self.resource == RESOURCE_STORAGE else None,
            seed=seed,
        )


@dataclass(frozen=True)
class ReconcileResult:
    tenant_id: str
    before: QuotaSnapshot
    after: QuotaSnapshot

    @property
    def drifted(self) -> bool:
        return (
            self.before.storage_used_bytes != self.after.storage_used_bytes
            or self.before.document_count != self.after.document_count
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _require_bytes(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError("byte quantities must be integers")
    if value < 0 or value > MAX_BYTES:
        raise ValueError(f"byte quantities must be between 0 and {MAX_BYTES}")
    return value


def _snapshot(row: TenantQuota) -> QuotaSnapshot:
    return QuotaSnapshot(
        tenant_id=row.tenant_id,
        storage_limit_bytes=int(row.storage_limit_bytes),
        storage_used_bytes=int(row.storage_used_bytes or 0),
        document_limit=int(row.document_limit),
        document_count=int(row.document_count or 0),
        tier=row.tier,
    )


def storage_decision(snapshot: QuotaSnapshot, candidate_bytes: int) -> QuotaDecision:
    # Allowed iff used + candidate <= limit; overage is exactly candidate - remaining.
    projected = snapshot.storage_used_bytes + candidate_bytes
    overage = max(0, projected - snapshot.storage_limit_bytes)
    return QuotaDecision(
        allowed=overage == 0,
        resource=RESOURCE_STORAGE,
        current_usage=snapshot.storage_used_bytes,
        limit=snapshot.storage_limit_bytes,
        requested=candidate_bytes,
        overage_bytes=overage,
    )


def document_decision(snapshot: QuotaSnapshot) -> QuotaDecision:
    return QuotaDecision(
        allowed=snapshot.document_count < snapshot.document_limit,
        resource=RESOURCE_DOCUMENTS,
        current_usage=snapshot.document_count,
        limit=snapshot.document_limit,
        requested=1,
    )


def _clamped_decrement(column: Any, amount: int) -> Any:
    # Never let duplicate or out-of-order deletes drive a counter negative.
    return case((column > amount, column - amount), else_=0)


def _saturating_increment(column: Any, amount: int) -> Any:
    # Pin at MAX_BYTES instead of overflowing the BIGINT column.
    return case((column > MAX_BYTES - amount, MAX_BYTES), else_=column + amount)


class QuotaLedger:
    """Per-tenant storage and document counters.

    Every mutation is a single SQL statement against the ledger row so
    concurrent adjustments commute. Methods run inside the caller's session
    and leave committing to the caller.
    """

    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic reconciliation timestamps.
        self._time_provider = time_provider or _utc_now

    async def _load(self, session: AsyncSession, tenant_id: str) -> TenantQuota | None:
        result = await session.execute(
            select(TenantQuota)
            .where(TenantQuota.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, session: AsyncSession, tenant_id: str) -> QuotaSnapshot:
        # Insert defaults with ON CONFLICT DO NOTHING so racing first accesses converge.
        row = await self._load(session, tenant_id)
        if row is not None:
            return _snapshot(row)
        settings = get_settings()
        now = self._time_provider()
        values = {
            "tenant_id": tenant_id,
            "storage_limit_bytes": settings.quota_default_storage_bytes,
            "storage_used_bytes": 0,
            "document_limit": settings.quota_default_document_limit,
            "document_count": 0,
            "tier": settings.quota_default_tier,
            "created_at": now,
            "updated_at": now,
        }
        dialect = session.get_bind().dialect.name
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
        await session.execute(insert_fn(TenantQuota).values(**values).on_conflict_do_nothing())
        row = await self._load(session, tenant_id)
        if row is None:
            raise RuntimeError(f"tenant quota row missing after insert tenant_id={tenant_id}")
        logger.info("tenant_quota_created tenant_id=%s tier=%s", tenant_id, row.tier)
        return _snapshot(row)

    async def check_storage(self, session: AsyncSession, tenant_id: str, candidate_bytes: int) -> QuotaDecision:
        # Read-only check; never mutates the ledger.
        _require_bytes(candidate_bytes)
        snapshot = await self.get_or_create(session, tenant_id)
        return storage_decision(snapshot, candidate_bytes)

    async def check_document_count(self, session: AsyncSession, tenant_id: str) -> QuotaDecision:
        snapshot = await self.get_or_create(session, tenant_id)
        return document_decision(snapshot)

    async def apply_upload(self, session: AsyncSession, tenant_id: str, size_bytes: int) -> QuotaSnapshot:
        # Unconditional increment in one statement; reconciliation corrects any drift.
        _require_bytes(size_bytes)
        await self.get_or_create(session, tenant_id)
        await session.execute(
            update(TenantQuota)
            .where(TenantQuota.tenant_id == tenant_id)
            .values(
                storage_used_bytes=_saturating_increment(TenantQuota.storage_used_bytes, size_bytes),
                document_count=TenantQuota.document_count + 1,
                updated_at=self._time_provider(),
            )
            .execution_options(synchronize_session=False)
        )
        return await self.snapshot(session, tenant_id)

    async def reserve_upload(
        self,
        session: AsyncSession,
        tenant_id: str,
        size_bytes: int,
        *,
        documents: int = 1,
    ) -> QuotaDecision:
        # Check and increment in one conditional update so concurrent uploads cannot overshoot.
        _require_bytes(size_bytes)
        if documents not in (0, 1):
            raise ValueError("documents must be 0 or 1")
        await self.get_or_create(session, tenant_id)
        result = await session.execute(
            update(TenantQuota)
            .where(
                TenantQuota.tenant_id == tenant_id,
                TenantQuota.storage_used_bytes <= TenantQuota.storage_limit_bytes - size_bytes,
                TenantQuota.document_count + documents <= TenantQuota.document_limit,
            )
            .values(
                storage_used_bytes=TenantQuota.storage_used_bytes + size_bytes,
                document_count=TenantQuota.document_count + documents,
                updated_at=self._time_provider(),
            )
            .execution_options(synchronize_session=False)
        )
        snapshot = await self.snapshot(session, tenant_id)
        if result.rowcount == 1:
            return QuotaDecision(
                allowed=True,
                resource=RESOURCE_STORAGE,
                current_usage=snapshot.storage_used_bytes,
                limit=snapshot.storage_limit_bytes,
                requested=size_bytes,
            )
        increment_counter("quota_reservations_denied_total")
        if documents:
            count_decision = document_decision(snapshot)
            if not count_decision.allowed:
                return count_decision
        decision = storage_decision(snapshot, size_bytes)
        if decision.allowed:
            # Only a lowered document ceiling can block a byte-only reservation.
            return replace(document_decision(snapshot), allowed=False)
        return decision

    async def apply_delete(self, session: AsyncSession, tenant_id: str, size_bytes: int) -> QuotaSnapshot:
        _require_bytes(size_bytes)
        await self.get_or_create(session, tenant_id)
        await session.execute(
            update(TenantQuota)
            .where(TenantQuota.tenant_id == tenant_id)
            .values(
                storage_used_bytes=_clamped_decrement(TenantQuota.storage_used_bytes, size_bytes),
                document_count=_clamped_decrement(TenantQuota.document_count, 1),
                updated_at=self._time_provider(),
            )
            .execution_options(synchronize_session=False)
        )
        return await self.snapshot(session, tenant_id)

    async def adjust_storage(self, session: AsyncSession, tenant_id: str, delta_bytes: int) -> QuotaSnapshot:
        # Signed byte adjustment for version changes; the document count is untouched.
        _require_bytes(abs(delta_bytes))
        await self.get_or_create(session, tenant_id)
        if delta_bytes >= 0:
            new_value = _saturating_increment(TenantQuota.storage_used_bytes, delta_bytes)
        else:
            new_value = _clamped_decrement(TenantQuota.storage_used_bytes, -delta_bytes)
        await session.execute(
            update(TenantQuota)
            .where(TenantQuota.tenant_id == tenant_id)
            .values(storage_used_bytes=new_value, updated_at=self._time_provider())
            .execution_options(synchronize_session=False)
        )
        return await self.snapshot(session, tenant_id)

    async def reconcile(self, session: AsyncSession, tenant_id: str) -> ReconcileResult:
        # Overwrite counters with the truth computed from active documents.
        before = await self.get_or_create(session, tenant_id)
        row = (
            await session.execute(
                select(
                    func.coalesce(func.sum(Document.file_size_bytes), 0),
                    func.count(Document.id),
                ).where(Document.tenant_id == tenant_id, Document.status == "active")
            )
        ).one()
        used_bytes, count = int(row[0] or 0), int(row[1] or 0)
        now = self._time_provider()
        await session.execute(
            update(TenantQuota)
            .where(TenantQuota.tenant_id == tenant_id)
            .values(
                storage_used_bytes=used_bytes,
                document_count=count,
                last_reconciled_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        after = await self.snapshot(session, tenant_id)
        result = ReconcileResult(tenant_id=tenant_id, before=before, after=after)
        if result.drifted:
            increment_counter("quota_reconcile_drift_total")
            logger.warning(
                "quota_drift_corrected tenant_id=%s bytes_before=%s bytes_after=%s docs_before=%s docs_after=%s",
                tenant_id,
                before.storage_used_bytes,
                after.storage_used_bytes,
                before.document_count,
                after.document_count,
            )
        return result

    async def reconcile_all(self, session: AsyncSession) -> list[ReconcileResult]:
        # Cover tenants with a ledger row and tenants that only have documents.
        tenant_ids = (
            await session.execute(union(select(TenantQuota.tenant_id), select(Document.tenant_id)))
        ).scalars().all()
        results: list[ReconcileResult] = []
        for tenant_id in sorted(set(tenant_ids)):
            results.append(await self.reconcile(session, tenant_id))
        return results

    async def set_limits(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        storage_limit_bytes: int | None = None,
        document_limit: int | None = None,
        tier: str | None = None,
    ) -> QuotaSnapshot:
        await self.get_or_create(session, tenant_id)
        values: dict[str, Any] = {"updated_at": self._time_provider()}
        if storage_limit_bytes is not None:
            values["storage_limit_bytes"] = _require_bytes(storage_limit_bytes)
        if document_limit is not None:
            if document_limit < 0:
                raise ValueError("document_limit must be non-negative")
            values["document_limit"] = document_limit
        if tier is not None:
            values["tier"] = tier
        await session.execute(
            update(TenantQuota)
            .where(TenantQuota.tenant_id == tenant_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return await self.snapshot(session, tenant_id)

    async def snapshot(self, session: AsyncSession, tenant_id: str) -> QuotaSnapshot:
        row = await self._load(session, tenant_id)
        if row is None:
            return await self.get_or_create(session, tenant_id)
        return _snapshot(row)

    async def summary(self, session: AsyncSession, tenant_id: str) -> dict[str, Any]:
        # Dashboard shape; percentages are display-only and rounded.
        snapshot = await self.get_or_create(session, tenant_id)
        return {
            "storage": {
                "used_bytes": snapshot.storage_used_bytes,
                "limit_bytes": snapshot.storage_limit_bytes,
                "percentage": percentage(snapshot.storage_used_bytes, snapshot.storage_limit_bytes),
            },
            "documents": {
                "count": snapshot.document_count,
                "limit": snapshot.document_limit,
                "percentage": percentage(snapshot.document_count, snapshot.document_limit),
            },
            "tier": snapshot.tier,
        }


_quota_ledger: QuotaLedger | None = None


def get_quota_ledger() -> QuotaLedger:
    global _quota_ledger
    if _quota_ledger is None:
        _quota_ledger = QuotaLedger()
    return _quota_ledger

