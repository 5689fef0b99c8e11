from __future__ import annotations

from typing import Any

from sqlalchemy.sql.elements import ColumnElement


class TenantPredicateError(RuntimeError):
    """A tenant-owned table was queried without a tenant scope."""


def tenant_predicate(model: Any, tenant_id: str | None) -> ColumnElement[bool]:
    # Tenant-owned lookups all filter through here.
    if not tenant_id:
        raise TenantPredicateError(f"tenant_id is required to query {model.__tablename__}")
    return model.tenant_id == tenant_id
