from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest

from docledger.core.errors import StorageAuthError
from docledger.services.storage.deletions import (
    deletion_backoff_s,
    deletion_stats,
    process_due_deletions,
    schedule_deletion,
)
from docledger.services.storage.paths import PathKind, path_for
from docledger.services.telemetry import counters_snapshot

TENANT = "tenant_del"


def _path() -> str:
    return path_for(PathKind.DOCUMENT, TENANT, str(uuid4()), "old.txt")


def test_backoff_doubles_up_to_the_cap() -> None:
    assert [deletion_backoff_s(n) for n in (1, 2, 3, 4)] == [60, 120, 240, 480]
    assert deletion_backoff_s(20) == 3600


@pytest.mark.asyncio
async def test_schedule_keeps_one_pending_row_per_path(session, clock) -> None:
    path = _path()

    first = await schedule_deletion(session, tenant_id=TENANT, path=path, now=clock.now())
    second = await schedule_deletion(session, tenant_id=TENANT, path=path, now=clock.now())
    await session.commit()

    assert first.id == second.id
    assert (await deletion_stats(session))["pending"] == 1


@pytest.mark.asyncio
async def test_existing_and_missing_objects_both_complete(session, store, clock) -> None:
    present, missing = _path(), _path()
    await store.upload_bytes(b"bytes", present, "text/plain")
    await schedule_deletion(session, tenant_id=TENANT, path=present, now=clock.now())
    await schedule_deletion(session, tenant_id=TENANT, path=missing, now=clock.now())
    await session.commit()

    result = await process_due_deletions(session, store, now=clock.now())

    assert result.completed == 2
    assert result.retried == 0
    assert await store.exists(present) is False
    assert (await deletion_stats(session))["pending"] == 0


@pytest.mark.asyncio
async def test_storage_failures_back_off_and_escalate(session, store, backend, clock) -> None:
    path = _path()
    await store.upload_bytes(b"bytes", path, "text/plain")
    row = await schedule_deletion(session, tenant_id=TENANT, path=path, now=clock.now())
    await session.commit()
    backend.fail_always("delete", StorageAuthError())

    result = await process_due_deletions(session, store, now=clock.now())
    assert result.retried == 1
    assert row.attempts == 1
    assert row.next_attempt_at == clock.now() + timedelta(seconds=60)
    assert row.last_error.startswith("STORAGE_AUTH")

    # Not due until the backoff elapses.
    assert (await process_due_deletions(session, store, now=clock.now())).retried == 0

    escalated = 0
    for _ in range(4):
        clock.advance(hours=2)
        escalated += (await process_due_deletions(session, store, now=clock.now())).escalated
    assert row.attempts == 5
    assert escalated == 1
    assert counters_snapshot()["storage_deletion_escalations_total"] == 1
    assert (await deletion_stats(session))["stuck"] == 1

    backend.failures.clear()
    clock.advance(hours=2)
    assert (await process_due_deletions(session, store, now=clock.now())).completed == 1
    assert await store.exists(path) is False
