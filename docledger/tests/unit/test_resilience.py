from __future__ import annotations

import asyncio
import socket

import pytest

from docledger.core.errors import ObjectNotFoundError, StorageAuthError, StorageTempUnavailableError
from docledger.services.resilience import RetryPolicy, is_auth_error, retry_async
from docledger.services.telemetry import counters_snapshot, storage_latency_by_operation
from docledger.tests.utils.fakes import RecordingSleep


def test_retry_policy_delays_double() -> None:
    policy = RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=200)

    assert [policy.delay_s(attempt) for attempt in (1, 2, 3)] == [0.2, 0.4, 0.8]


def test_auth_errors_are_recognized() -> None:
    assert is_auth_error(StorageAuthError())
    assert is_auth_error(PermissionError("denied"))
    assert is_auth_error(socket.gaierror("name resolution failed"))
    assert is_auth_error(RuntimeError("Invalid credentials supplied"))
    assert not is_auth_error(ConnectionError("reset by peer"))


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}
    sleeper = RecordingSleep()

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(
        flaky,
        operation="read",
        policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=200),
        sleep=sleeper,
    )
    assert result == "ok"
    assert calls["count"] == 2
    assert sleeper.calls == [0.2]
    stats = storage_latency_by_operation(60)
    assert stats["read"]["failures"] == 1.0


@pytest.mark.asyncio
async def test_retry_async_times_out_slow_calls() -> None:
    sleeper = RecordingSleep()

    async def hanging() -> None:
        await asyncio.sleep(5)

    with pytest.raises(StorageTempUnavailableError):
        await retry_async(
            hanging,
            operation="head",
            policy=RetryPolicy(timeout_ms=10, max_attempts=3, backoff_ms=200),
            sleep=sleeper,
        )
    assert sleeper.calls == [0.2, 0.4]
    assert counters_snapshot()["storage_unavailable_total"] == 1


@pytest.mark.asyncio
async def test_retry_async_fails_fast_on_auth_errors() -> None:
    calls = {"count": 0}
    sleeper = RecordingSleep()

    async def denied() -> None:
        calls["count"] += 1
        raise PermissionError("access denied")

    with pytest.raises(StorageAuthError) as exc_info:
        await retry_async(
            denied,
            operation="upload",
            policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=200),
            sleep=sleeper,
        )
    assert calls["count"] == 1
    assert sleeper.calls == []
    assert isinstance(exc_info.value.__cause__, PermissionError)
    assert counters_snapshot()["storage_auth_failures_total"] == 1


@pytest.mark.asyncio
async def test_retry_async_passes_permanent_errors_through() -> None:
    calls = {"count": 0}

    async def missing() -> None:
        calls["count"] += 1
        raise ObjectNotFoundError("tenants/t/docs/x/y")

    with pytest.raises(ObjectNotFoundError):
        await retry_async(
            missing,
            operation="read",
            policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=200),
            sleep=RecordingSleep(),
        )
    assert calls["count"] == 1
    stats = storage_latency_by_operation(60)
    assert stats["read"]["failures"] == 1.0
