from __future__ import annotations

import asyncio
import logging
import socket
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from docledger.core.config import get_settings
from docledger.core.errors import (
    GrantExpiredError,
    GrantInvalidError,
    InvalidObjectPathError,
    ObjectNotFoundError,
    StorageAuthError,
    StorageTempUnavailableError,
)
from docledger.services.telemetry import increment_counter, record_storage_call


logger = logging.getLogger(__name__)


# Outcomes that are final on the first attempt and never consume retries.
PermanentException = (ObjectNotFoundError, InvalidObjectPathError, GrantExpiredError, GrantInvalidError)

_AUTH_MESSAGE_MARKERS = ("auth", "credential")


def is_auth_error(exc: BaseException) -> bool:
    # Credential and configuration faults must surface immediately to operators.
    if isinstance(exc, StorageAuthError):
        return True
    if isinstance(exc, (PermissionError, socket.gaierror)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _AUTH_MESSAGE_MARKERS)


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize storage retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    def delay_s(self, attempt: int) -> float:
        # Exponential schedule: backoff, 2x backoff, 4x backoff, ...
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1))


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.storage_call_timeout_ms,
        max_attempts=settings.storage_retry_max_attempts,
        backoff_ms=settings.storage_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    operation: str,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    # Contain every storage retry here so callers only ever see one error shape.
    policy = policy or default_retry_policy()
    max_attempts = max(policy.max_attempts, 1)
    attempt = 1
    while True:
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except PermanentException:
            # A definitive answer from storage, but still a failed call.
            record_storage_call(operation=operation, latency_ms=_elapsed_ms(started), success=False)
            raise
        except Exception as exc:  # noqa: BLE001 - classified below, never swallowed
            record_storage_call(operation=operation, latency_ms=_elapsed_ms(started), success=False)
            if is_auth_error(exc):
                increment_counter("storage_auth_failures_total")
                logger.error("storage_auth_failure operation=%s error=%s", operation, exc)
                if isinstance(exc, StorageAuthError):
                    raise
                raise StorageAuthError(details={"operation": operation}) from exc
            if attempt >= max_attempts:
                increment_counter("storage_unavailable_total")
                logger.warning(
                    "storage_retries_exhausted operation=%s attempts=%s error=%s",
                    operation,
                    attempt,
                    exc,
                )
                raise StorageTempUnavailableError(details={"operation": operation}) from exc
            # Track retry volume so operators can detect retry storms.
            increment_counter("storage_retries_total")
            delay_s = policy.delay_s(attempt)
            logger.info(
                "storage_retry operation=%s attempt=%s delay_ms=%s error=%s",
                operation,
                attempt,
                int(delay_s * 1000),
                exc,
            )
            await sleep(delay_s)
            attempt += 1
        else:
            record_storage_call(operation=operation, latency_ms=_elapsed_ms(started), success=True)
            return result


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000.0
