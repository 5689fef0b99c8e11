from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Protocol

from docledger.core.config import Settings, get_settings
from docledger.core.errors import StorageError, StorageOperationUnsupportedError, StorageTempUnavailableError
from docledger.services.resilience import RetryPolicy, default_retry_policy, retry_async
from docledger.services.storage.backends import (
    FilesystemBackend,
    GrantClaims,
    ListedObject,
    S3Backend,
    StorageBackend,
    StoredObject,
)
from docledger.services.storage.paths import (
    CanonicalPath,
    PathKind,
    check_canonical_path,
    path_for,
    validate_canonical_path,
)


logger = logging.getLogger(__name__)

DOWNLOAD_CACHE_CONTROL = "private, max-age=3600"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AccessGrant:
    # Time-bounded permission for one object; the url is the only thing handed to clients.
    url: str
    path: str
    method: str
    expires_at: datetime
    content_type: str | None = None
    disposition: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class StreamSink(Protocol):
    def set_headers(self, headers: dict[str, str]) -> None: ...

    async def write(self, chunk: bytes) -> None: ...


def attachment_disposition(file_name: str) -> str:
    safe_name = file_name.replace("\\", "_").replace('"', "'")
    return f'attachment; filename="{safe_name}"'


class ObjectStore:
    def __init__(
        self,
        backend: StorageBackend,
        *,
        retry_policy: RetryPolicy | None = None,
        upload_grant_ttl_s: int | None = None,
        download_grant_ttl_s: int | None = None,
        chunk_size: int | None = None,
        time_provider: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self.backend = backend
        self._policy = retry_policy or default_retry_policy()
        self._upload_ttl = timedelta(seconds=upload_grant_ttl_s or settings.upload_grant_ttl_s)
        self._download_ttl = timedelta(seconds=download_grant_ttl_s or settings.download_grant_ttl_s)
        self._chunk_size = max(1, chunk_size or settings.stream_chunk_size_bytes)
        # Allow time injection for deterministic grant expiry tests.
        self._time_provider = time_provider or _utc_now
        self._sleep = sleep

    @property
    def bucket(self) -> str:
        return self.backend.bucket

    path_for = staticmethod(path_for)
    validate_canonical_path = staticmethod(validate_canonical_path)
    check_canonical_path = staticmethod(check_canonical_path)

    async def _retry(self, operation: str, func: Callable[[], Awaitable[Any]]) -> Any:
        return await retry_async(func, operation=operation, policy=self._policy, sleep=self._sleep)

    async def issue_upload_grant(self, path: str, content_type: str) -> AccessGrant:
        # Write-scoped grant; issuing it never touches stored bytes.
        expires_at = self._time_provider() + self._upload_ttl
        url = await self._retry(
            "sign_upload",
            lambda: self.backend.sign_url(path, method="PUT", expires_at=expires_at, content_type=content_type),
        )
        return AccessGrant(url=url, path=path, method="PUT", expires_at=expires_at, content_type=content_type)

    async def issue_download_grant(self, path: str, suggested_file_name: str | None = None) -> AccessGrant:
        # Read-scoped grant; a file name turns the response into a named attachment.
        expires_at = self._time_provider() + self._download_ttl
        disposition = attachment_disposition(suggested_file_name) if suggested_file_name else None
        url = await self._retry(
            "sign_download",
            lambda: self.backend.sign_url(path, method="GET", expires_at=expires_at, disposition=disposition),
        )
        return AccessGrant(url=url, path=path, method="GET", expires_at=expires_at, disposition=disposition)

    def verify_grant(self, url: str, method: str) -> GrantClaims:
        # Only locally signed grants can be checked here; S3 enforces expiry server-side.
        verify = getattr(self.backend, "verify_url", None)
        if verify is None:
            raise StorageOperationUnsupportedError(
                operation="grant verification",
                details={"operation": "verify_grant"},
            )
        return verify(url, method=method, now=self._time_provider())

    async def exists(self, path: str) -> bool:
        return await self._retry("exists", lambda: self.backend.exists(path))

    async def head(self, path: str) -> StoredObject:
        return await self._retry("head", lambda: self.backend.head(path))

    async def delete(self, path: str) -> None:
        await self._retry("delete", lambda: self.backend.delete(path))
        logger.info("storage_object_deleted path=%s", path)

    async def list_objects(self, prefix: str) -> list[ListedObject]:
        return await self._retry("list", lambda: self.backend.list_objects(prefix))

    async def upload_bytes(self, data: bytes, path: str, content_type: str) -> StoredObject:
        stored = await self._retry("upload", lambda: self.backend.put(path, data, content_type))
        logger.info("storage_object_uploaded path=%s size_bytes=%s", path, stored.size_bytes)
        return stored

    async def read_all(self, path: str) -> bytes:
        return await self._retry("read", lambda: self.backend.get(path))

    async def stream_to(
        self,
        path: str,
        sink: StreamSink,
        suggested_file_name: str | None = None,
    ) -> StoredObject:
        # Retry only the open; once bytes reach the sink a failure cannot be replayed.
        stored, chunks = await self._retry(
            "stream_open",
            lambda: self.backend.open_stream(path, self._chunk_size),
        )
        headers = {
            "Content-Type": stored.content_type,
            "Content-Length": str(stored.size_bytes),
            "Cache-Control": DOWNLOAD_CACHE_CONTROL,
        }
        if suggested_file_name:
            headers["Content-Disposition"] = attachment_disposition(suggested_file_name)
        sink.set_headers(headers)
        iterator = chunks.__aiter__()
        while True:
            try:
                chunk = await iterator.__anext__()
            except StopAsyncIteration:
                break
            except StorageError:
                raise
            except Exception as exc:  # noqa: BLE001 - mid-stream transport failure
                logger.warning("storage_stream_interrupted path=%s error=%s", path, exc)
                raise StorageTempUnavailableError(details={"operation": "stream", "path": path}) from exc
            await sink.write(chunk)
        return stored

    async def close(self) -> None:
        await self.backend.close()


def build_object_store(settings: Settings | None = None, **kwargs: Any) -> ObjectStore:
    # Construct the store explicitly; callers own it and pass it by reference.
    settings = settings or get_settings()
    backend: StorageBackend
    if settings.storage_backend == "s3":
        backend = S3Backend(
            bucket=settings.storage_bucket,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
            client_ttl_s=settings.s3_client_ttl_s,
        )
    elif settings.storage_backend == "filesystem":
        backend = FilesystemBackend(
            base_dir=settings.storage_base_dir,
            bucket=settings.storage_bucket,
            base_url=settings.storage_public_base_url,
            signing_secret=settings.storage_grant_secret,
        )
    else:
        raise ValueError(f"unsupported storage backend: {settings.storage_backend}")
    return ObjectStore(
        backend,
        retry_policy=RetryPolicy(
            timeout_ms=settings.storage_call_timeout_ms,
            max_attempts=settings.storage_retry_max_attempts,
            backoff_ms=settings.storage_retry_backoff_ms,
        ),
        upload_grant_ttl_s=settings.upload_grant_ttl_s,
        download_grant_ttl_s=settings.download_grant_ttl_s,
        chunk_size=settings.stream_chunk_size_bytes,
        **kwargs,
    )


__all__ = [
    "AccessGrant",
    "CanonicalPath",
    "ListedObject",
    "ObjectStore",
    "PathKind",
    "StoredObject",
    "StreamSink",
    "attachment_disposition",
    "build_object_store",
]
