from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit

import aioboto3
from botocore.exceptions import (
    ClientError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
)

from docledger.core.errors import (
    GrantExpiredError,
    GrantInvalidError,
    InvalidObjectPathError,
    ObjectNotFoundError,
    StorageAuthError,
)


logger = logging.getLogger(__name__)

_DEFAULT_CONTENT_TYPE = "application/octet-stream"
_META_SUFFIX = ".meta.json"


@dataclass(frozen=True)
class StoredObject:
    path: str
    bucket: str
    content_type: str
    size_bytes: int


@dataclass(frozen=True)
class ListedObject:
    # One entry of a prefix listing; last_modified is aware UTC.
    path: str
    size_bytes: int
    last_modified: datetime


@dataclass(frozen=True)
class GrantClaims:
    # Decoded contents of a verified filesystem grant.
    path: str
    method: str
    expires_at: datetime
    content_type: str | None
    disposition: str | None


class StorageBackend(Protocol):
    bucket: str

    async def put(self, path: str, data: bytes, content_type: str) -> StoredObject: ...

    async def get(self, path: str) -> bytes: ...

    async def open_stream(self, path: str, chunk_size: int) -> tuple[StoredObject, AsyncIterator[bytes]]: ...

    async def head(self, path: str) -> StoredObject: ...

    async def exists(self, path: str) -> bool: ...

    async def delete(self, path: str) -> None: ...

    async def list_objects(self, prefix: str) -> list[ListedObject]: ...

    async def sign_url(
        self,
        path: str,
        *,
        method: str,
        expires_at: datetime,
        content_type: str | None = None,
        disposition: str | None = None,
    ) -> str: ...

    async def close(self) -> None: ...


class FilesystemBackend:
    """Local directory backend for development and tests.

    Objects live under ``base_dir/bucket/path`` with a JSON sidecar holding
    the content type. Grants are URLs signed with an HMAC secret and checked
    by ``verify_url``.
    """

    def __init__(
        self,
        *,
        base_dir: str | Path,
        bucket: str,
        base_url: str,
        signing_secret: str,
    ) -> None:
        self.bucket = bucket
        self._root = (Path(base_dir) / bucket).resolve()
        self._base_url = base_url.rstrip("/")
        self._secret = signing_secret.encode("utf-8")

    def _file_path(self, path: str) -> Path:
        # Refuse anything that would resolve outside the bucket directory.
        candidate = (self._root / path).resolve()
        if candidate == self._root or self._root not in candidate.parents:
            raise InvalidObjectPathError("path escapes the storage root")
        return candidate

    def _meta_path(self, file_path: Path) -> Path:
        return file_path.with_name(file_path.name + _META_SUFFIX)

    def _stored(self, path: str, file_path: Path) -> StoredObject:
        if not file_path.is_file():
            raise ObjectNotFoundError(path)
        content_type = _DEFAULT_CONTENT_TYPE
        meta_path = self._meta_path(file_path)
        if meta_path.is_file():
            content_type = json.loads(meta_path.read_text("utf-8")).get("content_type") or content_type
        return StoredObject(
            path=path,
            bucket=self.bucket,
            content_type=content_type,
            size_bytes=file_path.stat().st_size,
        )

    async def put(self, path: str, data: bytes, content_type: str) -> StoredObject:
        file_path = self._file_path(path)

        def _write() -> None:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            # Write to a temp file first so readers never observe partial content.
            tmp_path = file_path.with_name(file_path.name + ".tmp")
            tmp_path.write_bytes(data)
            tmp_path.replace(file_path)
            self._meta_path(file_path).write_text(json.dumps({"content_type": content_type}), "utf-8")

        await asyncio.to_thread(_write)
        return StoredObject(path=path, bucket=self.bucket, content_type=content_type, size_bytes=len(data))

    async def get(self, path: str) -> bytes:
        file_path = self._file_path(path)
        if not file_path.is_file():
            raise ObjectNotFoundError(path)
        return await asyncio.to_thread(file_path.read_bytes)

    async def open_stream(self, path: str, chunk_size: int) -> tuple[StoredObject, AsyncIterator[bytes]]:
        file_path = self._file_path(path)
        stored = self._stored(path, file_path)
        handle = await asyncio.to_thread(file_path.open, "rb")

        async def _chunks() -> AsyncIterator[bytes]:
            try:
                while True:
                    chunk = await asyncio.to_thread(handle.read, chunk_size)
                    if not chunk:
                        break
                    yield chunk
            finally:
                handle.close()

        return stored, _chunks()

    async def head(self, path: str) -> StoredObject:
        return self._stored(path, self._file_path(path))

    async def exists(self, path: str) -> bool:
        return self._file_path(path).is_file()

    async def delete(self, path: str) -> None:
        file_path = self._file_path(path)
        if not file_path.is_file():
            raise ObjectNotFoundError(path)

        def _remove() -> None:
            file_path.unlink()
            self._meta_path(file_path).unlink(missing_ok=True)

        await asyncio.to_thread(_remove)

    async def list_objects(self, prefix: str) -> list[ListedObject]:
        def _scan() -> list[ListedObject]:
            listed: list[ListedObject] = []
            if not self._root.is_dir():
                return listed
            for file_path in sorted(self._root.rglob("*")):
                if not file_path.is_file() or file_path.name.endswith(_META_SUFFIX):
                    continue
                path = file_path.relative_to(self._root).as_posix()
                if not path.startswith(prefix):
                    continue
                stat = file_path.stat()
                listed.append(
                    ListedObject(
                        path=path,
                        size_bytes=stat.st_size,
                        last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    )
                )
            return listed

        return await asyncio.to_thread(_scan)

    def _signature(
        self,
        *,
        path: str,
        method: str,
        expires: int,
        content_type: str | None,
        disposition: str | None,
    ) -> str:
        message = "\n".join([method, path, str(expires), content_type or "", disposition or ""])
        return hmac.new(self._secret, message.encode("utf-8"), hashlib.sha256).hexdigest()

    async def sign_url(
        self,
        path: str,
        *,
        method: str,
        expires_at: datetime,
        content_type: str | None = None,
        disposition: str | None = None,
    ) -> str:
        self._file_path(path)
        expires = int(expires_at.timestamp())
        params: dict[str, str] = {"method": method, "expires": str(expires)}
        if content_type:
            params["content_type"] = content_type
        if disposition:
            params["disposition"] = disposition
        params["signature"] = self._signature(
            path=path,
            method=method,
            expires=expires,
            content_type=content_type,
            disposition=disposition,
        )
        return f"{self._base_url}/{self.bucket}/{quote(path)}?{urlencode(params)}"

    def verify_url(self, url: str, *, method: str, now: datetime) -> GrantClaims:
        # Reject tampered, mis-scoped and expired grants.
        parts = urlsplit(url)
        prefix = urlsplit(f"{self._base_url}/{self.bucket}/").path
        if not parts.path.startswith(prefix):
            raise GrantInvalidError()
        path = unquote(parts.path[len(prefix):])
        query = {key: values[0] for key, values in parse_qs(parts.query).items()}
        signature = query.get("signature")
        granted_method = query.get("method")
        try:
            expires = int(query.get("expires", ""))
        except ValueError as exc:
            raise GrantInvalidError() from exc
        if not signature or granted_method is None:
            raise GrantInvalidError()
        expected = self._signature(
            path=path,
            method=granted_method,
            expires=expires,
            content_type=query.get("content_type"),
            disposition=query.get("disposition"),
        )
        if not hmac.compare_digest(signature, expected):
            raise GrantInvalidError()
        if granted_method != method.upper():
            raise GrantInvalidError()
        if now.timestamp() >= expires:
            raise GrantExpiredError()
        return GrantClaims(
            path=path,
            method=granted_method,
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc),
            content_type=query.get("content_type"),
            disposition=query.get("disposition"),
        )

    async def close(self) -> None:
        return None


_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_AUTH_CODES = {
    "401",
    "403",
    "AccessDenied",
    "AllAccessDisabled",
    "ExpiredToken",
    "InvalidAccessKeyId",
    "InvalidToken",
    "NoSuchBucket",
    "SignatureDoesNotMatch",
}


def translate_s3_error(exc: Exception, path: str) -> Exception:
    # Map botocore failures onto the storage taxonomy; anything else stays retryable.
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return StorageAuthError(details={"path": path})
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {}) if isinstance(exc.response, dict) else {}
        code = str(error.get("Code") or exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", ""))
        if code in _NOT_FOUND_CODES:
            return ObjectNotFoundError(path)
        if code in _AUTH_CODES:
            return StorageAuthError(details={"path": path, "s3_code": code})
    if isinstance(exc, EndpointConnectionError):
        return ConnectionError(str(exc))
    return exc


class S3Backend:
    """S3-compatible backend built on aioboto3.

    The client is owned by this object and rebuilt once its TTL lapses so
    rotated credentials are picked up without a process-wide cache.
    """

    def __init__(
        self,
        *,
        bucket: str | None,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        client_ttl_s: int = 3000,
        session: Any | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self.bucket = bucket or ""
        self._region = region
        self._endpoint_url = endpoint_url
        self._session = session or aioboto3.Session(
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region,
        )
        self._client_ttl_s = max(1, client_ttl_s)
        self._time_source = time_source or time.monotonic
        self._stack: AsyncExitStack | None = None
        self._client: Any | None = None
        self._client_expires_at = 0.0
        self._lock = asyncio.Lock()

    async def _get_client(self) -> Any:
        if not self.bucket:
            raise StorageAuthError("Storage bucket is not configured.")
        if self._client is not None and self._time_source() < self._client_expires_at:
            return self._client
        async with self._lock:
            if self._client is None or self._time_source() >= self._client_expires_at:
                await self.close()
                stack = AsyncExitStack()
                self._client = await stack.enter_async_context(
                    self._session.client("s3", region_name=self._region, endpoint_url=self._endpoint_url)
                )
                self._stack = stack
                self._client_expires_at = self._time_source() + self._client_ttl_s
                logger.info("s3_client_created bucket=%s", self.bucket)
        return self._client

    async def _call(self, path: str, func: Callable[[Any], Awaitable[Any]]) -> Any:
        client = await self._get_client()
        try:
            return await func(client)
        except Exception as exc:  # noqa: BLE001 - translated and re-raised
            translated = translate_s3_error(exc, path)
            if translated is exc:
                raise
            raise translated from exc

    async def put(self, path: str, data: bytes, content_type: str) -> StoredObject:
        await self._call(
            path,
            lambda client: client.put_object(Bucket=self.bucket, Key=path, Body=data, ContentType=content_type),
        )
        return StoredObject(path=path, bucket=self.bucket, content_type=content_type, size_bytes=len(data))

    async def get(self, path: str) -> bytes:
        async def _read(client: Any) -> bytes:
            response = await client.get_object(Bucket=self.bucket, Key=path)
            async with response["Body"] as body:
                return await body.read()

        return await self._call(path, _read)

    async def open_stream(self, path: str, chunk_size: int) -> tuple[StoredObject, AsyncIterator[bytes]]:
        response = await self._call(path, lambda client: client.get_object(Bucket=self.bucket, Key=path))
        stored = StoredObject(
            path=path,
            bucket=self.bucket,
            content_type=response.get("ContentType") or _DEFAULT_CONTENT_TYPE,
            size_bytes=int(response.get("ContentLength") or 0),
        )
        body = response["Body"]

        async def _chunks() -> AsyncIterator[bytes]:
            try:
                async for chunk in body.iter_chunks(chunk_size):
                    yield chunk
            finally:
                body.close()

        return stored, _chunks()

    async def head(self, path: str) -> StoredObject:
        response = await self._call(path, lambda client: client.head_object(Bucket=self.bucket, Key=path))
        return StoredObject(
            path=path,
            bucket=self.bucket,
            content_type=response.get("ContentType") or _DEFAULT_CONTENT_TYPE,
            size_bytes=int(response.get("ContentLength") or 0),
        )

    async def exists(self, path: str) -> bool:
        try:
            await self.head(path)
        except ObjectNotFoundError:
            return False
        return True

    async def delete(self, path: str) -> None:
        # S3 deletes are silent on missing keys; head first so absence is reported.
        await self.head(path)
        await self._call(path, lambda client: client.delete_object(Bucket=self.bucket, Key=path))

    async def list_objects(self, prefix: str) -> list[ListedObject]:
        async def _list(client: Any) -> list[ListedObject]:
            listed: list[ListedObject] = []
            paginator = client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for entry in page.get("Contents", []):
                    modified = entry["LastModified"]
                    if modified.tzinfo is None:
                        modified = modified.replace(tzinfo=timezone.utc)
                    listed.append(
                        ListedObject(
                            path=entry["Key"],
                            size_bytes=int(entry.get("Size") or 0),
                            last_modified=modified,
                        )
                    )
            return listed

        return await self._call(prefix, _list)

    async def sign_url(
        self,
        path: str,
        *,
        method: str,
        expires_at: datetime,
        content_type: str | None = None,
        disposition: str | None = None,
    ) -> str:
        expires_in = max(1, int(expires_at.timestamp() - time.time()))
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": path}
        if method == "PUT":
            operation = "put_object"
            if content_type:
                params["ContentType"] = content_type
        else:
            operation = "get_object"
            if disposition:
                params["ResponseContentDisposition"] = disposition
        return await self._call(
            path,
            lambda client: client.generate_presigned_url(operation, Params=params, ExpiresIn=expires_in),
        )

    async def close(self) -> None:
        stack, self._stack, self._client = self._stack, None, None
        if stack is not None:
            await stack.aclose()
