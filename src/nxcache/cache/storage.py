"""Blob storage backends: local filesystem or S3-compatible object storage."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, AsyncIterator, BinaryIO, Callable, Optional
from uuid import uuid4

import boto3
import structlog
from botocore.exceptions import ClientError

from ..common.settings import CacheServerSettings


LOGGER = structlog.get_logger("nxcache.cache.storage")

READ_CHUNK_SIZE = 64 * 1024
_MISSING_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


class StorageError(RuntimeError):
    """Raised when a backend gives up on an operation."""


class StorageBackend:
    """Durable blob storage keyed by validated cache keys.

    ``get_stream`` and ``get_size`` assume the caller already confirmed the key
    exists; on a missing key the filesystem backend reports size ``0`` and the
    stream behaviour is backend-defined. ``write_stream`` must leave nothing
    visible under the key when it fails.
    """

    async def exists(self, key: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    async def get_stream(self, key: str) -> AsyncIterator[bytes]:  # pragma: no cover - interface
        raise NotImplementedError

    async def get_size(self, key: str) -> int:  # pragma: no cover - interface
        raise NotImplementedError

    async def write_stream(self, key: str, chunks: AsyncIterator[bytes]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError


async def _iter_file(handle: BinaryIO, chunk_size: int = READ_CHUNK_SIZE) -> AsyncIterator[bytes]:
    try:
        while True:
            chunk = await asyncio.to_thread(handle.read, chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        handle.close()


class FileSystemBackend(StorageBackend):
    def __init__(self, cache_dir: Path | str):
        self.cache_dir = Path(cache_dir)

    def _path(self, key: str) -> Path:
        return self.cache_dir / key

    def _temp_path(self) -> Path:
        # One temp file per writer, named independently of the key so any key
        # that fits the filesystem also fits its temp file.
        return self.cache_dir / f".{uuid4().hex}.tmp"

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path(key).is_file)

    async def get_size(self, key: str) -> int:
        path = self._path(key)

        def _size() -> int:
            try:
                return path.stat().st_size
            except FileNotFoundError:
                return 0

        return await asyncio.to_thread(_size)

    async def get_stream(self, key: str) -> AsyncIterator[bytes]:
        handle = await asyncio.to_thread(self._path(key).open, "rb")
        return _iter_file(handle)

    async def write_stream(self, key: str, chunks: AsyncIterator[bytes]) -> None:
        await asyncio.to_thread(self.cache_dir.mkdir, parents=True, exist_ok=True)
        final_path = self._path(key)
        temp_path = self._temp_path()
        handle = await asyncio.to_thread(temp_path.open, "wb")
        written = 0
        try:
            async for chunk in chunks:
                await asyncio.to_thread(handle.write, chunk)
                written += len(chunk)
            await asyncio.to_thread(handle.close)
            await asyncio.to_thread(os.replace, temp_path, final_path)
        except BaseException:
            handle.close()
            try:
                temp_path.unlink(missing_ok=True)
            except OSError:
                LOGGER.warning("cache_temp_cleanup_failed", path=str(temp_path))
            raise
        LOGGER.debug("cache_file_written", key=key, bytes=written)

    def status(self) -> dict[str, object]:
        storage = self.cache_dir
        return {
            "backend": "filesystem",
            "storage_path": str(storage),
            "writable": storage.exists() and os.access(storage, os.W_OK),
        }


def _is_missing(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code", "") in _MISSING_CODES


class S3Backend(StorageBackend):
    """S3-compatible backend streaming uploads through multipart sessions.

    An upload is completed only after the whole input stream has been
    consumed without error; any failure aborts the multipart session so no
    object appears under the key.
    """

    def __init__(self, settings: CacheServerSettings):
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
            "aws_access_key_id": (
                settings.s3_access_key_id.get_secret_value() if settings.s3_access_key_id else None
            ),
            "aws_secret_access_key": (
                settings.s3_secret_access_key.get_secret_value() if settings.s3_secret_access_key else None
            ),
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._bucket = settings.s3_bucket
        self._endpoint = settings.s3_endpoint_url
        self._part_size = settings.s3_part_size_bytes
        self._max_retries = max(0, settings.s3_max_retries)
        self._retry_base = max(0.0, settings.s3_retry_base_seconds)
        self._retry_max = max(self._retry_base, settings.s3_retry_max_seconds)

    async def exists(self, key: str) -> bool:
        try:
            await self._call_with_retry(self._client.head_object, Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if _is_missing(exc):
                return False
            raise
        return True

    async def get_size(self, key: str) -> int:
        try:
            response = await self._call_with_retry(self._client.head_object, Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if _is_missing(exc):
                return 0
            raise
        return int(response["ContentLength"])

    async def get_stream(self, key: str) -> AsyncIterator[bytes]:
        response = await self._call_with_retry(self._client.get_object, Bucket=self._bucket, Key=key)
        return _iter_file(response["Body"])

    async def write_stream(self, key: str, chunks: AsyncIterator[bytes]) -> None:
        upload = await self._call_with_retry(self._client.create_multipart_upload, Bucket=self._bucket, Key=key)
        upload_id = upload["UploadId"]
        parts: list[dict[str, Any]] = []
        buffer = bytearray()
        try:
            async for chunk in chunks:
                buffer.extend(chunk)
                while len(buffer) >= self._part_size:
                    part = bytes(buffer[: self._part_size])
                    del buffer[: self._part_size]
                    parts.append(await self._upload_part(key, upload_id, len(parts) + 1, part))
            if buffer or not parts:
                parts.append(await self._upload_part(key, upload_id, len(parts) + 1, bytes(buffer)))
            await self._complete(key, upload_id, parts)
        except BaseException:
            await self._abort(key, upload_id)
            raise
        LOGGER.debug("cache_object_written", key=key, parts=len(parts))

    async def _upload_part(self, key: str, upload_id: str, number: int, body: bytes) -> dict[str, Any]:
        response = await self._call_with_retry(
            self._client.upload_part,
            Bucket=self._bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=number,
            Body=body,
        )
        return {"PartNumber": number, "ETag": response["ETag"]}

    async def _complete(self, key: str, upload_id: str, parts: list[dict[str, Any]]) -> None:
        """Complete the upload exactly once.

        Completion is not retried: a retry after a lost response would find the
        upload gone. When the call fails, the object's presence decides whether
        the completion took effect.
        """

        try:
            await asyncio.to_thread(
                self._client.complete_multipart_upload,
                Bucket=self._bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except Exception:
            if await self.exists(key):
                LOGGER.warning("multipart_complete_unconfirmed", key=key, upload_id=upload_id, exc_info=True)
                return
            raise

    async def _abort(self, key: str, upload_id: str) -> None:
        try:
            await asyncio.to_thread(
                self._client.abort_multipart_upload,
                Bucket=self._bucket,
                Key=key,
                UploadId=upload_id,
            )
        except Exception:  # noqa: BLE001 - the upload error still propagates
            LOGGER.warning("multipart_abort_failed", key=key, upload_id=upload_id, exc_info=True)

    def status(self) -> dict[str, object]:
        return {
            "backend": "s3",
            "bucket": self._bucket,
            "endpoint": self._endpoint,
        }

    async def _call_with_retry(self, func: Callable[..., Any], **kwargs) -> Any:
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(func, **kwargs)
            except ClientError as exc:
                if _is_missing(exc):
                    raise
                error = exc
            except Exception as exc:  # noqa: BLE001
                error = exc
            attempt += 1
            if attempt > self._max_retries:
                raise StorageError(f"S3 {getattr(func, '__name__', 'call')} failed") from error
            delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
            LOGGER.info("s3_call_retry", operation=getattr(func, "__name__", "call"), attempt=attempt, delay=delay)
            if delay:
                await asyncio.sleep(delay)


def build_backend(settings: CacheServerSettings) -> StorageBackend:
    if settings.storage_strategy == "s3":
        required = (
            settings.s3_region,
            settings.s3_bucket,
            settings.s3_access_key_id,
            settings.s3_secret_access_key,
        )
        if not all(required):
            raise RuntimeError(
                "S3 configuration missing one of: S3_REGION, S3_BUCKET, S3_ACCESS_KEY_ID, S3_SECRET_ACCESS_KEY"
            )
        return S3Backend(settings)
    return FileSystemBackend(settings.cache_dir)
