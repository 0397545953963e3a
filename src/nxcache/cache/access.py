"""Read and write orchestration for cache entries.

Both entry points resolve to a ``CacheOutcome`` instead of raising: storage
exceptions are logged here once and translated, so the HTTP layer only maps
outcomes to status codes.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog

from ..common.schemas import READ_PERMISSIONS, WRITE_PERMISSIONS
from .integrity import ContentLengthGuard
from .keys import is_valid_hash
from .storage import StorageBackend


LOGGER = structlog.get_logger("nxcache.cache")


class CacheOutcome(str, enum.Enum):
    FORBIDDEN = "forbidden"
    INVALID_KEY = "invalid_key"
    INVALID_LENGTH = "invalid_length"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    READ_FAILURE = "read_failure"
    CHECK_FAILURE = "check_failure"
    WRITE_FAILURE = "write_failure"
    FOUND = "found"
    WRITTEN = "written"


@dataclass(frozen=True)
class CacheEntry:
    """Handle binding a cache key to the backend that stores it."""

    key: str
    backend: StorageBackend

    def valid(self) -> bool:
        return is_valid_hash(self.key)

    async def exists(self) -> bool:
        return await self.backend.exists(self.key)

    async def stream(self) -> AsyncIterator[bytes]:
        return await self.backend.get_stream(self.key)

    async def size(self) -> int:
        return await self.backend.get_size(self.key)

    async def write_stream(self, chunks: AsyncIterator[bytes]) -> None:
        await self.backend.write_stream(self.key, chunks)


@dataclass(frozen=True)
class CacheReadResult:
    outcome: CacheOutcome
    stream: Optional[AsyncIterator[bytes]] = None
    size: int = 0


@dataclass(frozen=True)
class CacheWriteResult:
    outcome: CacheOutcome
    bytes_written: int = 0


def parse_declared_length(header: Optional[str]) -> Optional[int]:
    digits = header.strip() if header is not None else ""
    # Plain ASCII digits only; int() alone would take "+9", "1_0" or non-ASCII digits.
    if not (digits.isascii() and digits.isdigit()):
        return None
    length = int(digits)
    return length if length > 0 else None


async def _discard(chunks: AsyncIterator[bytes]) -> None:
    close = getattr(chunks, "aclose", None)
    if close is not None:
        try:
            await close()
        except Exception:  # noqa: BLE001
            LOGGER.debug("request_body_close_failed", exc_info=True)


async def read_cache(entry: CacheEntry, permission: Optional[str]) -> CacheReadResult:
    if permission not in READ_PERMISSIONS:
        return CacheReadResult(CacheOutcome.FORBIDDEN)
    if not entry.valid():
        return CacheReadResult(CacheOutcome.INVALID_KEY)

    try:
        if not await entry.exists():
            return CacheReadResult(CacheOutcome.NOT_FOUND)
        # Size first: once opened, the stream belongs to the caller.
        size = await entry.size()
        stream = await entry.stream()
    except Exception:  # noqa: BLE001 - storage faults become an outcome
        LOGGER.exception("cache_read_failed", cache_key=entry.key)
        return CacheReadResult(CacheOutcome.READ_FAILURE)
    return CacheReadResult(CacheOutcome.FOUND, stream=stream, size=size)


async def write_cache(
    entry: CacheEntry,
    permission: Optional[str],
    chunks: AsyncIterator[bytes],
    declared_length: Optional[str],
) -> CacheWriteResult:
    """Store ``chunks`` under the entry key unless a check rejects the upload.

    Existence is checked before the declared length so a duplicate key is a
    conflict regardless of its length header.
    """

    if permission not in WRITE_PERMISSIONS:
        await _discard(chunks)
        return CacheWriteResult(CacheOutcome.FORBIDDEN)
    if not entry.valid():
        await _discard(chunks)
        return CacheWriteResult(CacheOutcome.INVALID_KEY)

    try:
        exists = await entry.exists()
    except Exception:  # noqa: BLE001
        LOGGER.exception("cache_check_failed", cache_key=entry.key)
        await _discard(chunks)
        return CacheWriteResult(CacheOutcome.CHECK_FAILURE)
    if exists:
        await _discard(chunks)
        return CacheWriteResult(CacheOutcome.CONFLICT)

    length = parse_declared_length(declared_length)
    if length is None:
        await _discard(chunks)
        return CacheWriteResult(CacheOutcome.INVALID_LENGTH)

    guard = ContentLengthGuard(length, chunks)
    try:
        await entry.write_stream(guard)
    except Exception:  # noqa: BLE001
        if guard.rejected:
            LOGGER.info(
                "cache_write_length_rejected",
                cache_key=entry.key,
                declared=guard.declared_length,
                observed=guard.observed,
                check=guard.check.value,
            )
            return CacheWriteResult(CacheOutcome.INVALID_LENGTH)
        LOGGER.exception("cache_write_failed", cache_key=entry.key)
        return CacheWriteResult(CacheOutcome.WRITE_FAILURE)
    finally:
        await guard.aclose()
    return CacheWriteResult(CacheOutcome.WRITTEN, bytes_written=guard.observed)
