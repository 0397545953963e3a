"""In-memory storage doubles for cache tests."""

from __future__ import annotations

from typing import AsyncIterator, Optional

from nxcache.cache.storage import StorageBackend


async def iter_chunks(*chunks: bytes) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


class TrackingStream:
    """Request-body stand-in that records how far it was read and whether it was closed."""

    def __init__(self, *chunks: bytes):
        self._chunks = list(chunks)
        self.consumed = 0
        self.closed = False

    def __aiter__(self) -> "TrackingStream":
        return self

    async def __anext__(self) -> bytes:
        if self.closed or self.consumed >= len(self._chunks):
            raise StopAsyncIteration
        chunk = self._chunks[self.consumed]
        self.consumed += 1
        return chunk

    async def aclose(self) -> None:
        self.closed = True


class MemoryBackend(StorageBackend):
    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.calls: list[tuple[str, str]] = []
        self.exists_error: Optional[Exception] = None
        self.write_error: Optional[Exception] = None
        self.stream_error: Optional[Exception] = None
        self.size_error: Optional[Exception] = None

    async def exists(self, key: str) -> bool:
        self.calls.append(("exists", key))
        if self.exists_error is not None:
            raise self.exists_error
        return key in self.blobs

    async def get_stream(self, key: str) -> AsyncIterator[bytes]:
        self.calls.append(("get_stream", key))
        if self.stream_error is not None:
            raise self.stream_error
        return iter_chunks(self.blobs[key])

    async def get_size(self, key: str) -> int:
        self.calls.append(("get_size", key))
        if self.size_error is not None:
            raise self.size_error
        return len(self.blobs.get(key, b""))

    async def write_stream(self, key: str, chunks: AsyncIterator[bytes]) -> None:
        self.calls.append(("write_stream", key))
        buffer = bytearray()
        async for chunk in chunks:
            buffer.extend(chunk)
        if self.write_error is not None:
            raise self.write_error
        self.blobs[key] = bytes(buffer)

    def status(self) -> dict[str, object]:
        return {"backend": "memory", "writable": True}
