from __future__ import annotations

import pytest

from nxcache.cache.integrity import ContentLengthError, ContentLengthGuard, LengthCheck
from tests.utils.storage import TrackingStream, iter_chunks


async def _drain(guard: ContentLengthGuard) -> list[bytes]:
    received = []
    async for chunk in guard:
        received.append(chunk)
    return received


@pytest.mark.anyio
async def test_guard_passes_exact_length_through() -> None:
    guard = ContentLengthGuard(6, iter_chunks(b"abc", b"def"))

    assert await _drain(guard) == [b"abc", b"def"]
    assert guard.check is LengthCheck.COMPLETE
    assert guard.observed == 6
    assert not guard.rejected


@pytest.mark.anyio
async def test_guard_withholds_the_chunk_that_overflows() -> None:
    guard = ContentLengthGuard(4, iter_chunks(b"abc", b"def", b"ghi"))
    received: list[bytes] = []

    with pytest.raises(ContentLengthError) as excinfo:
        async for chunk in guard:
            received.append(chunk)

    assert received == [b"abc"]
    assert guard.check is LengthCheck.EXCEEDED
    assert guard.rejected
    assert excinfo.value.declared == 4
    assert excinfo.value.observed == 6


@pytest.mark.asyncio
async def test_guard_rejects_short_stream_at_end() -> None:
    guard = ContentLengthGuard(10, iter_chunks(b"abc"))

    with pytest.raises(ContentLengthError) as excinfo:
        await _drain(guard)

    assert guard.check is LengthCheck.MISMATCH
    assert excinfo.value.check is LengthCheck.MISMATCH
    assert excinfo.value.observed == 3


@pytest.mark.asyncio
async def test_guard_keeps_failing_after_rejection() -> None:
    guard = ContentLengthGuard(1, iter_chunks(b"ab"))

    with pytest.raises(ContentLengthError):
        await guard.__anext__()
    with pytest.raises(ContentLengthError):
        await guard.__anext__()


@pytest.mark.asyncio
async def test_guard_stops_cleanly_once_complete() -> None:
    guard = ContentLengthGuard(2, iter_chunks(b"ab"))
    await _drain(guard)

    with pytest.raises(StopAsyncIteration):
        await guard.__anext__()


@pytest.mark.asyncio
async def test_guard_aclose_closes_source_once() -> None:
    source = TrackingStream(b"abc")
    guard = ContentLengthGuard(3, source)

    await guard.aclose()
    await guard.aclose()

    assert source.closed


@pytest.mark.asyncio
async def test_guard_aclose_tolerates_sources_without_aclose() -> None:
    class Plain:
        def __aiter__(self):
            return self

        async def __anext__(self) -> bytes:
            raise StopAsyncIteration

    guard = ContentLengthGuard(1, Plain())
    await guard.aclose()
