"""Content-length enforcement for streamed uploads."""

from __future__ import annotations

import enum
from typing import AsyncIterator, NoReturn

import structlog


LOGGER = structlog.get_logger("nxcache.cache.integrity")


class LengthCheck(str, enum.Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    EXCEEDED = "exceeded"
    MISMATCH = "mismatch"


class ContentLengthError(Exception):
    """Raised into the consumer to abort a write whose length check failed."""

    def __init__(self, check: LengthCheck, declared: int, observed: int):
        super().__init__(f"content length {check.value}: declared {declared}, observed {observed}")
        self.check = check
        self.declared = declared
        self.observed = observed


class ContentLengthGuard:
    """Async iterator that forwards ``source`` while counting its bytes.

    The guard is what storage backends consume. As soon as the running total
    passes ``declared_length`` the offending chunk is withheld and the
    consumer is aborted; a short stream is aborted at end of input. ``check``
    holds the terminal state so callers can tell a bad declared length apart
    from a storage failure without inspecting exception types.
    """

    def __init__(self, declared_length: int, source: AsyncIterator[bytes]):
        self.declared_length = declared_length
        self.observed = 0
        self.check = LengthCheck.PENDING
        self._source = source
        self._iterator = source.__aiter__()
        self._closed = False

    @property
    def rejected(self) -> bool:
        return self.check in (LengthCheck.EXCEEDED, LengthCheck.MISMATCH)

    def __aiter__(self) -> "ContentLengthGuard":
        return self

    async def __anext__(self) -> bytes:
        if self.check is not LengthCheck.PENDING:
            if self.rejected:
                raise ContentLengthError(self.check, self.declared_length, self.observed)
            raise StopAsyncIteration

        try:
            chunk = await self._iterator.__anext__()
        except StopAsyncIteration:
            if self.observed != self.declared_length:
                self._fail(LengthCheck.MISMATCH)
            self.check = LengthCheck.COMPLETE
            raise

        self.observed += len(chunk)
        if self.observed > self.declared_length:
            self._fail(LengthCheck.EXCEEDED)
        return chunk

    def _fail(self, check: LengthCheck) -> NoReturn:
        self.check = check
        LOGGER.debug(
            "content_length_rejected",
            check=check.value,
            declared=self.declared_length,
            observed=self.observed,
        )
        raise ContentLengthError(check, self.declared_length, self.observed)

    async def aclose(self) -> None:
        """Close the underlying source; safe to call more than once."""

        if self._closed:
            return
        self._closed = True
        close = getattr(self._source, "aclose", None)
        if close is None:
            return
        try:
            await close()
        except Exception:  # noqa: BLE001 - closing an abandoned request body is best effort
            LOGGER.debug("content_source_close_failed", exc_info=True)
