"""Persistent token authority backed by an async SQLAlchemy engine."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog
from sqlalchemy import (
    CheckConstraint,
    Column,
    MetaData,
    PrimaryKeyConstraint,
    Table,
    Text,
    UniqueConstraint,
    delete,
    insert,
    select,
)
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ..common.schemas import TokenRecord
from .masking import mask_token


LOGGER = structlog.get_logger("nxcache.tokens")

metadata = MetaData()

tokens_table = Table(
    "tokens",
    metadata,
    Column("id", Text, nullable=False),
    Column("value", Text, nullable=False),
    Column("permission", Text, nullable=False),
    PrimaryKeyConstraint("value", name="pk_tokens"),
    UniqueConstraint("id", name="uq_tokens_id"),
    CheckConstraint("permission IN ('readonly', 'full')", name="ck_tokens_permission"),
)

# SQLite reports the offending column, other dialects the constraint name.
_ID_CONSTRAINT_MARKERS = ("tokens.id", "uq_tokens_id")
_VALUE_CONSTRAINT_MARKERS = ("tokens.value", "pk_tokens")


class TokenStoreError(str, enum.Enum):
    ID_ALREADY_EXISTS = "tokenIdAlreadyExists"
    VALUE_ALREADY_EXISTS = "tokenValueAlreadyExists"
    UNKNOWN = "unknownError"


@dataclass(frozen=True)
class TokenOperation:
    result: bool
    error: Optional[TokenStoreError] = None


def create_engine(database_url: str) -> AsyncEngine:
    url = make_url(database_url)
    if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
        db_path = Path(url.database).expanduser()
        if not db_path.is_absolute():
            db_path = (Path.cwd() / db_path).resolve()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = url.set(database=db_path.as_posix())
    return create_async_engine(url, future=True, pool_pre_ping=True)


def classify_integrity_error(exc: IntegrityError) -> TokenStoreError:
    message = str(exc.orig) if exc.orig is not None else str(exc)
    if any(marker in message for marker in _ID_CONSTRAINT_MARKERS):
        return TokenStoreError.ID_ALREADY_EXISTS
    if any(marker in message for marker in _VALUE_CONSTRAINT_MARKERS):
        return TokenStoreError.VALUE_ALREADY_EXISTS
    return TokenStoreError.UNKNOWN


class TokenAuthority:
    """Owns the persisted set of access tokens.

    Uniqueness of ``id`` and ``value`` is enforced by the database constraints
    in a single INSERT, so concurrent administrators cannot both succeed with
    the same identifier or value. Storage failures are logged here and reported
    as ``TokenStoreError.UNKNOWN`` or an empty result; callers never see a raw
    database exception.
    """

    def __init__(self, database_url: str):
        self._engine = create_engine(database_url)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def initialise(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    async def add_token(self, record: TokenRecord) -> TokenOperation:
        stmt = insert(tokens_table).values(id=record.id, value=record.value, permission=record.permission)
        try:
            async with self._engine.begin() as conn:
                await conn.execute(stmt)
        except IntegrityError as exc:
            error = classify_integrity_error(exc)
            LOGGER.warning("token_insert_rejected", token_id=record.id, reason=error.value)
            return TokenOperation(result=False, error=error)
        except (SQLAlchemyError, OSError):
            LOGGER.exception("token_insert_failed", token_id=record.id)
            return TokenOperation(result=False, error=TokenStoreError.UNKNOWN)
        return TokenOperation(result=True)

    async def remove_token(self, value: str) -> TokenOperation:
        stmt = delete(tokens_table).where(tokens_table.c.value == value)
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
        except (SQLAlchemyError, OSError):
            LOGGER.exception("token_delete_failed")
            return TokenOperation(result=False, error=TokenStoreError.UNKNOWN)
        return TokenOperation(result=result.rowcount > 0)

    async def list_tokens(self) -> list[TokenRecord]:
        stmt = select(tokens_table.c.id, tokens_table.c.value, tokens_table.c.permission).order_by(
            tokens_table.c.id.asc()
        )
        try:
            async with self._engine.connect() as conn:
                rows = (await conn.execute(stmt)).mappings().all()
        except (SQLAlchemyError, OSError):
            LOGGER.exception("token_list_failed")
            return []
        return [
            TokenRecord(id=row["id"], value=mask_token(row["value"], 1, 1), permission=row["permission"])
            for row in rows
        ]

    async def find_token(self, value: str) -> Optional[TokenRecord]:
        stmt = (
            select(tokens_table.c.id, tokens_table.c.value, tokens_table.c.permission)
            .where(tokens_table.c.value == value)
            .limit(1)
        )
        try:
            async with self._engine.connect() as conn:
                row = (await conn.execute(stmt)).mappings().first()
        except (SQLAlchemyError, OSError):
            LOGGER.exception("token_lookup_failed")
            return None
        if row is None:
            return None
        return TokenRecord(id=row["id"], value=row["value"], permission=row["permission"])
