"""Shared data models for the cache server."""

from __future__ import annotations

from typing import Literal, get_args

from pydantic import BaseModel, ConfigDict, Field


TokenPermission = Literal["readonly", "full"]

TOKEN_PERMISSIONS: tuple[str, ...] = get_args(TokenPermission)
READ_PERMISSIONS = frozenset({"readonly", "full"})
WRITE_PERMISSIONS = frozenset({"full"})


class TokenRecord(BaseModel):
    """Access token issued by an administrator."""

    model_config = ConfigDict(frozen=True)

    id: str
    value: str
    permission: TokenPermission


class TokenListResponse(BaseModel):
    """Payload of the token listing endpoint; values are masked."""

    tokens: list[TokenRecord] = Field(default_factory=list)
