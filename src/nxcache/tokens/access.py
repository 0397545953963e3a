"""Administrative token operations expressed as transport-neutral outcomes."""

from __future__ import annotations

import enum
import hashlib
import json
import secrets
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import structlog

from ..common.schemas import TOKEN_PERMISSIONS, TokenRecord
from .store import TokenOperation, TokenStoreError


LOGGER = structlog.get_logger("nxcache.tokens.access")


class TokenOutcome(str, enum.Enum):
    FORBIDDEN = "forbidden"
    INVALID_INPUT = "invalid_input"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    INTERNAL_ERROR = "internal_error"
    CREATED = "created"
    LISTED = "listed"
    DELETED = "deleted"


@dataclass(frozen=True)
class TokenResult:
    outcome: TokenOutcome
    message: str = ""
    record: Optional[TokenRecord] = None
    records: list[TokenRecord] = field(default_factory=list)


class TokenWriter(Protocol):
    async def add_token(self, record: TokenRecord) -> TokenOperation: ...


class TokenRemover(Protocol):
    async def remove_token(self, value: str) -> TokenOperation: ...


class TokenLister(Protocol):
    async def list_tokens(self) -> list[TokenRecord]: ...


FORBIDDEN = TokenResult(TokenOutcome.FORBIDDEN, "Access forbidden")

_PERMISSION_HELP = "permission is required, must be a string and one of: " + ", ".join(sorted(TOKEN_PERMISSIONS))


def generate_token_value() -> str:
    """Return 64 lowercase hex characters derived from 32 random bytes."""

    return hashlib.sha256(secrets.token_bytes(32)).hexdigest()


def parse_json_safe(raw_body: bytes | str | None) -> Any:
    if not raw_body:
        return None
    try:
        return json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        LOGGER.debug("token_body_not_json")
        return None


async def add_token(has_admin_rights: bool, authority: TokenWriter, raw_body: bytes | str | None) -> TokenResult:
    if not has_admin_rights:
        return FORBIDDEN

    body = parse_json_safe(raw_body)
    if not isinstance(body, dict):
        return TokenResult(TokenOutcome.INVALID_INPUT, "Invalid JSON")

    token_id = body.get("id")
    if not token_id or not isinstance(token_id, str):
        return TokenResult(TokenOutcome.INVALID_INPUT, "id is required and must be a string")

    permission = body.get("permission")
    if not isinstance(permission, str) or permission not in TOKEN_PERMISSIONS:
        return TokenResult(TokenOutcome.INVALID_INPUT, _PERMISSION_HELP)

    record = TokenRecord(id=token_id, value=generate_token_value(), permission=permission)
    operation = await authority.add_token(record)
    if operation.result:
        LOGGER.info("token_added", token_id=record.id, permission=record.permission)
        return TokenResult(TokenOutcome.CREATED, record=record)

    if operation.error is TokenStoreError.ID_ALREADY_EXISTS:
        return TokenResult(TokenOutcome.CONFLICT, "Conflict: token id already exists")
    if operation.error is TokenStoreError.VALUE_ALREADY_EXISTS:
        return TokenResult(TokenOutcome.CONFLICT, "Conflict: token value already exists")
    return TokenResult(TokenOutcome.INTERNAL_ERROR, "Failed to add token")


async def list_tokens(has_admin_rights: bool, authority: TokenLister) -> TokenResult:
    if not has_admin_rights:
        return FORBIDDEN
    return TokenResult(TokenOutcome.LISTED, records=await authority.list_tokens())


async def delete_token(has_admin_rights: bool, authority: TokenRemover, value: Optional[str]) -> TokenResult:
    if not has_admin_rights:
        return FORBIDDEN
    if not value:
        return TokenResult(TokenOutcome.INVALID_INPUT, "token is required")

    operation = await authority.remove_token(value)
    if operation.error is not None:
        return TokenResult(TokenOutcome.INTERNAL_ERROR, "An error occurred while deleting the token")
    if not operation.result:
        return TokenResult(TokenOutcome.NOT_FOUND, "Token not found")
    LOGGER.info("token_deleted")
    return TokenResult(TokenOutcome.DELETED)
