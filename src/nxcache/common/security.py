"""Request authentication helpers shared by the HTTP handlers."""

from __future__ import annotations

import hmac
import re
from ipaddress import ip_address
from typing import Optional, Protocol

from fastapi import HTTPException, Request, status

from .schemas import TokenPermission, TokenRecord


_BEARER_PATTERN = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE | re.DOTALL)


class TokenFinder(Protocol):
    async def find_token(self, value: str) -> Optional[TokenRecord]: ...


def extract_bearer_token(authorization: Optional[str]) -> str:
    """Return the trimmed bearer value, or an empty string when absent or malformed."""

    if not authorization:
        return ""
    match = _BEARER_PATTERN.match(authorization)
    if not match:
        return ""
    return match.group(1).strip()


def is_admin(token: str, admin_token: str) -> bool:
    if not token or not admin_token:
        return False
    return hmac.compare_digest(token.encode("utf-8"), admin_token.encode("utf-8"))


async def resolve_permission(token: str, admin_token: str, tokens: TokenFinder) -> Optional[TokenPermission]:
    """Resolve a bearer value to ``full``, ``readonly`` or ``None``.

    The admin credential always resolves to ``full`` without touching the token
    store; an empty value is anonymous.
    """

    if is_admin(token, admin_token):
        return "full"
    if not token:
        return None
    record = await tokens.find_token(token)
    return record.permission if record else None


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Allow the metrics endpoint with the metrics token, or from loopback when none is set."""

    if token:
        provided = extract_bearer_token(request.headers.get("authorization"))
        if not provided or not hmac.compare_digest(provided.encode("utf-8"), token.encode("utf-8")):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    client_host = request.client.host if request.client else None
    try:
        loopback = bool(client_host) and ip_address(client_host).is_loopback
    except ValueError:
        loopback = False
    if not loopback:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")
