from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from nxcache.common.schemas import TokenRecord
from nxcache.common.security import (
    extract_bearer_token,
    is_admin,
    require_metrics_access,
    resolve_permission,
)


class FakeTokens:
    def __init__(self, *records: TokenRecord) -> None:
        self.records = {record.value: record for record in records}
        self.lookups: list[str] = []

    async def find_token(self, value: str):
        self.lookups.append(value)
        return self.records.get(value)


@pytest.mark.parametrize(
    ("header", "expected"),
    [
        ("Bearer abc", "abc"),
        ("bearer abc", "abc"),
        ("BEARER   abc  ", "abc"),
        ("Basic abc", ""),
        ("Bearer", ""),
        ("abc", ""),
        ("", ""),
        (None, ""),
    ],
)
def test_extract_bearer_token(header, expected) -> None:
    assert extract_bearer_token(header) == expected


def test_is_admin() -> None:
    assert is_admin("admin", "admin")
    assert not is_admin("admin ", "admin")
    assert not is_admin("", "admin")
    assert not is_admin("admin", "")


@pytest.mark.asyncio
async def test_admin_resolves_to_full_without_lookup() -> None:
    tokens = FakeTokens()

    assert await resolve_permission("admin", "admin", tokens) == "full"
    assert tokens.lookups == []


@pytest.mark.asyncio
async def test_stored_tokens_resolve_to_their_permission() -> None:
    tokens = FakeTokens(
        TokenRecord(id="ro", value="ro-value", permission="readonly"),
        TokenRecord(id="rw", value="rw-value", permission="full"),
    )

    assert await resolve_permission("ro-value", "admin", tokens) == "readonly"
    assert await resolve_permission("rw-value", "admin", tokens) == "full"
    assert await resolve_permission("unknown", "admin", tokens) is None


@pytest.mark.asyncio
async def test_anonymous_requests_have_no_permission() -> None:
    tokens = FakeTokens()

    assert await resolve_permission("", "admin", tokens) is None
    assert tokens.lookups == []


def _request(host: str | None, authorization: str | None = None):
    headers = {"authorization": authorization} if authorization else {}
    client = SimpleNamespace(host=host) if host else None
    return SimpleNamespace(headers=headers, client=client)


def test_metrics_access_with_token() -> None:
    require_metrics_access(_request("10.0.0.1", "Bearer scrape"), "scrape")

    with pytest.raises(HTTPException) as excinfo:
        require_metrics_access(_request("127.0.0.1", "Bearer wrong"), "scrape")
    assert excinfo.value.status_code == 401


@pytest.mark.parametrize(("host", "allowed"), [("127.0.0.1", True), ("::1", True), ("10.0.0.1", False), (None, False)])
def test_metrics_access_without_token(host, allowed: bool) -> None:
    if allowed:
        require_metrics_access(_request(host), None)
        return
    with pytest.raises(HTTPException) as excinfo:
        require_metrics_access(_request(host), None)
    assert excinfo.value.status_code == 403
