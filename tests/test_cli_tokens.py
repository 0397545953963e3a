from __future__ import annotations

import json

import httpx
import pytest

from nxcache.cli import tokens as cli


BASE_ARGS = ["--base-url", "http://cache.local/", "--admin-token", "admin-secret"]


@pytest.fixture
def requests_seen(monkeypatch) -> list[httpx.Request]:
    seen: list[httpx.Request] = []
    store = {"ci": {"id": "ci", "value": "f" * 64, "permission": "full"}}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.headers.get("authorization") != "Bearer admin-secret":
            return httpx.Response(403, text="Access forbidden")
        if request.method == "GET":
            masked = [{**token, "value": "f" + "*" * 62 + "f"} for token in store.values()]
            return httpx.Response(200, json={"tokens": masked})
        if request.method == "POST":
            body = json.loads(request.content)
            if body["id"] in store:
                return httpx.Response(409, text="Conflict: token id already exists")
            record = {**body, "value": "a" * 64}
            store[body["id"]] = record
            return httpx.Response(200, json=record)
        if request.method == "DELETE":
            value = request.url.path.rsplit("/", 1)[-1]
            for token_id, token in list(store.items()):
                if token["value"] == value:
                    del store[token_id]
                    return httpx.Response(204)
            return httpx.Response(404, text="Token not found")
        return httpx.Response(405)

    def build_client(base_url: str, admin_token: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {admin_token}"},
            transport=httpx.MockTransport(handler),
        )

    monkeypatch.setattr(cli, "build_client", build_client)
    return seen


@pytest.mark.asyncio
async def test_list_prints_masked_tokens(requests_seen, capsys) -> None:
    exit_code = await cli.run_async([*BASE_ARGS, "list"])

    assert exit_code == 0
    output = capsys.readouterr().out
    assert "ci" in output and "full" in output and "f" + "*" * 62 + "f" in output
    assert str(requests_seen[0].url) == "http://cache.local/v1/admin/tokens"


@pytest.mark.asyncio
async def test_add_prints_value_as_json(requests_seen, capsys) -> None:
    exit_code = await cli.run_async([*BASE_ARGS, "--json", "add", "--id", "deploy", "--permission", "readonly"])

    assert exit_code == 0
    record = json.loads(capsys.readouterr().out)
    assert record == {"id": "deploy", "permission": "readonly", "value": "a" * 64}
    assert json.loads(requests_seen[0].content) == {"id": "deploy", "permission": "readonly"}


@pytest.mark.asyncio
async def test_add_conflict_reports_error(requests_seen, capsys) -> None:
    exit_code = await cli.run_async([*BASE_ARGS, "add", "--id", "ci", "--permission", "full"])

    assert exit_code == 1
    assert "Error (409): Conflict: token id already exists" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_delete_then_delete_again(requests_seen, capsys) -> None:
    assert await cli.run_async([*BASE_ARGS, "delete", "--value", "f" * 64]) == 0
    assert "Token revoked" in capsys.readouterr().out

    assert await cli.run_async([*BASE_ARGS, "delete", "--value", "f" * 64]) == 1
    assert "Token not found" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_wrong_admin_token_is_reported(requests_seen, capsys) -> None:
    exit_code = await cli.run_async(["--base-url", "http://cache.local", "--admin-token", "nope", "list"])

    assert exit_code == 1
    assert "Error (403): Access forbidden" in capsys.readouterr().err


def test_permission_choices_are_enforced() -> None:
    with pytest.raises(SystemExit):
        cli.parse_args([*BASE_ARGS, "add", "--id", "ci", "--permission", "admin"])
