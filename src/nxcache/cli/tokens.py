"""Administrative CLI for managing cache access tokens."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Optional, Sequence

import httpx


TOKENS_PATH = "/v1/admin/tokens"


class TokenApiError(RuntimeError):
    def __init__(self, status_code: int, message: str):
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = status_code


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage cache server access tokens")
    parser.add_argument("--base-url", required=True, help="Cache server base URL")
    parser.add_argument("--admin-token", required=True, help="Admin bearer token")
    parser.add_argument("--json", action="store_true", help="Output JSON")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List tokens (values are masked)")

    add_parser = subparsers.add_parser("add", help="Issue a new token")
    add_parser.add_argument("--id", required=True, dest="token_id", help="Token identifier")
    add_parser.add_argument(
        "--permission",
        required=True,
        choices=["readonly", "full"],
        help="Access granted to the token",
    )

    delete_parser = subparsers.add_parser("delete", help="Revoke a token by value")
    delete_parser.add_argument("--value", required=True, help="Raw token value")

    return parser.parse_args(argv)


def build_client(base_url: str, admin_token: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url.rstrip("/"),
        headers={"Authorization": f"Bearer {admin_token}"},
        timeout=10.0,
    )


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    raise TokenApiError(response.status_code, response.text.strip())


async def fetch_tokens(base_url: str, admin_token: str) -> list[dict[str, Any]]:
    async with build_client(base_url, admin_token) as client:
        response = await client.get(TOKENS_PATH)
        _raise_for_status(response)
        return response.json().get("tokens", [])


async def create_token(base_url: str, admin_token: str, token_id: str, permission: str) -> dict[str, Any]:
    async with build_client(base_url, admin_token) as client:
        response = await client.post(TOKENS_PATH, json={"id": token_id, "permission": permission})
        _raise_for_status(response)
        return response.json()


async def revoke_token(base_url: str, admin_token: str, value: str) -> None:
    async with build_client(base_url, admin_token) as client:
        response = await client.delete(f"{TOKENS_PATH}/{value}")
        _raise_for_status(response)


async def run_list(args: argparse.Namespace) -> None:
    tokens = await fetch_tokens(args.base_url, args.admin_token)
    if args.json:
        print(json.dumps({"tokens": tokens}, indent=2))
        return
    if not tokens:
        print("No tokens issued")
        return
    width = max(len(token["id"]) for token in tokens)
    for token in tokens:
        print(f"{token['id']:<{width}}  {token['permission']:<8}  {token['value']}")


async def run_add(args: argparse.Namespace) -> None:
    record = await create_token(args.base_url, args.admin_token, args.token_id, args.permission)
    if args.json:
        print(json.dumps(record, indent=2))
        return
    print(f"Token ID: {record['id']}")
    print(f"Permission: {record['permission']}")
    print(f"Token: {record['value']}")
    print("Store this value now; it is not shown again.")


async def run_delete(args: argparse.Namespace) -> None:
    await revoke_token(args.base_url, args.admin_token, args.value)
    if args.json:
        print(json.dumps({"deleted": True}))
    else:
        print("Token revoked")


COMMANDS = {"list": run_list, "add": run_add, "delete": run_delete}


async def run_async(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        await COMMANDS[args.command](args)
    except TokenApiError as exc:
        print(f"Error ({exc.status_code}): {exc}", file=sys.stderr)
        return 1
    except httpx.HTTPError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


def main() -> None:
    raise SystemExit(asyncio.run(run_async()))


if __name__ == "__main__":
    main()
