from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from nxcache.cache_server.app import create_app
from nxcache.common.settings import CacheServerSettings
from nxcache.tokens.store import TokenAuthority


ADMIN_TOKEN = "admin-secret"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings(tmp_path: Path) -> CacheServerSettings:
    return CacheServerSettings(
        admin_token=ADMIN_TOKEN,
        cache_dir=tmp_path / "cache",
        tokens_database_url=str(tmp_path / "data" / "tokens.sqlite"),
        metrics_token="metrics-secret",
    )


@pytest.fixture
def client(settings: CacheServerSettings):
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest_asyncio.fixture
async def authority(tmp_path: Path):
    store = TokenAuthority(f"sqlite+aiosqlite:///{(tmp_path / 'tokens.sqlite').as_posix()}")
    await store.initialise()
    try:
        yield store
    finally:
        await store.close()
