"""Command-line entrypoint for running the cache server."""

from __future__ import annotations

import structlog
import uvicorn
from pydantic import ValidationError

from ..common.observability import configure_logging
from ..common.settings import CacheServerSettings
from .app import SERVICE_NAME, create_app


LOGGER = structlog.get_logger(SERVICE_NAME)


def load_settings() -> CacheServerSettings:
    try:
        return CacheServerSettings()
    except ValidationError as exc:
        configure_logging(SERVICE_NAME, "ERROR")
        fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
        LOGGER.error("invalid_configuration", fields=fields)
        raise SystemExit(1) from exc


def main() -> None:
    settings = load_settings()
    try:
        app = create_app(settings)
    except RuntimeError as exc:
        LOGGER.error("invalid_configuration", error=str(exc))
        raise SystemExit(1) from exc
    LOGGER.info("cache_server_listening", host=settings.host, port=settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
