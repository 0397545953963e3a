from __future__ import annotations

import json
import logging

import structlog
from fastapi import FastAPI
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind

from nxcache.common import observability


def _payloads(caplog) -> list[dict]:
    return [json.loads(record.message) for record in caplog.records if record.message.startswith("{")]


def test_configure_logging_emits_json(caplog, monkeypatch):
    monkeypatch.setattr(observability, "_stdlib_configured", False)

    observability.configure_logging("nxcache.test", "INFO", storage="filesystem")
    logger = structlog.get_logger("nxcache.test.logger")

    with caplog.at_level(logging.INFO):
        logger.info("cache_hit", cache_key="abc123")

    payload = _payloads(caplog)[-1]
    assert payload["message"] == "cache_hit"
    assert payload["cache_key"] == "abc123"
    assert payload["service"] == "nxcache.test"
    assert payload["storage"] == "filesystem"
    assert payload["level"] == "info"


def test_configure_logging_masks_bearer_fields(caplog, monkeypatch):
    monkeypatch.setattr(observability, "_stdlib_configured", False)

    observability.configure_logging("nxcache.test", "INFO")
    logger = structlog.get_logger("nxcache.test.secrets")

    with caplog.at_level(logging.INFO):
        logger.info("token_seen", token="abcdef123456", token_id="ci")

    payload = _payloads(caplog)[-1]
    assert payload["token"] == "ab********56"
    assert payload["token_id"] == "ci"


def test_configure_logging_filters_below_level(caplog, monkeypatch):
    monkeypatch.setattr(observability, "_stdlib_configured", False)

    observability.configure_logging("nxcache.quiet", "not-a-level")
    logger = structlog.get_logger("nxcache.quiet.logger")

    with caplog.at_level(logging.DEBUG):
        logger.info("suppressed")
        logger.warning("kept")

    messages = [payload["message"] for payload in _payloads(caplog)]
    assert "suppressed" not in messages
    assert "kept" in messages


def test_parse_otlp_headers():
    headers = observability.parse_otlp_headers("authorization=Bearer%20token, custom=abc, broken, =x")

    assert headers == {"authorization": "Bearer token", "custom": "abc"}
    assert observability.parse_otlp_headers(None) == {}


def test_instrumented_app_records_server_spans_except_health_checks():
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    app = FastAPI()

    @app.get("/v1/cache/{cache_hash}")
    async def read_entry(cache_hash: str) -> dict:
        return {"key": cache_hash}

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "healthy"}

    observability.instrument_fastapi_app(app, provider)
    with TestClient(app) as client:
        assert client.get("/v1/cache/abc123").status_code == 200
        assert client.get("/healthz").status_code == 200

    server_spans = [span for span in exporter.get_finished_spans() if span.kind is SpanKind.SERVER]
    assert getattr(app, "_is_instrumented_by_opentelemetry", False)
    assert len(server_spans) == 1
    assert server_spans[0].name.startswith("GET /v1/cache/{cache_hash}")
