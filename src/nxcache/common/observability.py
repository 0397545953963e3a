"""Logging and tracing setup for the cache server."""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import unquote

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from structlog.contextvars import bind_contextvars, clear_contextvars

from ..tokens.masking import mask_token
from .settings import CacheServerSettings


# Event fields that may carry a bearer value; only their ends are ever logged.
SECRET_FIELDS = frozenset({"authorization", "admin_token", "token", "token_value"})

# Health checks and scrapes would otherwise dominate the sampled traces.
UNTRACED_PATHS = "healthz,metrics"

_stdlib_configured = False
_provider: Optional[TracerProvider] = None


def _numeric_level(name: str) -> int:
    return logging.getLevelNamesMapping().get(name.strip().upper(), logging.WARNING)


def redact_secrets(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for field in SECRET_FIELDS.intersection(event_dict):
        value = event_dict[field]
        if isinstance(value, str):
            event_dict[field] = mask_token(value, 2, 2)
    return event_dict


def configure_logging(service_name: str, level: str = "WARNING", **context: Any) -> None:
    """Render structlog events as one JSON object per line through stdlib logging.

    Unknown level names fall back to WARNING, the server's quiet default.
    ``context`` (for example the storage backend) is bound next to
    ``service`` on every event logged from the calling context.
    """

    global _stdlib_configured
    numeric_level = _numeric_level(level)
    if _stdlib_configured:
        logging.getLogger().setLevel(numeric_level)
    else:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _stdlib_configured = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            redact_secrets,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    clear_contextvars()
    bind_contextvars(service=service_name, **context)


def parse_otlp_headers(headers: Optional[str]) -> dict[str, str]:
    """Parse ``OTEL_EXPORTER_HEADERS`` (``k=v`` pairs, comma separated, values percent-encoded)."""

    parsed: dict[str, str] = {}
    for pair in (headers or "").split(","):
        key, separator, value = pair.partition("=")
        key = key.strip()
        if separator and key and value.strip():
            parsed[key] = unquote(value.strip())
    return parsed


def _span_processor(settings: CacheServerSettings) -> SpanProcessor:
    if settings.otel_exporter_endpoint:
        exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_endpoint,
            headers=parse_otlp_headers(settings.otel_exporter_headers),
        )
        return BatchSpanProcessor(exporter)
    return SimpleSpanProcessor(InMemorySpanExporter())


def configure_tracing(service_name: str, settings: CacheServerSettings) -> TracerProvider:
    """Install the process tracer provider on first use and return it.

    Later calls, such as a second ``create_app`` in the same process, reuse
    the provider that is already installed.
    """

    global _provider
    if _provider is not None:
        return _provider

    ratio = min(1.0, max(0.0, settings.otel_sampler_ratio))
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name, "nxcache.storage": settings.storage_strategy}),
        sampler=ParentBased(TraceIdRatioBased(ratio)),
    )
    provider.add_span_processor(_span_processor(settings))
    trace.set_tracer_provider(provider)
    _provider = provider
    return provider


def instrument_fastapi_app(app, tracer_provider: Optional[TracerProvider] = None) -> None:
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=tracer_provider or trace.get_tracer_provider(),
        excluded_urls=UNTRACED_PATHS,
    )
