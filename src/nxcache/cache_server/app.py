"""HTTP service exposing the artifact cache and token administration."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from opentelemetry import trace
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..cache.access import CacheEntry, CacheOutcome, read_cache, write_cache
from ..cache.storage import StorageBackend, build_backend
from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.schemas import TokenListResponse
from ..common.security import extract_bearer_token, is_admin, require_metrics_access, resolve_permission
from ..common.settings import CacheServerSettings
from ..tokens.access import TokenOutcome, TokenResult, add_token, delete_token, list_tokens
from ..tokens.store import TokenAuthority


SERVICE_NAME = "nxcache.cache_server"

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("nxcache_cache_requests_total", "Total cache requests"))
HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("nxcache_cache_hits_total", "Cache hits"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("nxcache_cache_misses_total", "Cache misses"))
BYTES_READ_COUNTER = GLOBAL_REGISTRY.register(Counter("nxcache_cache_bytes_read_total", "Bytes served from cache"))
BYTES_WRITTEN_COUNTER = GLOBAL_REGISTRY.register(
    Counter("nxcache_cache_bytes_written_total", "Bytes written to cache")
)
REJECTED_UPLOADS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("nxcache_cache_rejected_uploads_total", "Uploads rejected for a wrong Content-Length")
)
ACTIVE_UPLOADS_GAUGE = GLOBAL_REGISTRY.register(Gauge("nxcache_cache_active_uploads", "Uploads in progress"))
TOKEN_OPERATIONS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("nxcache_token_operations_total", "Administrative token operations")
)
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "nxcache_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0],
        description="HTTP request latency",
    )
)
TRACER = trace.get_tracer(SERVICE_NAME)

_CACHE_ERRORS: dict[CacheOutcome, tuple[int, str]] = {
    CacheOutcome.FORBIDDEN: (status.HTTP_403_FORBIDDEN, "Access forbidden"),
    CacheOutcome.INVALID_KEY: (status.HTTP_400_BAD_REQUEST, "Invalid hash"),
    CacheOutcome.INVALID_LENGTH: (status.HTTP_400_BAD_REQUEST, "Invalid Content-Length header"),
    CacheOutcome.NOT_FOUND: (status.HTTP_404_NOT_FOUND, "The record was not found"),
    CacheOutcome.CONFLICT: (status.HTTP_409_CONFLICT, "Cannot override an existing record"),
    CacheOutcome.READ_FAILURE: (status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to read cache"),
    CacheOutcome.CHECK_FAILURE: (status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to check cache"),
    CacheOutcome.WRITE_FAILURE: (status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to write to cache"),
}

_TOKEN_ERROR_STATUS: dict[TokenOutcome, int] = {
    TokenOutcome.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    TokenOutcome.INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    TokenOutcome.CONFLICT: status.HTTP_409_CONFLICT,
    TokenOutcome.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    TokenOutcome.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class CacheServerState:
    def __init__(self, settings: CacheServerSettings, backend: StorageBackend, authority: TokenAuthority):
        self.settings = settings
        self.backend = backend
        self.authority = authority
        self.logger = structlog.get_logger(SERVICE_NAME).bind(backend=backend.status().get("backend"))

    @property
    def admin_token(self) -> str:
        return self.settings.admin_token.get_secret_value()


def get_state(request: Request) -> CacheServerState:
    return request.app.state.cache_state  # type: ignore[attr-defined]


def bearer_token(authorization: str | None = Header(default=None, alias="Authorization")) -> str:
    return extract_bearer_token(authorization)


async def token_permission(
    token: str = Depends(bearer_token),
    state: CacheServerState = Depends(get_state),
) -> Optional[str]:
    return await resolve_permission(token, state.admin_token, state.authority)


def admin_rights(
    token: str = Depends(bearer_token),
    state: CacheServerState = Depends(get_state),
) -> bool:
    return is_admin(token, state.admin_token)


def _cache_error(outcome: CacheOutcome) -> PlainTextResponse:
    status_code, message = _CACHE_ERRORS[outcome]
    return PlainTextResponse(message, status_code=status_code)


def _token_error(result: TokenResult) -> PlainTextResponse:
    return PlainTextResponse(result.message, status_code=_TOKEN_ERROR_STATUS[result.outcome])


def create_app(
    settings: Optional[CacheServerSettings] = None,
    *,
    backend: Optional[StorageBackend] = None,
    authority: Optional[TokenAuthority] = None,
) -> FastAPI:
    settings = settings or CacheServerSettings()
    configure_logging(SERVICE_NAME, settings.effective_log_level, storage=settings.storage_strategy)
    tracer_provider = configure_tracing(SERVICE_NAME, settings)
    state = CacheServerState(
        settings,
        backend or build_backend(settings),
        authority or TokenAuthority(settings.tokens_database_url),
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await state.authority.initialise()
        state.logger.info("cache_server_started", storage=state.backend.status())
        try:
            yield
        finally:
            await state.authority.close()
            state.logger.info("cache_server_stopped")

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app, tracer_provider)
    app.state.cache_state = state

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            state.logger.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def route_not_found(request: Request, exc: StarletteHTTPException) -> Response:
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            return PlainTextResponse("", status_code=status.HTTP_404_NOT_FOUND)
        return await http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> PlainTextResponse:
        state.logger.error("unhandled_error", path=request.url.path, error=type(exc).__name__)
        return PlainTextResponse("Internal Server Error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    @app.get("/v1/cache/{cache_hash}")
    async def get_cache(
        cache_hash: str,
        state: CacheServerState = Depends(get_state),
        permission: Optional[str] = Depends(token_permission),
    ) -> Response:
        REQUEST_COUNTER.inc()
        with TRACER.start_as_current_span("cache.get", attributes={"nxcache.cache_key": cache_hash}) as span:
            result = await read_cache(CacheEntry(cache_hash, state.backend), permission)
            span.set_attribute("nxcache.outcome", result.outcome.value)

        if result.outcome is CacheOutcome.FOUND and result.stream is not None:
            HIT_COUNTER.inc()
            BYTES_READ_COUNTER.inc(result.size)
            state.logger.info("cache_hit", cache_key=cache_hash, bytes=result.size)
            return StreamingResponse(
                result.stream,
                media_type="application/octet-stream",
                headers={"Content-Length": str(result.size)},
            )
        if result.outcome is CacheOutcome.NOT_FOUND:
            MISS_COUNTER.inc()
            state.logger.info("cache_miss", cache_key=cache_hash)
        return _cache_error(result.outcome)

    @app.put("/v1/cache/{cache_hash}")
    async def put_cache(
        cache_hash: str,
        request: Request,
        state: CacheServerState = Depends(get_state),
        permission: Optional[str] = Depends(token_permission),
    ) -> Response:
        REQUEST_COUNTER.inc()
        ACTIVE_UPLOADS_GAUGE.inc()
        try:
            with TRACER.start_as_current_span("cache.put", attributes={"nxcache.cache_key": cache_hash}) as span:
                result = await write_cache(
                    CacheEntry(cache_hash, state.backend),
                    permission,
                    request.stream(),
                    request.headers.get("content-length"),
                )
                span.set_attribute("nxcache.outcome", result.outcome.value)
        finally:
            ACTIVE_UPLOADS_GAUGE.dec()

        if result.outcome is CacheOutcome.WRITTEN:
            BYTES_WRITTEN_COUNTER.inc(result.bytes_written)
            state.logger.info("cache_write", cache_key=cache_hash, bytes=result.bytes_written)
            return Response(status_code=status.HTTP_200_OK)
        if result.outcome is CacheOutcome.INVALID_LENGTH:
            REJECTED_UPLOADS_COUNTER.inc()
        return _cache_error(result.outcome)

    @app.get("/v1/admin/tokens")
    async def get_tokens(
        state: CacheServerState = Depends(get_state),
        has_admin_rights: bool = Depends(admin_rights),
    ) -> Response:
        result = await list_tokens(has_admin_rights, state.authority)
        if result.outcome is not TokenOutcome.LISTED:
            return _token_error(result)
        return JSONResponse(TokenListResponse(tokens=result.records).model_dump())

    @app.post("/v1/admin/tokens")
    async def post_token(
        request: Request,
        state: CacheServerState = Depends(get_state),
        has_admin_rights: bool = Depends(admin_rights),
    ) -> Response:
        raw_body = await request.body() if has_admin_rights else None
        result = await add_token(has_admin_rights, state.authority, raw_body)
        if result.outcome is not TokenOutcome.CREATED or result.record is None:
            return _token_error(result)
        TOKEN_OPERATIONS_COUNTER.inc()
        return JSONResponse(result.record.model_dump())

    @app.delete("/v1/admin/tokens/{token}")
    async def remove_token(
        token: str,
        state: CacheServerState = Depends(get_state),
        has_admin_rights: bool = Depends(admin_rights),
    ) -> Response:
        result = await delete_token(has_admin_rights, state.authority, token)
        if result.outcome is not TokenOutcome.DELETED:
            return _token_error(result)
        TOKEN_OPERATIONS_COUNTER.inc()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/status")
    async def status_probe(state: CacheServerState = Depends(get_state)) -> JSONResponse:
        return JSONResponse(state.backend.status())

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(
        request: Request,
        state: CacheServerState = Depends(get_state),
    ) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: CacheServerState = Depends(get_state)) -> dict:
        """Health check for readiness/liveness probes."""
        health: dict[str, object] = {"status": "healthy", "checks": {}}
        try:
            backend_status = state.backend.status()
            health["checks"] = {
                "backend": backend_status.get("backend", "unknown"),
                "writable": backend_status.get("writable", True),
            }
        except Exception as exc:  # noqa: BLE001
            state.logger.warning("health_check_failed", error=type(exc).__name__)
            health["checks"] = {"backend": "error"}
            health["status"] = "unhealthy"

        if health["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    return app
