"""Caching reverse proxy in front of the Contentful Content Delivery API."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from http import HTTPStatus
from typing import Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..common.http_security import get_client_ip, require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import (
    configure_logging,
    configure_tracing,
    instrument_fastapi_app,
    instrument_http_client,
)
from ..common.ratelimit import InMemoryRateLimiter, RateLimiter, build_rate_limiter
from ..common.settings import ProxySettings
from .handlers import (
    ENTRIES_GAUGE,
    ProxyService,
    create_proxy_router,
    handle_configuration_error,
    handle_connection_error,
    handle_upstream_error,
)
from .health import create_health_router, get_settings
from .rewrite import AssetUrlRewriter
from .store import CacheStore
from .upstream import ConfigurationError, UpstreamConnectionError, UpstreamError, build_upstream_client

LOGGER = structlog.get_logger("cmsproxy.app")

HTTP_REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("cmsproxy_http_requests_total", "Total HTTP requests"))
RATE_LIMITED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("cmsproxy_rate_limited_total", "Requests rejected by the per-IP rate limit")
)
HTTP_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "cmsproxy_http_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Latency of proxy HTTP requests",
    )
)

API_PREFIX = "/api/contentful"
HEALTH_PREFIX = "/api/health"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "cross-origin",
}

RATE_LIMIT_MESSAGE = "Too many requests from this IP, please try again later."


def describe_window(seconds: int) -> str:
    if seconds % 3600 == 0:
        hours = seconds // 3600
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    if seconds % 60 == 0:
        minutes = seconds // 60
        return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"
    return f"{seconds} seconds"


async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == status.HTTP_404_NOT_FOUND and exc.detail == "Not Found":
        message = f"Route {request.method} {request.url.path} not found"
    else:
        message = str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": HTTPStatus(exc.status_code).phrase,
            "message": message,
            "timestamp": datetime.now(UTC).isoformat(),
            "path": request.url.path,
        },
        headers=getattr(exc, "headers", None),
    )


def build_proxy_service(settings: ProxySettings, http_client: httpx.AsyncClient) -> ProxyService:
    client = build_upstream_client(settings, http_client)
    if client is None:
        LOGGER.error(
            "missing_contentful_configuration",
            detail="Set CONTENTFUL_SPACE_ID and CONTENTFUL_ACCESS_TOKEN; proxied requests will fail until then",
        )
    admin_token = settings.admin_token.get_secret_value() if settings.admin_token else None
    if admin_token is None:
        LOGGER.warning("cache_admin_unprotected", detail="Set CMSPROXY_ADMIN_TOKEN to gate cache administration")
    store = CacheStore(settings.cache_ttl_seconds)
    rewriter = AssetUrlRewriter(settings.upstream_asset_host, settings.public_asset_host)
    return ProxyService(store, client, rewriter, admin_token=admin_token)


def create_app(
    settings: Optional[ProxySettings] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    rate_limiter: RateLimiter | InMemoryRateLimiter | None = None,
) -> FastAPI:
    settings = settings or ProxySettings()
    configure_logging("cmsproxy", settings.log_level)
    configure_tracing(
        service_name="cmsproxy",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )

    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.upstream_timeout_seconds),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
        )
        instrument_http_client(http_client)
    proxy = build_proxy_service(settings, http_client)
    ENTRIES_GAUGE.bind(lambda: len(proxy.store))
    limiter = rate_limiter or build_rate_limiter(settings.redis_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        LOGGER.info(
            "proxy_started",
            port=settings.port,
            environment=settings.environment,
            cache_ttl_seconds=settings.cache_ttl_seconds,
            configured=proxy.configured,
        )
        try:
            yield
        finally:
            await limiter.aclose()
            if owns_http_client:
                await http_client.aclose()

    app = FastAPI(title="cmsproxy", lifespan=lifespan)
    app.state.settings = settings
    app.state.proxy = proxy
    app.state.rate_limiter = limiter
    app.state.started_at = time.monotonic()
    instrument_fastapi_app(app)

    app.add_exception_handler(ConfigurationError, handle_configuration_error)
    app.add_exception_handler(UpstreamError, handle_upstream_error)
    app.add_exception_handler(UpstreamConnectionError, handle_connection_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)

    @app.middleware("http")
    async def enforce_rate_limit(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        if settings.rate_limit <= 0:
            return await call_next(request)
        client_ip = get_client_ip(request, settings.trusted_proxy_cidrs)
        result = await limiter.check_limit(f"ip:{client_ip}", settings.rate_limit, settings.rate_limit_window_seconds)
        headers = {
            "RateLimit-Limit": str(result.limit),
            "RateLimit-Remaining": str(result.remaining),
            "RateLimit-Reset": str(result.reset_seconds),
        }
        if not result.allowed:
            RATE_LIMITED_COUNTER.inc()
            headers["Retry-After"] = str(result.reset_seconds)
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "error": RATE_LIMIT_MESSAGE,
                    "retryAfter": describe_window(settings.rate_limit_window_seconds),
                },
                headers=headers,
            )
        response = await call_next(request)
        response.headers.update(headers)
        return response

    @app.middleware("http")
    async def record_request(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        HTTP_REQUEST_COUNTER.inc()
        client_ip = get_client_ip(request, settings.trusted_proxy_cidrs)
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            HTTP_LATENCY_HISTOGRAM.observe(duration)
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                ip=client_ip,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        HTTP_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "ip": client_ip,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    )

    app.include_router(create_health_router(), prefix=HEALTH_PREFIX, tags=["health"])
    app.include_router(create_proxy_router(), prefix=API_PREFIX, tags=["contentful"])

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(
        request: Request,
        settings: ProxySettings = Depends(get_settings),
    ) -> PlainTextResponse:
        token = settings.metrics_token.get_secret_value() if settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    return app
