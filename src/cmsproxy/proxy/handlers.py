"""Cache-backed proxy handlers for Contentful resources."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable, Mapping, Optional
from urllib.parse import quote

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from opentelemetry import trace

from ..common.http_security import require_admin_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge, Histogram
from .keys import QueryValue, derive_key, query_items
from .rewrite import AssetUrlRewriter
from .store import CacheStore
from .upstream import (
    ConfigurationError,
    ProxyError,
    UpstreamClient,
    UpstreamConnectionError,
    UpstreamError,
)

LOGGER = structlog.get_logger("cmsproxy.proxy")
TRACER = trace.get_tracer("cmsproxy.proxy")

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("cmsproxy_requests_total", "Proxied resource requests"))
HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("cmsproxy_cache_hits_total", "Cache hits"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("cmsproxy_cache_misses_total", "Cache misses"))
UPSTREAM_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("cmsproxy_upstream_errors_total", "Upstream calls that failed")
)
CACHE_FLUSH_COUNTER = GLOBAL_REGISTRY.register(Counter("cmsproxy_cache_flushes_total", "Manual cache flushes"))
ENTRIES_GAUGE = GLOBAL_REGISTRY.register(Gauge("cmsproxy_cache_entries", "Entries currently cached"))
UPSTREAM_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "cmsproxy_upstream_latency_seconds",
        buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
        description="Latency of upstream fetches",
    )
)

CONNECTION_FAILURE_MESSAGE = "Failed to connect to upstream API"


@dataclass(frozen=True)
class ResourceRoute:
    """One proxied resource: inbound route, upstream path template and log label."""

    name: str
    path: str
    upstream_template: str
    label: str

    def resource_path(self, path_params: Mapping[str, Any]) -> str:
        # ids are percent-encoded so "?", "#" or "/" cannot change the upstream path
        encoded = {key: quote(str(value), safe="") for key, value in path_params.items()}
        return self.upstream_template.format(**encoded)


RESOURCE_ROUTES: tuple[ResourceRoute, ...] = (
    ResourceRoute("list_entries", "/entries", "entries", "entries"),
    ResourceRoute("get_entry", "/entries/{entry_id}", "entries/{entry_id}", "entry"),
    ResourceRoute("list_assets", "/assets", "assets", "assets"),
    ResourceRoute("get_asset", "/assets/{asset_id}", "assets/{asset_id}", "asset"),
    ResourceRoute("list_content_types", "/content_types", "content_types", "content types"),
)


class ProxyService:
    """Runs the check-config, check-cache, fetch, transform, store sequence.

    Payloads are rewritten once before they are stored, so a cache hit returns
    the stored value untouched.
    """

    def __init__(
        self,
        store: CacheStore,
        client: Optional[UpstreamClient],
        rewriter: AssetUrlRewriter,
        *,
        admin_token: Optional[str] = None,
    ) -> None:
        self.store = store
        self.client = client
        self.rewriter = rewriter
        self.admin_token = admin_token

    @property
    def configured(self) -> bool:
        return self.client is not None

    async def resolve(self, resource_path: str, query: Mapping[str, QueryValue]) -> Any:
        if self.client is None:
            raise ConfigurationError("Contentful credentials are not configured")

        cache_key = derive_key(resource_path, query)
        with TRACER.start_as_current_span("cmsproxy.resolve", attributes={"cmsproxy.cache_key": cache_key}) as span:
            cached = self.store.get(cache_key)
            if cached is not None:
                HIT_COUNTER.inc()
                span.set_attribute("cmsproxy.cache_hit", True)
                LOGGER.info("cache_hit", cache_key=cache_key)
                return cached

            MISS_COUNTER.inc()
            span.set_attribute("cmsproxy.cache_hit", False)
            LOGGER.info("cache_miss", cache_key=cache_key)
            start = time.perf_counter()
            try:
                payload = await self.client.fetch(resource_path, query)
            except ProxyError:
                UPSTREAM_ERRORS_COUNTER.inc()
                raise
            finally:
                UPSTREAM_LATENCY_HISTOGRAM.observe(time.perf_counter() - start)

            transformed = self.rewriter.rewrite(payload)
            self.store.set(cache_key, transformed)
            LOGGER.info("cache_store", cache_key=cache_key, ttl_seconds=self.store.ttl_seconds)
            return transformed


def get_proxy(request: Request) -> ProxyService:
    return request.app.state.proxy  # type: ignore[attr-defined]


def require_admin(request: Request, proxy: ProxyService = Depends(get_proxy)) -> None:
    require_admin_access(request, proxy.admin_token)


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


def build_resource_endpoint(resource: ResourceRoute) -> Callable[..., Any]:
    """Create the GET endpoint serving ``resource`` through the cache."""

    async def endpoint(request: Request, proxy: ProxyService = Depends(get_proxy)) -> JSONResponse:
        REQUEST_COUNTER.inc()
        resource_path = resource.resource_path(request.path_params)
        query = query_items(request.query_params)
        try:
            payload = await proxy.resolve(resource_path, query)
        except UpstreamError as exc:
            if exc.message is None:
                raise UpstreamError(exc.status_code, f"Failed to fetch {resource.label}") from exc
            raise
        except ProxyError:
            raise
        except Exception as exc:
            LOGGER.exception("proxy_unexpected_error", resource=resource_path)
            raise UpstreamConnectionError(f"Unexpected failure serving {resource.label}") from exc
        return JSONResponse(payload)

    endpoint.__name__ = resource.name
    endpoint.__doc__ = f"Serve {resource.label} from cache, fetching from Contentful on a miss."
    return endpoint


def create_proxy_router(routes: tuple[ResourceRoute, ...] = RESOURCE_ROUTES) -> APIRouter:
    router = APIRouter()
    for resource in routes:
        router.add_api_route(
            resource.path,
            build_resource_endpoint(resource),
            methods=["GET"],
            name=resource.name,
        )

    @router.delete("/cache", dependencies=[Depends(require_admin)])
    async def clear_cache(proxy: ProxyService = Depends(get_proxy)) -> dict[str, str]:
        proxy.store.flush_all()
        CACHE_FLUSH_COUNTER.inc()
        LOGGER.info("cache_cleared")
        return {"message": "Cache cleared successfully", "timestamp": _timestamp()}

    @router.get("/cache/stats", dependencies=[Depends(require_admin)])
    async def cache_stats(proxy: ProxyService = Depends(get_proxy)) -> dict[str, Any]:
        pruned = proxy.store.prune()
        if pruned:
            LOGGER.debug("cache_pruned", removed=pruned)
        return {"stats": proxy.store.stats().to_dict(), "timestamp": _timestamp()}

    return router


async def handle_configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
    LOGGER.error("proxy_not_configured", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Server Configuration Error",
            "message": "Contentful credentials are not configured on the server",
        },
    )


async def handle_upstream_error(request: Request, exc: UpstreamError) -> JSONResponse:
    LOGGER.error("upstream_request_failed", path=request.url.path, status=exc.status_code, error=str(exc))
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": "Upstream API Error", "message": exc.message or str(exc), "status": exc.status_code},
    )


async def handle_connection_error(request: Request, exc: UpstreamConnectionError) -> JSONResponse:
    LOGGER.error("upstream_connection_failed", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal Server Error", "message": CONNECTION_FAILURE_MESSAGE},
    )
