"""Liveness and upstream connectivity probes."""

from __future__ import annotations

import os
import platform
import resource
import sys
import time
from datetime import UTC, datetime
from importlib.metadata import PackageNotFoundError, version as package_version
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request

from ..common.settings import ProxySettings
from .handlers import ProxyService, get_proxy
from .upstream import ProxyError

LOGGER = structlog.get_logger("cmsproxy.health")


def service_version() -> str:
    try:
        return package_version("cmsproxy")
    except PackageNotFoundError:
        return "0.0.0"


def get_settings(request: Request) -> ProxySettings:
    return request.app.state.settings  # type: ignore[attr-defined]


def _uptime(request: Request) -> float:
    started = getattr(request.app.state, "started_at", time.monotonic())
    return round(time.monotonic() - started, 3)


def _memory() -> dict[str, int]:
    usage = resource.getrusage(resource.RUSAGE_SELF)
    # ru_maxrss is kilobytes on Linux and bytes on macOS
    scale = 1 if sys.platform == "darwin" else 1024
    return {"maxRss": usage.ru_maxrss * scale}


def _cpu() -> dict[str, float]:
    usage = resource.getrusage(resource.RUSAGE_SELF)
    return {"user": usage.ru_utime, "system": usage.ru_stime}


async def _probe_upstream(proxy: ProxyService) -> dict[str, Any]:
    if proxy.client is None:
        return {"status": "not_configured", "message": "Contentful credentials not set"}

    start = time.perf_counter()
    try:
        await proxy.client.ping()
    except ProxyError as exc:
        LOGGER.warning("health_upstream_error", error=str(exc))
        return {
            "status": "error",
            "error": str(exc),
            "responseTime": round((time.perf_counter() - start) * 1000, 2),
        }
    return {
        "status": "connected",
        "responseTime": round((time.perf_counter() - start) * 1000, 2),
        "spaceId": proxy.client.space_id,
    }


def create_health_router() -> APIRouter:
    router = APIRouter()

    @router.get("")
    async def health_check(
        request: Request,
        proxy: ProxyService = Depends(get_proxy),
        settings: ProxySettings = Depends(get_settings),
    ) -> dict[str, Any]:
        """Report process health and whether Contentful is reachable."""
        return {
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "uptime": _uptime(request),
            "memory": _memory(),
            "environment": settings.environment,
            "version": service_version(),
            "contentful": await _probe_upstream(proxy),
        }

    @router.get("/detailed")
    async def detailed_health_check(
        request: Request,
        settings: ProxySettings = Depends(get_settings),
    ) -> dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "system": {
                "uptime": _uptime(request),
                "memory": _memory(),
                "cpu": _cpu(),
                "platform": platform.platform(),
                "pythonVersion": platform.python_version(),
                "pid": os.getpid(),
            },
            "environment": {
                "environment": settings.environment,
                "port": settings.port,
                "hasContentfulSpaceId": bool(settings.space_id),
                "hasContentfulAccessToken": bool(settings.access_token),
            },
            "version": service_version(),
        }

    return router
