"""Shared HTTP security helpers."""

from __future__ import annotations

import hmac
from ipaddress import ip_address, ip_network
from typing import Optional

from fastapi import HTTPException, Request, status


def _bearer_matches(request: Request, token: str) -> bool:
    auth_header = request.headers.get("authorization")
    return bool(auth_header) and hmac.compare_digest(auth_header, f"Bearer {token}")


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Enforce metrics endpoint authentication via token or localhost constraint."""
    if token:
        if not _bearer_matches(request, token):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    client_host = request.client.host if request.client else None
    if not client_host:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied")
    try:
        is_loopback = ip_address(client_host).is_loopback
    except ValueError as exc:
        # Test transports report non-IP hosts such as "testclient"
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied") from exc
    if not is_loopback:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")


def require_admin_access(request: Request, token: Optional[str]) -> None:
    """Gate cache administration behind a bearer token when one is configured."""
    if token and not _bearer_matches(request, token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


def get_client_ip(request: Request, trusted_proxies: list[str]) -> str:
    """
    Get client IP, only trusting X-Forwarded-For from known proxies.

    Args:
        request: incoming request
        trusted_proxies: trusted proxy CIDR ranges

    Returns:
        Client IP address, or "unknown" when the transport gives none
    """
    source_ip = request.client.host if request.client else None
    if not trusted_proxies or not source_ip:
        return source_ip or "unknown"

    try:
        source = ip_address(source_ip)
        is_trusted = any(source in ip_network(cidr, strict=False) for cidr in trusted_proxies)
    except ValueError:
        return source_ip
    if is_trusted:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # First hop is the original client
            return forwarded.split(",")[0].strip()
    return source_ip
