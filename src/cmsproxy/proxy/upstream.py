"""Authenticated client for the Contentful Content Delivery API."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Union

import httpx
import structlog

from ..common.settings import ProxySettings

LOGGER = structlog.get_logger("cmsproxy.upstream")

DEFAULT_TIMEOUT_SECONDS = 10.0
PING_TIMEOUT_SECONDS = 5.0

QueryParamsLike = Union[Mapping[str, Any], Iterable[tuple[str, str]], None]


class ProxyError(RuntimeError):
    """Base class for failures surfaced by the proxy pipeline."""


class ConfigurationError(ProxyError):
    """Upstream credentials are missing; every proxied request fails until fixed."""


class UpstreamError(ProxyError):
    """Upstream answered with a non-success status."""

    def __init__(self, status_code: int, message: Optional[str] = None) -> None:
        super().__init__(message or f"Upstream responded with HTTP {status_code}")
        self.status_code = status_code
        self.message = message


class UpstreamConnectionError(ProxyError):
    """Upstream could not be reached, timed out, or returned an unreadable body."""


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def parse_json_body(content: bytes) -> Any:
    """Decode strict JSON; ``NaN`` and ``Infinity`` cannot be re-serialized and are refused."""
    return json.loads(content, parse_constant=_reject_constant)


@dataclass(frozen=True)
class UpstreamCredential:
    space_id: str
    access_token: str

    @classmethod
    def from_settings(cls, settings: ProxySettings) -> Optional["UpstreamCredential"]:
        if not settings.has_credentials:
            return None
        return cls(space_id=str(settings.space_id), access_token=settings.access_token.get_secret_value())


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("message"), str):
        return body["message"]
    return None


class UpstreamClient:
    """Wraps the GET calls the proxy makes against one Contentful space."""

    def __init__(
        self,
        credential: UpstreamCredential,
        http_client: httpx.AsyncClient,
        *,
        base_url: str = "https://cdn.contentful.com",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.credential = credential
        self._http = http_client
        self._base_url = f"{base_url.rstrip('/')}/spaces/{credential.space_id}"
        self._timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {credential.access_token}",
            "Content-Type": "application/json",
        }

    @property
    def space_id(self) -> str:
        return self.credential.space_id

    async def fetch(self, resource_path: str, params: QueryParamsLike = None, *, timeout: Optional[float] = None) -> Any:
        url = f"{self._base_url}/{resource_path.strip('/')}"
        try:
            response = await self._http.get(
                url,
                params=params,
                headers=self._headers,
                timeout=timeout if timeout is not None else self._timeout,
            )
        except httpx.TimeoutException as exc:
            LOGGER.warning("upstream_timeout", resource=resource_path, error=str(exc))
            raise UpstreamConnectionError(f"Timed out fetching {resource_path}") from exc
        except httpx.HTTPError as exc:
            LOGGER.warning("upstream_unreachable", resource=resource_path, error=str(exc))
            raise UpstreamConnectionError(f"Failed to reach upstream for {resource_path}") from exc

        if response.is_error:
            message = _error_message(response)
            LOGGER.warning(
                "upstream_error",
                resource=resource_path,
                status=response.status_code,
                body=response.text[:2000],
            )
            raise UpstreamError(response.status_code, message)

        try:
            return parse_json_body(response.content)
        except ValueError as exc:
            LOGGER.error("upstream_malformed_body", resource=resource_path, body=response.text[:2000])
            raise UpstreamConnectionError(f"Malformed upstream body for {resource_path}") from exc

    async def ping(self, timeout: float = PING_TIMEOUT_SECONDS) -> None:
        await self.fetch("entries", {"limit": "1"}, timeout=timeout)


def build_upstream_client(settings: ProxySettings, http_client: httpx.AsyncClient) -> Optional[UpstreamClient]:
    credential = UpstreamCredential.from_settings(settings)
    if credential is None:
        return None
    return UpstreamClient(
        credential,
        http_client,
        base_url=settings.upstream_base_url,
        timeout=settings.upstream_timeout_seconds,
    )
