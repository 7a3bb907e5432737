from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest
from fastapi.testclient import TestClient

from cmsproxy.common.settings import ProxySettings
from cmsproxy.proxy.app import create_app
from tests.utils.contentful import ACCESS_TOKEN, PUBLIC_ASSET_HOST, SPACE_ID, FakeContentful


@pytest.fixture
def upstream() -> FakeContentful:
    return FakeContentful()


@pytest.fixture
def http_client(upstream: FakeContentful) -> httpx.AsyncClient:
    return upstream.client()


@pytest.fixture
def make_settings() -> Callable[..., ProxySettings]:
    def _make(**overrides: Any) -> ProxySettings:
        values: dict[str, Any] = {
            "space_id": SPACE_ID,
            "access_token": ACCESS_TOKEN,
            "public_asset_host": PUBLIC_ASSET_HOST,
            "admin_token": None,
            "metrics_token": None,
            "redis_url": None,
            "trusted_proxy_cidrs": [],
        }
        values.update(overrides)
        return ProxySettings(**values)

    return _make


@pytest.fixture
def make_client(make_settings, http_client):
    def _make(**overrides: Any) -> TestClient:
        app = create_app(make_settings(**overrides), http_client=http_client)
        return TestClient(app)

    return _make


@pytest.fixture
def client(make_client) -> TestClient:
    with make_client() as test_client:
        yield test_client
