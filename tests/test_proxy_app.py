from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from cmsproxy.proxy.handlers import RESOURCE_ROUTES
from tests.utils.contentful import ACCESS_TOKEN, PUBLIC_ASSET_HOST, SPACE_ID, FakeContentful

ENTRY_PAYLOAD = {
    "sys": {"id": "abc"},
    "fields": {"image": {"url": "https://images.ctfassets.net/pic.png"}},
}


def test_entries_miss_then_hit_rewrites_once(client: TestClient, upstream: FakeContentful) -> None:
    upstream.respond("entries", json=ENTRY_PAYLOAD)

    first = client.get("/api/contentful/entries")
    assert first.status_code == 200
    body = first.json()
    assert body["fields"]["image"]["url"] == f"https://{PUBLIC_ASSET_HOST}/pic.png"
    assert body["sys"] == {"id": "abc"}

    second = client.get("/api/contentful/entries")
    assert second.status_code == 200
    assert second.json() == body
    assert len(upstream.calls) == 1


def test_upstream_call_carries_credentials_and_query(client: TestClient, upstream: FakeContentful) -> None:
    upstream.respond("entries", json={"items": []})

    response = client.get("/api/contentful/entries", params=[("content_type", "song"), ("limit", "5")])
    assert response.status_code == 200

    (request,) = upstream.calls
    assert request.url.path == f"/spaces/{SPACE_ID}/entries"
    assert request.url.host == "cdn.contentful.com"
    assert request.headers["Authorization"] == f"Bearer {ACCESS_TOKEN}"
    assert request.url.params["content_type"] == "song"
    assert request.url.params["limit"] == "5"


def test_query_order_does_not_split_cache(client: TestClient, upstream: FakeContentful) -> None:
    upstream.respond("entries", json={"items": [1]})

    client.get("/api/contentful/entries?limit=1&skip=2")
    client.get("/api/contentful/entries?skip=2&limit=1")
    assert len(upstream.calls) == 1

    client.get("/api/contentful/entries?skip=3&limit=1")
    assert len(upstream.calls) == 2


@pytest.mark.parametrize(
    ("path", "resource"),
    [
        ("/api/contentful/entries/abc", "entries/abc"),
        ("/api/contentful/assets", "assets"),
        ("/api/contentful/assets/img-1", "assets/img-1"),
        ("/api/contentful/content_types", "content_types"),
    ],
)
def test_each_resource_route_proxies_its_upstream_path(
    client: TestClient, upstream: FakeContentful, path: str, resource: str
) -> None:
    upstream.respond(resource, json={"resource": resource})

    response = client.get(path)
    assert response.status_code == 200
    assert response.json() == {"resource": resource}
    assert upstream.calls[0].url.path == f"/spaces/{SPACE_ID}/{resource}"


def test_single_items_are_cached_separately(client: TestClient, upstream: FakeContentful) -> None:
    upstream.respond("entries/one", json={"id": "one"})
    upstream.respond("entries/two", json={"id": "two"})

    assert client.get("/api/contentful/entries/one").json() == {"id": "one"}
    assert client.get("/api/contentful/entries/two").json() == {"id": "two"}
    assert client.get("/api/contentful/entries/one").json() == {"id": "one"}
    assert len(upstream.calls) == 2


def test_upstream_error_keeps_status_and_message(client: TestClient, upstream: FakeContentful) -> None:
    upstream.respond("entries/missing", status_code=404, json={"message": "Not found"})

    response = client.get("/api/contentful/entries/missing")
    assert response.status_code == 404
    assert response.json() == {"error": "Upstream API Error", "message": "Not found", "status": 404}


def test_upstream_error_without_message_uses_resource_label(client: TestClient, upstream: FakeContentful) -> None:
    upstream.respond("assets/broken", status_code=503, text="gateway down")

    response = client.get("/api/contentful/assets/broken")
    assert response.status_code == 503
    assert response.json() == {"error": "Upstream API Error", "message": "Failed to fetch asset", "status": 503}


def test_upstream_errors_are_not_cached(client: TestClient, upstream: FakeContentful) -> None:
    upstream.respond("entries", status_code=500, json={"message": "boom"})
    assert client.get("/api/contentful/entries").status_code == 500

    upstream.respond("entries", json={"items": []})
    assert client.get("/api/contentful/entries").status_code == 200
    assert len(upstream.calls) == 2


@pytest.mark.parametrize("exc_type", [httpx.ConnectError, httpx.ReadTimeout])
def test_connection_failures_map_to_generic_500(
    client: TestClient, upstream: FakeContentful, exc_type: type[httpx.TransportError]
) -> None:
    upstream.fail("content_types", exc_type)

    response = client.get("/api/contentful/content_types")
    assert response.status_code == 500
    assert response.json() == {"error": "Internal Server Error", "message": "Failed to connect to upstream API"}


def test_malformed_upstream_body_maps_to_generic_500(client: TestClient, upstream: FakeContentful) -> None:
    upstream.respond("entries", text="<html>not json</html>")

    response = client.get("/api/contentful/entries")
    assert response.status_code == 500
    assert response.json()["message"] == "Failed to connect to upstream API"
    assert "html" not in response.text


def test_missing_credentials_fail_fast(make_client, upstream: FakeContentful) -> None:
    with make_client(space_id=None, access_token=None) as client:
        for path in ("/api/contentful/entries", "/api/contentful/assets/x", "/api/contentful/content_types"):
            response = client.get(path)
            assert response.status_code == 500
            assert response.json()["error"] == "Server Configuration Error"
    assert upstream.calls == []


def test_cache_stats_counts_hits_and_misses(client: TestClient, upstream: FakeContentful) -> None:
    upstream.respond("entries", json={"items": []})
    client.get("/api/contentful/entries")
    client.get("/api/contentful/entries")

    response = client.get("/api/contentful/cache/stats")
    assert response.status_code == 200
    payload = response.json()
    assert payload["stats"] == {"hits": 1, "misses": 1, "keys": 1}
    assert payload["timestamp"]


def test_cache_clear_forces_refetch(client: TestClient, upstream: FakeContentful) -> None:
    upstream.respond("assets", json={"items": []})
    client.get("/api/contentful/assets")

    cleared = client.delete("/api/contentful/cache")
    assert cleared.status_code == 200
    assert cleared.json()["message"] == "Cache cleared successfully"

    stats = client.get("/api/contentful/cache/stats").json()["stats"]
    assert stats["keys"] == 0

    client.get("/api/contentful/assets")
    assert len(upstream.calls) == 2


def test_cache_admin_requires_token_when_configured(make_client) -> None:
    with make_client(admin_token="s3cret") as client:
        assert client.delete("/api/contentful/cache").status_code == 401
        assert client.get("/api/contentful/cache/stats").status_code == 401

        headers = {"Authorization": "Bearer s3cret"}
        assert client.delete("/api/contentful/cache", headers=headers).status_code == 200
        assert client.get("/api/contentful/cache/stats", headers=headers).status_code == 200


def test_unknown_route_returns_structured_404(client: TestClient) -> None:
    response = client.get("/api/contentful/nope")
    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "Not Found"
    assert body["message"] == "Route GET /api/contentful/nope not found"


def test_rate_limit_rejects_after_quota(make_client, upstream: FakeContentful) -> None:
    upstream.respond("entries", json={"items": []})
    with make_client(rate_limit=2) as client:
        first = client.get("/api/contentful/entries")
        assert first.headers["RateLimit-Limit"] == "2"
        assert first.headers["RateLimit-Remaining"] == "1"
        assert client.get("/api/contentful/entries").status_code == 200

        blocked = client.get("/api/contentful/entries")
        assert blocked.status_code == 429
        assert blocked.json() == {
            "error": "Too many requests from this IP, please try again later.",
            "retryAfter": "15 minutes",
        }
        assert blocked.headers["RateLimit-Remaining"] == "0"
        assert "Retry-After" in blocked.headers


def test_responses_carry_security_headers(client: TestClient, upstream: FakeContentful) -> None:
    upstream.respond("entries", json={})
    response = client.get("/api/contentful/entries")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Cross-Origin-Resource-Policy"] == "cross-origin"


def test_metrics_require_token_or_loopback(make_client) -> None:
    with make_client(metrics_token="metrics-token") as client:
        assert client.get("/metrics").status_code == 401
        response = client.get("/metrics", headers={"Authorization": "Bearer metrics-token"})
        assert response.status_code == 200
        assert "cmsproxy_cache_hits_total" in response.text

    with make_client() as client:
        # TestClient reports a non-loopback peer
        assert client.get("/metrics").status_code == 403


@pytest.mark.parametrize("constant", ["NaN", "Infinity", "-Infinity"])
def test_non_standard_json_constants_are_rejected_and_not_cached(
    client: TestClient, upstream: FakeContentful, constant: str
) -> None:
    upstream.respond("entries", text=f'{{"v": {constant}}}')

    for _ in range(2):
        response = client.get("/api/contentful/entries")
        assert response.status_code == 500
        assert response.json() == {"error": "Internal Server Error", "message": "Failed to connect to upstream API"}

    assert len(upstream.calls) == 2
    assert client.get("/api/contentful/cache/stats").json()["stats"]["keys"] == 0


@pytest.mark.parametrize(
    ("path", "encoded"),
    [
        ("/api/contentful/entries/abc%3Flimit%3D1000", b"/entries/abc%3Flimit%3D1000"),
        ("/api/contentful/entries/abc%23frag", b"/entries/abc%23frag"),
    ],
)
def test_path_ids_are_encoded_for_upstream(
    client: TestClient, upstream: FakeContentful, path: str, encoded: bytes
) -> None:
    upstream.respond("entries/abc", json={"sys": {"id": "abc"}})
    upstream.respond("entries", json={"items": []})

    response = client.get(path)

    assert response.status_code == 404
    (request,) = upstream.calls
    assert request.url.raw_path.startswith(f"/spaces/{SPACE_ID}".encode() + encoded)

    # the real entry is still fetched and cached on its own key
    assert client.get("/api/contentful/entries/abc").json() == {"sys": {"id": "abc"}}
    assert len(upstream.calls) == 2


def test_resource_path_encodes_reserved_characters() -> None:
    routes = {route.name: route for route in RESOURCE_ROUTES}
    assert routes["get_asset"].resource_path({"asset_id": "a/b?c#d"}) == "assets/a%2Fb%3Fc%23d"
    assert routes["get_entry"].resource_path({"entry_id": "5KsDBWseXY6QegucYAoacS"}) == "entries/5KsDBWseXY6QegucYAoacS"
