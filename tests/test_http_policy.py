"""
tests/test_http_policy.py -- Rate limiting, caching headers and host checks.

Coverage:
  - RATE_LIMIT applies to every route per client; excess requests get a 429
    envelope with Retry-After
  - The health check is exempt from the limit
  - /static assets are publicly cacheable for STATIC_CACHE_SECONDS
  - Successful API GETs are privately cacheable for API_CACHE_SECONDS
  - Responses that set their own Cache-Control keep it
  - Unknown Host headers are rejected
  - Unknown routes return the JSON error envelope
"""

from __future__ import annotations


class TestRateLimit:
    def test_excess_requests_get_429(self, app_client) -> None:
        client = app_client(rate_limit_enabled=True, rate_limit="3 per minute")
        for _ in range(3):
            assert client.get("/api/v1/auth/providers").status_code == 200
        resp = client.get("/api/v1/auth/providers")
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert "retry-after" in resp.headers

    def test_limit_covers_web_routes(self, app_client) -> None:
        client = app_client(rate_limit_enabled=True, rate_limit="2 per minute")
        assert client.get("/admin/login").status_code == 200
        assert client.get("/admin/login").status_code == 200
        assert client.get("/admin/login").status_code == 429

    def test_health_is_exempt(self, app_client) -> None:
        client = app_client(rate_limit_enabled=True, rate_limit="2 per minute")
        for _ in range(5):
            assert client.get("/api/v1/health").status_code == 200

    def test_disabled_limiter_never_throttles(self, client) -> None:
        for _ in range(10):
            assert client.get("/api/v1/auth/providers").status_code == 200


class TestCacheHeaders:
    def test_static_assets_are_public(self, client) -> None:
        resp = client.get("/static/app.css")
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "public, max-age=86400"

    def test_api_get_is_private(self, client) -> None:
        resp = client.get("/api/v1/auth/providers")
        assert resp.headers["cache-control"] == "private, max-age=300"

    def test_cache_durations_follow_settings(self, app_client) -> None:
        client = app_client(static_cache_seconds=60, api_cache_seconds=10)
        assert client.get("/static/app.css").headers["cache-control"] == "public, max-age=60"
        assert client.get("/api/v1/auth/providers").headers["cache-control"] == "private, max-age=10"

    def test_api_errors_are_not_cached(self, client) -> None:
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert "cache-control" not in resp.headers

    def test_own_cache_control_is_kept(self, client) -> None:
        resp = client.post("/api/v1/auth/logout")
        assert resp.headers["cache-control"] == "no-store"


class TestRequestGuards:
    def test_unknown_host_rejected(self, client) -> None:
        resp = client.get("/api/v1/health", headers={"host": "evil.example"})
        assert resp.status_code == 400

    def test_unknown_route_returns_envelope(self, client) -> None:
        resp = client.get("/api/v1/nope")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "http_404"

    def test_docs_disabled_outside_debug(self, app_client) -> None:
        assert app_client(debug=False).get("/docs").status_code == 404
