"""
tests/test_oauth_callback_route.py -- Integration tests for Google sign-in routes.

GET /auth/google and GET /auth/callback run through the full ASGI stack.
The authlib client is replaced by mock_google() so no network call is made:
authorize_access_token() returns a canned OIDC token response (or raises),
exactly where the real client would after verifying state and id_token.

Coverage:
  - admin / super_admin -> 302 to the dashboard with the JWT cookie set
  - user role -> 403 access denied page, no cookie, row still created
  - provider-disabled error -> 503 configuration page, users table untouched
  - consent declined, OAuthError, unverified email -> 400 sign-in failed
  - network and database failures -> 503 backend error page with a retry link
  - Google not configured -> 503 and the redirect route never calls the provider
  - Repeat sign-ins do not duplicate the user
  - A callback with no sign-in in progress is oauth_failed and writes nothing
"""

from __future__ import annotations

import logging

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from auth.tokens import AUTH_COOKIE, decode_access_token
from conftest import google_token, mock_google

CALLBACK = "/auth/callback?code=test-code&state=test"


def _store(client: TestClient):
    return client.app.state.user_store


def _sign_in(client: TestClient):
    """Start a Google sign-in, then return the callback response."""
    client.get("/auth/google")
    return client.get(CALLBACK)


def _has_auth_cookie(resp) -> bool:
    return any(AUTH_COOKIE in v for k, v in resp.headers.multi_items() if k.lower() == "set-cookie")


class TestAuthorizedSignIn:
    def test_admin_redirects_to_dashboard_with_cookie(self, client: TestClient) -> None:
        mock_google(client, google_token("priya@gentlespacerealty.com", name="Priya"))
        resp = _sign_in(client)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/admin/dashboard"
        assert resp.headers["cache-control"] == "no-store"
        assert _has_auth_cookie(resp)

        token = resp.cookies.get(AUTH_COOKIE)
        payload = decode_access_token(client.app.state.settings, token)
        assert payload["sub"] == "priya@gentlespacerealty.com"
        assert payload["role"] == "admin"

        user = _store(client).get_by_email("priya@gentlespacerealty.com")
        assert user.name == "Priya"
        assert user.oauth_provider == "google"
        assert user.last_login is not None

    def test_super_admin_gets_super_admin_role(self, client: TestClient) -> None:
        mock_google(client, google_token("admin@gentlespacerealty.com"))
        resp = _sign_in(client)
        assert resp.status_code == 302
        assert _store(client).get_by_email("admin@gentlespacerealty.com").role == "super_admin"

    def test_dashboard_reachable_after_sign_in(self, client: TestClient) -> None:
        mock_google(client, google_token("priya@gentlespacerealty.com", name="Priya"))
        _sign_in(client)
        # The TestClient cookie jar now holds the session cookie
        resp = client.get("/admin/dashboard")
        assert resp.status_code == 200
        assert "Priya" in resp.text

    def test_repeat_sign_in_does_not_duplicate(self, client: TestClient) -> None:
        mock_google(client, google_token("priya@gentlespacerealty.com"))
        assert _sign_in(client).status_code == 302
        assert _sign_in(client).status_code == 302
        assert _store(client).count_users() == 1


class TestDeniedSignIn:
    def test_regular_user_gets_access_denied_page(self, client: TestClient) -> None:
        mock_google(client, google_token("someone@gmail.com"))
        resp = _sign_in(client)
        assert resp.status_code == 403
        assert 'data-state="denied"' in resp.text
        assert 'data-error="access_denied"' in resp.text
        assert "Access denied" in resp.text
        assert "/admin/login" in resp.text
        assert not _has_auth_cookie(resp)
        assert _store(client).get_by_email("someone@gmail.com").role == "user"

    def test_denied_page_is_distinct_from_backend_error(self, client: TestClient) -> None:
        mock_google(client, google_token("someone@gmail.com"))
        resp = _sign_in(client)
        assert "backend_error" not in resp.text
        assert "Try again" not in resp.text

    def test_deactivated_account(self, client: TestClient) -> None:
        mock_google(client, google_token("priya@gentlespacerealty.com"))
        _sign_in(client)
        user = _store(client).get_by_email("priya@gentlespacerealty.com")
        _store(client).update_user(user.id, is_active=False)
        client.cookies.clear()

        resp = _sign_in(client)
        assert resp.status_code == 403
        assert 'data-error="account_disabled"' in resp.text
        assert not _has_auth_cookie(resp)


class TestFailedSignIn:
    def test_provider_not_enabled_query_error(self, client: TestClient, caplog) -> None:
        provider = mock_google(client, google_token("priya@gentlespacerealty.com"))
        description = "Unsupported provider: provider is not enabled"
        with caplog.at_level(logging.ERROR, logger="gentlespace"):
            resp = client.get("/auth/callback", params={"error": "validation_failed", "error_description": description})
        assert resp.status_code == 503
        assert 'data-state="failed"' in resp.text
        assert 'data-error="provider_not_enabled"' in resp.text
        assert "Google sign-in is not enabled" in resp.text
        assert _store(client).count_users() == 0
        provider.authorize_access_token.assert_not_called()
        assert any(description in r.getMessage() for r in caplog.records if r.levelno == logging.ERROR)

    def test_provider_disabled_during_token_exchange(self, client: TestClient) -> None:
        mock_google(client, exc=OAuthError(error="provider_disabled", description="Provider is not enabled"))
        resp = _sign_in(client)
        assert resp.status_code == 503
        assert 'data-error="provider_not_enabled"' in resp.text
        assert _store(client).count_users() == 0

    def test_consent_declined(self, client: TestClient) -> None:
        resp = client.get("/auth/callback", params={"error": "access_denied"})
        assert resp.status_code == 400
        assert 'data-error="oauth_failed"' in resp.text
        assert _store(client).count_users() == 0

    def test_token_exchange_oauth_error(self, client: TestClient) -> None:
        mock_google(client, exc=OAuthError(error="invalid_grant", description="Bad Request"))
        resp = _sign_in(client)
        assert resp.status_code == 400
        assert 'data-error="oauth_failed"' in resp.text
        assert "Try again" in resp.text
        assert not _has_auth_cookie(resp)

    def test_unverified_email(self, client: TestClient) -> None:
        mock_google(client, google_token("priya@gentlespacerealty.com", email_verified=False))
        resp = _sign_in(client)
        assert resp.status_code == 400
        assert 'data-error="oauth_failed"' in resp.text
        assert _store(client).count_users() == 0

    def test_network_failure_is_backend_error(self, client: TestClient) -> None:
        mock_google(client, exc=httpx.ConnectError("connection refused"))
        resp = _sign_in(client)
        assert resp.status_code == 503
        assert 'data-error="backend_error"' in resp.text
        assert "Try again" in resp.text
        assert "/admin/login" in resp.text

    def test_database_failure_is_backend_error(self, client: TestClient, monkeypatch) -> None:
        mock_google(client, google_token("priya@gentlespacerealty.com"))

        def broken(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(_store(client), "get_by_oauth", broken)
        resp = _sign_in(client)
        assert resp.status_code == 503
        assert 'data-error="backend_error"' in resp.text
        assert not _has_auth_cookie(resp)

    def test_detail_hidden_outside_debug(self, app_client) -> None:
        client = app_client(debug=False)
        mock_google(client, exc=OAuthError(error="invalid_grant", description="internal provider text"))
        resp = _sign_in(client)
        assert resp.status_code == 400
        assert "internal provider text" not in resp.text


class TestGoogleNotConfigured:
    def test_callback_reports_provider_not_enabled(self, app_client) -> None:
        client = app_client(google_client_id="", google_client_secret="")
        resp = _sign_in(client)
        assert resp.status_code == 503
        assert 'data-error="provider_not_enabled"' in resp.text
        assert _store(client).count_users() == 0

    def test_start_route_reports_provider_not_enabled(self, app_client) -> None:
        client = app_client(google_client_id="", google_client_secret="")
        resp = client.get("/auth/google")
        assert resp.status_code == 503
        assert 'data-error="provider_not_enabled"' in resp.text


class TestStartSignIn:
    def test_redirects_to_google(self, client: TestClient) -> None:
        provider = mock_google(client)
        resp = client.get("/auth/google")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://accounts.google.com/")
        provider.authorize_redirect.assert_awaited_once()
        redirect_uri = provider.authorize_redirect.await_args.args[1]
        assert redirect_uri.endswith("/auth/callback")

    def test_configured_redirect_uri_is_used(self, app_client) -> None:
        client = app_client(oauth_redirect_uri="https://admin.gentlespacerealty.com/auth/callback")
        provider = mock_google(client)
        client.get("/auth/google")
        assert provider.authorize_redirect.await_args.args[1] == "https://admin.gentlespacerealty.com/auth/callback"

    def test_discovery_failure_is_backend_error(self, client: TestClient) -> None:
        provider = mock_google(client)
        provider.authorize_redirect.side_effect = httpx.ConnectError("no route to host")
        resp = client.get("/auth/google")
        assert resp.status_code == 503
        assert 'data-error="backend_error"' in resp.text


class TestSignInState:
    def test_callback_without_start_is_rejected(self, client: TestClient) -> None:
        provider = mock_google(client, google_token("priya@gentlespacerealty.com"))
        resp = client.get(CALLBACK)
        assert resp.status_code == 400
        assert 'data-state="failed"' in resp.text
        assert 'data-error="oauth_failed"' in resp.text
        provider.authorize_access_token.assert_not_called()
        assert _store(client).count_users() == 0
        assert not _has_auth_cookie(resp)

    def test_callback_cannot_be_replayed(self, client: TestClient) -> None:
        mock_google(client, google_token("priya@gentlespacerealty.com"))
        assert _sign_in(client).status_code == 302
        resp = client.get(CALLBACK)
        assert resp.status_code == 400
        assert 'data-error="oauth_failed"' in resp.text

    def test_disabled_provider_fails_from_idle(self, app_client) -> None:
        client = app_client(google_client_id="", google_client_secret="")
        resp = client.get("/auth/google")
        assert resp.status_code == 503
        assert 'data-state="failed"' in resp.text
        assert _store(client).count_users() == 0

    def test_discovery_failure_clears_attempt(self, client: TestClient) -> None:
        provider = mock_google(client, google_token("priya@gentlespacerealty.com"))
        provider.authorize_redirect.side_effect = httpx.ConnectError("no route to host")
        assert client.get("/auth/google").status_code == 503
        resp = client.get(CALLBACK)
        assert resp.status_code == 400
        provider.authorize_access_token.assert_not_called()
