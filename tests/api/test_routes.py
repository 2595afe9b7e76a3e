"""Tests for the broker HTTP endpoints."""
import urllib.parse
from unittest import mock

import pytest
from fastapi.testclient import TestClient
from pydantic import SecretStr

from oauth_broker.auth.pkce import generate_pkce_pair
from oauth_broker.main import create_app
from oauth_broker.models.session import UpstreamTokens
from oauth_broker.utils.config import Settings
from oauth_broker.utils.error_handling import GENERIC_INVALID_GRANT, UpstreamExchangeError

CLIENT_REDIRECT = "https://client.example.com/cb"


def query_of(url):
    return dict(urllib.parse.parse_qsl(urllib.parse.urlparse(url).query))


@pytest.fixture
def app(settings, store):
    return create_app(settings, store)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def exchange_code(app, upstream_tokens):
    """Stub the provider token exchange."""
    with mock.patch.object(
        app.state.broker.token_client, "exchange_code", new=mock.AsyncMock(return_value=upstream_tokens)
    ) as stub:
        yield stub


def start(client, **params):
    response = client.get("/oauth/authorize", params=params, follow_redirects=False)
    assert response.status_code == 302
    return query_of(response.headers["location"])["state"]


class TestFullFlow:
    def test_authorize_callback_token_session(self, client, exchange_code):
        verifier, challenge = generate_pkce_pair()

        response = client.post("/oauth/register", json={"redirect_uris": [CLIENT_REDIRECT], "client_name": "Desktop"})
        assert response.status_code == 201

        response = client.get(
            "/oauth/authorize",
            params={
                "redirect_uri": CLIENT_REDIRECT,
                "code_challenge": challenge,
                "code_challenge_method": "S256",
                "state": "client-state",
            },
            follow_redirects=False,
        )
        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("https://acme.zendesk.com/oauth/authorizations/new?")
        provider_state = query_of(location)["state"]

        response = client.get(
            "/oauth/callback", params={"code": "provider-code", "state": provider_state}, follow_redirects=False
        )
        assert response.status_code == 302
        redirect = response.headers["location"]
        assert redirect.startswith(CLIENT_REDIRECT + "?")
        params = query_of(redirect)
        assert params["state"] == "client-state"
        exchange_code.assert_awaited_once()

        response = client.post(
            "/oauth/token",
            json={"grant_type": "authorization_code", "code": params["code"], "code_verifier": verifier},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["access_token"].startswith("pxy_")
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 86400
        assert body["scope"] == "read write"
        headers = {"Authorization": f"Bearer {body['access_token']}"}

        response = client.get("/api/session", headers=headers)
        assert response.status_code == 200
        assert response.json()["status"] == "active"
        assert response.json()["scopes"] == ["read", "write"]

        # The code is single-use
        response = client.post(
            "/oauth/token",
            json={"grant_type": "authorization_code", "code": params["code"], "code_verifier": verifier},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "invalid_grant", "error_description": GENERIC_INVALID_GRANT}

        assert client.delete("/api/session", headers=headers).status_code == 204
        assert client.get("/api/session", headers=headers).status_code == 401

    def test_callback_without_client_redirect(self, client, exchange_code):
        state = start(client)

        response = client.get("/oauth/callback", params={"code": "provider-code", "state": state})

        assert response.status_code == 200
        body = response.json()
        assert body["code"].startswith("auth_")
        assert body["state"] is None
        assert body["token_endpoint"] == "http://testserver/oauth/token"

    def test_token_form_encoded(self, client, exchange_code):
        state = start(client)
        code = client.get("/oauth/callback", params={"code": "pc", "state": state}).json()["code"]

        response = client.post(
            "/oauth/token",
            data={"grant_type": "authorization_code", "code": code, "code_verifier": "anything"},
        )

        assert response.status_code == 200
        assert response.json()["access_token"].startswith("pxy_")


class TestAuthorize:
    def test_unregistered_redirect_uri(self, client):
        client.post("/oauth/register", json={"redirect_uris": [CLIENT_REDIRECT]})

        response = client.get("/oauth/authorize", params={"redirect_uri": "https://evil.example.com/cb"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_later_registration_keeps_earlier_redirect_uris(self, client):
        client.post("/oauth/register", json={"redirect_uris": [CLIENT_REDIRECT]})
        client.post("/oauth/register", json={"redirect_uris": ["https://other.example.com/cb"]})

        response = client.get("/oauth/authorize", params={"redirect_uri": CLIENT_REDIRECT}, follow_redirects=False)

        assert response.status_code == 302

    def test_plain_challenge_rejected(self, client):
        response = client.get("/oauth/authorize", params={"code_challenge": "abc", "code_challenge_method": "plain"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_scope_forwarded(self, client):
        response = client.get("/oauth/authorize", params={"scope": "read tickets:write"}, follow_redirects=False)
        assert query_of(response.headers["location"])["scope"] == "read tickets:write"


class TestCallback:
    def test_provider_error(self, client):
        response = client.get("/oauth/callback", params={"error": "access_denied", "error_description": "User denied"})
        assert response.status_code == 400
        assert response.json() == {"error": "access_denied", "error_description": "User denied"}

    def test_missing_parameters(self, client):
        response = client.get("/oauth/callback", params={"code": "pc"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_unknown_state(self, client):
        response = client.get("/oauth/callback", params={"code": "pc", "state": "unknown"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_upstream_failure(self, app, client):
        state = start(client)
        error = UpstreamExchangeError("invalid_grant", "Code expired", upstream_status=400)

        with mock.patch.object(app.state.broker.token_client, "exchange_code", new=mock.AsyncMock(side_effect=error)):
            response = client.get("/oauth/callback", params={"code": "pc", "state": state})

        assert response.status_code == 502
        assert response.json()["error"] == "invalid_grant"


class TestToken:
    def test_unsupported_grant_type(self, client):
        response = client.post("/oauth/token", json={"grant_type": "refresh_token", "refresh_token": "x"})
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    def test_missing_verifier(self, client):
        response = client.post("/oauth/token", json={"grant_type": "authorization_code", "code": "auth_x"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_unknown_code(self, client):
        response = client.post(
            "/oauth/token",
            json={"grant_type": "authorization_code", "code": "auth_x", "code_verifier": "v"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_response_not_cacheable(self, client):
        response = client.post("/oauth/token", json={})
        assert response.headers["Cache-Control"].startswith("no-store")


class TestSession:
    def test_missing_authorization_header(self, client):
        response = client.get("/api/session")

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_token"
        challenge = response.headers["WWW-Authenticate"]
        assert challenge.startswith('Bearer realm="oauth-broker"')
        assert 'resource_metadata="http://testserver/.well-known/oauth-protected-resource"' in challenge

    def test_unknown_token(self, client):
        response = client.get("/api/session", headers={"Authorization": "Bearer pxy_unknown"})
        assert response.status_code == 401

    def test_expired_token(self, client, clock, active_session):
        _, proxy_token = active_session
        clock.advance(hours=24)

        response = client.get("/api/session", headers={"Authorization": f"Bearer {proxy_token}"})
        assert response.status_code == 401

    def test_refresh_on_access(self, app, client, clock, active_session):
        session, proxy_token = active_session
        clock.advance(hours=1)
        refreshed = UpstreamTokens(access_token="up2", expires_in=3600)

        with mock.patch.object(app.state.broker.token_client, "refresh", new=mock.AsyncMock(return_value=refreshed)):
            response = client.get("/api/session", headers={"Authorization": f"Bearer {proxy_token}"})

        assert response.status_code == 200
        assert session.upstream_access_token.get_secret_value() == "up2"


class TestDiscovery:
    def test_authorization_server_metadata(self, client):
        body = client.get("/.well-known/oauth-authorization-server").json()
        assert body["authorization_endpoint"] == "http://testserver/oauth/authorize"
        assert body["registration_endpoint"] == "http://testserver/oauth/register"

    def test_protected_resource_metadata(self, client):
        body = client.get("/.well-known/oauth-protected-resource").json()
        assert body["resource"] == "http://testserver/api"

    def test_register_rejects_bad_redirect_uris(self, client):
        response = client.post("/oauth/register", json={"redirect_uris": "https://a/cb"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_redirect_uri"


class TestApplication:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["service"] == "oauth-broker"

    def test_request_id(self, client):
        assert client.get("/health", headers={"X-Request-ID": "abc"}).headers["X-Request-ID"] == "abc"

    def test_unconfigured_oauth(self, store):
        client = TestClient(create_app(Settings(service_env="test"), store))

        response = client.get("/oauth/authorize")

        assert response.status_code == 500
        assert response.json()["error"] == "server_error"
        assert client.get("/health").status_code == 200

    def test_metrics_requires_credentials(self, store, settings):
        settings.metrics_user = "metrics"
        settings.metrics_pass = SecretStr("secret")
        client = TestClient(create_app(settings, store))

        assert client.get("/metrics/").status_code == 401
        assert client.get("/metrics/", auth=("metrics", "secret")).status_code == 200
