"""Global test fixtures and configuration."""

from datetime import datetime, timedelta, timezone

import pytest

from oauth_broker.auth.broker import Broker
from oauth_broker.auth.session_store import SessionStore
from oauth_broker.models.session import UpstreamTokens
from oauth_broker.utils.config import Settings

TEST_CLIENT_ID = "test_client_id"
TEST_CLIENT_SECRET = "test_client_secret"
TEST_PROVIDER_URL = "https://acme.zendesk.com"
TEST_SERVER_URL = "http://testserver"


class FakeClock:
    """Deterministic clock for expiry tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """In-memory store on the fake clock, without a background sweep."""
    store = SessionStore(clock=clock, start_cleanup=False)
    yield store
    store.close()


@pytest.fixture
def upstream_tokens():
    return UpstreamTokens(
        access_token="up1",
        token_type="Bearer",
        refresh_token="refresh1",
        expires_in=3600,
        scope="read write",
    )


@pytest.fixture
def broker(store):
    return Broker(
        store,
        client_id=TEST_CLIENT_ID,
        client_secret=TEST_CLIENT_SECRET,
        provider_base_url=TEST_PROVIDER_URL,
        redirect_uri=f"{TEST_SERVER_URL}/oauth/callback",
        server_base_url=TEST_SERVER_URL,
        retry_backoff_factor=0,
    )


@pytest.fixture
def active_session(store, upstream_tokens):
    """A session that completed the whole handshake; returns (session, proxy_token)."""
    session = store.create_session("active-state", "upstream-verifier")
    code = store.issue_authorization_code(session, upstream_tokens)
    result = store.redeem_authorization_code(code, "any-verifier")
    return session, result.proxy_access_token


@pytest.fixture
def settings():
    return Settings(
        service_env="test",
        oauth_client_id=TEST_CLIENT_ID,
        oauth_client_secret=TEST_CLIENT_SECRET,
        provider_base_url=TEST_PROVIDER_URL,
        server_base_url=TEST_SERVER_URL,
    )
