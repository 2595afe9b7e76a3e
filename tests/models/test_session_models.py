"""Tests for session lifecycle models."""
from datetime import datetime, timedelta, timezone

from pydantic import SecretStr

from oauth_broker.models.session import (
    AuthorizationCode,
    Session,
    SessionStatus,
    UpstreamTokens,
)

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_session(**kwargs):
    return Session(state="s", upstream_verifier=SecretStr("v"), created_at=NOW, **kwargs)


def active_fields(**overrides):
    fields = {
        "upstream_access_token": SecretStr("up"),
        "upstream_refresh_token": SecretStr("refresh"),
        "upstream_expiry": NOW + timedelta(hours=1),
        "proxy_access_token": "pxy_x",
        "proxy_expiry": NOW + timedelta(hours=24),
    }
    fields.update(overrides)
    return fields


class TestSessionStatus:
    def test_pending(self):
        assert make_session().status(NOW) == SessionStatus.PENDING

    def test_authorized(self):
        session = make_session(**active_fields(proxy_access_token=None, proxy_expiry=None))
        assert session.status(NOW) == SessionStatus.AUTHORIZED

    def test_active(self):
        assert make_session(**active_fields()).status(NOW) == SessionStatus.ACTIVE

    def test_stale_upstream_within_buffer(self):
        session = make_session(**active_fields())
        assert session.status(NOW + timedelta(minutes=59)) == SessionStatus.STALE_UPSTREAM

    def test_stale_upstream_without_expiry(self):
        session = make_session(**active_fields(upstream_expiry=None))
        assert session.status(NOW) == SessionStatus.STALE_UPSTREAM

    def test_upstream_expired_without_refresh_token(self):
        session = make_session(**active_fields(upstream_refresh_token=None))
        assert session.status(NOW + timedelta(hours=1)) == SessionStatus.EXPIRED

    def test_proxy_expired(self):
        session = make_session(**active_fields())
        assert session.status(NOW + timedelta(hours=24)) == SessionStatus.EXPIRED

    def test_max_age(self):
        assert make_session().status(NOW + timedelta(hours=24)) == SessionStatus.EXPIRED


def test_session_ids_unique():
    assert make_session().id != make_session().id


def test_authorization_code_expiry():
    record = AuthorizationCode(code="auth_x", session_id="sid", created_at=NOW, expires_at=NOW + timedelta(minutes=10))

    assert record.is_expired(NOW + timedelta(minutes=9)) is False
    assert record.is_expired(NOW + timedelta(minutes=10)) is True
    assert record.used is False


def test_upstream_token_scopes():
    assert UpstreamTokens(access_token="a", scope="read  write").scopes == ["read", "write"]
    assert UpstreamTokens(access_token="a").scopes == []
