"""Models for broker sessions, authorization codes and registered clients."""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, SecretStr

PROXY_TOKEN_TTL = timedelta(hours=24)
SESSION_MAX_AGE = timedelta(hours=24)
AUTHORIZATION_CODE_TTL = timedelta(minutes=10)
PENDING_STATE_TTL = timedelta(minutes=10)
UPSTREAM_REFRESH_BUFFER = timedelta(seconds=60)


def utcnow() -> datetime:
    """Default clock: timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Conceptual lifecycle state of a session, derived from its fields."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    ACTIVE = "active"
    STALE_UPSTREAM = "stale_upstream"
    EXPIRED = "expired"


class Session(BaseModel):
    """One OAuth handshake and the credential bundle it produced."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Opaque session identifier")
    state: str = Field(..., description="CSRF state sent to the provider")
    upstream_verifier: SecretStr = Field(..., description="PKCE verifier for the provider leg")
    downstream_challenge: Optional[str] = Field(None, description="PKCE challenge supplied by the client")
    downstream_redirect_uri: Optional[str] = Field(None, description="Client redirect URI")
    downstream_state: Optional[str] = Field(None, description="Client state, echoed back on redirect")

    upstream_access_token: Optional[SecretStr] = None
    upstream_refresh_token: Optional[SecretStr] = None
    upstream_expiry: Optional[datetime] = None

    proxy_access_token: Optional[str] = None
    proxy_expiry: Optional[datetime] = None

    scopes: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    def is_older_than(self, max_age: timedelta, now: datetime) -> bool:
        return now - self.created_at >= max_age

    def is_proxy_expired(self, now: datetime) -> bool:
        return self.proxy_expiry is not None and now >= self.proxy_expiry

    def is_upstream_expired(self, now: datetime) -> bool:
        return self.upstream_expiry is not None and now >= self.upstream_expiry

    def status(self, now: datetime, buffer: timedelta = UPSTREAM_REFRESH_BUFFER) -> SessionStatus:
        """
        Derive the lifecycle state at ``now``.

        Args:
            now: Current time from the store's clock
            buffer: Window before upstream expiry in which a refresh is due

        Returns:
            SessionStatus: The derived state
        """
        if self.is_older_than(SESSION_MAX_AGE, now) or self.is_proxy_expired(now):
            return SessionStatus.EXPIRED
        if self.upstream_access_token is None:
            return SessionStatus.PENDING
        if self.is_upstream_expired(now) and self.upstream_refresh_token is None:
            return SessionStatus.EXPIRED
        if self.proxy_access_token is None:
            return SessionStatus.AUTHORIZED
        if self.upstream_expiry is None or now >= self.upstream_expiry - buffer:
            return SessionStatus.STALE_UPSTREAM
        return SessionStatus.ACTIVE


class AuthorizationCode(BaseModel):
    """Single-use code binding a session to a pending proxy-token mint."""

    code: str
    session_id: str
    created_at: datetime
    expires_at: datetime
    used: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class RegisteredClient(BaseModel):
    """Client metadata recorded by dynamic client registration."""

    client_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    registered_at: datetime = Field(default_factory=utcnow)


class UpstreamTokens(BaseModel):
    """Token set returned by the provider's token endpoint."""

    access_token: str
    token_type: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None

    @property
    def scopes(self) -> List[str]:
        return [s for s in (self.scope or "").split(" ") if s]


class RedemptionResult(BaseModel):
    """Outcome of a successful authorization-code redemption."""

    proxy_access_token: str
    expires_in: int
    session: Session
