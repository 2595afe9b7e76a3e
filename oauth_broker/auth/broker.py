"""High-level OAuth broker.

Wires the PKCE helpers, the authorization URL builder, the token exchange
client and the session store together to serve the provider handshake, the
downstream code redemption and bearer-token validation.
"""
from __future__ import annotations

import asyncio
import base64
import logging
import os
import urllib.parse
import weakref
from typing import Any, Dict, List, Optional

from oauth_broker.auth.oauth import TokenExchangeClient, build_authorization_url
from oauth_broker.auth.pkce import generate_pkce_pair
from oauth_broker.auth.session_store import SessionStore
from oauth_broker.models.session import RedemptionResult, Session
from oauth_broker.utils.config import Settings
from oauth_broker.utils.error_handling import (
    BrokerError,
    ConfigurationError,
    InvalidToken,
    SessionNotFound,
    TokenExpired,
    UpstreamAuthError,
    UpstreamExchangeError,
)

logger = logging.getLogger(__name__)

__all__ = ["Broker", "generate_state"]

MAX_REFRESH_BACKOFF_SECONDS = 2.0


def generate_state() -> str:
    """Random CSRF state: 16 bytes, base64url without padding."""
    return base64.urlsafe_b64encode(os.urandom(16)).decode("ascii").rstrip("=")


class Broker:
    """Coordinates the OAuth handshake and the session lifecycle."""

    def __init__(
        self,
        store: SessionStore,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        provider_base_url: Optional[str],
        redirect_uri: str,
        server_base_url: str = "http://localhost:3030",
        default_scopes: Optional[List[str]] = None,
        request_timeout_seconds: float = 30,
        max_retries: int = 2,
        retry_backoff_factor: float = 1.0,
    ) -> None:
        missing = [
            name for name, value in (
                ("client_id", client_id),
                ("client_secret", client_secret),
                ("provider base URL", provider_base_url),
            ) if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing required OAuth configuration: {', '.join(missing)}")

        self.store = store
        self.client_id = client_id
        self.provider_base_url = provider_base_url.rstrip("/")
        self.redirect_uri = redirect_uri
        self.server_base_url = server_base_url.rstrip("/")
        self.default_scopes = list(default_scopes or ["read", "write"])
        self.max_retries = max(1, max_retries)
        self.retry_backoff_factor = retry_backoff_factor
        # Held by whichever request is refreshing a session; dropped once nobody waits on it
        self._refresh_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self.token_client = TokenExchangeClient(
            provider_base_url=self.provider_base_url,
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
            timeout_seconds=request_timeout_seconds,
        )

    @classmethod
    def from_settings(cls, settings: Settings, store: SessionStore) -> "Broker":
        """Build a broker from application settings."""
        return cls(
            store,
            client_id=settings.oauth_client_id,
            client_secret=settings.oauth_client_secret.get_secret_value() if settings.oauth_client_secret else None,
            provider_base_url=settings.provider_url,
            redirect_uri=settings.redirect_uri,
            server_base_url=settings.server_base_url,
            default_scopes=settings.default_scopes,
            request_timeout_seconds=settings.request_timeout_seconds,
            max_retries=settings.max_retries,
            retry_backoff_factor=settings.retry_backoff_factor,
        )

    # ---------------------- provider handshake ------------------------------
    def start_authorization(
        self,
        downstream_redirect_uri: Optional[str] = None,
        downstream_challenge: Optional[str] = None,
        scopes: Optional[List[str]] = None,
        downstream_state: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
    ) -> str:
        """
        Begin a handshake and return the provider URL to send the user to.

        Args:
            downstream_redirect_uri: Where the client wants its code delivered
            downstream_challenge: The client's S256 PKCE challenge
            scopes: Scopes to request from the provider
            downstream_state: The client's own state, echoed back later
            code_challenge_method: Must be S256 when a challenge is supplied

        Returns:
            str: Provider authorization URL

        Raises:
            BrokerError: If the client asks for an unsupported challenge method
        """
        if downstream_challenge and code_challenge_method not in (None, "S256"):
            raise BrokerError(
                "Only the S256 code_challenge_method is supported",
                error="invalid_request",
                status_code=400,
            )

        upstream_verifier, upstream_challenge = generate_pkce_pair()
        state = generate_state()
        session = self.store.create_session(
            state,
            upstream_verifier,
            downstream_redirect_uri=downstream_redirect_uri,
            downstream_challenge=downstream_challenge,
            downstream_state=downstream_state,
        )
        logger.info("Starting authorization flow for session %s", session.id)
        return build_authorization_url(
            provider_base_url=self.provider_base_url,
            client_id=self.client_id,
            redirect_uri=self.redirect_uri,
            state=state,
            code_challenge=upstream_challenge,
            scopes=scopes or self.default_scopes,
        )

    async def handle_provider_callback(self, state: str, code: str) -> str:
        """
        Exchange the provider's code and mint an authorization code for the client.

        Raises:
            SessionNotFound: Unknown or expired ``state``
            UpstreamExchangeError: The provider rejected the exchange
        """
        session = self.store.find_by_state(state)
        if session is None:
            raise SessionNotFound("Invalid or expired state parameter")

        logger.info("Processing provider callback for session %s", session.id)
        tokens = await self.token_client.exchange_code(code, session.upstream_verifier.get_secret_value())
        return self.store.issue_authorization_code(session, tokens)

    def build_client_redirect(self, session: Session, code: str) -> Optional[str]:
        """Client redirect URL carrying ``code`` and the client's state, if any."""
        if not session.downstream_redirect_uri:
            return None
        parts = urllib.parse.urlsplit(session.downstream_redirect_uri)
        query = urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
        query.append(("code", code))
        if session.downstream_state:
            query.append(("state", session.downstream_state))
        return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))

    # ---------------------- downstream tokens -------------------------------
    def redeem_token(self, code: str, downstream_verifier: Optional[str]) -> RedemptionResult:
        return self.store.redeem_authorization_code(code, downstream_verifier)

    async def ensure_fresh_upstream_token(self, proxy_token: str) -> Session:
        """
        Refresh the upstream token behind ``proxy_token`` if it is about to expire.

        Only one refresh per session is in flight at a time: concurrent
        callers wait for it and then reuse its result, so a rotated refresh
        token is never presented twice. Transient failures are retried up to
        ``max_retries`` attempts with a capped exponential backoff; provider
        rejections are not retried.

        Raises:
            InvalidToken: Unknown proxy token
            UpstreamAuthError: No refresh token is available
            UpstreamExchangeError: The refresh failed
        """
        session = self.store.get_session_by_proxy_token(proxy_token)
        if session is None:
            raise InvalidToken("Invalid or expired token")
        if not self.store.is_upstream_token_expiring(session):
            return session

        lock = self._refresh_locks.get(session.id)
        if lock is None:
            lock = self._refresh_locks[session.id] = asyncio.Lock()
        async with lock:
            session = self.store.get_session_by_proxy_token(proxy_token)
            if session is None:
                raise InvalidToken("Session ended during token refresh")
            if not self.store.is_upstream_token_expiring(session):
                return session
            return await self._refresh_upstream(proxy_token, session)

    async def _refresh_upstream(self, proxy_token: str, session: Session) -> Session:
        if session.upstream_refresh_token is None:
            raise UpstreamAuthError("Upstream token expired and no refresh token is available")

        logger.info("Refreshing upstream token for session %s", session.id)
        refresh_token = session.upstream_refresh_token.get_secret_value()
        attempt = 1
        while True:
            try:
                tokens = await self.token_client.refresh(refresh_token)
                break
            except UpstreamExchangeError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                delay = min(self.retry_backoff_factor * 2 ** (attempt - 1), MAX_REFRESH_BACKOFF_SECONDS)
                logger.warning(
                    "Transient upstream refresh failure for session %s (attempt %d): %s",
                    session.id, attempt, e,
                )
                await asyncio.sleep(delay)
                attempt += 1

        updated = self.store.update_upstream_tokens(proxy_token, tokens)
        if updated is None:
            raise InvalidToken("Session ended during token refresh")
        logger.info("Upstream token refresh successful for session %s", session.id)
        return updated

    async def authenticate(self, proxy_token: str) -> Session:
        """
        Validate a bearer token presented by a downstream caller.

        Expired or unrefreshable sessions are deleted so the client restarts
        the authorization flow.

        Raises:
            InvalidToken: Unknown token
            TokenExpired: Proxy token past its expiry
            UpstreamAuthError: Upstream credentials could not be refreshed
        """
        session = self.store.get_session_by_proxy_token(proxy_token)
        if session is None:
            raise InvalidToken("Invalid or expired token")

        if self.store.is_proxy_token_expired(session):
            logger.info("Proxy token expired for session %s", session.id)
            self.store.delete_session(proxy_token)
            raise TokenExpired("Token expired")

        try:
            return await self.ensure_fresh_upstream_token(proxy_token)
        except (UpstreamExchangeError, UpstreamAuthError) as e:
            logger.error("Upstream token refresh failed for session %s: %s", session.id, e)
            self.store.delete_session(proxy_token)
            raise UpstreamAuthError("Token refresh failed. Please re-authorize.") from e

    # ---------------------- client registration & discovery -----------------
    def register_client(self, redirect_uris: List[str], metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Record a dynamic registration and describe the pre-configured public client.

        Every registration shares the one provider client, so redirect URIs
        accumulate: a new registration adds to the allowed list and never
        replaces URIs registered earlier. Registration is unauthenticated,
        which makes the redirect URI check advisory rather than a security
        boundary.
        """
        existing = self.store.get_registered_client(self.client_id)
        allowed = list(existing.metadata.get("redirect_uris") or []) if existing else []
        for uri in redirect_uris:
            if uri not in allowed:
                allowed.append(uri)

        record = self.store.register_client(
            self.client_id,
            {**(metadata or {}), "redirect_uris": allowed},
        )
        logger.info("Registered client with %d redirect URIs (%d allowed)", len(redirect_uris), len(allowed))
        return {
            "client_id": self.client_id,
            "client_id_issued_at": int(record.registered_at.timestamp()),
            "token_endpoint_auth_method": "none",
            "redirect_uris": list(redirect_uris),
            "grant_types": ["authorization_code"],
            "response_types": ["code"],
            "scope": " ".join(self.default_scopes),
            "application_type": "web",
            "client_name": "OAuth Broker Client",
        }

    def authorization_server_metadata(self) -> Dict[str, Any]:
        """RFC 8414 authorization server metadata."""
        return {
            "issuer": self.server_base_url,
            "authorization_endpoint": f"{self.server_base_url}/oauth/authorize",
            "token_endpoint": f"{self.server_base_url}/oauth/token",
            "registration_endpoint": f"{self.server_base_url}/oauth/register",
            "grant_types_supported": ["authorization_code"],
            "response_types_supported": ["code"],
            "response_modes_supported": ["query"],
            "scopes_supported": self.default_scopes,
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["none"],
        }

    def protected_resource_metadata(self) -> Dict[str, Any]:
        """RFC 9728 protected resource metadata."""
        return {
            "resource": f"{self.server_base_url}/api",
            "authorization_servers": [self.server_base_url],
            "scopes_supported": self.default_scopes,
            "bearer_methods_supported": ["header"],
        }

    @property
    def resource_metadata_url(self) -> str:
        return f"{self.server_base_url}/.well-known/oauth-protected-resource"
