"""
OAuth2 provider integration.

This module builds the provider's authorization URL and performs the two
token endpoint calls (``authorization_code`` and ``refresh_token`` grants)
against the upstream provider, validating the shape of every response.
"""
import logging
import time
import urllib.parse
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import ValidationError

from oauth_broker.metrics import upstream_token_request_latency_seconds, upstream_token_requests_total
from oauth_broker.models.session import UpstreamTokens
from oauth_broker.utils.error_handling import ConfigurationError, UpstreamExchangeError
from oauth_broker.utils.logging_utils import redact_sensitive_data

logger = logging.getLogger(__name__)

AUTHORIZATION_PATH = "/oauth/authorizations/new"
TOKEN_PATH = "/oauth/tokens"


def build_authorization_url(
    provider_base_url: str,
    client_id: str,
    redirect_uri: str,
    state: str,
    code_challenge: str,
    scopes: Optional[Union[str, List[str]]] = None,
) -> str:
    """
    Build the provider's OAuth2 authorization URL with PKCE.

    Args:
        provider_base_url: Provider base URL, e.g. https://acme.zendesk.com
        client_id: The OAuth2 client ID
        redirect_uri: The redirect URI after authorization
        state: A random state parameter for CSRF protection
        code_challenge: PKCE code challenge derived from the code verifier
        scopes: Scope(s) to request, space-joined into one parameter

    Returns:
        str: The complete authorization URL

    Raises:
        ConfigurationError: If ``provider_base_url`` or ``client_id`` is empty
    """
    if not provider_base_url:
        raise ConfigurationError("Provider base URL is not configured")
    if not client_id:
        raise ConfigurationError("OAuth client ID is not configured")

    if scopes is None:
        scopes = []
    elif isinstance(scopes, str):
        scopes = [s for s in scopes.split(" ") if s]

    params: Dict[str, str] = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": " ".join(scopes),
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }

    return f"{provider_base_url.rstrip('/')}{AUTHORIZATION_PATH}?{urllib.parse.urlencode(params)}"


class TokenExchangeClient:
    """Client for the provider's token endpoint."""

    def __init__(
        self,
        provider_base_url: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout_seconds: float = 30,
    ) -> None:
        if not provider_base_url:
            raise ConfigurationError("Provider base URL is not configured")
        if not client_id or not client_secret:
            raise ConfigurationError("OAuth client ID and client secret are required")

        self.token_url = f"{provider_base_url.rstrip('/')}{TOKEN_PATH}"
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = httpx.Timeout(timeout_seconds)

    async def exchange_code(self, code: str, code_verifier: str) -> UpstreamTokens:
        """
        Exchange a provider authorization code for upstream tokens.

        Args:
            code: Authorization code from the provider callback
            code_verifier: PKCE verifier matching the challenge sent to the provider

        Returns:
            UpstreamTokens: The validated token response

        Raises:
            UpstreamExchangeError: On a non-2xx status, a network failure or a
                malformed response
        """
        return await self._request_tokens({
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "code_verifier": code_verifier,
        })

    async def refresh(self, refresh_token: str) -> UpstreamTokens:
        """
        Obtain a fresh upstream access token with a refresh token.

        Raises:
            UpstreamExchangeError: As for :meth:`exchange_code`
        """
        return await self._request_tokens({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        })

    async def _request_tokens(self, body: Dict[str, str]) -> UpstreamTokens:
        grant_type = body["grant_type"]
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        logger.debug("Token request", extra={"grant_type": grant_type, "body": redact_sensitive_data(body)})

        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.token_url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            upstream_token_requests_total.labels(grant_type=grant_type, status="timeout").inc()
            logger.error("Timed out calling token endpoint (%s): %s", grant_type, e)
            raise UpstreamExchangeError("timeout", f"Token request timed out: {e}", retryable=True) from e
        except httpx.RequestError as e:
            upstream_token_requests_total.labels(grant_type=grant_type, status="network_error").inc()
            logger.error("Network error calling token endpoint (%s): %s", grant_type, e)
            raise UpstreamExchangeError("network_error", f"Request failed: {e}", retryable=True) from e
        finally:
            upstream_token_request_latency_seconds.labels(grant_type=grant_type).observe(time.perf_counter() - started)

        try:
            tokens = self._parse_response(response)
        except UpstreamExchangeError:
            upstream_token_requests_total.labels(grant_type=grant_type, status="error").inc()
            raise
        upstream_token_requests_total.labels(grant_type=grant_type, status="success").inc()
        return tokens

    @staticmethod
    def _parse_response(response: httpx.Response) -> UpstreamTokens:
        if not response.is_success:
            error, description = "invalid_response", None
            try:
                error_data = response.json()
            except ValueError:
                error_data = None
            if isinstance(error_data, dict):
                error = error_data.get("error") or error
                description = error_data.get("error_description")
            logger.warning(
                "Token endpoint returned %s: %s",
                response.status_code, error,
                extra={"upstream_status": response.status_code},
            )
            raise UpstreamExchangeError(
                error,
                description or f"Token request failed with status {response.status_code}",
                upstream_status=response.status_code,
            )

        try:
            data: Any = response.json()
        except ValueError:
            raise UpstreamExchangeError("invalid_response", "Malformed upstream response: body is not JSON")

        if not isinstance(data, dict) or not data.get("access_token"):
            raise UpstreamExchangeError("invalid_response", "Malformed upstream response: missing access_token")

        token_type = data.get("token_type")
        if token_type and str(token_type).lower() != "bearer":
            raise UpstreamExchangeError(
                "invalid_response",
                f'Malformed upstream response: expected token_type "Bearer", got "{token_type}"',
            )

        try:
            return UpstreamTokens(**data)
        except ValidationError as e:
            logger.error("Failed to parse token response: %s", e)
            raise UpstreamExchangeError("invalid_response", f"Malformed upstream response: {e}") from e
