"""Downstream-facing OAuth endpoints and the session resource."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from oauth_broker.api.dependencies import get_broker, require_session
from oauth_broker.auth.broker import Broker
from oauth_broker.models.session import Session
from oauth_broker.utils.error_handling import BrokerError, SessionNotFound
from oauth_broker.utils.logging_utils import redact_sensitive_data

logger = logging.getLogger(__name__)

router = APIRouter()


def _oauth_error(error: str, description: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "error_description": description})


def _validate_redirect_uri(broker: Broker, redirect_uri: Optional[str]) -> bool:
    """
    A redirect URI must match the registered ones once a client has registered any.

    Advisory only: registration is open to anyone, see :meth:`Broker.register_client`.
    """
    if not redirect_uri:
        return True
    client = broker.store.get_registered_client(broker.client_id)
    if client is None:
        return True
    allowed = client.metadata.get("redirect_uris") or []
    return not allowed or redirect_uri in allowed


@router.get("/oauth/authorize")
async def authorize(
    redirect_uri: Optional[str] = None,
    code_challenge: Optional[str] = None,
    code_challenge_method: Optional[str] = None,
    state: Optional[str] = None,
    scope: Optional[str] = None,
    broker: Broker = Depends(get_broker),
) -> Response:
    """
    Start the handshake and redirect the user to the provider.

    Args:
        redirect_uri: Client redirect URI for the authorization code
        code_challenge: Client S256 PKCE challenge
        code_challenge_method: Must be S256 when a challenge is sent
        state: Client state, returned unchanged with the code
        scope: Space separated scopes; defaults to the configured scopes
    """
    if not _validate_redirect_uri(broker, redirect_uri):
        return _oauth_error("invalid_request", "redirect_uri is not registered for this client")

    scopes = scope.split() if scope else None
    auth_url = broker.start_authorization(
        downstream_redirect_uri=redirect_uri,
        downstream_challenge=code_challenge,
        scopes=scopes,
        downstream_state=state,
        code_challenge_method=code_challenge_method,
    )
    return RedirectResponse(auth_url, status_code=302)


@router.get("/oauth/callback")
async def provider_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    broker: Broker = Depends(get_broker),
) -> Response:
    """Receive the provider redirect and hand an authorization code to the client."""
    if error:
        return _oauth_error(error, error_description or "Authorization failed")
    if not code or not state:
        return _oauth_error("invalid_request", "Missing code or state parameter")

    session = broker.store.find_by_state(state)
    if session is None:
        raise SessionNotFound("Invalid or expired state parameter")

    authorization_code = await broker.handle_provider_callback(state, code)
    logger.info("Authorization successful for session %s", session.id)

    redirect_url = broker.build_client_redirect(session, authorization_code)
    if redirect_url:
        return RedirectResponse(redirect_url, status_code=302)

    return JSONResponse({
        "code": authorization_code,
        "state": session.downstream_state,
        "token_endpoint": f"{broker.server_base_url}/oauth/token",
    })


async def _read_token_request(request: Request) -> Dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
    form = await request.form()
    return dict(form)


@router.post("/oauth/token")
async def token(request: Request, broker: Broker = Depends(get_broker)) -> Response:
    """Redeem an authorization code for a proxy access token."""
    body = await _read_token_request(request)
    logger.info("Token request", extra={"body": redact_sensitive_data(body)})

    grant_type = body.get("grant_type")
    if grant_type != "authorization_code":
        return _oauth_error("unsupported_grant_type", "Only authorization_code grant type is supported")

    code = body.get("code")
    code_verifier = body.get("code_verifier")
    if not code or not code_verifier:
        return _oauth_error(
            "invalid_request",
            "Missing required parameters: code and code_verifier are required",
        )

    result = broker.redeem_token(code, code_verifier)
    return JSONResponse({
        "access_token": result.proxy_access_token,
        "token_type": "Bearer",
        "expires_in": result.expires_in,
        "scope": " ".join(result.session.scopes),
    })


@router.post("/oauth/register", status_code=201)
async def register(request: Request, broker: Broker = Depends(get_broker)) -> Dict[str, Any]:
    """OAuth 2.0 Dynamic Client Registration (RFC 7591)."""
    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        raise BrokerError("Registration body must be a JSON object", error="invalid_client_metadata", status_code=400)

    redirect_uris = body.get("redirect_uris") or []
    if not isinstance(redirect_uris, list) or not all(isinstance(uri, str) for uri in redirect_uris):
        raise BrokerError("redirect_uris must be a list of strings", error="invalid_redirect_uri", status_code=400)

    metadata = {k: v for k, v in body.items() if k != "redirect_uris"}
    return broker.register_client(redirect_uris, metadata)


@router.get("/.well-known/oauth-authorization-server")
async def authorization_server_metadata(broker: Broker = Depends(get_broker)) -> Dict[str, Any]:
    return broker.authorization_server_metadata()


@router.get("/.well-known/oauth-protected-resource")
async def protected_resource_metadata(broker: Broker = Depends(get_broker)) -> Dict[str, Any]:
    return broker.protected_resource_metadata()


@router.get("/api/session")
async def get_session(
    session: Session = Depends(require_session),
    broker: Broker = Depends(get_broker),
) -> Dict[str, Any]:
    """Describe the session behind the presented bearer token."""
    return {
        "session_id": session.id,
        "scopes": session.scopes,
        "status": session.status(broker.store.clock()).value,
        "expires_at": session.proxy_expiry.isoformat() if session.proxy_expiry else None,
        "upstream_expires_at": session.upstream_expiry.isoformat() if session.upstream_expiry else None,
    }


@router.delete("/api/session", status_code=204)
async def delete_session(
    request: Request,
    session: Session = Depends(require_session),
    broker: Broker = Depends(get_broker),
) -> Response:
    """End the session behind the presented bearer token."""
    broker.store.delete_session(request.state.proxy_token)
    logger.info("Session %s ended by client", session.id)
    return Response(status_code=204)
