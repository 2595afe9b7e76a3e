"""FastAPI dependencies shared by the broker routes."""

from fastapi import Request

from oauth_broker.auth.broker import Broker
from oauth_broker.models.session import Session
from oauth_broker.utils.error_handling import ConfigurationError, InvalidToken


def get_broker(request: Request) -> Broker:
    """
    Return the application's broker.

    Raises:
        ConfigurationError: If the broker could not be configured at startup
    """
    broker = getattr(request.app.state, "broker", None)
    if broker is None:
        raise getattr(request.app.state, "config_error", None) or ConfigurationError("OAuth is not configured")
    return broker


async def require_session(request: Request) -> Session:
    """
    Authenticate the request's bearer token and return its session.

    The proxy token is kept on ``request.state.proxy_token`` for handlers
    that act on the session itself.
    """
    broker = get_broker(request)
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidToken("Missing or invalid Authorization header")

    token = token.strip()
    session = await broker.authenticate(token)
    request.state.proxy_token = token
    request.state.session_id = session.id
    return session
