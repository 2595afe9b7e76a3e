"""Main entry point for the OAuth Broker Service."""

import base64
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import make_asgi_app
from starlette.middleware.cors import CORSMiddleware
from starlette.status import HTTP_401_UNAUTHORIZED

from oauth_broker.api.middleware import CacheControl, RateLimiter, RequestIDMiddleware
from oauth_broker.api.routes import router as oauth_router
from oauth_broker.auth.broker import Broker
from oauth_broker.auth.session_store import SessionStore
from oauth_broker.utils.config import Settings, get_settings
from oauth_broker.utils.error_handling import BrokerError, ConfigurationError
from oauth_broker.utils.logging_utils import setup_json_logging

logger = logging.getLogger(__name__)


def _configure_logging(settings: Settings) -> None:
    log_level = settings.log_level
    if not isinstance(log_level, str) or not hasattr(logging, log_level.upper()):
        log_level = "INFO"
    setup_json_logging(log_level.upper(), settings.log_output, settings.log_file_path)


@asynccontextmanager
async def lifespan(app: FastAPI) -> Any:
    """
    Application startup and shutdown events.

    Starts the session store's expiry sweep and stops it on shutdown.

    Args:
        app: The FastAPI application instance

    Yields:
        None
    """
    logger.info("Starting OAuth Broker Service...")
    store: SessionStore = app.state.store
    store.start()

    yield

    logger.info("Shutting down OAuth Broker Service...")
    store.close()


class MetricsAuthMiddleware:
    """HTTP Basic guard in front of the Prometheus ASGI app."""

    def __init__(self, app, username, password):
        self.app = app
        self.username = username
        self.password = password

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and not self._authorized(scope):
            response = Response(
                status_code=HTTP_401_UNAUTHORIZED,
                headers={"WWW-Authenticate": "Basic"},
            )
            await response(scope, receive, send)
            return
        await self.app(scope, receive, send)

    def _authorized(self, scope) -> bool:
        headers = dict(scope.get("headers") or [])
        auth_header = headers.get(b"authorization")
        if not auth_header or not auth_header.startswith(b"Basic "):
            return False
        try:
            decoded = base64.b64decode(auth_header.split(b" ", 1)[1]).decode()
            username, password = decoded.split(":", 1)
        except (ValueError, UnicodeDecodeError):
            return False
        return secrets.compare_digest(username, self.username) and secrets.compare_digest(password, self.password)


def create_app(settings: Optional[Settings] = None, store: Optional[SessionStore] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    A missing OAuth configuration does not prevent startup; every OAuth
    endpoint then answers with a 500 ``server_error``.

    Args:
        settings: Application settings, defaults to :func:`get_settings`
        store: Session store to use, defaults to a fresh in-memory store

    Returns:
        FastAPI: The configured FastAPI application
    """
    settings = settings or get_settings()
    _configure_logging(settings)

    app = FastAPI(
        title="OAuth Broker Service",
        description="OAuth 2.1 authorization code + PKCE broker issuing proxy bearer tokens",
        version="0.1.0",
        lifespan=lifespan
    )

    app.state.settings = settings
    app.state.store = store or SessionStore(
        require_pkce=settings.require_pkce,
        cleanup_interval_seconds=settings.cleanup_interval_seconds,
    )
    app.state.broker = None
    app.state.config_error = None
    try:
        app.state.broker = Broker.from_settings(settings, app.state.store)
    except ConfigurationError as e:
        logger.error("OAuth is not configured: %s", e.error_description)
        app.state.config_error = e

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(
        RateLimiter,
        default_rate_limit_per_minute=60,
        default_rate_limit_burst=10,
        include_paths=["/oauth/token", "/oauth/register"],
    )
    app.add_middleware(CacheControl)
    app.add_middleware(RequestIDMiddleware)

    app.include_router(oauth_router, tags=["oauth"])

    @app.get("/health")
    async def health_check() -> Dict[str, str]:
        """
        Health check endpoint.

        Returns:
            dict: Health status
        """
        return {
            "status": "healthy",
            "service": "oauth-broker",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    metrics_app = make_asgi_app()
    if settings.metrics_user and settings.metrics_pass:
        metrics_app = MetricsAuthMiddleware(
            metrics_app, settings.metrics_user, settings.metrics_pass.get_secret_value()
        )
    app.mount("/metrics", metrics_app)

    resource_metadata_url = f"{settings.server_base_url.rstrip('/')}/.well-known/oauth-protected-resource"

    @app.exception_handler(BrokerError)
    async def broker_error_handler(request: Request, exc: BrokerError) -> JSONResponse:
        headers = None
        if exc.status_code == HTTP_401_UNAUTHORIZED:
            headers = {
                "WWW-Authenticate": (
                    f'Bearer realm="oauth-broker", error="{exc.error}", '
                    f'resource_metadata="{resource_metadata_url}"'
                )
            }
        if exc.status_code >= 500:
            logger.error("Request failed: %s", exc, extra={"path": request.url.path})
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "oauth_broker.main:app",
        host="0.0.0.0",
        port=3030,
        log_level=get_settings().log_level.lower(),
    )
