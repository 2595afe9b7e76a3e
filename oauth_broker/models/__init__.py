"""Data models for the OAuth Broker Service."""

from oauth_broker.models.session import (
    AuthorizationCode,
    RedemptionResult,
    RegisteredClient,
    Session,
    SessionStatus,
    UpstreamTokens,
)

__all__ = [
    "AuthorizationCode",
    "RedemptionResult",
    "RegisteredClient",
    "Session",
    "SessionStatus",
    "UpstreamTokens",
]
