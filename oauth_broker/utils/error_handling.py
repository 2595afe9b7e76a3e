"""Error hierarchy shared by the broker core and the HTTP layer.

Every error carries an OAuth ``error`` code, a human readable
``error_description`` and the HTTP status the API layer should answer with.
"""
from typing import Dict, Optional

GENERIC_INVALID_GRANT = "The authorization code is invalid, expired, or has already been used"


class BrokerError(Exception):
    """Base class for broker errors."""

    status_code = 500
    default_error = "server_error"

    def __init__(self, error_description: str, error: Optional[str] = None, status_code: Optional[int] = None):
        self.error = error or self.default_error
        self.error_description = error_description
        if status_code is not None:
            self.status_code = status_code
        super().__init__(f"{self.error}: {error_description}")

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.error, "error_description": self.error_description}


class ConfigurationError(BrokerError):
    """Missing or invalid OAuth configuration. Fatal, never retried."""


class UpstreamExchangeError(BrokerError):
    """The provider's token endpoint failed or returned a malformed response."""

    status_code = 502
    default_error = "invalid_response"

    def __init__(
        self,
        error: str,
        error_description: Optional[str] = None,
        upstream_status: Optional[int] = None,
        retryable: Optional[bool] = None,
    ):
        self.upstream_status = upstream_status
        if retryable is None:
            retryable = upstream_status is not None and upstream_status >= 500
        self.retryable = retryable
        description = error_description or error
        if upstream_status is not None:
            description = f"{description} (upstream status {upstream_status})"
        super().__init__(description, error=error)


class InvalidGrant(BrokerError):
    """Authorization code redemption failed.

    ``reason`` is for internal diagnostics only; every reason produces the
    same externally visible description.
    """

    status_code = 400
    default_error = "invalid_grant"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(GENERIC_INVALID_GRANT)


class SessionNotFound(BrokerError):
    """No pending session matches the callback's state parameter."""

    status_code = 400
    default_error = "invalid_request"


class InvalidToken(BrokerError):
    """Bearer token unknown to the broker."""

    status_code = 401
    default_error = "invalid_token"


class TokenExpired(InvalidToken):
    """Proxy token is past its expiry; the client must re-authorize."""


class UpstreamAuthError(InvalidToken):
    """Upstream credentials can no longer be refreshed."""
