"""OAuth 2.1 authorization-code + PKCE broker."""

__version__ = "0.1.0"
