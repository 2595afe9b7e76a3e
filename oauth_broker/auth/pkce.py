"""
OAuth2 PKCE (Proof Key for Code Exchange) implementation.

This module provides functions for generating cryptographically secure
code verifiers and S256 code challenges, and for checking a verifier
presented by a client against the challenge it registered earlier.
"""
import base64
import hashlib
import os
import secrets


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode('ascii').rstrip('=')


def generate_code_verifier(num_bytes: int = 32) -> str:
    """
    Generate a cryptographically secure code verifier for PKCE.

    The verifier is ``num_bytes`` random bytes encoded as base64url without
    padding, so it only uses characters [A-Z], [a-z], [0-9], "-" and "_".

    Args:
        num_bytes: Number of random bytes (32-96). The default of 32 yields
            a 43 character verifier.

    Returns:
        A random code verifier string.

    Raises:
        ValueError: If the encoded verifier would fall outside 43-128 chars.
    """
    if not 32 <= num_bytes <= 96:
        raise ValueError("Code verifier must be built from 32 to 96 random bytes")

    return _b64url(os.urandom(num_bytes))


def generate_code_challenge(code_verifier: str) -> str:
    """
    Generate a code challenge from the code verifier using the S256 method.

    Args:
        code_verifier: The code verifier string to hash.

    Returns:
        base64url(SHA-256(code_verifier)) without padding.
    """
    return _b64url(hashlib.sha256(code_verifier.encode('utf-8')).digest())


def generate_pkce_pair() -> tuple[str, str]:
    """
    Generate a code verifier and code challenge pair for PKCE.

    Returns:
        A tuple of (code_verifier, code_challenge).
    """
    code_verifier = generate_code_verifier()
    return code_verifier, generate_code_challenge(code_verifier)


def verify_code_verifier(code_verifier: str, code_challenge: str) -> bool:
    """
    Check a verifier against a stored S256 challenge.

    Never log ``code_verifier``.
    """
    if not code_verifier or not code_challenge:
        return False
    return secrets.compare_digest(generate_code_challenge(code_verifier).encode(), code_challenge.encode())
