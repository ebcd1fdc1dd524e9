"""PKCE (Proof Key for Code Exchange) primitives for OAuth 2.1 security.

Implements RFC 7636 parameter generation and validation to prevent
authorization code interception attacks, plus the random state and nonce
values used for CSRF and replay protection.

All randomness comes from ``secrets``; there is no fallback to a
non-cryptographic source.
"""

from __future__ import annotations

import base64
import hashlib
import re
import secrets
import string

from mcpauth.models.security import PKCEParameters

CODE_VERIFIER_LENGTH = 64
CODE_VERIFIER_CHARSET = string.ascii_letters + string.digits + "-._~"

_VERIFIER_PATTERN = re.compile(r"^[A-Za-z0-9\-._~]+$")
_CHALLENGE_PATTERN = re.compile(r"^[A-Za-z0-9\-_]+$")


def base64url_encode(data: bytes) -> str:
    """Base64url-encode bytes without padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    """Generate a cryptographically secure code verifier.

    RFC 7636 Section 4.1: code verifier must be 43-128 characters long
    and use only unreserved characters:
        [A-Z] / [a-z] / [0-9] / "-" / "." / "_" / "~"

    Returns:
        A 64-character code verifier
    """
    return "".join(
        secrets.choice(CODE_VERIFIER_CHARSET) for _ in range(CODE_VERIFIER_LENGTH)
    )


def compute_code_challenge(code_verifier: str) -> str:
    """Generate code challenge from code verifier using S256 method.

    RFC 7636 Section 4.2: For S256, the code challenge is:
    BASE64URL-ENCODE(SHA256(ASCII(code_verifier)))

    Args:
        code_verifier: The code verifier to hash

    Returns:
        Base64url-encoded SHA256 hash of the code verifier
    """
    digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
    return base64url_encode(digest)


def generate_pkce_parameters() -> PKCEParameters:
    """Generate a fresh verifier, its S256 challenge and the method name."""
    code_verifier = generate_code_verifier()
    return PKCEParameters(
        code_verifier=code_verifier,
        code_challenge=compute_code_challenge(code_verifier),
        code_challenge_method="S256",
    )


def validate_code_verifier(code_verifier: str, code_challenge: str) -> bool:
    """Check that a verifier hashes to the given challenge.

    Compared in constant time.
    """
    return secrets.compare_digest(
        compute_code_challenge(code_verifier).encode("ascii"),
        code_challenge.encode("utf-8"),
    )


def is_valid_code_verifier(code_verifier: str) -> bool:
    """Format check only: 43-128 unreserved characters."""
    if not (43 <= len(code_verifier) <= 128):
        return False
    return _VERIFIER_PATTERN.fullmatch(code_verifier) is not None


def is_valid_code_challenge(code_challenge: str) -> bool:
    """Format check only: exactly 43 base64url characters."""
    if len(code_challenge) != 43:
        return False
    return _CHALLENGE_PATTERN.fullmatch(code_challenge) is not None


def pkce_query_params(params: PKCEParameters) -> dict[str, str]:
    """Authorization URL parameters contributed by PKCE."""
    return {
        "code_challenge": params.code_challenge,
        "code_challenge_method": params.code_challenge_method,
    }


def generate_state() -> str:
    """Generate a state parameter for CSRF protection.

    Returns:
        32 random bytes, base64url-encoded (43 characters)
    """
    return base64url_encode(secrets.token_bytes(32))


def generate_nonce() -> str:
    """Generate an OpenID Connect nonce (32 random bytes, base64url)."""
    return base64url_encode(secrets.token_bytes(32))
