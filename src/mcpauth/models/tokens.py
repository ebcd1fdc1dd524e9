"""Token models for OAuth 2.1.

Contains the immutable token set held by token storage, the raw token
endpoint response, and the form bodies for the supported grants.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict

DEFAULT_EXPIRY_BUFFER = 30.0


@dataclass(frozen=True)
class TokenSet:
    """Credentials issued by a token endpoint.

    Immutable: refreshes produce a new ``TokenSet`` that replaces the stored
    one wholesale.
    """

    access_token: str
    token_type: str = "Bearer"
    expires_at: float | None = None  # Unix timestamp
    refresh_token: str | None = None
    scope: str | None = None

    def is_expired(self, buffer_seconds: float = DEFAULT_EXPIRY_BUFFER) -> bool:
        """Check if the access token is expired or about to expire.

        Args:
            buffer_seconds: Treat the token as expired this many seconds early
        """
        if self.expires_at is None:
            return False  # No expiry means token doesn't expire

        return time.time() >= self.expires_at - buffer_seconds

    def can_refresh(self) -> bool:
        return self.refresh_token is not None

    def authorization_header(self) -> str:
        """Value for the outbound ``Authorization`` header."""
        return f"{self.token_type} {self.access_token}"

    def scopes(self) -> list[str]:
        if not self.scope:
            return []
        return [s for s in self.scope.split(" ") if s]

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes()


class TokenResponse(BaseModel):
    """OAuth 2.1 token response (RFC 6749 Section 5).

    Represents the response from a token endpoint, including both
    successful responses (Section 5.1) and error responses (Section 5.2).
    """

    model_config = ConfigDict(extra="ignore")

    # Success response fields (RFC 6749 Section 5.1)
    access_token: str | None = None
    token_type: str | None = None
    expires_in: float | None = None  # Seconds until expiry
    refresh_token: str | None = None
    scope: str | None = None

    # Error response fields (RFC 6749 Section 5.2)
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    def is_success(self) -> bool:
        """Check if token response indicates success."""
        return self.error is None and bool(self.access_token)

    def is_error(self) -> bool:
        """Check if token response indicates an error."""
        return self.error is not None

    def calculate_expires_at(self) -> float | None:
        """Calculate absolute expiry timestamp from expires_in.

        Returns:
            Unix timestamp when token expires, or None if no expiry
        """
        if not self.expires_in:
            return None
        return time.time() + self.expires_in

    def to_token_set(self) -> TokenSet:
        """Convert successful token response to a TokenSet.

        Raises:
            ValueError: If response is not successful
        """
        if not self.is_success():
            raise ValueError("Cannot convert error response to TokenSet")

        return TokenSet(
            access_token=self.access_token,
            token_type=self.token_type or "Bearer",
            expires_at=self.calculate_expires_at(),
            refresh_token=self.refresh_token,
            scope=self.scope,
        )


@dataclass(frozen=True)
class AuthorizationCodeRequest:
    """Authorization code exchange parameters (RFC 6749 Section 4.1.3).

    Includes the PKCE code_verifier (RFC 7636) when PKCE is enabled.
    """

    code: str
    redirect_uri: str
    client_id: str
    client_secret: str | None = None
    code_verifier: str | None = None
    grant_type: str = "authorization_code"

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request.

        Token requests must use form encoding, not JSON (RFC 6749 Section 4.1.3).
        """
        data = {
            "grant_type": self.grant_type,
            "code": self.code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
        }

        if self.client_secret:
            data["client_secret"] = self.client_secret
        if self.code_verifier:
            data["code_verifier"] = self.code_verifier

        return data


@dataclass(frozen=True)
class ClientCredentialsRequest:
    """Client credentials grant parameters (RFC 6749 Section 4.4)."""

    client_id: str
    client_secret: str | None = None
    scope: str | None = None
    grant_type: str = "client_credentials"

    def to_form_data(self) -> dict[str, str]:
        data = {"grant_type": self.grant_type, "client_id": self.client_id}

        if self.client_secret:
            data["client_secret"] = self.client_secret
        if self.scope:
            data["scope"] = self.scope

        return data


@dataclass(frozen=True)
class RefreshTokenRequest:
    """OAuth 2.1 refresh token request parameters (RFC 6749 Section 6)."""

    refresh_token: str
    client_id: str
    client_secret: str | None = None
    grant_type: str = "refresh_token"

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request."""
        data = {
            "grant_type": self.grant_type,
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
        }

        if self.client_secret:
            data["client_secret"] = self.client_secret

        return data
