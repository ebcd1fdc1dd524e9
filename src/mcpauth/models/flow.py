"""Authorization flow models for OAuth 2.1.

Contains per-flow state, authorization request construction and callback
handling models.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from mcpauth.models.security import PKCEParameters

DEFAULT_STATE_MAX_AGE = 10 * 60.0


@dataclass(frozen=True)
class AuthorizationState:
    """State bound to a single authorization flow.

    Created when the flow starts and persisted by the caller across the
    browser redirect (e.g. in a session). Consumed once by the callback and
    never reused.
    """

    state: str
    pkce: PKCEParameters
    redirect_uri: str
    created_at: float = field(default_factory=time.time)  # Unix timestamp

    def is_expired(self, max_age: float = DEFAULT_STATE_MAX_AGE) -> bool:
        return time.time() - self.created_at > max_age


@dataclass(frozen=True)
class AuthorizationRequest:
    """Authorization request parameters for OAuth 2.1 flow."""

    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    state: str
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    scope: str | None = None

    def build_authorization_url(self) -> str:
        """Build the complete authorization URL.

        Query parameters already present on the endpoint are kept.
        """
        parts = urlsplit(self.authorization_endpoint)
        params = dict(parse_qsl(parts.query, keep_blank_values=True))
        params.update(
            {
                "response_type": "code",
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "state": self.state,
            }
        )

        if self.scope:
            params["scope"] = self.scope
        if self.code_challenge:
            params["code_challenge"] = self.code_challenge
            params["code_challenge_method"] = self.code_challenge_method or "S256"

        return urlunsplit(parts._replace(query=urlencode(params)))


@dataclass(frozen=True)
class AuthorizationResponse:
    """Parameters delivered to the redirect URI by the authorization server."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    def is_success(self) -> bool:
        return self.error is None and self.code is not None

    def is_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class AuthFlow:
    """A started flow: where to send the user, and what to keep until the callback."""

    url: str
    state: AuthorizationState
