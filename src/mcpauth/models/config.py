"""Static authentication configuration.

``AuthConfig`` is a tagged union over the three supported schemes; the
``type`` field selects the variant.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union


@dataclass(frozen=True)
class OAuthConfig:
    """OAuth 2.1 client configuration for one authorization server.

    Supplied by the caller and validated with ``validate_oauth_config``
    before use. One config (and one token manager) per tenant.
    """

    client_id: str
    authorization_url: str
    token_url: str
    client_secret: str = ""
    scopes: tuple[str, ...] = ()
    pkce: bool = True
    redirect_uri: str | None = None
    type: Literal["oauth2"] = "oauth2"


@dataclass(frozen=True)
class ApiKeyConfig:
    """Static API key accepted in a request header."""

    key: str
    header_name: str = "X-API-Key"
    query_param_name: str | None = None
    type: Literal["apiKey"] = "apiKey"


@dataclass(frozen=True)
class BearerConfig:
    """Single static bearer token."""

    token: str
    type: Literal["bearer"] = "bearer"


AuthConfig = Union[OAuthConfig, ApiKeyConfig, BearerConfig]
