"""Environment-driven configuration for OAuth clients.

Reads ``MCPAUTH_*`` variables (and an optional ``.env`` file) so a server
can be pointed at an authorization server without code changes:

    MCPAUTH_CLIENT_ID=my-client
    MCPAUTH_AUTHORIZATION_URL=https://auth.example.com/authorize
    MCPAUTH_TOKEN_URL=https://auth.example.com/token
    MCPAUTH_SCOPES=read write
"""

from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcpauth.models.config import OAuthConfig
from mcpauth.models.flow import DEFAULT_STATE_MAX_AGE
from mcpauth.models.tokens import DEFAULT_EXPIRY_BUFFER


class OAuthSettings(BaseSettings):
    """OAuth client settings with env and file support."""

    model_config = SettingsConfigDict(
        env_prefix="MCPAUTH_", env_file=".env", extra="ignore"
    )

    client_id: str = Field(default="", description="OAuth client identifier")
    client_secret: SecretStr = Field(
        default=SecretStr(""), description="OAuth client secret (confidential clients)"
    )
    authorization_url: str = Field(default="", description="Authorization endpoint")
    token_url: str = Field(default="", description="Token endpoint")
    scopes: str = Field(default="", description="Space-separated scopes to request")
    pkce: bool = Field(default=True, description="Send a PKCE challenge (S256)")
    redirect_uri: str | None = Field(default=None, description="OAuth callback URI")

    http_timeout: float = Field(
        default=30.0, gt=0, description="Token endpoint request timeout in seconds"
    )
    expiry_buffer: float = Field(
        default=DEFAULT_EXPIRY_BUFFER,
        ge=0,
        description="Refresh tokens this many seconds before they expire",
    )
    state_max_age: float = Field(
        default=DEFAULT_STATE_MAX_AGE,
        gt=0,
        description="Seconds an authorization flow may take before its state expires",
    )

    def to_oauth_config(self) -> OAuthConfig:
        """Build the static client configuration.

        The result still has to pass ``validate_oauth_config``.
        """
        return OAuthConfig(
            client_id=self.client_id,
            client_secret=self.client_secret.get_secret_value(),
            authorization_url=self.authorization_url,
            token_url=self.token_url,
            scopes=tuple(s for s in self.scopes.split(" ") if s),
            pkce=self.pkce,
            redirect_uri=self.redirect_uri,
        )
