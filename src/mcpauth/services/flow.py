"""OAuth 2.1 authorization flow orchestration.

Covers the client side of the authorization code flow with PKCE:

    INIT -> STATE_CREATED -> CALLBACK_RECEIVED -> TOKEN_EXCHANGED
                    \\-> REJECTED (state mismatch/expiry, config or endpoint error)

Functions here are pure apart from randomness and the clock. The HTTP calls
to the token endpoint live in ``mcpauth.services.tokens``.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Mapping
from typing import Any
from urllib.parse import parse_qs, urlparse

from pydantic import ValidationError

from mcpauth.models.config import OAuthConfig
from mcpauth.models.errors import ConfigError, OAuthError
from mcpauth.models.flow import (
    DEFAULT_STATE_MAX_AGE,
    AuthFlow,
    AuthorizationRequest,
    AuthorizationResponse,
    AuthorizationState,
)
from mcpauth.models.result import Err, Ok, Result
from mcpauth.models.tokens import (
    AuthorizationCodeRequest,
    ClientCredentialsRequest,
    RefreshTokenRequest,
    TokenResponse,
    TokenSet,
)
from mcpauth.primitives.pkce import (
    generate_pkce_parameters,
    generate_state,
    pkce_query_params,
)

logger = logging.getLogger(__name__)


def create_authorization_state(redirect_uri: str) -> AuthorizationState:
    """Allocate state for a new flow: fresh state token, PKCE pair and timestamp."""
    return AuthorizationState(
        state=generate_state(),
        pkce=generate_pkce_parameters(),
        redirect_uri=redirect_uri,
        created_at=time.time(),
    )


def build_authorization_url(config: OAuthConfig, state: AuthorizationState) -> str:
    """Build the URL the user is redirected to.

    ``scope`` is only sent when scopes are configured, and the PKCE
    challenge is sent unless PKCE is explicitly disabled.
    """
    challenge: dict[str, str] = {}
    if config.pkce is not False:
        challenge = pkce_query_params(state.pkce)

    request = AuthorizationRequest(
        authorization_endpoint=config.authorization_url,
        client_id=config.client_id,
        redirect_uri=state.redirect_uri,
        state=state.state,
        code_challenge=challenge.get("code_challenge"),
        code_challenge_method=challenge.get("code_challenge_method"),
        scope=" ".join(config.scopes) if config.scopes else None,
    )
    return request.build_authorization_url()


def validate_state(expected: str, received: str | None) -> bool:
    """Check the callback's state against the one issued for this flow.

    Compared in constant time.
    """
    if received is None:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


def is_state_expired(
    state: AuthorizationState, max_age: float = DEFAULT_STATE_MAX_AGE
) -> bool:
    """True once more than ``max_age`` seconds have passed since the flow started."""
    return state.is_expired(max_age)


def build_token_request_body(
    config: OAuthConfig, code: str, state: AuthorizationState
) -> dict[str, str]:
    """Form body for the authorization_code grant.

    The verifier comes from the same state that produced the redirect.
    """
    code_verifier = None
    if config.pkce is not False:
        code_verifier = state.pkce.code_verifier

    return AuthorizationCodeRequest(
        code=code,
        redirect_uri=state.redirect_uri,
        client_id=config.client_id,
        client_secret=config.client_secret or None,
        code_verifier=code_verifier,
    ).to_form_data()


def build_client_credentials_body(config: OAuthConfig) -> dict[str, str]:
    """Form body for the client_credentials grant."""
    return ClientCredentialsRequest(
        client_id=config.client_id,
        client_secret=config.client_secret or None,
        scope=" ".join(config.scopes) if config.scopes else None,
    ).to_form_data()


def build_refresh_token_body(config: OAuthConfig, refresh_token: str) -> dict[str, str]:
    """Form body for the refresh_token grant."""
    return RefreshTokenRequest(
        refresh_token=refresh_token,
        client_id=config.client_id,
        client_secret=config.client_secret or None,
    ).to_form_data()


def parse_token_response(
    response: Any, status_code: int | None = None
) -> Result[TokenSet, OAuthError]:
    """Parse a decoded token endpoint payload into a TokenSet.

    Handles both successful responses and error responses according to
    RFC 6749 Section 5.

    Args:
        response: Decoded JSON body
        status_code: HTTP status of the response, attached to errors

    Returns:
        Ok(TokenSet), or Err(OAuthError) for error payloads and malformed bodies
    """
    if not isinstance(response, Mapping):
        return Err(
            OAuthError("Invalid token response format", status_code=status_code)
        )

    if response.get("error"):
        error_code = str(response["error"])
        description = response.get("error_description")
        logger.warning(
            f"Token endpoint returned error {error_code}"
            f"{f' ({status_code})' if status_code else ''}: {description or ''}"
        )
        return Err(
            OAuthError(
                str(description) if description else error_code,
                code=error_code,
                status_code=status_code,
            )
        )

    access_token = response.get("access_token")
    if not access_token or not isinstance(access_token, str):
        return Err(OAuthError("Missing access_token", status_code=status_code))

    try:
        token_response = TokenResponse.model_validate(dict(response))
    except ValidationError as e:
        return Err(
            OAuthError(
                f"Invalid token response format: {e.error_count()} invalid field(s)",
                status_code=status_code,
            )
        )

    return Ok(token_response.to_token_set())


def validate_oauth_config(config: OAuthConfig) -> Result[OAuthConfig, ConfigError]:
    """Fail fast on configuration that can never work."""
    if not config.client_id:
        return Err(
            ConfigError("Missing client_id in OAuth configuration", field="client_id")
        )
    if not config.authorization_url:
        return Err(
            ConfigError(
                "Missing authorization_url in OAuth configuration",
                field="authorization_url",
            )
        )
    if not config.token_url:
        return Err(
            ConfigError("Missing token_url in OAuth configuration", field="token_url")
        )

    for field_name in ("authorization_url", "token_url"):
        if not _is_absolute_http_url(getattr(config, field_name)):
            return Err(
                ConfigError(
                    f"Invalid {field_name} in OAuth configuration", field=field_name
                )
            )

    return Ok(config)


def initialize_auth_flow(
    config: OAuthConfig, redirect_uri: str | None = None
) -> Result[AuthFlow, ConfigError]:
    """Start an authorization flow.

    Validates the config, creates fresh state and builds the authorization
    URL. The caller redirects the user to ``flow.url`` and keeps
    ``flow.state`` until the callback arrives.

    Args:
        config: OAuth client configuration
        redirect_uri: Callback URI; defaults to ``config.redirect_uri``
    """
    validated = validate_oauth_config(config)
    if isinstance(validated, Err):
        logger.warning(f"Refusing to start authorization flow: {validated.error}")
        return validated

    redirect_uri = redirect_uri or config.redirect_uri
    if not redirect_uri:
        return Err(
            ConfigError("Missing redirect_uri for authorization flow", field="redirect_uri")
        )

    state = create_authorization_state(redirect_uri)
    url = build_authorization_url(config, state)

    logger.info(f"Started authorization flow for client {config.client_id}")
    return Ok(AuthFlow(url=url, state=state))


def parse_callback_url(callback_url: str) -> AuthorizationResponse:
    """Parse OAuth callback URL into AuthorizationResponse."""
    query_params = parse_qs(urlparse(callback_url).query)

    def get_single_param(key: str) -> str | None:
        values = query_params.get(key, [])
        return values[0] if values else None

    return AuthorizationResponse(
        code=get_single_param("code"),
        state=get_single_param("state"),
        error=get_single_param("error"),
        error_description=get_single_param("error_description"),
        error_uri=get_single_param("error_uri"),
    )


def handle_authorization_callback(
    state: AuthorizationState,
    callback_url: str,
    max_age: float = DEFAULT_STATE_MAX_AGE,
) -> Result[str, OAuthError]:
    """Validate the redirect back from the authorization server.

    Binds the callback to ``state`` (CSRF protection), rejects expired flows
    and surfaces errors reported by the server. The caller must discard
    ``state`` afterwards whatever the outcome.

    Returns:
        Ok(authorization code) or Err(OAuthError)
    """
    response = parse_callback_url(callback_url)

    if not validate_state(state.state, response.state):
        logger.warning("Authorization callback state mismatch - possible CSRF attack")
        return Err(OAuthError("State parameter mismatch", code="invalid_state"))

    if is_state_expired(state, max_age):
        return Err(OAuthError("Authorization state expired", code="expired_state"))

    if response.is_error():
        logger.warning(
            f"Authorization callback contained error: {response.error} - "
            f"{response.error_description}"
        )
        return Err(
            OAuthError(
                response.error_description or response.error, code=response.error
            )
        )

    if response.code is None:
        return Err(OAuthError("Missing authorization code", code="invalid_request"))

    return Ok(response.code)


def _is_absolute_http_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)
