"""OAuth 2.1 token lifecycle management.

Stores token sets behind a pluggable ``TokenStorage``, hands out valid
tokens (refreshing transparently shortly before expiry) and talks to the
token endpoint for the authorization_code, client_credentials and
refresh_token grants.

Uses application/x-www-form-urlencoded encoding as required by OAuth 2.1.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Mapping
from typing import Any

import httpx

from mcpauth.models.config import OAuthConfig
from mcpauth.models.errors import OAuthError, TokenError
from mcpauth.models.flow import DEFAULT_STATE_MAX_AGE, AuthorizationState
from mcpauth.models.result import Err, Ok, Result
from mcpauth.models.tokens import DEFAULT_EXPIRY_BUFFER, TokenSet
from mcpauth.services.flow import (
    build_client_credentials_body,
    build_refresh_token_body,
    build_token_request_body,
    handle_authorization_callback,
    parse_token_response,
)
from mcpauth.services.storage import MemoryTokenStorage, TokenStorage
from mcpauth.settings import OAuthSettings

logger = logging.getLogger(__name__)

_TOKEN_REQUEST_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


class OAuth2TokenManager:
    """Manages stored OAuth tokens for one OAuth configuration.

    Construct one manager per tenant/config and pass it explicitly to the
    code that needs tokens; managers share no state with each other.

    Concurrent ``get_valid_token`` calls for the same key are coalesced so
    that only one refresh request reaches the authorization server. Failed
    refreshes are reported, never retried.
    """

    def __init__(
        self,
        config: OAuthConfig,
        storage: TokenStorage | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        expiry_buffer: float = DEFAULT_EXPIRY_BUFFER,
        state_max_age: float = DEFAULT_STATE_MAX_AGE,
    ):
        """Initialize the token manager.

        Args:
            config: OAuth client configuration (token_url, client credentials)
            storage: Token storage backend, in-memory by default
            http_client: Client for token endpoint calls. A supplied client is
                not closed by ``close()``.
            timeout: HTTP request timeout in seconds for the default client
            expiry_buffer: Refresh this many seconds before a token expires
            state_max_age: Seconds an authorization flow may take before its
                callback is rejected
        """
        self.config = config
        self.storage = storage if storage is not None else MemoryTokenStorage()
        self.timeout = timeout
        self.expiry_buffer = expiry_buffer
        self.state_max_age = state_max_age
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._refreshes: dict[str, asyncio.Task[Result[TokenSet, TokenError]]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: OAuthSettings,
        storage: TokenStorage | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> OAuth2TokenManager:
        """Build a manager from environment-driven settings."""
        return cls(
            settings.to_oauth_config(),
            storage=storage,
            http_client=http_client,
            timeout=settings.http_timeout,
            expiry_buffer=settings.expiry_buffer,
            state_max_age=settings.state_max_age,
        )

    async def get_token(self, key: str) -> Result[TokenSet, TokenError]:
        """Fetch the stored token for ``key`` as-is, expired or not."""
        try:
            token = await self.storage.get(key)
        except Exception as e:
            return Err(TokenError(f"Failed to read token: {e}", key=key))

        if token is None:
            return Err(TokenError("Token not found", key=key))
        return Ok(token)

    async def set_token(self, key: str, token: TokenSet) -> Result[None, TokenError]:
        try:
            await self.storage.set(key, token)
        except Exception as e:
            return Err(TokenError(f"Failed to store token: {e}", key=key))
        return Ok(None)

    async def delete_token(self, key: str) -> Result[None, TokenError]:
        try:
            await self.storage.delete(key)
        except Exception as e:
            return Err(TokenError(f"Failed to delete token: {e}", key=key))
        return Ok(None)

    async def refresh_token_request(
        self, refresh_token: str
    ) -> Result[TokenSet, TokenError]:
        """Refresh an access token using a refresh token.

        Implements RFC 6749 Section 6 - Refreshing an Access Token. The
        result is not stored; see ``get_valid_token``.
        """
        logger.debug(f"Refreshing access token at {self.config.token_url}")

        result = await self._request_token(
            build_refresh_token_body(self.config, refresh_token), "token refresh"
        )
        match result:
            case Ok():
                logger.info("Successfully refreshed access token")
                return result
            case Err(TokenError() as error):
                return Err(error)
            case Err(error):
                return Err(TokenError(error.message, code=error.code))

    async def get_valid_token(self, key: str) -> Result[TokenSet, TokenError]:
        """Return a usable token for ``key``, refreshing it if expired.

        An unexpired token is returned unchanged without any network call.
        An expired token is refreshed and the merged result is stored under
        the same key.
        Concurrent callers for the same key share one refresh attempt and
        receive its outcome; a failed refresh is not retried.
        """
        found = await self.get_token(key)
        if isinstance(found, Err) or not found.value.is_expired(self.expiry_buffer):
            return found

        if not found.value.can_refresh():
            return Err(TokenError("Token expired and no refresh token available", key=key))

        refresh = self._refreshes.get(key)
        if refresh is None:
            refresh = asyncio.ensure_future(self._refresh_and_store(key, found.value))
            self._refreshes[key] = refresh
        else:
            logger.debug(f"Joining in-flight token refresh for key {key}")

        # A cancelled caller must not cancel the refresh others are awaiting
        return await asyncio.shield(refresh)

    async def get_auth_header(self, key: str) -> Result[str, TokenError]:
        """Authorization header value for outbound calls made on behalf of ``key``."""
        return (await self.get_valid_token(key)).map(TokenSet.authorization_header)

    async def exchange_code(
        self, code: str, state: AuthorizationState, key: str | None = None
    ) -> Result[TokenSet, OAuthError | TokenError]:
        """Exchange an authorization code for tokens.

        Implements RFC 6749 Section 4.1.3 with the PKCE code_verifier taken
        from ``state``. When ``key`` is given the tokens are stored under it.
        """
        logger.debug(f"Exchanging authorization code at {self.config.token_url}")

        result = await self._request_token(
            build_token_request_body(self.config, code, state), "token exchange"
        )
        if isinstance(result, Ok):
            logger.info("Token exchange successful")
        return await self._store_if_keyed(result, key)

    async def complete_authorization(
        self, state: AuthorizationState, callback_url: str, key: str | None = None
    ) -> Result[TokenSet, OAuthError | TokenError]:
        """Validate the authorization callback and exchange its code.

        Flows older than ``state_max_age`` seconds are rejected before any
        request is made.
        """
        callback = handle_authorization_callback(state, callback_url, self.state_max_age)
        if isinstance(callback, Err):
            return callback
        return await self.exchange_code(callback.value, state, key=key)

    async def request_client_credentials(
        self, key: str | None = None
    ) -> Result[TokenSet, OAuthError | TokenError]:
        """Obtain a token with the client_credentials grant (RFC 6749 Section 4.4)."""
        result = await self._request_token(
            build_client_credentials_body(self.config), "client credentials request"
        )
        return await self._store_if_keyed(result, key)

    async def close(self) -> None:
        """Close the HTTP client if this manager created it."""
        if self._owns_http_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> OAuth2TokenManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _refresh_and_store(
        self, key: str, token: TokenSet
    ) -> Result[TokenSet, TokenError]:
        """Single refresh attempt for ``key``; its result is shared by all waiters."""
        try:
            refreshed = await self.refresh_token_request(token.refresh_token)
            if isinstance(refreshed, Err):
                logger.error(f"Token refresh failed for key {key}: {refreshed.error}")
                return Err(dataclasses.replace(refreshed.error, key=key))

            merged = merge_tokens(token, refreshed.value)
            stored = await self.set_token(key, merged)
            if isinstance(stored, Err):
                return stored
            return Ok(merged)
        finally:
            self._refreshes.pop(key, None)

    async def _request_token(
        self, form_data: dict[str, str], action: str
    ) -> Result[TokenSet, OAuthError | TokenError]:
        """POST a grant to the token endpoint and parse the JSON response."""
        logger.debug(
            f"Token request: grant_type={form_data['grant_type']}, "
            f"client_id={form_data['client_id']}"
        )

        try:
            response = await self._http_client.post(
                self.config.token_url,
                data=form_data,
                headers=_TOKEN_REQUEST_HEADERS,
            )
        except httpx.HTTPError as e:
            return Err(TokenError(f"HTTP error during {action}: {e}"))

        try:
            payload = response.json()
        except ValueError:
            return Err(
                OAuthError(
                    "Invalid token response format",
                    status_code=response.status_code,
                )
            )

        return parse_token_response(payload, status_code=response.status_code)

    async def _store_if_keyed(
        self, result: Result[TokenSet, OAuthError | TokenError], key: str | None
    ) -> Result[TokenSet, OAuthError | TokenError]:
        if key is None or isinstance(result, Err):
            return result
        stored = await self.set_token(key, result.value)
        if isinstance(stored, Err):
            return stored
        return result


def merge_tokens(existing: TokenSet, fresh: TokenSet) -> TokenSet:
    """Take ``fresh``, keeping the old refresh token if the server sent none.

    Authorization servers often omit refresh_token from refresh responses.
    """
    if fresh.refresh_token is not None:
        return fresh
    return dataclasses.replace(fresh, refresh_token=existing.refresh_token)


def get_time_until_expiry(token: TokenSet) -> float | None:
    """Seconds until expiry (never negative), or None for non-expiring tokens."""
    if token.expires_at is None:
        return None
    return max(0.0, token.expires_at - time.time())


def with_new_expiry(token: TokenSet, expires_in: float) -> TokenSet:
    """Copy of ``token`` expiring ``expires_in`` seconds from now."""
    return dataclasses.replace(token, expires_at=time.time() + expires_in)


def validate_token(token: Any) -> Result[TokenSet, TokenError]:
    """Structural check for a token loaded from outside this package.

    Accepts a ``TokenSet`` or a mapping with the same field names, such as a
    record read back from a durable store.
    """
    if isinstance(token, TokenSet):
        data: Mapping[str, Any] = dataclasses.asdict(token)
    elif isinstance(token, Mapping):
        data = token
    else:
        return Err(TokenError("Invalid token format"))

    access_token = data.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        return Err(TokenError("Missing or invalid access_token"))

    token_type = data.get("token_type", "Bearer")
    if not isinstance(token_type, str) or not token_type:
        return Err(TokenError("Missing or invalid token_type"))

    if isinstance(token, TokenSet):
        return Ok(token)

    expires_at = data.get("expires_at")
    if expires_at is not None and not isinstance(expires_at, (int, float)):
        return Err(TokenError("Invalid expires_at"))

    refresh_token = data.get("refresh_token")
    if refresh_token is not None and not isinstance(refresh_token, str):
        return Err(TokenError("Invalid refresh_token"))

    scope = data.get("scope")
    if scope is not None and not isinstance(scope, str):
        return Err(TokenError("Invalid scope"))

    return Ok(
        TokenSet(
            access_token=access_token,
            token_type=token_type,
            expires_at=float(expires_at) if expires_at is not None else None,
            refresh_token=refresh_token,
            scope=scope,
        )
    )
