"""Authentication middleware for Starlette-based MCP servers.

Pure ASGI middleware that runs before requests reach tool dispatch:
extract a credential, validate it, then either attach the resulting
``TokenSet`` as ``request.state.token`` and continue, or answer with a
401/403 JSON error body (RFC 6750).

    app = Starlette(
        routes=[...],
        middleware=[
            Middleware(AuthMiddleware, validator=my_validator),
            Middleware(RequireScopes, scopes=("read",)),
        ],
    )
"""

from __future__ import annotations

import logging
import secrets
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable

from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Receive, Scope, Send

from mcpauth.models.config import ApiKeyConfig, AuthConfig, BearerConfig, OAuthConfig
from mcpauth.models.errors import OAuthError
from mcpauth.models.result import Err, Ok, Result
from mcpauth.models.tokens import TokenSet

logger = logging.getLogger(__name__)

TokenValidator = Callable[[str], Awaitable[Result[TokenSet, OAuthError]]]


def extract_bearer_token(authorization: str | None) -> str | None:
    """Token from an ``Authorization: Bearer <token>`` header value.

    Any other scheme or a malformed header yields None.
    """
    if not authorization:
        return None

    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        return None
    return parts[1]


def extract_token(request: Request) -> str | None:
    """Bearer token from the header, falling back to the ``access_token`` query parameter."""
    token = extract_bearer_token(request.headers.get("authorization"))
    if token:
        return token
    return request.query_params.get("access_token") or None


def create_simple_validator(min_length: int = 10) -> TokenValidator:
    """Development placeholder that only checks token length.

    This is not token verification. Real deployments must supply a
    validator that verifies JWTs or calls an introspection endpoint.
    """

    async def validate(token: str) -> Result[TokenSet, OAuthError]:
        if not token or len(token) < min_length:
            return Err(OAuthError("Invalid token format", code="invalid_token"))
        return Ok(TokenSet(access_token=token, token_type="Bearer"))

    return validate


def create_static_token_validator(expected: str) -> TokenValidator:
    """Validator accepting exactly one configured bearer token."""

    async def validate(token: str) -> Result[TokenSet, OAuthError]:
        if secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
            return Ok(TokenSet(access_token=token, token_type="Bearer"))
        return Err(OAuthError("Invalid bearer token", code="invalid_token"))

    return validate


def error_response(
    status_code: int,
    error: str,
    description: str,
    challenge: str | None = None,
) -> JSONResponse:
    """JSON error body with an optional ``WWW-Authenticate`` challenge."""
    headers = {"WWW-Authenticate": challenge} if challenge else None
    return JSONResponse(
        {"error": error, "error_description": description},
        status_code=status_code,
        headers=headers,
    )


def oauth_cors_headers() -> dict[str, str]:
    """CORS headers for OAuth endpoints."""
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Authorization, Content-Type",
        "Access-Control-Max-Age": "86400",
    }


def _bearer_challenge(error: str | None = None, **params: str) -> str:
    parts = [f'error="{error}"'] if error else []
    parts += [f'{name}="{value}"' for name, value in params.items()]
    return "Bearer " + ", ".join(parts) if parts else "Bearer"


class _AuthMiddlewareBase(ABC):
    """Runs ``authenticate`` for HTTP requests; other scopes pass through."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        rejection = await self.authenticate(request)
        if rejection is not None:
            await rejection(scope, receive, send)
            return

        await self.app(scope, receive, send)

    @abstractmethod
    async def authenticate(self, request: Request) -> Response | None:
        """Return a response to reject the request, or None to let it through."""


class AuthMiddleware(_AuthMiddlewareBase):
    """Require a valid bearer token on every request."""

    def __init__(self, app: ASGIApp, validator: TokenValidator) -> None:
        super().__init__(app)
        self.validator = validator

    async def authenticate(self, request: Request) -> Response | None:
        token = extract_token(request)
        if not token:
            logger.debug(f"Rejected {request.url.path}: missing token")
            return error_response(
                401, "unauthorized", "Missing authentication token", _bearer_challenge()
            )

        match await self.validator(token):
            case Ok(token_set):
                request.state.token = token_set
                return None
            case Err(error):
                logger.warning(f"Rejected {request.url.path}: {error.message}")
                return error_response(
                    401,
                    "invalid_token",
                    error.message,
                    _bearer_challenge("invalid_token", error_description=error.message),
                )


class RequireScopes(_AuthMiddlewareBase):
    """Require the attached token to carry every listed scope.

    Must run after ``AuthMiddleware`` (or ``OptionalAuth``).
    """

    def __init__(self, app: ASGIApp, scopes: Iterable[str] = ()) -> None:
        super().__init__(app)
        self.scopes = tuple(scopes)

    async def authenticate(self, request: Request) -> Response | None:
        token: TokenSet | None = getattr(request.state, "token", None)
        if token is None:
            return error_response(
                401, "unauthorized", "Authentication required", _bearer_challenge()
            )

        missing = [scope for scope in self.scopes if not token.has_scope(scope)]
        if missing:
            logger.warning(
                f"Rejected {request.url.path}: missing scopes {', '.join(missing)}"
            )
            return error_response(
                403,
                "insufficient_scope",
                f"Missing required scopes: {', '.join(missing)}",
                _bearer_challenge("insufficient_scope", scope=" ".join(self.scopes)),
            )
        return None


def require_scopes(*scopes: str) -> Middleware:
    """Middleware entry requiring ``scopes`` on the attached token."""
    return Middleware(RequireScopes, scopes=scopes)


class OptionalAuth(_AuthMiddlewareBase):
    """Attach a token when a valid one is presented; never block."""

    def __init__(self, app: ASGIApp, validator: TokenValidator) -> None:
        super().__init__(app)
        self.validator = validator

    async def authenticate(self, request: Request) -> Response | None:
        token = extract_token(request)
        if token:
            result = await self.validator(token)
            if isinstance(result, Ok):
                request.state.token = result.value
        return None


class ApiKeyMiddleware(_AuthMiddlewareBase):
    """Require one of a fixed set of API keys in a header (or query parameter)."""

    def __init__(
        self,
        app: ASGIApp,
        valid_keys: Iterable[str],
        header_name: str = "X-API-Key",
        query_param_name: str | None = None,
    ) -> None:
        super().__init__(app)
        self.valid_keys = frozenset(valid_keys)
        self.header_name = header_name
        self.query_param_name = query_param_name

    async def authenticate(self, request: Request) -> Response | None:
        api_key = request.headers.get(self.header_name)
        if not api_key and self.query_param_name:
            api_key = request.query_params.get(self.query_param_name)

        if not api_key:
            return error_response(
                401, "unauthorized", f"Missing {self.header_name} header"
            )

        if not self._is_valid_key(api_key):
            logger.warning(f"Rejected {request.url.path}: invalid API key")
            return error_response(401, "invalid_api_key", "Invalid API key")
        return None

    def _is_valid_key(self, api_key: str) -> bool:
        candidate = api_key.encode("utf-8")
        matches = [
            secrets.compare_digest(candidate, key.encode("utf-8"))
            for key in self.valid_keys
        ]
        return any(matches)


def create_flexible_auth_middleware(
    config: AuthConfig, validator: TokenValidator | None = None
) -> Middleware:
    """Middleware entry for whichever auth scheme ``config`` selects.

    ``oauth2`` uses ``validator`` (or the development placeholder), ``apiKey``
    checks the configured key, ``bearer`` accepts the single configured token.
    """
    match config:
        case OAuthConfig():
            return Middleware(
                AuthMiddleware, validator=validator or create_simple_validator()
            )
        case ApiKeyConfig(key=key, header_name=header_name, query_param_name=query):
            return Middleware(
                ApiKeyMiddleware,
                valid_keys={key},
                header_name=header_name,
                query_param_name=query,
            )
        case BearerConfig(token=token):
            return Middleware(
                AuthMiddleware, validator=create_static_token_validator(token)
            )
        case _:
            raise ValueError(f"Unsupported auth config type: {config.type}")
