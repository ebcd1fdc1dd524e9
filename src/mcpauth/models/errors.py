"""Error variants for OAuth 2.1 operations.

Errors are plain immutable values returned inside ``Err`` results rather
than raised. The closed union ``AuthError`` lets call sites match on every
failure mode:

- ConfigError: bad static configuration, never retried
- OAuthError: authorization server error or malformed token response
- TokenError: storage, lookup, expiry and refresh failures
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class ConfigError:
    """Static OAuth configuration is missing or malformed."""

    message: str
    field: str | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class OAuthError:
    """Error reported by the authorization server or its token endpoint.

    Carries the server's machine-readable ``code`` (e.g. ``invalid_grant``)
    and the HTTP status when available.
    """

    message: str
    code: str | None = None
    status_code: int | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class TokenError:
    """Error in token storage or lifecycle operations.

    ``code`` carries the authorization server's error code (e.g.
    ``invalid_grant``) when a refresh was rejected by the server.
    """

    message: str
    key: str | None = None
    code: str | None = None

    def __str__(self) -> str:
        return self.message


AuthError = Union[ConfigError, OAuthError, TokenError]


def format_error(error: AuthError) -> str:
    """Render an error for log output."""
    match error:
        case ConfigError(message=message, field=field):
            suffix = f" (field: {field})" if field else ""
            return f"Config error: {message}{suffix}"
        case OAuthError(message=message, code=code, status_code=status_code):
            details = [part for part in (code, status_code) if part is not None]
            suffix = f" ({', '.join(str(d) for d in details)})" if details else ""
            return f"OAuth error: {message}{suffix}"
        case TokenError(message=message, key=key, code=code):
            parts = [f"key: {key}"] if key else []
            if code:
                parts.append(code)
            suffix = f" ({', '.join(parts)})" if parts else ""
            return f"Token error: {message}{suffix}"
