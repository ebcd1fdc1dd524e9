"""Pluggable token storage."""

from __future__ import annotations

from typing import Protocol

from mcpauth.models.tokens import TokenSet


class TokenStorage(Protocol):
    """Protocol for token storage backends.

    Keys are caller-chosen identifiers such as a user or session id.
    Production deployments supply a durable implementation; the token
    manager depends only on this protocol.
    """

    async def get(self, key: str) -> TokenSet | None: ...

    async def set(self, key: str, token: TokenSet) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryTokenStorage:
    """In-memory token storage for development and tests.

    No eviction and no persistence across restarts.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, TokenSet] = {}

    async def get(self, key: str) -> TokenSet | None:
        return self._tokens.get(key)

    async def set(self, key: str, token: TokenSet) -> None:
        self._tokens[key] = token

    async def delete(self, key: str) -> None:
        self._tokens.pop(key, None)

    def __len__(self) -> int:
        return len(self._tokens)
