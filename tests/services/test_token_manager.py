"""Tests for OAuth 2.1 token lifecycle management.

High-impact tests covering:
- Storage pass-through and failure wrapping
- Transparent refresh in get_valid_token, including refresh token preservation
- Coalescing of concurrent refreshes
- Token endpoint requests for the three grants and their error handling
"""

import asyncio
import dataclasses
import time
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs

import httpx
import pytest

from mcpauth.models.config import OAuthConfig
from mcpauth.models.errors import OAuthError, TokenError
from mcpauth.models.result import Err, Ok
from mcpauth.models.tokens import TokenSet
from mcpauth.services.flow import create_authorization_state
from mcpauth.services.storage import MemoryTokenStorage
from mcpauth.services.tokens import (
    OAuth2TokenManager,
    get_time_until_expiry,
    merge_tokens,
    validate_token,
    with_new_expiry,
)

CONFIG = OAuthConfig(
    client_id="client-456",
    client_secret="secret-789",
    authorization_url="https://auth.example.com/authorize",
    token_url="https://auth.example.com/token",
    scopes=("read", "write"),
)


def make_response(payload, status_code: int = 200) -> MagicMock:
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.json.return_value = payload
    return mock_response


class FailingStorage:
    """Storage whose every operation fails."""

    async def get(self, key):
        raise RuntimeError("backend unavailable")

    async def set(self, key, token):
        raise RuntimeError("backend unavailable")

    async def delete(self, key):
        raise RuntimeError("backend unavailable")


class TestTokenStorageOperations:
    def setup_method(self):
        # Arrange
        self.storage = MemoryTokenStorage()
        self.manager = OAuth2TokenManager(
            CONFIG, storage=self.storage, http_client=AsyncMock()
        )

    async def test_missing_token_is_not_found(self):
        # Act
        result = await self.manager.get_token("nobody")

        # Assert
        assert result == Err(TokenError("Token not found", key="nobody"))

    async def test_set_get_delete(self):
        # Arrange
        token = TokenSet(access_token="abc")

        # Act
        stored = await self.manager.set_token("u1", token)
        fetched = await self.manager.get_token("u1")
        deleted = await self.manager.delete_token("u1")

        # Assert
        assert stored == Ok(None)
        assert fetched == Ok(token)
        assert deleted == Ok(None)
        assert await self.storage.get("u1") is None

    async def test_storage_failures_are_wrapped(self):
        # Arrange
        manager = OAuth2TokenManager(
            CONFIG, storage=FailingStorage(), http_client=AsyncMock()
        )

        # Act
        results = [
            await manager.get_token("u1"),
            await manager.set_token("u1", TokenSet(access_token="abc")),
            await manager.delete_token("u1"),
        ]

        # Assert
        for result in results:
            assert isinstance(result, Err)
            assert isinstance(result.error, TokenError)
            assert "backend unavailable" in result.error.message
            assert result.error.key == "u1"

    async def test_default_storage_is_in_memory(self):
        manager = OAuth2TokenManager(CONFIG, http_client=AsyncMock())

        assert isinstance(manager.storage, MemoryTokenStorage)


class TestGetValidToken:
    """Test transparent refresh of stored tokens."""

    def setup_method(self):
        # Arrange
        self.storage = MemoryTokenStorage()
        self.http_client = AsyncMock()
        self.manager = OAuth2TokenManager(
            CONFIG, storage=self.storage, http_client=self.http_client
        )

    async def test_unexpired_token_returned_unchanged(self):
        # Arrange
        token = TokenSet(
            access_token="abc", expires_at=time.time() + 3600, refresh_token="r1"
        )
        await self.storage.set("u1", token)

        # Act
        result = await self.manager.get_valid_token("u1")

        # Assert
        assert isinstance(result, Ok)
        assert result.value is token
        self.http_client.post.assert_not_called()

    async def test_token_without_expiry_never_refreshed(self):
        # Arrange
        token = TokenSet(access_token="abc", refresh_token="r1")
        await self.storage.set("u1", token)

        # Act
        result = await self.manager.get_valid_token("u1")

        # Assert
        assert result == Ok(token)
        self.http_client.post.assert_not_called()

    async def test_expired_token_is_refreshed_and_merged(self):
        # Arrange
        await self.storage.set(
            "u1",
            TokenSet(access_token="abc", expires_at=time.time() - 1, refresh_token="r1"),
        )
        self.http_client.post.return_value = make_response(
            {"access_token": "xyz", "expires_in": 3600}
        )

        # Act
        result = await self.manager.get_valid_token("u1")

        # Assert
        assert isinstance(result, Ok)
        token = result.value
        assert token.access_token == "xyz"
        assert token.refresh_token == "r1"
        assert abs(token.expires_at - (time.time() + 3600)) < 5
        assert await self.storage.get("u1") == token

        self.http_client.post.assert_awaited_once()
        call_args = self.http_client.post.call_args
        assert call_args[0][0] == "https://auth.example.com/token"
        assert call_args[1]["data"] == {
            "grant_type": "refresh_token",
            "refresh_token": "r1",
            "client_id": "client-456",
            "client_secret": "secret-789",
        }

    async def test_token_inside_expiry_buffer_is_refreshed(self):
        # Arrange
        await self.storage.set(
            "u1",
            TokenSet(
                access_token="abc", expires_at=time.time() + 10, refresh_token="r1"
            ),
        )
        self.http_client.post.return_value = make_response(
            {"access_token": "xyz", "refresh_token": "r2", "expires_in": 3600}
        )

        # Act
        result = await self.manager.get_valid_token("u1")

        # Assert
        assert isinstance(result, Ok)
        assert result.value.refresh_token == "r2"
        self.http_client.post.assert_awaited_once()

    async def test_expired_without_refresh_token_fails_without_network(self):
        # Arrange
        await self.storage.set(
            "u1", TokenSet(access_token="abc", expires_at=time.time() - 1)
        )

        # Act
        result = await self.manager.get_valid_token("u1")

        # Assert
        assert isinstance(result, Err)
        assert result.error.message == "Token expired and no refresh token available"
        self.http_client.post.assert_not_called()

    async def test_missing_token_fails(self):
        result = await self.manager.get_valid_token("nobody")

        assert isinstance(result, Err)
        assert result.error.message == "Token not found"

    async def test_failed_refresh_keeps_stored_token(self):
        # Arrange
        expired = TokenSet(
            access_token="abc", expires_at=time.time() - 1, refresh_token="r1"
        )
        await self.storage.set("u1", expired)
        self.http_client.post.return_value = make_response(
            {"error": "invalid_grant", "error_description": "Refresh token revoked"},
            status_code=400,
        )

        # Act
        result = await self.manager.get_valid_token("u1")

        # Assert
        assert result == Err(
            TokenError("Refresh token revoked", key="u1", code="invalid_grant")
        )
        assert await self.storage.get("u1") == expired
        self.http_client.post.assert_awaited_once()

    async def test_concurrent_callers_share_one_refresh(self):
        # Arrange
        await self.storage.set(
            "u1",
            TokenSet(access_token="abc", expires_at=time.time() - 1, refresh_token="r1"),
        )

        async def slow_post(*args, **kwargs):
            await asyncio.sleep(0.01)
            return make_response({"access_token": "xyz", "expires_in": 3600})

        self.http_client.post.side_effect = slow_post

        # Act
        results = await asyncio.gather(
            *(self.manager.get_valid_token("u1") for _ in range(5))
        )

        # Assert
        assert self.http_client.post.await_count == 1
        assert all(isinstance(r, Ok) for r in results)
        assert {r.value.access_token for r in results} == {"xyz"}
        assert self.manager._refreshes == {}

    async def test_concurrent_callers_share_one_failed_refresh(self):
        # Arrange
        expired = TokenSet(
            access_token="abc", expires_at=time.time() - 1, refresh_token="r1"
        )
        await self.storage.set("u1", expired)

        async def rejecting_post(*args, **kwargs):
            await asyncio.sleep(0.05)
            return make_response({"error": "invalid_grant"}, status_code=400)

        self.http_client.post.side_effect = rejecting_post

        # Act
        results = await asyncio.gather(
            *(self.manager.get_valid_token("u1") for _ in range(5))
        )

        # Assert
        assert self.http_client.post.await_count == 1
        assert results == [
            Err(TokenError("invalid_grant", key="u1", code="invalid_grant"))
        ] * 5
        assert await self.storage.get("u1") == expired

    async def test_cancelled_caller_does_not_cancel_shared_refresh(self):
        # Arrange
        await self.storage.set(
            "u1",
            TokenSet(access_token="abc", expires_at=time.time() - 1, refresh_token="r1"),
        )

        async def slow_post(*args, **kwargs):
            await asyncio.sleep(0.05)
            return make_response({"access_token": "xyz", "expires_in": 3600})

        self.http_client.post.side_effect = slow_post
        first = asyncio.ensure_future(self.manager.get_valid_token("u1"))
        await asyncio.sleep(0)
        second = asyncio.ensure_future(self.manager.get_valid_token("u1"))
        await asyncio.sleep(0.01)

        # Act
        first.cancel()
        result = await second

        # Assert
        assert result.unwrap().access_token == "xyz"
        assert self.http_client.post.await_count == 1

    async def test_no_refresh_bookkeeping_retained_per_key(self):
        # Arrange
        self.http_client.post.return_value = make_response(
            {"access_token": "xyz", "expires_in": 3600}
        )
        keys = [f"session-{i}" for i in range(100)]
        for key in keys:
            await self.storage.set(
                key,
                TokenSet(
                    access_token="abc", expires_at=time.time() - 1, refresh_token="r"
                ),
            )

        # Act
        for key in keys:
            await self.manager.get_valid_token(key)
            await self.manager.delete_token(key)

        # Assert
        assert self.manager._refreshes == {}
        assert len(self.storage) == 0

    async def test_refreshes_of_different_keys_are_independent(self):
        # Arrange
        for key in ("u1", "u2"):
            await self.storage.set(
                key,
                TokenSet(
                    access_token="abc", expires_at=time.time() - 1, refresh_token=key
                ),
            )
        self.http_client.post.return_value = make_response(
            {"access_token": "xyz", "expires_in": 3600}
        )

        # Act
        await asyncio.gather(
            self.manager.get_valid_token("u1"), self.manager.get_valid_token("u2")
        )

        # Assert
        assert self.http_client.post.await_count == 2
        assert (await self.storage.get("u2")).refresh_token == "u2"

    async def test_auth_header(self):
        # Arrange
        await self.storage.set("u1", TokenSet(access_token="abc", token_type="Bearer"))

        # Act
        result = await self.manager.get_auth_header("u1")

        # Assert
        assert result == Ok("Bearer abc")

    async def test_auth_header_propagates_errors(self):
        result = await self.manager.get_auth_header("nobody")

        assert isinstance(result, Err)
        assert result.error.message == "Token not found"


class TestTokenEndpointRequests:
    """Test token endpoint calls for the supported grants."""

    def setup_method(self):
        # Arrange
        self.storage = MemoryTokenStorage()
        self.http_client = AsyncMock()
        self.manager = OAuth2TokenManager(
            CONFIG, storage=self.storage, http_client=self.http_client
        )
        self.state = create_authorization_state("https://myapp.com/callback")

    async def test_exchange_code_stores_tokens(self):
        # Arrange
        self.http_client.post.return_value = make_response(
            {
                "access_token": "access-token-xyz",
                "token_type": "Bearer",
                "expires_in": 3600,
                "refresh_token": "refresh-token-abc",
                "scope": "read write",
            }
        )

        # Act
        result = await self.manager.exchange_code("auth-code-123", self.state, key="u1")

        # Assert
        assert isinstance(result, Ok)
        assert result.value.access_token == "access-token-xyz"
        assert result.value.has_scope("write")
        assert await self.storage.get("u1") == result.value

        call_args = self.http_client.post.call_args
        form_data = call_args[1]["data"]
        assert form_data["grant_type"] == "authorization_code"
        assert form_data["code"] == "auth-code-123"
        assert form_data["redirect_uri"] == "https://myapp.com/callback"
        assert form_data["code_verifier"] == self.state.pkce.code_verifier

        # Must use form encoding, not JSON
        headers = call_args[1]["headers"]
        assert headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert headers["Accept"] == "application/json"
        assert "json" not in call_args[1]

    async def test_exchange_code_without_key_does_not_store(self):
        self.http_client.post.return_value = make_response({"access_token": "abc"})

        result = await self.manager.exchange_code("auth-code-123", self.state)

        assert isinstance(result, Ok)
        assert len(self.storage) == 0

    async def test_complete_authorization_exchanges_callback_code(self):
        # Arrange
        self.http_client.post.return_value = make_response({"access_token": "abc"})
        callback = f"https://myapp.com/callback?code=auth-code-123&state={self.state.state}"

        # Act
        result = await self.manager.complete_authorization(self.state, callback, key="u1")

        # Assert
        assert result.unwrap().access_token == "abc"
        assert self.http_client.post.call_args[1]["data"]["code"] == "auth-code-123"
        assert await self.storage.get("u1") == result.value

    async def test_complete_authorization_honours_state_max_age(self):
        # Arrange
        manager = OAuth2TokenManager(
            CONFIG, http_client=self.http_client, state_max_age=60
        )
        state = dataclasses.replace(self.state, created_at=time.time() - 120)
        callback = f"https://myapp.com/callback?code=auth-code-123&state={state.state}"

        # Act
        result = await manager.complete_authorization(state, callback)

        # Assert
        assert isinstance(result, Err)
        assert result.error.code == "expired_state"
        self.http_client.post.assert_not_awaited()

    async def test_complete_authorization_rejects_foreign_state(self):
        callback = "https://myapp.com/callback?code=auth-code-123&state=forged"

        result = await self.manager.complete_authorization(self.state, callback)

        assert result.error.code == "invalid_state"
        self.http_client.post.assert_not_awaited()

    async def test_invalid_grant_error(self):
        # Arrange
        self.http_client.post.return_value = make_response(
            {
                "error": "invalid_grant",
                "error_description": "Authorization code has expired",
            },
            status_code=400,
        )

        # Act
        result = await self.manager.exchange_code("expired-code", self.state, key="u1")

        # Assert
        assert result == Err(
            OAuthError(
                "Authorization code has expired", code="invalid_grant", status_code=400
            )
        )
        assert len(self.storage) == 0

    async def test_client_credentials_grant(self):
        # Arrange
        self.http_client.post.return_value = make_response(
            {"access_token": "service-token", "expires_in": 600}
        )

        # Act
        result = await self.manager.request_client_credentials(key="service")

        # Assert
        assert isinstance(result, Ok)
        form_data = self.http_client.post.call_args[1]["data"]
        assert form_data == {
            "grant_type": "client_credentials",
            "client_id": "client-456",
            "client_secret": "secret-789",
            "scope": "read write",
        }
        assert (await self.storage.get("service")).access_token == "service-token"

    async def test_network_error_becomes_token_error(self):
        # Arrange
        self.http_client.post.side_effect = httpx.ConnectError("Connection failed")

        # Act
        result = await self.manager.refresh_token_request("r1")

        # Assert
        assert isinstance(result, Err)
        assert isinstance(result.error, TokenError)
        assert "Connection failed" in result.error.message

    async def test_non_json_response(self):
        # Arrange - HTML instead of JSON, common for 5xx pages
        mock_response = MagicMock()
        mock_response.status_code = 502
        mock_response.json.side_effect = ValueError("Not valid JSON")
        self.http_client.post.return_value = mock_response

        # Act
        exchange = await self.manager.exchange_code("code", self.state)
        refresh = await self.manager.refresh_token_request("r1")

        # Assert
        assert exchange == Err(
            OAuthError("Invalid token response format", status_code=502)
        )
        assert refresh == Err(TokenError("Invalid token response format"))

    async def test_refresh_response_missing_access_token(self):
        self.http_client.post.return_value = make_response({"token_type": "Bearer"})

        result = await self.manager.refresh_token_request("r1")

        assert result == Err(TokenError("Missing access_token"))


class TestWireFormat:
    """Test requests as they reach the token endpoint."""

    async def test_refresh_request_is_form_encoded(self):
        # Arrange
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(
                200, json={"access_token": "xyz", "token_type": "Bearer"}
            )

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        manager = OAuth2TokenManager(CONFIG, http_client=http_client)

        # Act
        result = await manager.refresh_token_request("r1")
        await http_client.aclose()

        # Assert
        assert result == Ok(TokenSet(access_token="xyz"))
        request = captured[0]
        assert request.method == "POST"
        assert str(request.url) == "https://auth.example.com/token"
        assert request.headers["content-type"] == "application/x-www-form-urlencoded"
        assert parse_qs(request.content.decode()) == {
            "grant_type": ["refresh_token"],
            "refresh_token": ["r1"],
            "client_id": ["client-456"],
            "client_secret": ["secret-789"],
        }

    async def test_timeout_is_reported(self):
        # Arrange
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        manager = OAuth2TokenManager(CONFIG, http_client=http_client)

        # Act
        result = await manager.refresh_token_request("r1")
        await http_client.aclose()

        # Assert
        assert isinstance(result, Err)
        assert "timed out" in result.error.message


class TestClientLifecycle:
    async def test_owned_client_closed_on_exit(self):
        # Act
        async with OAuth2TokenManager(CONFIG, timeout=5.0) as manager:
            client = manager._http_client
            assert not client.is_closed

        # Assert
        assert client.is_closed
        assert client.timeout.read == 5.0

    async def test_supplied_client_left_open(self):
        # Arrange
        http_client = AsyncMock()
        manager = OAuth2TokenManager(CONFIG, http_client=http_client)

        # Act
        await manager.close()

        # Assert
        http_client.aclose.assert_not_called()


class TestTokenHelpers:
    def test_merge_keeps_existing_refresh_token(self):
        # Arrange
        existing = TokenSet(access_token="old", refresh_token="r1")
        fresh = TokenSet(access_token="new", refresh_token=None)

        # Act
        merged = merge_tokens(existing, fresh)

        # Assert
        assert merged.access_token == "new"
        assert merged.refresh_token == "r1"

    def test_merge_prefers_new_refresh_token(self):
        existing = TokenSet(access_token="old", refresh_token="r1")
        fresh = TokenSet(access_token="new", refresh_token="r2")

        assert merge_tokens(existing, fresh).refresh_token == "r2"

    def test_time_until_expiry(self):
        assert get_time_until_expiry(TokenSet(access_token="a")) is None
        assert (
            get_time_until_expiry(TokenSet(access_token="a", expires_at=time.time() - 5))
            == 0.0
        )
        remaining = get_time_until_expiry(
            TokenSet(access_token="a", expires_at=time.time() + 100)
        )
        assert 95 < remaining <= 100

    def test_with_new_expiry_returns_copy(self):
        # Arrange
        token = TokenSet(access_token="a", refresh_token="r1")

        # Act
        updated = with_new_expiry(token, 60)

        # Assert
        assert token.expires_at is None
        assert updated.refresh_token == "r1"
        assert 55 < updated.expires_at - time.time() <= 60

    def test_validate_token_accepts_token_set(self):
        token = TokenSet(access_token="a")

        assert validate_token(token) == Ok(token)

    def test_validate_token_builds_from_mapping(self):
        result = validate_token(
            {"access_token": "a", "token_type": "Bearer", "expires_at": 100, "scope": "x"}
        )

        assert result == Ok(
            TokenSet(access_token="a", token_type="Bearer", expires_at=100.0, scope="x")
        )

    @pytest.mark.parametrize(
        "candidate, message",
        [
            (None, "Invalid token format"),
            ("abc", "Invalid token format"),
            ({"token_type": "Bearer"}, "Missing or invalid access_token"),
            (TokenSet(access_token=""), "Missing or invalid access_token"),
            ({"access_token": "a", "token_type": ""}, "Missing or invalid token_type"),
            ({"access_token": "a", "expires_at": "later"}, "Invalid expires_at"),
            ({"access_token": "a", "refresh_token": 123}, "Invalid refresh_token"),
            ({"access_token": "a", "scope": ["read", "write"]}, "Invalid scope"),
        ],
    )
    def test_validate_token_rejects_malformed(self, candidate, message):
        assert validate_token(candidate) == Err(TokenError(message))
