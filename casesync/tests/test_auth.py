"""
Auth Session Tests
==================

Token expiry parsing and the session providers.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import jwt
import pytest

from casesync.auth import (
    AuthSession, ServiceKeySessionProvider, SupabaseSessionProvider, token_expiry,
)
from casesync.errors import NetworkError, SessionExpiredError, UnconfiguredError

EXPIRES = datetime(2026, 9, 1, 8, 0, tzinfo=timezone.utc)


def make_token(exp=EXPIRES, **claims) -> str:
    if exp is not None:
        claims["exp"] = int(exp.timestamp())
    return jwt.encode(claims, "casesync-test-signing-secret-0123456789", algorithm="HS256")


def token_endpoint(calls):
    """GoTrue token endpoint answering both grant types"""
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        body = json.loads(request.content)
        grant = request.url.params["grant_type"]
        if grant == "password" and body.get("password") != "correct":
            return httpx.Response(400, json={"error": "invalid_grant"})
        serial = len(calls)
        return httpx.Response(200, json={
            "access_token": make_token(sub="user-1"),
            "refresh_token": f"refresh-{serial}",
            "user": {"id": "user-1", "email": "lawyer@example.com"},
        })
    return handler


# =============================================================================
# Tokens
# =============================================================================

class TestTokens:
    """Tests for token_expiry() and AuthSession"""

    def test_reads_exp_claim(self):
        assert token_expiry(make_token()) == EXPIRES

    def test_expired_token_still_parses(self):
        past = datetime(2020, 1, 1, tzinfo=timezone.utc)
        assert token_expiry(make_token(exp=past)) == past

    def test_malformed_token(self):
        with pytest.raises(SessionExpiredError):
            token_expiry("not-a-jwt")

    def test_token_without_expiry(self):
        with pytest.raises(SessionExpiredError):
            token_expiry(make_token(exp=None, sub="user-1"))

    def test_is_expired_with_margin(self):
        session = AuthSession(user_id="u", access_token="t", expires_at=EXPIRES)
        now = EXPIRES - timedelta(seconds=30)

        assert not session.is_expired(now=now)
        assert session.is_expired(margin_seconds=60, now=now)


# =============================================================================
# Providers
# =============================================================================

class TestSupabaseSessionProvider:
    """Password sign-in and token refresh"""

    @pytest.mark.asyncio
    async def test_sign_in(self):
        calls = []
        provider = SupabaseSessionProvider(
            "https://backend.test/", "anon-key", transport=httpx.MockTransport(token_endpoint(calls))
        )

        session = await provider.sign_in("lawyer@example.com", "correct")

        assert session.user_id == "user-1"
        assert session.email == "lawyer@example.com"
        assert session.expires_at == EXPIRES
        assert await provider.get_session() is session
        assert str(calls[0].url).startswith("https://backend.test/auth/v1/token")
        assert calls[0].headers["apikey"] == "anon-key"
        await provider.close()

    @pytest.mark.asyncio
    async def test_refresh_uses_refresh_token(self):
        calls = []
        provider = SupabaseSessionProvider(
            "https://backend.test", "anon-key", transport=httpx.MockTransport(token_endpoint(calls))
        )
        await provider.sign_in("lawyer@example.com", "correct")

        session = await provider.refresh_session()

        assert calls[1].url.params["grant_type"] == "refresh_token"
        assert json.loads(calls[1].content) == {"refresh_token": "refresh-1"}
        assert session.refresh_token == "refresh-2"

    @pytest.mark.asyncio
    async def test_refresh_without_session(self):
        provider = SupabaseSessionProvider(
            "https://backend.test", "anon-key", transport=httpx.MockTransport(token_endpoint([]))
        )
        assert await provider.refresh_session() is None

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        provider = SupabaseSessionProvider(
            "https://backend.test", "anon-key", transport=httpx.MockTransport(token_endpoint([]))
        )
        with pytest.raises(SessionExpiredError):
            await provider.sign_in("lawyer@example.com", "wrong")
        assert await provider.get_session() is None

    @pytest.mark.asyncio
    async def test_unreachable_server(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = SupabaseSessionProvider(
            "https://backend.test", "anon-key", transport=httpx.MockTransport(handler)
        )
        with pytest.raises(NetworkError):
            await provider.sign_in("lawyer@example.com", "correct")

    def test_unconfigured(self):
        with pytest.raises(UnconfiguredError):
            SupabaseSessionProvider(None, "anon-key")


class TestServiceKeySessionProvider:

    @pytest.mark.asyncio
    async def test_service_session(self):
        provider = ServiceKeySessionProvider(make_token(role="service_role"))

        session = await provider.get_session()

        assert session.user_id == "service_role"
        assert session.expires_at == EXPIRES
        assert await provider.refresh_session() is session

    def test_missing_key(self):
        with pytest.raises(UnconfiguredError):
            ServiceKeySessionProvider(None)
