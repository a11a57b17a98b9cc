"""
Auth Session Provider
=====================

The engine never stores credentials itself; it asks a SessionProvider for the
current session before every remote operation batch.

SupabaseSessionProvider talks to the backend's GoTrue endpoints:
- password sign-in:   POST /auth/v1/token?grant_type=password
- refresh:            POST /auth/v1/token?grant_type=refresh_token

Token expiry is read from the access token's ``exp`` claim (PyJWT, signature
not verified; the backend verifies it on every request).
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any

import httpx
import jwt

from .errors import SessionExpiredError, SyncTimeoutError, UnconfiguredError, NetworkError

logger = logging.getLogger(__name__)


@dataclass
class AuthSession:
    """Authenticated user plus bearer token"""
    user_id: str
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    email: Optional[str] = None

    def is_expired(self, margin_seconds: int = 0, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now + timedelta(seconds=margin_seconds)


def token_expiry(access_token: str) -> datetime:
    """Read the ``exp`` claim of a JWT without verifying its signature"""
    try:
        claims = jwt.decode(access_token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        raise SessionExpiredError(f"Malformed access token: {e}")
    exp = claims.get("exp")
    if exp is None:
        raise SessionExpiredError("Access token has no expiry")
    return datetime.fromtimestamp(int(exp), tz=timezone.utc)


class SessionProvider(ABC):
    """Source of the current auth session"""

    @abstractmethod
    async def get_session(self) -> Optional[AuthSession]:
        """Return the cached session, or None when nobody is signed in"""

    @abstractmethod
    async def refresh_session(self) -> Optional[AuthSession]:
        """Exchange the refresh token for a new session"""


class SupabaseSessionProvider(SessionProvider):
    """Session provider backed by the backend's auth endpoints"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url or not api_key:
            raise UnconfiguredError("Sync server is not configured")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._session: Optional[AuthSession] = None
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self):
        """Close the HTTP client"""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _token_request(self, grant_type: str, payload: Dict[str, Any]) -> AuthSession:
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}/auth/v1/token",
                params={"grant_type": grant_type},
                json=payload,
                headers={"apikey": self.api_key, "Content-Type": "application/json"},
            )
        except httpx.TimeoutException:
            raise SyncTimeoutError("Timed out contacting the sync server. Check your connection.")
        except httpx.TransportError as e:
            raise NetworkError(f"Could not reach the sync server: {e}")

        if response.status_code >= 400:
            logger.warning(f"Token request ({grant_type}) failed: HTTP {response.status_code}")
            raise SessionExpiredError("Session expired, please sign in again.")

        data = response.json()
        user = data.get("user") or {}
        access_token = data["access_token"]
        return AuthSession(
            user_id=user.get("id", ""),
            email=user.get("email"),
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=token_expiry(access_token),
        )

    async def sign_in(self, email: str, password: str) -> AuthSession:
        self._session = await self._token_request("password", {"email": email, "password": password})
        logger.info(f"Signed in as {self._session.email or self._session.user_id}")
        return self._session

    async def get_session(self) -> Optional[AuthSession]:
        return self._session

    async def refresh_session(self) -> Optional[AuthSession]:
        if not self._session or not self._session.refresh_token:
            return None
        self._session = await self._token_request(
            "refresh_token", {"refresh_token": self._session.refresh_token}
        )
        logger.debug("Auth session refreshed")
        return self._session


class ServiceKeySessionProvider(SessionProvider):
    """
    Session built from the service-role key, for maintenance jobs.

    The key bypasses row-level policies; only the retention sweep uses it.
    """

    def __init__(self, service_key: str):
        if not service_key:
            raise UnconfiguredError("SUPABASE_SERVICE_KEY is not set")
        self._session = AuthSession(
            user_id="service_role",
            access_token=service_key,
            expires_at=token_expiry(service_key),
        )

    async def get_session(self) -> Optional[AuthSession]:
        return self._session

    async def refresh_session(self) -> Optional[AuthSession]:
        return self._session
