"""
Remote Access Layer
===================

Authenticated, timeout-bounded CRUD primitives against the backend's
PostgREST tables and object storage.

Every call:
1. re-validates the auth session (refreshing it when close to expiry),
2. carries an explicit timeout (bulk vs. lightweight checks),
3. converts failures into the SyncError taxonomy (see classify_error).

Writes are split into fixed-size batches executed sequentially; a failing
batch raises BatchPushError and leaves earlier batches committed.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Callable, Iterable
from urllib.parse import quote

import httpx

from .auth import AuthSession, SessionProvider
from .config import Settings, get_settings
from .errors import (
    SyncError, UnconfiguredError, UninitializedError, SessionExpiredError,
    AuthorizationDeniedError, SyncTimeoutError, NetworkError, UnknownSyncError,
    BatchPushError,
)
from .mapping import FlatSet, TABLE_NAMES, TOMBSTONE_TABLE, get_table, to_remote, from_remote

logger = logging.getLogger(__name__)

ProgressCallback = Optional[Callable[[str], None]]

MISSING_RELATION_CODES = {"42P01", "PGRST205", "PGRST204"}
EXPIRED_JWT_CODES = {"PGRST301", "PGRST302", "PGRST303"}
DENIED_CODES = {"42501"}


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================

def classify_error(status_code: int, payload: Any, table: Optional[str] = None) -> SyncError:
    """
    Map a backend error response onto the sync error taxonomy.

    Args:
        status_code: HTTP status of the response
        payload: Decoded JSON body (PostgREST or storage error object), or text
        table: Table the request targeted, for error context

    Returns:
        A SyncError subclass instance (not raised)
    """
    code = None
    message = ""
    if isinstance(payload, dict):
        code = payload.get("code") or payload.get("error")
        message = str(payload.get("message") or payload.get("msg") or payload.get("error") or "")
    elif payload:
        message = str(payload)
    code = str(code) if code is not None else None
    lowered = message.lower()
    where = f" (table {table})" if table else ""

    if code in MISSING_RELATION_CODES or ("relation" in lowered and "does not exist" in lowered):
        return UninitializedError(f"Cloud database is not fully set up{where}: {message}", table=table, code=code, status=status_code)

    if code in DENIED_CODES or "row-level security" in lowered or "policy" in lowered:
        return AuthorizationDeniedError(f"Permission denied{where}: {message}", table=table, code=code, status=status_code)

    if status_code == 401 or code in EXPIRED_JWT_CODES or "jwt" in lowered:
        return SessionExpiredError("Session expired, please sign in again.", table=table, code=code, status=status_code)

    if status_code == 403:
        return AuthorizationDeniedError(f"Permission denied{where}: {message}", table=table, code=code, status=status_code)

    if status_code in (408, 429) or status_code >= 500:
        return NetworkError(f"Server error HTTP {status_code}{where}: {message}", table=table, code=code, status=status_code)

    return UnknownSyncError(f"HTTP {status_code}{where}: {message}", table=table, code=code, status=status_code)


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:200]


def _in_filter(values: Iterable[Any]) -> str:
    quoted = []
    for value in values:
        text = str(value).replace("\\", "\\\\").replace('"', '\\"')
        quoted.append(f'"{text}"')
    return f"in.({','.join(quoted)})"


def chunked(items: List[Any], size: int) -> List[List[Any]]:
    """Split a list into consecutive batches of at most ``size`` items"""
    return [items[i:i + size] for i in range(0, len(items), size)]


@dataclass
class PushResult:
    """Outcome of pushing one table"""
    table: str
    pushed: int = 0
    batches: int = 0
    inserted: List[Dict[str, Any]] = field(default_factory=list)


# =============================================================================
# CLIENT
# =============================================================================

class RemoteClient:
    """
    Async client for the backend.

    Holds one lazily created httpx.AsyncClient; call ``close()`` when done.
    """

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        sessions: SessionProvider,
        bucket: str = "documents",
        timeout: float = 30.0,
        check_timeout: float = 5.0,
        session_timeout: float = 10.0,
        batch_size: int = 40,
        page_size: int = 1000,
        refresh_margin: int = 60,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.sessions = sessions
        self.bucket = bucket
        self.timeout = timeout
        self.check_timeout = check_timeout
        self.session_timeout = session_timeout
        self.batch_size = batch_size
        self.page_size = page_size
        self.refresh_margin = refresh_margin
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(
        cls,
        sessions: SessionProvider,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "RemoteClient":
        settings = settings or get_settings()
        return cls(
            settings.supabase_url,
            settings.supabase_anon_key,
            sessions,
            bucket=settings.storage_bucket,
            timeout=settings.sync_timeout,
            check_timeout=settings.check_timeout,
            session_timeout=settings.session_timeout,
            batch_size=settings.push_batch_size,
            page_size=settings.page_size,
            refresh_margin=settings.session_refresh_margin,
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client"""
        if not self.is_configured:
            raise UnconfiguredError("Sync server is not configured.")
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client"""
        if self._client:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Session handling
    # -------------------------------------------------------------------------

    async def ensure_session(self) -> AuthSession:
        """
        Return a non-expired session, refreshing it if needed.

        Raises:
            SessionExpiredError: nobody is signed in or the refresh failed
            SyncTimeoutError: the provider did not answer in time
        """
        try:
            session = await asyncio.wait_for(self.sessions.get_session(), self.session_timeout)
            if session is None:
                raise SessionExpiredError("Sign in is required to sync.")
            if session.is_expired(self.refresh_margin):
                logger.info("Auth session near expiry, refreshing")
                session = await asyncio.wait_for(self.sessions.refresh_session(), self.session_timeout)
        except asyncio.TimeoutError:
            raise SyncTimeoutError("Timed out validating the session. Check your connection.")

        if session is None or session.is_expired():
            raise SessionExpiredError("Session expired, please sign in again.")
        return session

    def _headers(self, session: AuthSession, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.api_key or "",
            "Authorization": f"Bearer {session.access_token}",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        table: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[AuthSession] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        client = await self._get_client()
        session = session or await self.ensure_session()
        timeout = timeout or self.timeout

        try:
            response = await asyncio.wait_for(
                client.request(
                    method,
                    path,
                    params=params,
                    json=json,
                    content=content,
                    headers=self._headers(session, headers),
                    timeout=timeout,
                ),
                timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            where = f" for {table}" if table else ""
            raise SyncTimeoutError(f"Request timed out{where} after {timeout:.0f}s", table=table)
        except httpx.TransportError as e:
            raise NetworkError(f"Network error: {e}", table=table)

        if response.status_code >= 400:
            error = classify_error(response.status_code, _decode_body(response), table)
            logger.warning(f"{method} {path} failed: {error.kind} - {error.message}")
            raise error
        return response

    # -------------------------------------------------------------------------
    # Table reads
    # -------------------------------------------------------------------------

    async def check_schema(self) -> bool:
        """
        Verify the backend is reachable and provisioned.

        Raises:
            UnconfiguredError: no URL/key, or the server cannot be reached
            NetworkError: the server answered with a transient error (5xx, 429)
            SessionExpiredError: no valid session
            UninitializedError: expected tables are missing
        """
        if not self.is_configured:
            raise UnconfiguredError("Sync server is not configured.")
        try:
            await self._request(
                "GET", "/rest/v1/profiles",
                table="profiles",
                timeout=self.check_timeout,
                params={"select": "id", "limit": 1},
            )
        except NetworkError as e:
            if e.status is None:
                raise UnconfiguredError(f"Sync server unreachable: {e.message}")
            raise
        return True

    async def select_rows(
        self,
        table: str,
        params: Optional[Dict[str, Any]] = None,
        order: str = "id.asc",
    ) -> List[Dict[str, Any]]:
        """Fetch every row of a table, paging through the server's row limit"""
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            query = {"select": "*", "order": order, "limit": self.page_size, "offset": offset}
            query.update(params or {})
            response = await self._request("GET", f"/rest/v1/{table}", table=table, params=query)
            page = response.json() or []
            rows.extend(page)
            if len(page) < self.page_size:
                return rows
            offset += self.page_size

    async def select_all(self, table: str) -> List[Dict[str, Any]]:
        """Fetch a synced table as canonical records"""
        spec = get_table(table)
        rows = await self.select_rows(table, order=f"{spec.identity}.asc")
        return [from_remote(table, row) for row in rows]

    async def fetch_flat_set(
        self,
        tables: Optional[List[str]] = None,
        progress: ProgressCallback = None,
    ) -> FlatSet:
        """Fetch several tables concurrently; there is no data dependency between reads"""
        tables = tables or TABLE_NAMES
        if progress:
            progress("Downloading cloud data...")
        results = await asyncio.gather(*(self.select_all(t) for t in tables))
        return dict(zip(tables, results))

    async def fetch_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        response = await self._request(
            "GET", "/rest/v1/profiles",
            table="profiles",
            timeout=self.check_timeout,
            params={"select": "*", "id": f"eq.{user_id}", "limit": 1},
        )
        rows = response.json() or []
        return from_remote("profiles", rows[0]) if rows else None

    # -------------------------------------------------------------------------
    # Table writes
    # -------------------------------------------------------------------------

    async def upsert_rows(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        on_conflict: str = "id",
        session: Optional[AuthSession] = None,
    ) -> None:
        """Insert-or-update rows keyed by ``on_conflict``; repeated upserts never duplicate"""
        if not rows:
            return
        await self._request(
            "POST", f"/rest/v1/{table}",
            table=table,
            session=session,
            params={"on_conflict": on_conflict},
            json=rows,
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def insert_rows(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        session: Optional[AuthSession] = None,
    ) -> List[Dict[str, Any]]:
        """Plain insert returning the stored rows (server-assigned ids included)"""
        if not rows:
            return []
        response = await self._request(
            "POST", f"/rest/v1/{table}",
            table=table,
            session=session,
            json=rows,
            headers={"Prefer": "return=representation"},
        )
        return response.json() or []

    async def delete_rows(
        self,
        table: str,
        values: List[Any],
        column: str = "id",
        filters: Optional[Dict[str, str]] = None,
    ) -> None:
        if not values:
            return
        params = {column: _in_filter(values)}
        params.update(filters or {})
        await self._request("DELETE", f"/rest/v1/{table}", table=table, params=params)

    async def push_table(
        self,
        table: str,
        records: List[Dict[str, Any]],
        owner_id: str,
        now: Optional[datetime] = None,
        batch_size: Optional[int] = None,
        progress: ProgressCallback = None,
    ) -> PushResult:
        """
        Push canonical records of one table in sequential batches.

        The session is re-validated before every batch so a long push survives
        a token refresh. Rows without an id (offline site finance entries) are
        inserted after the upserts so the backend assigns their ids.

        Raises:
            BatchPushError: at the first failing batch; earlier batches stay committed
        """
        spec = get_table(table)
        result = PushResult(table=table)
        if spec.pull_only or not records:
            return result

        now = now or datetime.now(timezone.utc)
        size = batch_size or self.batch_size
        rows = [to_remote(table, r, owner_id, now) for r in records]
        keyed = [r for r in rows if spec.identity in r]
        unkeyed = [r for r in rows if spec.identity not in r]

        plan = [("upsert", batch) for batch in chunked(keyed, size)]
        plan += [("insert", batch) for batch in chunked(unkeyed, size)]
        total = len(plan)

        if progress:
            progress(f"Uploading {spec.label.lower()}...")

        for index, (mode, batch) in enumerate(plan, start=1):
            try:
                session = await self.ensure_session()
                if mode == "upsert":
                    await self.upsert_rows(table, batch, spec.conflict_key, session=session)
                else:
                    result.inserted.extend(
                        from_remote(table, row) for row in await self.insert_rows(table, batch, session=session)
                    )
            except SyncError as e:
                logger.error(f"Push failed on {table} batch {index}/{total}: {e.message}")
                raise BatchPushError(table, index, total, e) from e
            result.batches += 1
            result.pushed += len(batch)

        logger.info(f"Pushed {result.pushed} {table} rows in {result.batches} batch(es)")
        return result

    # -------------------------------------------------------------------------
    # Deletion log
    # -------------------------------------------------------------------------

    async def fetch_tombstones(self, owner_id: str, since: datetime) -> List[Dict[str, Any]]:
        return await self.select_rows(
            TOMBSTONE_TABLE,
            params={"user_id": f"eq.{owner_id}", "deleted_at": f"gte.{since.isoformat()}"},
        )

    async def append_tombstones(self, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        await self._request(
            "POST", f"/rest/v1/{TOMBSTONE_TABLE}",
            table=TOMBSTONE_TABLE,
            json=rows,
            headers={"Prefer": "return=minimal"},
        )

    # -------------------------------------------------------------------------
    # Object storage
    # -------------------------------------------------------------------------

    def _object_path(self, path: str) -> str:
        return f"/storage/v1/object/{self.bucket}/{quote(path)}"

    async def upload_blob(self, path: str, content: bytes, content_type: Optional[str] = None) -> None:
        await self._request(
            "POST", self._object_path(path),
            table="storage",
            content=content,
            headers={
                "Content-Type": content_type or "application/octet-stream",
                "x-upsert": "true",
            },
        )

    async def download_blob(self, path: str) -> bytes:
        response = await self._request("GET", self._object_path(path), table="storage")
        return response.content

    async def remove_blobs(self, paths: List[str]) -> None:
        if not paths:
            return
        await self._request(
            "DELETE", f"/storage/v1/object/{self.bucket}",
            table="storage",
            json={"prefixes": paths},
        )


def batch_count(total: int, batch_size: int) -> int:
    return math.ceil(total / batch_size) if total else 0


async def resolve_owner_id(remote: RemoteClient, user_id: str) -> str:
    """
    Resolve the partition key the user's data lives under.

    An assistant's profile points at their lawyer via ``lawyer_id``; everyone
    else owns their own data. Resolve once per session and pass the result
    explicitly to every merge/push call.
    """
    profile = await remote.fetch_profile(user_id)
    if profile and profile.get("lawyer_id"):
        logger.info(f"User {user_id} syncs under lawyer {profile['lawyer_id']}")
        return profile["lawyer_id"]
    return user_id
