"""
Sync Orchestrator
=================

Runs one sync pass:

    check backend -> validate session -> flush pending deletions
    -> pull tables + tombstones -> flatten local -> merge
    -> upload pending documents -> push differential set (parents first)
    -> reconstruct -> replace local document -> report status

Single-flight: a request while a pass is running is a no-op. The local
document is replaced only after every remote step succeeded; a failed pass
leaves it exactly as it was.
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Union

from .attachments import AttachmentSyncer, UploadReport
from .config import Settings, get_settings
from .db.store import LocalStore
from .errors import SyncError, ErrorKind, POLICY_HINT
from .flatten import flatten, reconstruct
from .mapping import is_placeholder_id
from .merge import MergeResult, merge_flat_sets
from .remote import RemoteClient, ProgressCallback, resolve_owner_id
from .schemas import AppData, SyncStatus, DocumentState
from .tombstones import TombstoneLog

logger = logging.getLogger(__name__)

StatusListener = Callable[[SyncStatus, Optional[str]], None]
DataSyncedCallback = Callable[[AppData], Union[None, Awaitable[None]]]

BUSY_STATES = {SyncStatus.CHECKING, SyncStatus.SYNCING}

STATUS_FOR_KIND = {
    ErrorKind.UNCONFIGURED: SyncStatus.UNCONFIGURED,
    ErrorKind.UNINITIALIZED: SyncStatus.UNINITIALIZED,
}


@dataclass
class SyncReport:
    """What one sync pass did"""
    owner_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    success: bool = False
    pulled: Dict[str, int] = field(default_factory=dict)
    pushed: Dict[str, int] = field(default_factory=dict)
    pruned: Dict[str, int] = field(default_factory=dict)
    tombstoned: Dict[str, int] = field(default_factory=dict)
    uploads: UploadReport = field(default_factory=UploadReport)
    pending_deletions: int = 0
    deletion_errors: List[str] = field(default_factory=list)
    error: Optional[SyncError] = None

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error else None


class SyncOrchestrator:
    """
    Sequences one sync run for a resolved owner id.

    Args:
        remote: Remote Access Layer client
        store: Local store holding the owner's document
        owner_id: Effective owner id (an assistant's lawyer), resolved by the caller
        attachments: Syncer for document binaries; without it pending documents stay pending
        on_data_synced: Replacement callback; defaults to writing the store
        is_online: Network reachability check
        progress: Optional sink for human-readable step descriptions
        on_status: Optional listener for (status, message) changes
    """

    def __init__(
        self,
        remote: RemoteClient,
        store: LocalStore,
        owner_id: str,
        attachments: Optional[AttachmentSyncer] = None,
        on_data_synced: Optional[DataSyncedCallback] = None,
        is_online: Callable[[], bool] = lambda: True,
        progress: ProgressCallback = None,
        on_status: Optional[StatusListener] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.remote = remote
        self.store = store
        self.owner_id = owner_id
        self.attachments = attachments
        self.on_data_synced = on_data_synced
        self.is_online = is_online
        self.progress = progress
        self.on_status = on_status
        self.settings = settings or get_settings()
        self.clock = clock
        self.tombstones = TombstoneLog(remote, owner_id, self.settings.tombstone_retention_days)

        self.status = SyncStatus.IDLE
        self.message: Optional[str] = None
        self.last_report: Optional[SyncReport] = None
        self._in_flight = False

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def _set_status(self, status: SyncStatus, message: Optional[str] = None):
        self.status = status
        self.message = message
        if self.on_status:
            self.on_status(status, message)

    def _step(self, description: str):
        if self.progress:
            self.progress(description)

    @property
    def is_busy(self) -> bool:
        return self._in_flight or self.status in BUSY_STATES

    async def _preconditions_met(self) -> bool:
        if not self.is_online():
            logger.info("Sync skipped: offline")
            return False
        if not self.owner_id:
            logger.info("Sync skipped: owner id not resolved")
            return False
        if await self.remote.sessions.get_session() is None:
            logger.info("Sync skipped: no signed-in user")
            return False
        return True

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def sync(self) -> Optional[SyncReport]:
        """
        Run one sync pass.

        Returns:
            SyncReport, or None when the pass was skipped (already running,
            offline, signed out)
        """
        if self.is_busy:
            logger.info("Sync already in progress; request ignored")
            return None
        # Claimed before the first await so a concurrent call sees it
        self._in_flight = True
        try:
            if not await self._preconditions_met():
                return None
            return await self._sync_pass()
        finally:
            self._in_flight = False

    async def _sync_pass(self) -> SyncReport:
        report = SyncReport(owner_id=self.owner_id, started_at=self.clock())
        self._set_status(SyncStatus.CHECKING, "Checking the cloud database...")
        try:
            await self._run(report)
        except SyncError as e:
            report.error = e
            message = e.message
            if e.kind == ErrorKind.AUTHORIZATION_DENIED:
                message = f"{message} {POLICY_HINT}"
            logger.error(f"Sync failed ({e.kind}): {e.message}")
            self._set_status(STATUS_FOR_KIND.get(e.kind, SyncStatus.ERROR), message)
        except Exception as e:
            logger.exception("Unexpected sync failure")
            self._set_status(SyncStatus.ERROR, str(e))
            raise
        else:
            report.success = True
            message = None
            if report.pending_deletions:
                message = f"{report.pending_deletions} deletion(s) still pending"
            self._set_status(SyncStatus.SYNCED, message)
        finally:
            report.finished_at = self.clock()
            self.last_report = report
        return report

    async def _run(self, report: SyncReport) -> None:
        now = self.clock()

        await self.remote.check_schema()
        self._set_status(SyncStatus.SYNCING, "Syncing...")
        await self.remote.ensure_session()

        local = self.store.get(self.owner_id) or AppData()

        if local.pending_deletions:
            self._step("Sending deletions...")
        pending, outcomes = await self.tombstones.flush_pending(list(local.pending_deletions))
        report.pending_deletions = len(pending)
        report.deletion_errors = [o.error.message for o in outcomes if o.error]

        remote_flat = await self.remote.fetch_flat_set(progress=self.progress)
        report.pulled = {table: len(rows) for table, rows in remote_flat.items()}
        tombstones = await self.tombstones.fetch_recent(now)

        self._step("Merging changes...")
        result = merge_flat_sets(
            flatten(local),
            remote_flat,
            list(tombstones) + list(pending),
            grace_seconds=self.settings.tombstone_grace_seconds,
        )
        report.pruned = result.pruned
        report.tombstoned = result.tombstoned

        await self._sync_documents(result, report)
        await self._push(result, report, now)

        merged = reconstruct(result.merged, pending)
        await self._replace_local(merged, now)

    async def _sync_documents(self, result: MergeResult, report: SyncReport) -> None:
        """Upload pending binaries; documents whose upload failed are not upserted"""
        documents = result.merged.get("case_documents") or []
        unsent = {DocumentState.PENDING_UPLOAD.value, DocumentState.ERROR.value}

        if self.attachments is not None:
            if any(self.attachments.needs_upload(d) for d in documents):
                self._step("Uploading documents...")
            report.uploads = await self.attachments.upload_pending(documents)

        result.push["case_documents"] = [
            d for d in result.push.get("case_documents") or []
            if d.get("local_state") not in unsent
        ]

    async def _push(self, result: MergeResult, report: SyncReport, now: datetime) -> None:
        stamp = now.isoformat()
        for table, records in result.push_plan():
            for record in records:
                if not record.get("updated_at"):
                    record["updated_at"] = stamp
            pushed = await self.remote.push_table(table, records, self.owner_id, now=now, progress=self.progress)
            report.pushed[table] = pushed.pushed

            if table == "site_finances" and pushed.inserted:
                # Swap offline placeholders for the rows the backend numbered
                kept = [r for r in result.merged[table] if not is_placeholder_id(r.get("id"))]
                result.merged[table] = kept + pushed.inserted

    async def _replace_local(self, merged: AppData, now: datetime) -> None:
        if self.on_data_synced is None:
            self.store.put(self.owner_id, merged, synced_at=now)
            return
        outcome = self.on_data_synced(merged)
        if inspect.isawaitable(outcome):
            await outcome


async def build_orchestrator(
    remote: RemoteClient,
    store: LocalStore,
    user_id: str,
    settings: Optional[Settings] = None,
    **kwargs,
) -> SyncOrchestrator:
    """Resolve the effective owner id once, then bind an orchestrator to it"""
    owner_id = await resolve_owner_id(remote, user_id)
    return SyncOrchestrator(remote, store, owner_id, settings=settings, **kwargs)
