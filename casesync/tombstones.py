"""
Tombstone / Deletion Log
========================

Deletion is two-phase:
1. append a tombstone {table_name, record_id, user_id, deleted_at} to the
   remote log,
2. delete the row itself, then the storage blobs of any documents removed
   with it.

Until both phases succeed the tombstone is kept locally as a
PendingDeletion (inside the local document) and retried at the start of the
next sync. A failed row delete never re-records the tombstone.

Only tombstones inside the retention window are fetched; a device offline
for longer than the window will not learn about older deletions.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from .errors import SyncError, AuthorizationDeniedError, NetworkError, SyncTimeoutError
from .flatten import flatten, reconstruct
from .mapping import get_table
from .merge import prune_orphans
from .remote import RemoteClient
from .schemas import AppData, PendingDeletion, Tombstone

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30


@dataclass
class DeletionOutcome:
    """Result of attempting the remote side of one deletion"""
    tombstone: PendingDeletion
    completed: bool = False
    error: Optional[SyncError] = None


def delete_locally(
    data: AppData,
    table: str,
    record_id: str,
    owner_id: str,
    now: Optional[datetime] = None,
) -> AppData:
    """
    Remove a record (and everything beneath it) from the local document and
    queue its tombstone.

    Local removal is immediate and unconditional; the remote side happens on
    the next sync. The queued deletion carries the storage paths of every
    document removed with the record so their blobs go with the row.
    """
    spec = get_table(table)
    flat = flatten(data)
    documents_before = list(flat["case_documents"])
    flat[table] = [r for r in flat[table] if str(r.get(spec.identity)) != str(record_id)]
    prune_orphans(flat)
    kept = {r["id"] for r in flat["case_documents"]}
    removed_paths = [d["storage_path"] for d in documents_before if d["id"] not in kept and d.get("storage_path")]

    pending = list(data.pending_deletions)
    pending.append(PendingDeletion(
        table_name=table,
        record_id=str(record_id),
        user_id=owner_id,
        deleted_at=now or datetime.now(timezone.utc),
        storage_paths=removed_paths,
    ))
    return reconstruct(flat, pending)


class TombstoneLog:
    """Reads and writes the remote deletion log for one owner"""

    def __init__(self, remote: RemoteClient, owner_id: str, retention_days: int = DEFAULT_RETENTION_DAYS):
        self.remote = remote
        self.owner_id = owner_id
        self.retention_days = retention_days

    async def complete(self, pending: PendingDeletion) -> DeletionOutcome:
        """
        Run whichever phases of a deletion are still outstanding.

        Authorization denials and transient failures are logged and returned
        in the outcome; the tombstone stays pending so the next sync retries
        it. Session and schema errors propagate.
        """
        outcome = DeletionOutcome(tombstone=pending)
        try:
            if not pending.recorded:
                await self.remote.append_tombstones([
                    pending.model_dump(mode="json", include={"table_name", "record_id", "user_id", "deleted_at"})
                ])
                pending.recorded = True
            await self._delete_row(pending.table_name, pending.record_id)
            if pending.storage_paths:
                await self.remote.remove_blobs(pending.storage_paths)
        except AuthorizationDeniedError as e:
            logger.warning(f"Delete of {pending.table_name}/{pending.record_id} denied: {e.message}")
            pending.last_error = e.message
            outcome.error = e
            return outcome
        except (NetworkError, SyncTimeoutError) as e:
            logger.info(f"Delete of {pending.table_name}/{pending.record_id} deferred: {e.message}")
            pending.last_error = e.message
            outcome.error = e
            return outcome

        pending.last_error = None
        outcome.completed = True
        return outcome

    async def _delete_row(self, table: str, record_id: str) -> None:
        spec = get_table(table)
        filters = {"user_id": f"eq.{self.owner_id}"} if spec.identity != "id" else None
        await self.remote.delete_rows(table, [record_id], column=spec.identity, filters=filters)

    async def flush_pending(
        self, pending: List[PendingDeletion]
    ) -> Tuple[List[PendingDeletion], List[DeletionOutcome]]:
        """
        Retry every pending deletion.

        Returns:
            (deletions still pending, outcomes of every attempt)
        """
        still_pending: List[PendingDeletion] = []
        outcomes: List[DeletionOutcome] = []
        for item in pending:
            outcome = await self.complete(item)
            outcomes.append(outcome)
            if not outcome.completed:
                still_pending.append(item)
        if pending:
            logger.info(f"Flushed deletions: {len(pending) - len(still_pending)} done, {len(still_pending)} pending")
        return still_pending, outcomes

    def window_start(self, now: Optional[datetime] = None) -> datetime:
        return (now or datetime.now(timezone.utc)) - timedelta(days=self.retention_days)

    async def fetch_recent(self, now: Optional[datetime] = None) -> List[Tombstone]:
        """Tombstones for this owner inside the retention window"""
        rows = await self.remote.fetch_tombstones(self.owner_id, self.window_start(now))
        return [Tombstone.model_validate(row) for row in rows]
