"""
Merge Engine
============

Reconciles local and remote flat collections, table by table.

Per record identity (primary key, or ``name`` for assistants):
1. Local only   -> new: kept and pushed.
2. Both sides   -> strictly newer ``updated_at`` wins; a tie goes to the
                   remote copy. A local win is pushed.
3. Remote only  -> kept, not pushed.

A tombstone for the identity removes the record (from either side) when the
record's ``updated_at`` is older than ``deleted_at`` minus the grace window;
edits made within the grace window of the deletion survive.

After all tables are merged, children whose parent no longer exists are
pruned transitively (client -> case -> stage -> session, client -> invoice
-> item, case -> document), from both the merged set and the push set.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import TypeAdapter, ValidationError

from .errors import SyncInvariantError
from .mapping import FlatSet, TABLES, TABLE_NAMES, get_table, identity_of
from .schemas import DocumentState, Tombstone

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Documents in these states have never reached the server from this device
UNSENT_DOCUMENT_STATES = {DocumentState.PENDING_UPLOAD.value, DocumentState.ERROR.value}

TombstoneIndex = Dict[Tuple[str, str], datetime]


@dataclass
class MergeResult:
    """Merged collections to keep locally plus the subset to push"""
    merged: FlatSet
    push: FlatSet
    pruned: Dict[str, int] = field(default_factory=dict)
    tombstoned: Dict[str, int] = field(default_factory=dict)

    def push_plan(self) -> List[Tuple[str, List[Dict[str, Any]]]]:
        """Non-empty push collections, parents before children"""
        return [
            (spec.name, self.push[spec.name])
            for spec in TABLES
            if not spec.pull_only and self.push.get(spec.name)
        ]

    @property
    def push_count(self) -> int:
        return sum(len(records) for records in self.push.values())


_DATETIME = TypeAdapter(datetime)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ``updated_at`` value; missing values sort as the oldest time"""
    if value is None or value == "":
        return EPOCH
    try:
        parsed = _DATETIME.validate_python(value)
    except ValidationError:
        raise SyncInvariantError(f"Unparseable timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_tombstone_index(tombstones: Iterable[Any]) -> TombstoneIndex:
    """Latest deletion time per (table, record id)"""
    index: TombstoneIndex = {}
    for tomb in tombstones:
        if isinstance(tomb, Tombstone):
            table, record_id, deleted_at = tomb.table_name, tomb.record_id, tomb.deleted_at
        else:
            table, record_id, deleted_at = tomb["table_name"], tomb["record_id"], tomb["deleted_at"]
        key = (table, str(record_id))
        when = parse_timestamp(deleted_at)
        if key not in index or when > index[key]:
            index[key] = when
    return index


def is_tombstoned(
    table: str,
    record: Dict[str, Any],
    index: TombstoneIndex,
    grace: timedelta,
) -> bool:
    deleted_at = index.get((table, str(identity_of(table, record))))
    if deleted_at is None:
        return False
    return parse_timestamp(record.get("updated_at")) < deleted_at - grace


def _by_identity(table: str, records: List[Dict[str, Any]], side: str) -> Dict[Any, Dict[str, Any]]:
    keyed: Dict[Any, Dict[str, Any]] = {}
    for record in records or []:
        ident = identity_of(table, record)
        if ident is None:
            raise SyncInvariantError(f"{side} {table} record without identity", table=table)
        keyed[ident] = record
    return keyed


def merge_collection(
    table: str,
    local: List[Dict[str, Any]],
    remote: List[Dict[str, Any]],
    index: TombstoneIndex,
    grace: timedelta,
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]], int]:
    """
    Merge one table.

    Returns:
        (merged records, records to push, number removed by tombstones)
    """
    local_by_id = _by_identity(table, local, "local")
    remote_by_id = _by_identity(table, remote, "remote")
    is_documents = table == "case_documents"

    merged: List[Dict[str, Any]] = []
    push: List[Dict[str, Any]] = []
    dropped = 0

    for ident, remote_record in remote_by_id.items():
        local_record = local_by_id.get(ident)

        if local_record is None:
            winner, local_won = remote_record, False
            if is_documents:
                winner = {**remote_record, "local_state": DocumentState.CLOUD_ONLY.value}
        elif parse_timestamp(local_record.get("updated_at")) > parse_timestamp(remote_record.get("updated_at")):
            winner, local_won = local_record, True
        else:
            winner, local_won = remote_record, False
            if is_documents:
                winner = {**remote_record, "local_state": local_record.get("local_state")}

        if is_tombstoned(table, winner, index, grace):
            dropped += 1
            continue
        merged.append(winner)
        if local_won:
            push.append(winner)

    for ident, local_record in local_by_id.items():
        if ident in remote_by_id:
            continue
        if is_tombstoned(table, local_record, index, grace):
            dropped += 1
            continue
        merged.append(local_record)
        if is_documents and local_record.get("local_state") not in UNSENT_DOCUMENT_STATES:
            # Known to the server before and since swept; keep the local copy only.
            continue
        push.append(local_record)

    return merged, push, dropped


def prune_orphans(flat: FlatSet) -> Dict[str, int]:
    """
    Remove children whose foreign key does not resolve, in place.

    TABLES is ordered parents-before-children, so one pass is transitive.

    Raises:
        SyncInvariantError: a record of a table with a required fk has none
    """
    removed: Dict[str, int] = {}
    for spec in TABLES:
        if not spec.parent or spec.name not in flat:
            continue
        fk, parent_table = spec.parent
        if spec.required_fk:
            for r in flat[spec.name]:
                if r.get(fk) in (None, ""):
                    raise SyncInvariantError(
                        f"{spec.name} record {r.get(spec.identity)!r} has no {fk}", table=spec.name
                    )
        parent_ids = {identity_of(parent_table, r) for r in flat.get(parent_table) or []}
        kept = [r for r in flat[spec.name] if r.get(fk) in parent_ids]
        if len(kept) != len(flat[spec.name]):
            removed[spec.name] = len(flat[spec.name]) - len(kept)
            flat[spec.name] = kept
    return removed


def merge_flat_sets(
    local: FlatSet,
    remote: FlatSet,
    tombstones: Optional[Iterable[Any]] = None,
    grace_seconds: float = 2.0,
) -> MergeResult:
    """
    Reconcile every table, then prune orphans from merged and push sets.

    Args:
        local: Flattened local document
        remote: Flat collections fetched from the backend
        tombstones: Remote deletion log (retention window) plus local pending deletions
        grace_seconds: Clock-skew allowance when applying tombstones
    """
    index = build_tombstone_index(tombstones or [])
    grace = timedelta(seconds=grace_seconds)
    merged: FlatSet = {}
    push: FlatSet = {}
    tombstoned: Dict[str, int] = {}

    for table in TABLE_NAMES:
        spec = get_table(table)
        if spec.pull_only:
            merged[table] = list(remote.get(table) or [])
            push[table] = []
            continue
        merged[table], push[table], dropped = merge_collection(
            table, local.get(table) or [], remote.get(table) or [], index, grace
        )
        if dropped:
            tombstoned[table] = dropped

    pruned = prune_orphans(merged)
    for table in TABLE_NAMES:
        if not push[table]:
            continue
        surviving = {identity_of(table, r) for r in merged[table]}
        push[table] = [r for r in push[table] if identity_of(table, r) in surviving]

    if pruned:
        logger.info(f"Pruned orphaned records: {pruned}")
    if tombstoned:
        logger.info(f"Dropped tombstoned records: {tombstoned}")

    return MergeResult(merged=merged, push=push, pruned=pruned, tombstoned=tombstoned)
