"""
Wire Mapping
============

The single serialization boundary between the canonical snake_case schema
and everything else:

- Backend rows (PostgREST tables): column whitelist per table, owner and
  timestamp stamping, removal of device-local fields.
- Legacy payloads (older backups and clients wrote camelCase keys such as
  ``contactInfo`` or ``storagePath``): normalized to snake_case.

Table metadata (push order, conflict keys, parent relations) lives here too,
so every other module looks tables up instead of hard-coding names.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, date, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# Flat collections keyed by backend table name
FlatSet = Dict[str, List[Dict[str, Any]]]

TOMBSTONE_TABLE = "sync_deletions"


@dataclass(frozen=True)
class TableSpec:
    """How one flat collection maps to a backend table"""
    name: str
    label: str
    columns: Tuple[str, ...]
    identity: str = "id"
    conflict_key: str = "id"
    parent: Optional[Tuple[str, str]] = None  # (fk column, parent table)
    required_fk: bool = False  # a record without the fk is invalid, not an orphan
    pull_only: bool = False
    device_local: Tuple[str, ...] = field(default_factory=tuple)


_OWNED = ("user_id", "updated_at")

# Ordered parents-before-children; this is the push order.
TABLES: Tuple[TableSpec, ...] = (
    TableSpec(
        "profiles", "User profiles",
        ("id", "full_name", "mobile_number", "role", "is_approved", "is_active", "lawyer_id",
         "permissions", "subscription_start_date", "subscription_end_date", "created_at", "updated_at"),
        pull_only=True,
    ),
    TableSpec("assistants", "Assistants", ("name",) + _OWNED, identity="name", conflict_key="user_id,name"),
    TableSpec("clients", "Clients", ("id", "name", "contact_info") + _OWNED),
    TableSpec(
        "cases", "Cases",
        ("id", "client_id", "subject", "client_name", "opponent_name", "fee_agreement", "status") + _OWNED,
        parent=("client_id", "clients"),
    ),
    TableSpec(
        "stages", "Litigation stages",
        ("id", "case_id", "court", "case_number", "first_session_date", "decision_date",
         "decision_number", "decision_summary", "decision_notes") + _OWNED,
        parent=("case_id", "cases"),
    ),
    TableSpec(
        "sessions", "Sessions",
        ("id", "stage_id", "court", "case_number", "date", "client_name", "opponent_name",
         "is_postponed", "postponement_reason", "next_session_date", "next_postponement_reason",
         "assignee") + _OWNED,
        parent=("stage_id", "stages"),
    ),
    TableSpec(
        "invoices", "Invoices",
        ("id", "client_id", "client_name", "case_id", "case_subject", "issue_date", "due_date",
         "tax_rate", "discount", "status", "notes") + _OWNED,
        parent=("client_id", "clients"),
        required_fk=True,
    ),
    TableSpec(
        "invoice_items", "Invoice items",
        ("id", "invoice_id", "description", "amount") + _OWNED,
        parent=("invoice_id", "invoices"),
    ),
    TableSpec(
        "admin_tasks", "Administrative tasks",
        ("id", "task", "due_date", "completed", "importance", "assignee", "location", "order_index") + _OWNED,
    ),
    TableSpec(
        "appointments", "Appointments",
        ("id", "title", "time", "date", "importance", "assignee", "completed",
         "reminder_time_in_minutes", "notified") + _OWNED,
    ),
    TableSpec(
        "accounting_entries", "Accounting entries",
        ("id", "type", "amount", "date", "description", "client_id", "case_id", "client_name") + _OWNED,
    ),
    TableSpec(
        "case_documents", "Case documents",
        ("id", "case_id", "name", "type", "size", "added_at", "storage_path") + _OWNED,
        parent=("case_id", "cases"),
        device_local=("local_state",),
    ),
    TableSpec(
        "site_finances", "Office finances",
        ("id", "type", "amount", "payment_date", "description", "category", "payment_method") + _OWNED,
    ),
)

TABLES_BY_NAME: Dict[str, TableSpec] = {spec.name: spec for spec in TABLES}
TABLE_NAMES: List[str] = [spec.name for spec in TABLES]

# Top-level keys of older local documents and backups
_APP_DATA_ALIASES = {
    "adminTasks": "admin_tasks",
    "accountingEntries": "accounting_entries",
    "siteFinances": "site_finances",
    "pendingDeletions": "pending_deletions",
    "case_documents": "documents",
}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def get_table(name: str) -> TableSpec:
    try:
        return TABLES_BY_NAME[name]
    except KeyError:
        raise KeyError(f"Unknown table: {name}") from None


def to_snake(key: str) -> str:
    """contactInfo -> contact_info; snake_case keys pass through unchanged"""
    if "_" in key or key.islower():
        return key
    return _CAMEL_RE.sub("_", key).lower()


def identity_of(table: str, record: Dict[str, Any]) -> Any:
    """Primary identity of a record (id, or name for the natural-key table)"""
    return record.get(get_table(table).identity)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def normalize_record(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return a canonical snake_case copy of a record.

    When both spellings are present the snake_case value wins.
    """
    result: Dict[str, Any] = {}
    for key, value in raw.items():
        snake = to_snake(key)
        if snake in result and snake != key:
            continue
        result[snake] = value
    return result


def to_remote(table: str, record: Dict[str, Any], owner_id: str, now: datetime) -> Dict[str, Any]:
    """
    Convert a canonical record into the row written to the backend.

    Columns outside the table's whitelist (nested arrays, device-local state,
    display-only fields) are dropped. ``user_id`` falls back to the resolved
    owner id and ``updated_at`` to ``now``.
    """
    spec = get_table(table)
    record = normalize_record(record)
    row = {col: _jsonable(record[col]) for col in spec.columns if col in record}

    if "user_id" in spec.columns:
        row["user_id"] = record.get("user_id") or owner_id
    if "updated_at" in spec.columns:
        row["updated_at"] = _jsonable(record.get("updated_at") or now)

    if table == "site_finances" and is_placeholder_id(row.get("id")):
        row.pop("id", None)

    return row


def from_remote(table: str, row: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a backend row into a canonical flat record"""
    get_table(table)
    return normalize_record(row)


def is_placeholder_id(value: Any) -> bool:
    """Site finance rows created offline carry a non-positive temporary id"""
    if value is None:
        return True
    try:
        return int(value) <= 0
    except (TypeError, ValueError):
        return False


def normalize_app_data(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize a stored or exported hierarchical document.

    Accepts camelCase top-level keys and records, and assistants stored
    either as plain names or as ``{"name": ...}`` objects.
    """
    if not isinstance(raw, dict):
        return {}

    data: Dict[str, Any] = {}
    for key, value in raw.items():
        data[_APP_DATA_ALIASES.get(key, to_snake(key))] = value

    def records(items: Any) -> List[Dict[str, Any]]:
        return [normalize_record(i) for i in (items or []) if isinstance(i, dict)]

    clients = []
    for client in records(data.get("clients")):
        cases = []
        for case in records(client.get("cases")):
            stages = []
            for stage in records(case.get("stages")):
                stage["sessions"] = records(stage.get("sessions"))
                stages.append(stage)
            case["stages"] = stages
            cases.append(case)
        client["cases"] = cases
        clients.append(client)
    data["clients"] = clients

    invoices = []
    for invoice in records(data.get("invoices")):
        invoice["items"] = records(invoice.get("items"))
        invoices.append(invoice)
    data["invoices"] = invoices

    for key in ("admin_tasks", "appointments", "accounting_entries", "documents",
                "profiles", "site_finances", "pending_deletions"):
        data[key] = records(data.get(key))

    assistants = []
    for item in data.get("assistants") or []:
        if isinstance(item, str):
            assistants.append(item)
        elif isinstance(item, dict) and item.get("name"):
            assistants.append(item["name"])
    data["assistants"] = assistants

    return data
