"""
Entity Flattener / Reconstructor
================================

Converts the hierarchical local document into flat, foreign-keyed
collections (one list per backend table) and back.

- flatten(): injects parent ids (client_id, case_id, stage_id, invoice_id)
  into nested children and drops the nested arrays.
- reconstruct(): groups children under their parents again. Children whose
  parent is absent are left out of the tree; that is not an error.

reconstruct(flatten(doc)) equals doc up to array ordering.
"""

from collections import defaultdict
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import SyncInvariantError
from .mapping import FlatSet, TABLE_NAMES
from .schemas import (
    AppData, Client, Case, Stage, Session, Invoice, InvoiceItem,
    AdminTask, Appointment, AccountingEntry, CaseDocument,
    SiteFinancialEntry, Profile, PendingDeletion,
)

M = TypeVar("M", bound=BaseModel)


def _dump(model: BaseModel, exclude: Optional[set] = None) -> Dict[str, Any]:
    return model.model_dump(mode="json", exclude=exclude)


def flatten(data: AppData) -> FlatSet:
    """Denormalize the hierarchical document into flat collections"""
    flat: FlatSet = {name: [] for name in TABLE_NAMES}

    for client in data.clients:
        flat["clients"].append(_dump(client, {"cases"}))
        for case in client.cases:
            flat["cases"].append({**_dump(case, {"stages"}), "client_id": client.id})
            for stage in case.stages:
                flat["stages"].append({**_dump(stage, {"sessions"}), "case_id": case.id})
                for session in stage.sessions:
                    flat["sessions"].append({**_dump(session), "stage_id": stage.id})

    for invoice in data.invoices:
        flat["invoices"].append(_dump(invoice, {"items"}))
        for item in invoice.items:
            flat["invoice_items"].append({**_dump(item), "invoice_id": invoice.id})

    flat["admin_tasks"] = [_dump(t) for t in data.admin_tasks]
    flat["appointments"] = [_dump(a) for a in data.appointments]
    flat["accounting_entries"] = [_dump(e) for e in data.accounting_entries]
    flat["case_documents"] = [_dump(d) for d in data.documents]
    flat["site_finances"] = [_dump(f) for f in data.site_finances]
    flat["profiles"] = [_dump(p) for p in data.profiles]

    seen = set()
    for name in data.assistants:
        if name and name not in seen:
            seen.add(name)
            flat["assistants"].append({"name": name})

    return flat


def _build(model: Type[M], record: Dict[str, Any], table: str) -> M:
    try:
        return model.model_validate(record)
    except ValidationError as e:
        raise SyncInvariantError(
            f"Invalid {table} record {record.get('id', record.get('name'))!r}: {e.errors()[0]['msg']}",
            table=table,
        ) from e


def _group(records: List[Dict[str, Any]], fk: str) -> Dict[Any, List[Dict[str, Any]]]:
    grouped: Dict[Any, List[Dict[str, Any]]] = defaultdict(list)
    for record in records:
        parent_id = record.get(fk)
        if parent_id is not None:
            grouped[parent_id].append(record)
    return grouped


def reconstruct(flat: FlatSet, pending_deletions: Optional[List[PendingDeletion]] = None) -> AppData:
    """Rebuild the hierarchical document from flat collections"""
    sessions_by_stage = _group(flat.get("sessions") or [], "stage_id")
    stages_by_case = _group(flat.get("stages") or [], "case_id")
    cases_by_client = _group(flat.get("cases") or [], "client_id")
    items_by_invoice = _group(flat.get("invoice_items") or [], "invoice_id")

    def build_stage(record):
        stage = _build(Stage, record, "stages")
        stage.sessions = [_build(Session, s, "sessions") for s in sessions_by_stage.get(stage.id, [])]
        return stage

    def build_case(record):
        case = _build(Case, record, "cases")
        case.stages = [build_stage(st) for st in stages_by_case.get(case.id, [])]
        return case

    clients = []
    for record in flat.get("clients") or []:
        client = _build(Client, record, "clients")
        client.cases = [build_case(cs) for cs in cases_by_client.get(client.id, [])]
        clients.append(client)

    invoices = []
    for record in flat.get("invoices") or []:
        invoice = _build(Invoice, record, "invoices")
        invoice.items = [_build(InvoiceItem, i, "invoice_items") for i in items_by_invoice.get(invoice.id, [])]
        invoices.append(invoice)

    assistants: List[str] = []
    for record in flat.get("assistants") or []:
        name = record.get("name")
        if name and name not in assistants:
            assistants.append(name)

    return AppData(
        clients=clients,
        invoices=invoices,
        admin_tasks=[_build(AdminTask, r, "admin_tasks") for r in flat.get("admin_tasks") or []],
        appointments=[_build(Appointment, r, "appointments") for r in flat.get("appointments") or []],
        accounting_entries=[
            _build(AccountingEntry, r, "accounting_entries") for r in flat.get("accounting_entries") or []
        ],
        assistants=assistants,
        documents=[_build(CaseDocument, r, "case_documents") for r in flat.get("case_documents") or []],
        profiles=[_build(Profile, r, "profiles") for r in flat.get("profiles") or []],
        site_finances=[_build(SiteFinancialEntry, r, "site_finances") for r in flat.get("site_finances") or []],
        pending_deletions=list(pending_deletions or []),
    )
