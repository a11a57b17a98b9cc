"""
Pydantic Schemas for the Sync Engine
====================================

Canonical internal schema (snake_case) for the office's record set.

The hierarchical models (Client -> Case -> Stage -> Session,
Invoice -> InvoiceItem) are what the local store holds. Nested children do
not carry their parent's id; the flattener injects it when producing flat
collections and the reconstructor drops it again.
"""

from typing import List, Optional, Dict
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# ENUMS
# =============================================================================

class SyncStatus(str, Enum):
    """Orchestrator state"""
    IDLE = "idle"
    CHECKING = "checking"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"
    UNCONFIGURED = "unconfigured"
    UNINITIALIZED = "uninitialized"


class DocumentState(str, Enum):
    """Per-device lifecycle of a document's binary payload"""
    PENDING_UPLOAD = "pending_upload"
    SYNCED = "synced"
    PENDING_DOWNLOAD = "pending_download"
    CLOUD_ONLY = "cloud_only"
    DOWNLOADING = "downloading"
    ERROR = "error"


class CaseStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    ON_HOLD = "on_hold"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"


class Importance(str, Enum):
    NORMAL = "normal"
    IMPORTANT = "important"
    URGENT = "urgent"


class EntryType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class ProfileRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


# =============================================================================
# BASE
# =============================================================================

class SyncRecord(BaseModel):
    """Fields shared by every synced record"""
    model_config = ConfigDict(extra="ignore", use_enum_values=False)

    updated_at: Optional[datetime] = None


# =============================================================================
# CLIENT HIERARCHY
# =============================================================================

class Session(SyncRecord):
    """A court session within a litigation stage"""
    id: str
    court: Optional[str] = None
    case_number: Optional[str] = None
    date: Optional[datetime] = None
    client_name: Optional[str] = None
    opponent_name: Optional[str] = None
    is_postponed: bool = False
    postponement_reason: Optional[str] = None
    next_session_date: Optional[datetime] = None
    next_postponement_reason: Optional[str] = None
    assignee: Optional[str] = None
    user_id: Optional[str] = None


class Stage(SyncRecord):
    """A litigation stage (one court instance) of a case"""
    id: str
    court: Optional[str] = None
    case_number: Optional[str] = None
    first_session_date: Optional[datetime] = None
    decision_date: Optional[datetime] = None
    decision_number: Optional[str] = None
    decision_summary: Optional[str] = None
    decision_notes: Optional[str] = None
    user_id: Optional[str] = None
    sessions: List[Session] = Field(default_factory=list)


class Case(SyncRecord):
    id: str
    subject: Optional[str] = None
    client_name: Optional[str] = None
    opponent_name: Optional[str] = None
    fee_agreement: Optional[str] = None
    status: CaseStatus = CaseStatus.ACTIVE
    user_id: Optional[str] = None
    stages: List[Stage] = Field(default_factory=list)


class Client(SyncRecord):
    id: str
    name: str = ""
    contact_info: Optional[str] = None
    user_id: Optional[str] = None
    cases: List[Case] = Field(default_factory=list)


# =============================================================================
# INVOICES
# =============================================================================

class InvoiceItem(SyncRecord):
    id: str
    description: Optional[str] = None
    amount: float = 0.0


class Invoice(SyncRecord):
    id: str
    client_id: str
    client_name: Optional[str] = None
    case_id: Optional[str] = None
    case_subject: Optional[str] = None
    issue_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    tax_rate: float = 0.0
    discount: float = 0.0
    status: InvoiceStatus = InvoiceStatus.DRAFT
    notes: Optional[str] = None
    user_id: Optional[str] = None
    items: List[InvoiceItem] = Field(default_factory=list)


# =============================================================================
# FLAT, OWNER-SCOPED RECORDS
# =============================================================================

class AdminTask(SyncRecord):
    id: str
    task: str = ""
    due_date: Optional[datetime] = None
    completed: bool = False
    importance: Importance = Importance.NORMAL
    assignee: Optional[str] = None
    location: Optional[str] = None
    order_index: Optional[int] = None
    user_id: Optional[str] = None


class Appointment(SyncRecord):
    id: str
    title: str = ""
    time: Optional[str] = None
    date: Optional[datetime] = None
    importance: Importance = Importance.NORMAL
    assignee: Optional[str] = None
    completed: bool = False
    reminder_time_in_minutes: Optional[int] = None
    notified: bool = False
    user_id: Optional[str] = None


class AccountingEntry(SyncRecord):
    id: str
    type: EntryType = EntryType.INCOME
    amount: float = 0.0
    date: Optional[datetime] = None
    description: Optional[str] = None
    client_id: Optional[str] = None
    case_id: Optional[str] = None
    client_name: Optional[str] = None
    user_id: Optional[str] = None


class CaseDocument(SyncRecord):
    """
    Metadata for a case attachment.

    ``local_state`` is device-local: it describes whether *this* device holds
    the binary, and is never written to the backend.
    """
    id: str
    case_id: Optional[str] = None
    user_id: Optional[str] = None
    name: str = ""
    type: Optional[str] = None
    size: int = 0
    added_at: Optional[datetime] = None
    storage_path: Optional[str] = None
    local_state: DocumentState = DocumentState.CLOUD_ONLY


class SiteFinancialEntry(SyncRecord):
    """Ledger row with a backend-assigned numeric id (<= 0 means not yet inserted)"""
    id: int
    user_id: Optional[str] = None
    type: EntryType = EntryType.INCOME
    payment_date: Optional[datetime] = None
    amount: float = 0.0
    description: Optional[str] = None
    payment_method: Optional[str] = None
    category: Optional[str] = None


class Profile(SyncRecord):
    id: str
    full_name: Optional[str] = None
    mobile_number: Optional[str] = None
    role: ProfileRole = ProfileRole.USER
    is_approved: bool = False
    is_active: bool = True
    lawyer_id: Optional[str] = None
    permissions: Optional[Dict[str, bool]] = None
    subscription_start_date: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None
    created_at: Optional[datetime] = None


# =============================================================================
# DELETION LOG
# =============================================================================

class Tombstone(BaseModel):
    """Append-only record of a deletion"""
    model_config = ConfigDict(extra="ignore")

    table_name: str
    record_id: str
    user_id: str
    deleted_at: datetime
    id: Optional[int] = None


class PendingDeletion(Tombstone):
    """A locally recorded deletion whose remote side is not finished yet"""
    recorded: bool = False
    last_error: Optional[str] = None
    # Blobs of documents removed with the record, deleted after the row
    storage_paths: List[str] = Field(default_factory=list)


# =============================================================================
# LOCAL DOCUMENT
# =============================================================================

class AppData(BaseModel):
    """The hierarchical document stored locally under the owner id"""
    model_config = ConfigDict(extra="ignore")

    clients: List[Client] = Field(default_factory=list)
    admin_tasks: List[AdminTask] = Field(default_factory=list)
    appointments: List[Appointment] = Field(default_factory=list)
    accounting_entries: List[AccountingEntry] = Field(default_factory=list)
    invoices: List[Invoice] = Field(default_factory=list)
    assistants: List[str] = Field(default_factory=list)
    documents: List[CaseDocument] = Field(default_factory=list)
    profiles: List[Profile] = Field(default_factory=list)
    site_finances: List[SiteFinancialEntry] = Field(default_factory=list)
    pending_deletions: List[PendingDeletion] = Field(default_factory=list)


# =============================================================================
# SERVICE RESPONSES
# =============================================================================

class SyncStatusResponse(BaseModel):
    status: SyncStatus
    message: Optional[str] = None
    owner_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None


class RestoreStepResponse(BaseModel):
    table: str
    label: str
    status: str
    count: int
    error: Optional[str] = None


class RestoreJobResponse(BaseModel):
    job_id: str
    cursor: int
    finished: bool
    message: Optional[str] = None
    steps: List[RestoreStepResponse] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    version: str
    configured: bool
    warnings: List[str] = Field(default_factory=list)
    timestamp: str


class SyncReportResponse(BaseModel):
    status: SyncStatus
    message: Optional[str] = None
    success: bool
    error_kind: Optional[str] = None
    pulled: Dict[str, int] = Field(default_factory=dict)
    pushed: Dict[str, int] = Field(default_factory=dict)
    pruned: Dict[str, int] = Field(default_factory=dict)
    uploaded: List[str] = Field(default_factory=list)
    failed_uploads: Dict[str, str] = Field(default_factory=dict)
    pending_deletions: int = 0
    deletion_errors: List[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    kind: str
    message: str
    hint: Optional[str] = None
