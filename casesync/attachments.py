"""
Attachment Sync State Machine
=============================

Document binaries move independently of their metadata rows. Each
CaseDocument carries a device-local ``local_state``:

    pending_upload --upload ok--> synced
    pending_upload --upload failed--> error  (row not upserted; retried next sync)
    cloud_only / pending_download --open--> downloading --> synced
    synced --remove from this device--> cloud_only  (no tombstone)

Deleting a document for everyone goes through the deletion log, which
removes the stored blob after the row.

Downloads are on demand only. The retention sweep removes old rows and blobs
on the server without writing tombstones, so devices holding a copy keep it.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Any, Tuple

from .errors import SyncError, SessionExpiredError, UninitializedError, InvalidTransitionError
from .remote import RemoteClient, chunked
from .schemas import CaseDocument, DocumentState

logger = logging.getLogger(__name__)

S = DocumentState

TRANSITIONS: Dict[DocumentState, set] = {
    S.PENDING_UPLOAD: {S.SYNCED, S.ERROR},
    S.ERROR: {S.PENDING_UPLOAD, S.SYNCED},
    S.SYNCED: {S.CLOUD_ONLY},
    S.CLOUD_ONLY: {S.PENDING_DOWNLOAD, S.DOWNLOADING},
    S.PENDING_DOWNLOAD: {S.DOWNLOADING, S.CLOUD_ONLY},
    S.DOWNLOADING: {S.SYNCED, S.CLOUD_ONLY},
}


def check_transition(current: Any, target: DocumentState) -> DocumentState:
    """Validate a state change; staying in the same state is always allowed"""
    current = DocumentState(current)
    if current != target and target not in TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot move document from {current.value} to {target.value}")
    return target


def transition(doc: CaseDocument, target: DocumentState) -> CaseDocument:
    check_transition(doc.local_state, target)
    return doc.model_copy(update={"local_state": target})


def storage_path_for(owner_id: str, case_id: Optional[str], document_id: str) -> str:
    return f"{owner_id}/{case_id or 'unassigned'}/{document_id}"


# =============================================================================
# LOCAL BLOBS
# =============================================================================

class LocalBlobStore:
    """Document binaries held on this device, one directory per owner"""

    def __init__(self, root: str, owner_id: str):
        self.root = Path(root) / owner_id
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, document_id: str) -> Path:
        safe = document_id.replace("/", "_").replace("\\", "_")
        return self.root / safe

    def exists(self, document_id: str) -> bool:
        return self.path_for(document_id).is_file()

    def read(self, document_id: str) -> bytes:
        return self.path_for(document_id).read_bytes()

    def write(self, document_id: str, content: bytes) -> None:
        path = self.path_for(document_id)
        tmp = path.with_name(path.name + ".part")
        tmp.write_bytes(content)
        tmp.replace(path)

    def delete(self, document_id: str) -> None:
        path = self.path_for(document_id)
        if path.exists():
            path.unlink()


@dataclass
class UploadReport:
    uploaded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


# =============================================================================
# SYNCER
# =============================================================================

class AttachmentSyncer:
    """Moves document binaries between the local blob store and object storage"""

    def __init__(self, remote: RemoteClient, blobs: LocalBlobStore, owner_id: str):
        self.remote = remote
        self.blobs = blobs
        self.owner_id = owner_id

    def stage_new_document(
        self,
        case_id: str,
        name: str,
        content: bytes,
        content_type: Optional[str] = None,
        document_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CaseDocument:
        """Store a freshly added file locally and return its pending_upload record"""
        now = now or datetime.now(timezone.utc)
        document_id = document_id or f"doc-{uuid.uuid4()}"
        self.blobs.write(document_id, content)
        return CaseDocument(
            id=document_id,
            case_id=case_id,
            user_id=self.owner_id,
            name=name,
            type=content_type,
            size=len(content),
            added_at=now,
            storage_path=storage_path_for(self.owner_id, case_id, document_id),
            local_state=S.PENDING_UPLOAD,
            updated_at=now,
        )

    def needs_upload(self, record: Dict[str, Any]) -> bool:
        state = record.get("local_state")
        if state == S.PENDING_UPLOAD.value:
            return True
        return state == S.ERROR.value and self.blobs.exists(record["id"])

    async def upload_pending(self, records: List[Dict[str, Any]]) -> UploadReport:
        """
        Upload every pending binary, updating the flat records in place.

        Records whose upload fails end in ``error`` and must not be upserted
        in this pass; their ids are in ``report.failed``.
        """
        report = UploadReport()
        for record in records:
            if not self.needs_upload(record):
                continue
            doc_id = record["id"]
            path = record.get("storage_path") or storage_path_for(self.owner_id, record.get("case_id"), doc_id)

            if not self.blobs.exists(doc_id):
                check_transition(record["local_state"], S.ERROR)
                record["local_state"] = S.ERROR.value
                report.failed[doc_id] = "Local file is missing"
                continue

            try:
                await self.remote.upload_blob(path, self.blobs.read(doc_id), record.get("type"))
            except (SessionExpiredError, UninitializedError):
                raise
            except SyncError as e:
                logger.warning(f"Upload of document {doc_id} failed: {e.message}")
                record["local_state"] = check_transition(record["local_state"], S.ERROR).value
                report.failed[doc_id] = e.message
                continue

            record["local_state"] = check_transition(record["local_state"], S.SYNCED).value
            record["storage_path"] = path
            report.uploaded.append(doc_id)

        if report.uploaded or report.failed:
            logger.info(f"Document uploads: {len(report.uploaded)} ok, {len(report.failed)} failed")
        return report

    async def download(self, doc: CaseDocument) -> Tuple[CaseDocument, bytes]:
        """
        Fetch a cloud-only document on demand.

        On failure the document keeps its previous state and the error is
        raised to the caller.
        """
        if doc.local_state == S.SYNCED and self.blobs.exists(doc.id):
            return doc, self.blobs.read(doc.id)
        if not doc.storage_path:
            raise InvalidTransitionError(f"Document {doc.id} has no storage path")

        downloading = transition(doc, S.DOWNLOADING)
        try:
            content = await self.remote.download_blob(doc.storage_path)
        except SyncError:
            logger.warning(f"Download of document {doc.id} failed")
            raise
        self.blobs.write(doc.id, content)
        return transition(downloading, S.SYNCED), content

    def evict_local(self, doc: CaseDocument) -> CaseDocument:
        """Remove the binary from this device only; the cloud copy is untouched"""
        evicted = transition(doc, S.CLOUD_ONLY)
        self.blobs.delete(doc.id)
        return evicted


async def sweep_expired_documents(
    remote: RemoteClient,
    now: Optional[datetime] = None,
    horizon_hours: int = 48,
) -> int:
    """
    Server-side retention sweep: delete document rows and blobs older than the
    horizon. No tombstones are written, so devices that hold a local copy keep
    it as an orphan.

    Returns:
        Number of documents removed
    """
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=horizon_hours)
    rows = await remote.select_rows("case_documents", params={"added_at": f"lt.{cutoff.isoformat()}"})
    if not rows:
        return 0

    for batch in chunked(rows, 100):
        paths = [r["storage_path"] for r in batch if r.get("storage_path")]
        await remote.remove_blobs(paths)
        await remote.delete_rows("case_documents", [r["id"] for r in batch])

    logger.info(f"Retention sweep removed {len(rows)} documents older than {cutoff.isoformat()}")
    return len(rows)
