"""
Sync Engine
===========

Wires one signed-in user's pieces together: session provider, remote
client, local store, blob store, attachment syncer and orchestrator.

Local edits made through the engine (document download/evict, staging a
new document, deleting a record) replace the stored document, so they are
refused while a sync pass holds it.
"""

import logging
from typing import Optional, Tuple

from .attachments import AttachmentSyncer, LocalBlobStore
from .auth import SessionProvider, SupabaseSessionProvider
from .config import Settings, get_settings
from .db.store import LocalStore
from .errors import SyncInProgressError, RecordNotFoundError, UnconfiguredError
from .orchestrator import SyncOrchestrator, SyncReport
from .remote import RemoteClient, resolve_owner_id
from .schemas import AppData, CaseDocument
from .tombstones import delete_locally

logger = logging.getLogger(__name__)


class SyncEngine:
    """Everything needed to sync and edit one owner's data"""

    def __init__(
        self,
        sessions: SessionProvider,
        remote: RemoteClient,
        store: LocalStore,
        owner_id: str,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.sessions = sessions
        self.remote = remote
        self.store = store
        self.owner_id = owner_id
        self.blobs = LocalBlobStore(self.settings.blob_dir, owner_id)
        self.attachments = AttachmentSyncer(remote, self.blobs, owner_id)
        self.orchestrator = SyncOrchestrator(
            remote, store, owner_id, attachments=self.attachments, settings=self.settings
        )

    @classmethod
    async def sign_in(
        cls,
        email: Optional[str] = None,
        password: Optional[str] = None,
        settings: Optional[Settings] = None,
        store: Optional[LocalStore] = None,
    ) -> "SyncEngine":
        """
        Sign in and resolve the owner id.

        Credentials default to SYNC_EMAIL / SYNC_PASSWORD.
        """
        settings = settings or get_settings()
        email = email or settings.sync_email
        if password is None and settings.sync_password is not None:
            password = settings.sync_password.get_secret_value()
        if not email or not password:
            raise UnconfiguredError("No sync account configured (SYNC_EMAIL / SYNC_PASSWORD)")

        sessions = SupabaseSessionProvider(
            settings.supabase_url, settings.supabase_anon_key, settings.session_timeout
        )
        session = await sessions.sign_in(email, password)
        remote = RemoteClient.from_settings(sessions, settings)
        owner_id = await resolve_owner_id(remote, session.user_id)
        return cls(sessions, remote, store or LocalStore(settings.database_url), owner_id, settings)

    async def close(self):
        await self.remote.close()
        close = getattr(self.sessions, "close", None)
        if close is not None:
            await close()

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    async def sync(self) -> Optional[SyncReport]:
        return await self.orchestrator.sync()

    # -------------------------------------------------------------------------
    # Local document
    # -------------------------------------------------------------------------

    def load(self) -> AppData:
        return self.store.get(self.owner_id) or AppData()

    def _require_idle(self) -> None:
        if self.orchestrator.is_busy:
            raise SyncInProgressError("A sync is running; try again when it finishes")

    def _save(self, data: AppData) -> None:
        self._require_idle()
        self.store.put(self.owner_id, data)

    def _find_document(self, data: AppData, document_id: str) -> Tuple[int, CaseDocument]:
        for index, doc in enumerate(data.documents):
            if doc.id == document_id:
                return index, doc
        raise RecordNotFoundError(f"Document {document_id} not found")

    def _replace_document(self, document_id: str, doc: CaseDocument) -> None:
        data = self.load()
        index, _ = self._find_document(data, document_id)
        data.documents[index] = doc
        self._save(data)

    async def download_document(self, document_id: str) -> Tuple[CaseDocument, bytes]:
        """Fetch a cloud-only document's binary and mark it synced on this device"""
        self._require_idle()
        _, doc = self._find_document(self.load(), document_id)
        doc, content = await self.attachments.download(doc)
        self._replace_document(document_id, doc)
        return doc, content

    def evict_document(self, document_id: str) -> CaseDocument:
        """Drop the local binary; the document stays available in the cloud"""
        self._require_idle()
        _, doc = self._find_document(self.load(), document_id)
        doc = self.attachments.evict_local(doc)
        self._replace_document(document_id, doc)
        return doc

    def add_document(
        self,
        case_id: str,
        name: str,
        content: bytes,
        content_type: Optional[str] = None,
    ) -> CaseDocument:
        """Keep a new attachment locally; it is uploaded on the next sync"""
        self._require_idle()
        data = self.load()
        doc = self.attachments.stage_new_document(case_id, name, content, content_type)
        data.documents.append(doc)
        self._save(data)
        return doc

    def delete_record(self, table: str, record_id: str) -> AppData:
        """
        Delete a record and its descendants locally and queue the tombstone.

        Local binaries of removed documents go now; the remote row and the
        stored blobs are deleted on the next sync.
        """
        before = self.load()
        data = delete_locally(before, table, record_id, self.owner_id)
        self._save(data)
        kept = {d.id for d in data.documents}
        for doc in before.documents:
            if doc.id not in kept:
                self.blobs.delete(doc.id)
        logger.info(f"Deleted {table} {record_id} locally; remote deletion queued")
        return data
