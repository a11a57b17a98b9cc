"""
Sync Engine Tests
=================
"""

import pytest

from casesync.engine import SyncEngine
from casesync.errors import RecordNotFoundError, SyncInProgressError, UnconfiguredError
from casesync.schemas import AppData, DocumentState, SyncStatus

from .fakes import make_remote


@pytest.fixture
def engine(backend, sessions, store, settings):
    return SyncEngine(sessions, make_remote(backend, sessions), store, "owner-1", settings=settings)


class TestSyncEngine:
    """Local edits and their interaction with sync passes"""

    def test_add_document_is_pending_upload(self, engine):
        doc = engine.add_document("k1", "brief.pdf", b"%PDF", "application/pdf")

        stored = engine.load().documents[0]
        assert stored.id == doc.id
        assert stored.local_state == DocumentState.PENDING_UPLOAD
        assert engine.blobs.read(doc.id) == b"%PDF"

    @pytest.mark.asyncio
    async def test_added_document_uploaded_on_next_sync(self, engine, backend):
        engine.store.put("owner-1", AppData.model_validate({"clients": [{"id": "c1", "cases": [{"id": "k1"}]}]}))
        doc = engine.add_document("k1", "brief.pdf", b"%PDF", "application/pdf")

        report = await engine.sync()

        assert report.uploads.uploaded == [doc.id]
        assert backend.blobs[doc.storage_path] == b"%PDF"

    def test_delete_document_drops_local_binary(self, engine):
        doc = engine.add_document("k1", "brief.pdf", b"%PDF")

        data = engine.delete_record("case_documents", doc.id)

        assert data.documents == []
        assert data.pending_deletions[0].table_name == "case_documents"
        assert not engine.blobs.exists(doc.id)

    @pytest.mark.asyncio
    async def test_deleted_document_removed_from_storage(self, engine, backend):
        engine.store.put("owner-1", AppData.model_validate({"clients": [{"id": "c1", "cases": [{"id": "k1"}]}]}))
        doc = engine.add_document("k1", "brief.pdf", b"%PDF")
        await engine.sync()
        assert backend.blobs[doc.storage_path] == b"%PDF"

        engine.delete_record("case_documents", doc.id)
        report = await engine.sync()

        assert report.success
        assert backend.rows("case_documents") == []
        assert backend.blobs == {}
        assert engine.load().pending_deletions == []

    def test_deleting_case_drops_its_document_binaries(self, engine):
        engine.store.put("owner-1", AppData.model_validate({"clients": [{"id": "c1", "cases": [{"id": "k1"}]}]}))
        doc = engine.add_document("k1", "brief.pdf", b"%PDF")

        data = engine.delete_record("cases", "k1")

        assert data.documents == []
        assert not engine.blobs.exists(doc.id)
        assert data.pending_deletions[0].storage_paths == [doc.storage_path]

    def test_unknown_document(self, engine):
        with pytest.raises(RecordNotFoundError):
            engine.evict_document("missing")

    def test_edits_refused_while_syncing(self, engine):
        engine.orchestrator.status = SyncStatus.SYNCING

        with pytest.raises(SyncInProgressError):
            engine.add_document("k1", "brief.pdf", b"%PDF")
        assert engine.load().documents == []

    @pytest.mark.asyncio
    async def test_sign_in_requires_credentials(self, settings):
        with pytest.raises(UnconfiguredError):
            await SyncEngine.sign_in(settings=settings)
