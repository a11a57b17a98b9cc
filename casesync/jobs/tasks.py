"""
Job Tasks
=========

Background task implementations. RQ calls plain functions, so each task
runs its coroutine to completion with ``asyncio.run``.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from rq import get_current_job

from ..attachments import sweep_expired_documents
from ..auth import ServiceKeySessionProvider
from ..config import get_settings
from ..engine import SyncEngine
from ..errors import SyncError
from ..remote import RemoteClient

logger = logging.getLogger(__name__)


def update_job_progress(message: str):
    """Record the current step in the RQ job meta"""
    job = get_current_job()
    if job:
        job.meta["message"] = message
        job.save_meta()


def _set_job_error_message(message: str) -> None:
    job = get_current_job()
    if job:
        job.meta["error_message"] = message[:200]
        job.save_meta()


async def _retention_sweep(horizon_hours: int) -> int:
    settings = get_settings()
    remote = RemoteClient.from_settings(ServiceKeySessionProvider(settings.supabase_service_key), settings)
    try:
        return await sweep_expired_documents(remote, horizon_hours=horizon_hours)
    finally:
        await remote.close()


def task_retention_sweep(horizon_hours: Optional[int] = None) -> Dict[str, Any]:
    """
    Delete remote documents older than the retention horizon.

    Runs with the service-role key because it crosses every owner.
    """
    horizon = horizon_hours or get_settings().document_retention_hours
    update_job_progress(f"Sweeping documents older than {horizon}h")
    try:
        removed = asyncio.run(_retention_sweep(horizon))
    except SyncError as e:
        _set_job_error_message(e.message)
        raise
    logger.info(f"Retention sweep finished: {removed} documents removed")
    return {
        "removed": removed,
        "horizon_hours": horizon,
        "finished_at": datetime.now(timezone.utc).isoformat(),
    }


async def _sync_once() -> Dict[str, Any]:
    engine = await SyncEngine.sign_in()
    engine.orchestrator.progress = update_job_progress
    try:
        report = await engine.sync()
    finally:
        await engine.close()

    if report is None:
        return {"status": "skipped"}
    if report.error is not None:
        raise report.error
    return {
        "status": "synced",
        "owner_id": report.owner_id,
        "pulled": report.pulled,
        "pushed": report.pushed,
        "pruned": report.pruned,
        "uploaded": len(report.uploads.uploaded),
        "failed_uploads": report.uploads.failed,
        "pending_deletions": report.pending_deletions,
    }


def task_sync() -> Dict[str, Any]:
    """Run one unattended sync pass with the configured sync account"""
    update_job_progress("Starting sync")
    try:
        return asyncio.run(_sync_once())
    except SyncError as e:
        _set_job_error_message(e.message)
        raise
