"""
Sync Service API
================

Local HTTP surface for the sync engine.

Endpoints:
- GET    /health                          - Health check + configuration warnings
- GET    /sync/status                     - Current orchestrator status
- POST   /sync                            - Run one sync pass
- POST   /documents/{id}/download         - Fetch a cloud-only document's binary
- POST   /documents/{id}/evict            - Drop a document's local binary
- DELETE /records/{table}/{id}            - Delete a record locally, queue its tombstone
- POST   /restore                         - Start a bulk restore from a backup document
- GET    /restore/{job_id}                - Restore job progress
- POST   /restore/{job_id}/skip           - Skip the failed step and continue
- POST   /restore/{job_id}/retry/{index}  - Retry from a step
- GET    /jobs/{job_id}                   - Background job status
- DELETE /jobs/{job_id}                   - Cancel a queued job

Run with:
    uvicorn casesync.api:app --host 127.0.0.1 --port 8000
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Depends, Body, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .engine import SyncEngine
from .errors import (
    SyncError, ErrorKind, POLICY_HINT, InvalidBackupError,
    InvalidTransitionError, RecordNotFoundError, SyncInProgressError,
)
from .mapping import TABLES_BY_NAME
from .restore import RestoreJob, build_restore_job, run_restore
from .schemas import (
    CaseDocument,
    ErrorResponse,
    HealthResponse,
    RestoreJobResponse,
    SyncReportResponse,
    SyncStatusResponse,
)

logger = logging.getLogger(__name__)

STATUS_FOR_KIND = {
    ErrorKind.UNCONFIGURED: 503,
    ErrorKind.UNINITIALIZED: 503,
    ErrorKind.AUTH_ERROR: 401,
    ErrorKind.AUTHORIZATION_DENIED: 403,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.NETWORK: 502,
    ErrorKind.UNKNOWN: 500,
}


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="casesync",
    description="Offline-first sync engine for the case management desktop client",
    version=get_settings().service_version,
    docs_url="/docs",
    redoc_url=None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Document-State"],
)

_engine: Optional[SyncEngine] = None
_restore_jobs: Dict[str, RestoreJob] = {}


async def get_engine() -> SyncEngine:
    """Engine for the configured sync account, signed in on first use"""
    global _engine
    if _engine is None:
        _engine = await SyncEngine.sign_in()
    return _engine


@app.on_event("shutdown")
async def shutdown_event():
    """Close HTTP clients"""
    global _engine
    if _engine is not None:
        await _engine.close()
        _engine = None
    logger.info("casesync service stopped")


# =============================================================================
# Error handling
# =============================================================================

@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    """Every sync failure is returned as {kind, message, hint}"""
    status_code = STATUS_FOR_KIND.get(exc.kind, 500)
    if isinstance(exc, InvalidBackupError):
        status_code = 400
    hint = POLICY_HINT if exc.kind == ErrorKind.AUTHORIZATION_DENIED else None
    payload = ErrorResponse(kind=exc.kind, message=exc.message, hint=hint)
    return JSONResponse(status_code=status_code, content=payload.model_dump())


@app.exception_handler(RecordNotFoundError)
async def not_found_handler(request: Request, exc: RecordNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc.args[0]) if exc.args else "Not found"})


@app.exception_handler(SyncInProgressError)
async def busy_handler(request: Request, exc: SyncInProgressError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def transition_handler(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# =============================================================================
# Health
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    settings = get_settings()
    return HealthResponse(
        status="healthy",
        version=settings.service_version,
        configured=settings.is_configured,
        warnings=settings.validate_config(),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


# =============================================================================
# Sync
# =============================================================================

@app.get("/sync/status", response_model=SyncStatusResponse, tags=["Sync"])
async def sync_status(engine: SyncEngine = Depends(get_engine)):
    orchestrator = engine.orchestrator
    return SyncStatusResponse(
        status=orchestrator.status,
        message=orchestrator.message,
        owner_id=engine.owner_id,
        last_synced_at=engine.store.last_synced_at(engine.owner_id),
    )


@app.post("/sync", response_model=SyncReportResponse, tags=["Sync"])
async def run_sync(engine: SyncEngine = Depends(get_engine)):
    """Run one sync pass and report what it did"""
    orchestrator = engine.orchestrator
    if orchestrator.is_busy:
        raise HTTPException(status_code=409, detail="Sync already in progress")

    report = await engine.sync()
    if report is None:
        raise HTTPException(status_code=409, detail="Sync skipped: offline or signed out")

    return SyncReportResponse(
        status=orchestrator.status,
        message=orchestrator.message,
        success=report.success,
        error_kind=report.error_kind,
        pulled=report.pulled,
        pushed=report.pushed,
        pruned=report.pruned,
        uploaded=report.uploads.uploaded,
        failed_uploads=report.uploads.failed,
        pending_deletions=report.pending_deletions,
        deletion_errors=report.deletion_errors,
    )


# =============================================================================
# Documents & records
# =============================================================================

@app.post("/documents/{document_id}/download", tags=["Documents"])
async def download_document(document_id: str, engine: SyncEngine = Depends(get_engine)):
    """Download on demand; the binary is kept on this device"""
    doc, content = await engine.download_document(document_id)
    return Response(
        content=content,
        media_type=doc.type or "application/octet-stream",
        headers={"X-Document-State": doc.local_state.value},
    )


@app.post("/documents/{document_id}/evict", response_model=CaseDocument, tags=["Documents"])
async def evict_document(document_id: str, engine: SyncEngine = Depends(get_engine)):
    return engine.evict_document(document_id)


@app.delete("/records/{table}/{record_id}", tags=["Documents"])
async def delete_record(table: str, record_id: str, engine: SyncEngine = Depends(get_engine)):
    spec = TABLES_BY_NAME.get(table)
    if spec is None or spec.pull_only:
        raise HTTPException(status_code=404, detail=f"Unknown table: {table}")
    data = engine.delete_record(table, record_id)
    return {"deleted": record_id, "table": table, "pending_deletions": len(data.pending_deletions)}


# =============================================================================
# Restore
# =============================================================================

def _get_job(job_id: str) -> RestoreJob:
    job = _restore_jobs.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Restore job not found")
    return job


def _store_job(job: RestoreJob) -> None:
    _restore_jobs[job.job_id] = job


async def _resume(job: RestoreJob, engine: SyncEngine) -> RestoreJobResponse:
    _store_job(job)
    job = await run_restore(
        job, engine.remote, batch_size=engine.settings.restore_batch_size, on_update=_store_job
    )
    return job.to_response()


@app.post("/restore", response_model=RestoreJobResponse, tags=["Restore"])
async def start_restore(backup: Dict[str, Any] = Body(...), engine: SyncEngine = Depends(get_engine)):
    """Upload a backup table by table; stops at the first failing table"""
    await engine.remote.check_schema()
    job = build_restore_job(backup, engine.owner_id)
    return await _resume(job, engine)


@app.get("/restore/{job_id}", response_model=RestoreJobResponse, tags=["Restore"])
async def get_restore_job(job_id: str):
    return _get_job(job_id).to_response()


@app.post("/restore/{job_id}/skip", response_model=RestoreJobResponse, tags=["Restore"])
async def skip_restore_step(job_id: str, engine: SyncEngine = Depends(get_engine)):
    """Skip the step the job stopped at and continue with the next one"""
    return await _resume(_get_job(job_id).skip(), engine)


@app.post("/restore/{job_id}/retry/{index}", response_model=RestoreJobResponse, tags=["Restore"])
async def retry_restore_step(job_id: str, index: int, engine: SyncEngine = Depends(get_engine)):
    return await _resume(_get_job(job_id).retry_from(index), engine)


# =============================================================================
# Background jobs
# =============================================================================

@app.get("/jobs/{job_id}", tags=["Jobs"])
async def get_job(job_id: str):
    """Status of a queued sync or sweep job"""
    from .jobs import get_job_status

    status = get_job_status(job_id)
    if status["status"] == "not_found":
        raise HTTPException(status_code=404, detail="Job not found")
    return status


@app.delete("/jobs/{job_id}", tags=["Jobs"])
async def cancel_queued_job(job_id: str):
    from .jobs import cancel_job

    if not cancel_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return {"job_id": job_id, "cancelled": True}
