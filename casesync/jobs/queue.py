"""
Job Queue Management
====================

Redis Queue (RQ) integration for background sync work.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable

from redis import Redis
from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Job

from ..config import get_settings

logger = logging.getLogger(__name__)

# Queue names
QUEUE_DEFAULT = "default"
QUEUE_MAINTENANCE = "maintenance"


def get_redis_connection() -> Redis:
    """Get Redis connection"""
    return Redis.from_url(get_settings().redis_url)


def get_queue(queue_name: str = QUEUE_DEFAULT) -> Queue:
    """Get RQ queue by name"""
    return Queue(queue_name, connection=get_redis_connection())


def enqueue_job(
    func: Callable,
    *args,
    queue_name: str = QUEUE_DEFAULT,
    job_id: str = None,
    timeout: int = 600,
    retry: int = 3,
    meta: Dict[str, Any] = None,
    **kwargs
) -> Dict[str, Any]:
    """
    Enqueue a job for background processing.

    Args:
        func: Function to execute
        *args: Positional arguments for function
        queue_name: Queue to use (default/maintenance)
        job_id: Optional custom job ID
        timeout: Job timeout in seconds
        retry: Number of retries on failure
        meta: Custom metadata for job
        **kwargs: Keyword arguments for function

    Returns:
        Dict with job_id and status
    """
    queue = get_queue(queue_name)
    retry_policy = Retry(max=retry, interval=[10, 30, 60]) if retry > 0 else None

    job = queue.enqueue(
        func,
        *args,
        job_id=job_id,
        job_timeout=timeout,
        retry=retry_policy,
        meta=meta or {},
        **kwargs
    )
    logger.info(f"Enqueued {func.__name__} as {job.id} on {queue_name}")

    return {
        "job_id": job.id,
        "status": job.get_status(),
        "queue": queue_name,
        "enqueued_at": datetime.now(timezone.utc).isoformat(),
    }


def get_job_status(job_id: str) -> Dict[str, Any]:
    """
    Get job status and result.

    Returns:
        Dict with status, message, result or error
    """
    try:
        job = Job.fetch(job_id, connection=get_redis_connection())
    except NoSuchJobError:
        return {"job_id": job_id, "status": "not_found"}

    result = {
        "job_id": job_id,
        "status": job.get_status(),
        "meta": job.meta,
        "enqueued_at": job.enqueued_at.isoformat() if job.enqueued_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "ended_at": job.ended_at.isoformat() if job.ended_at else None,
        "message": job.meta.get("message"),
    }

    if job.is_finished:
        result["result"] = job.result
    elif job.is_failed:
        result["error"] = job.meta.get("error_message") or "Job failed"

    return result


def cancel_job(job_id: str) -> bool:
    """Cancel a queued job; returns False when it does not exist"""
    try:
        job = Job.fetch(job_id, connection=get_redis_connection())
    except NoSuchJobError:
        return False
    job.cancel()
    return True
