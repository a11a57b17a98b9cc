"""
Job Queue Package
=================

Background sync and retention jobs with Redis Queue (RQ).
"""

from .queue import enqueue_job, get_job_status, cancel_job, QUEUE_DEFAULT, QUEUE_MAINTENANCE
from .tasks import task_retention_sweep, task_sync

__all__ = [
    # Queue management
    "enqueue_job", "get_job_status", "cancel_job",
    "QUEUE_DEFAULT", "QUEUE_MAINTENANCE",
    # Tasks
    "task_retention_sweep",
    "task_sync",
]
