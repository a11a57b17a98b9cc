"""
Command Line Interface
======================

Usage:
    casesync sync [--email EMAIL]
    casesync restore BACKUP.json [--email EMAIL]
    casesync sweep [--hours N] [--enqueue]
    casesync worker [--queues ...] [--burst]

The sync account password is read from SYNC_PASSWORD, or prompted for.
"""

import argparse
import asyncio
import getpass
import logging
import sys
from typing import List, Optional

from .config import get_settings
from .engine import SyncEngine
from .errors import SyncError
from .jobs.worker import add_worker_arguments, start_worker
from .restore import build_restore_job, load_backup, run_restore

logger = logging.getLogger("casesync")


def _password(args) -> Optional[str]:
    settings = get_settings()
    if settings.sync_password is not None:
        return settings.sync_password.get_secret_value()
    if args.email or settings.sync_email:
        return getpass.getpass("Password: ")
    return None


def _print_progress(message: str) -> None:
    print(f"  {message}")


async def _sync(args) -> int:
    engine = await SyncEngine.sign_in(args.email, _password(args))
    engine.orchestrator.progress = _print_progress
    try:
        report = await engine.sync()
    finally:
        await engine.close()

    if report is None:
        print("Sync skipped.")
        return 1
    if not report.success:
        print(f"Sync failed: {engine.orchestrator.message}")
        return 1

    pushed = sum(report.pushed.values())
    pruned = sum(report.pruned.values())
    print(f"Synced: {pushed} records pushed, {pruned} orphans pruned, "
          f"{len(report.uploads.uploaded)} documents uploaded")
    if report.uploads.failed:
        print(f"  {len(report.uploads.failed)} document upload(s) failed; they stay pending")
    if report.pending_deletions:
        print(f"  {report.pending_deletions} deletion(s) still pending")
    return 0


async def _restore(args) -> int:
    raw = load_backup(args.backup)
    engine = await SyncEngine.sign_in(args.email, _password(args))
    try:
        await engine.remote.check_schema()
        job = build_restore_job(raw, engine.owner_id)
        job = await run_restore(job, engine.remote, batch_size=engine.settings.restore_batch_size)
    finally:
        await engine.close()

    for step in job.steps:
        line = f"  {step.label:<20} {step.count:>6}  {step.status.value}"
        if step.error:
            line += f"  ({step.error})"
        print(line)
    print(job.message)
    return 0 if job.finished else 1


def _sweep(args) -> int:
    from .jobs import enqueue_job, task_retention_sweep, QUEUE_MAINTENANCE

    if args.enqueue:
        info = enqueue_job(task_retention_sweep, args.hours, queue_name=QUEUE_MAINTENANCE)
        print(f"Enqueued retention sweep as job {info['job_id']}")
        return 0
    result = task_retention_sweep(args.hours)
    print(f"Removed {result['removed']} documents older than {result['horizon_hours']}h")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="casesync", description="Offline-first sync for case data")
    parser.add_argument("--log-level", "-l", default="INFO", help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Run one sync pass")
    sync.add_argument("--email", help="Sync account (default: SYNC_EMAIL)")

    restore = sub.add_parser("restore", help="Upload a backup file table by table")
    restore.add_argument("backup", help="Path to an exported JSON backup")
    restore.add_argument("--email", help="Sync account (default: SYNC_EMAIL)")

    sweep = sub.add_parser("sweep", help="Delete remote documents past the retention horizon")
    sweep.add_argument("--hours", type=int, default=None, help="Retention horizon in hours")
    sweep.add_argument("--enqueue", action="store_true", help="Run on the worker instead of inline")

    worker = sub.add_parser("worker", help="Start an RQ worker")
    add_worker_arguments(worker)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "worker":
        start_worker(queues=args.queues, burst=args.burst, logging_level=args.log_level)
        return 0

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        if args.command == "sync":
            return asyncio.run(_sync(args))
        if args.command == "restore":
            return asyncio.run(_restore(args))
        return _sweep(args)
    except SyncError as e:
        print(f"Error ({e.kind}): {e.message}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
