"""
Background Job & CLI Tests
==========================

Redis is never contacted: queue access and sign-in are patched.
"""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from rq import Retry
from rq.exceptions import NoSuchJobError

from casesync.cli import main
from casesync.engine import SyncEngine
from casesync.errors import NetworkError, UnconfiguredError
from casesync.orchestrator import SyncReport

from .fakes import make_remote


def fake_engine(report) -> MagicMock:
    engine = MagicMock()
    engine.sync = AsyncMock(return_value=report)
    engine.close = AsyncMock()
    engine.orchestrator.message = "Push halted"
    return engine


def report(**kwargs) -> SyncReport:
    return SyncReport(owner_id="owner-1", started_at=datetime.now(timezone.utc), **kwargs)


# =============================================================================
# Queue
# =============================================================================

class TestQueue:
    """Tests for casesync.jobs.queue"""

    def test_enqueue_job(self):
        from casesync.jobs.queue import enqueue_job, QUEUE_MAINTENANCE

        queue = MagicMock()
        queue.enqueue.return_value = MagicMock(id="job-1", **{"get_status.return_value": "queued"})

        def task(hours):
            return hours

        with patch("casesync.jobs.queue.get_queue", return_value=queue) as get_queue:
            info = enqueue_job(task, 24, queue_name=QUEUE_MAINTENANCE, timeout=120)

        get_queue.assert_called_once_with(QUEUE_MAINTENANCE)
        kwargs = queue.enqueue.call_args.kwargs
        assert kwargs["job_timeout"] == 120
        assert isinstance(kwargs["retry"], Retry)
        assert info["job_id"] == "job-1"
        assert info["status"] == "queued"

    def test_enqueue_without_retry(self):
        from casesync.jobs.queue import enqueue_job

        queue = MagicMock()
        with patch("casesync.jobs.queue.get_queue", return_value=queue):
            enqueue_job(print, retry=0)

        assert queue.enqueue.call_args.kwargs["retry"] is None

    def test_job_status_not_found(self):
        from casesync.jobs.queue import get_job_status, cancel_job

        with patch("casesync.jobs.queue.get_redis_connection"), \
                patch("casesync.jobs.queue.Job.fetch", side_effect=NoSuchJobError("gone")):
            assert get_job_status("missing") == {"job_id": "missing", "status": "not_found"}
            assert cancel_job("missing") is False

    def test_failed_job_reports_error_message(self):
        from casesync.jobs.queue import get_job_status

        job = MagicMock(is_finished=False, is_failed=True, meta={"error_message": "Permission denied"})
        job.get_status.return_value = "failed"
        with patch("casesync.jobs.queue.get_redis_connection"), \
                patch("casesync.jobs.queue.Job.fetch", return_value=job):
            status = get_job_status("job-1")

        assert status["status"] == "failed"
        assert status["error"] == "Permission denied"


# =============================================================================
# Tasks
# =============================================================================

class TestTasks:
    """Tests for casesync.jobs.tasks"""

    def test_retention_sweep_records_progress(self):
        from casesync.jobs import tasks

        job = MagicMock(meta={})
        with patch.object(tasks, "get_current_job", return_value=job), \
                patch.object(tasks, "_retention_sweep", new=AsyncMock(return_value=3)) as sweep:
            result = tasks.task_retention_sweep(24)

        sweep.assert_awaited_once_with(24)
        assert result["removed"] == 3
        assert result["horizon_hours"] == 24
        assert "24h" in job.meta["message"]

    def test_sync_task_raises_failed_pass(self):
        from casesync.jobs import tasks

        job = MagicMock(meta={})
        error = NetworkError("Server error HTTP 503")
        engine = fake_engine(report(error=error))
        with patch.object(tasks, "get_current_job", return_value=job), \
                patch.object(tasks.SyncEngine, "sign_in", new=AsyncMock(return_value=engine)):
            with pytest.raises(NetworkError):
                tasks.task_sync()

        assert job.meta["error_message"] == "Server error HTTP 503"
        engine.close.assert_awaited_once()

    def test_sync_task_summary(self):
        from casesync.jobs import tasks

        engine = fake_engine(report(success=True, pushed={"clients": 2}))
        with patch.object(tasks, "get_current_job", return_value=None), \
                patch.object(tasks.SyncEngine, "sign_in", new=AsyncMock(return_value=engine)):
            result = tasks.task_sync()

        assert result["status"] == "synced"
        assert result["pushed"] == {"clients": 2}


# =============================================================================
# CLI
# =============================================================================

class TestCli:
    """Tests for casesync.cli.main()"""

    def test_sync_success(self, capsys):
        engine = fake_engine(report(success=True, pushed={"clients": 1, "cases": 2}))
        with patch("casesync.cli._password", return_value="secret"), \
                patch("casesync.cli.SyncEngine.sign_in", new=AsyncMock(return_value=engine)):
            code = main(["sync", "--email", "lawyer@example.com"])

        assert code == 0
        assert "3 records pushed" in capsys.readouterr().out

    def test_sync_failure_exit_code(self, capsys):
        engine = fake_engine(report(error=NetworkError("down")))
        with patch("casesync.cli._password", return_value="secret"), \
                patch("casesync.cli.SyncEngine.sign_in", new=AsyncMock(return_value=engine)):
            code = main(["sync"])

        assert code == 1
        assert "Sync failed: Push halted" in capsys.readouterr().out

    def test_unconfigured_account(self, capsys):
        with patch("casesync.cli._password", return_value=None), \
                patch("casesync.cli.SyncEngine.sign_in",
                      new=AsyncMock(side_effect=UnconfiguredError("No sync account configured"))):
            code = main(["sync"])

        assert code == 2
        assert "Error (unconfigured)" in capsys.readouterr().err

    def test_restore_from_file(self, tmp_path, backend, sessions, store, settings, capsys):
        path = tmp_path / "backup.json"
        path.write_text(json.dumps({"clients": [{"id": "c1", "name": "Acme"}]}), encoding="utf-8")
        engine = SyncEngine(sessions, make_remote(backend, sessions), store, "owner-1", settings=settings)

        with patch("casesync.cli._password", return_value="secret"), \
                patch("casesync.cli.SyncEngine.sign_in", new=AsyncMock(return_value=engine)):
            code = main(["restore", str(path)])

        assert code == 0
        assert backend.rows("clients")[0]["name"] == "Acme"
        assert "Restore complete" in capsys.readouterr().out

    def test_sweep_enqueue(self, capsys):
        with patch("casesync.jobs.enqueue_job", return_value={"job_id": "job-9"}) as enqueue:
            code = main(["sweep", "--hours", "12", "--enqueue"])

        assert code == 0
        assert enqueue.call_args.args[1] == 12
        assert "job-9" in capsys.readouterr().out

    def test_restore_missing_file(self, tmp_path, capsys):
        with patch("casesync.cli.SyncEngine.sign_in", new=AsyncMock()) as sign_in:
            code = main(["restore", str(tmp_path / "missing.json")])

        assert code == 2
        assert "could not be read" in capsys.readouterr().err
        sign_in.assert_not_called()
