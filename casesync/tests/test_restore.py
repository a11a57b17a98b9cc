"""
Bulk Restore Tests
==================

Job transitions, backup parsing and resumable uploads.
"""

import pytest

from casesync.errors import InvalidBackupError, InvalidTransitionError, POLICY_HINT
from casesync.restore import (
    RestoreJob, RestoreStep, StepStatus, backup_to_flat, build_restore_job, load_backup, run_restore,
)

from .fakes import error_response

BACKUP = {
    "clients": [{"id": "c1", "name": "Acme", "cases": [{"id": "k1", "subject": "Lease"}]}],
    "invoices": [{"id": "i1", "client_id": "c1", "items": [{"id": "it1", "amount": 100}]}],
    "adminTasks": [{"id": "t1", "task": "File appeal"}],
}


def make_job(*tables) -> RestoreJob:
    steps = tuple(RestoreStep(table=t, label=t.title(), count=1) for t in tables)
    return RestoreJob(owner_id="owner-1", steps=steps, data={t: [{"id": "x"}] for t in tables})


def deny_writes(table: str):
    def hook(request):
        if request.method == "POST" and request.url.path == f"/rest/v1/{table}":
            return error_response(403, "42501", "new row violates row-level security policy")
        return None
    return hook


# =============================================================================
# Transitions
# =============================================================================

class TestTransitions:
    """Pure job transitions"""

    def test_start_returns_new_job(self):
        job = make_job("clients", "cases")
        started = job.start()

        assert started.steps[0].status == StepStatus.PROCESSING
        assert job.steps[0].status == StepStatus.PENDING

    def test_advance_moves_cursor(self):
        job = make_job("clients", "cases").advance()

        assert job.steps[0].status == StepStatus.SUCCESS
        assert job.cursor == 1
        assert not job.finished

    def test_fail_keeps_cursor(self):
        job = make_job("clients", "cases").advance().fail("denied", "Restore stopped at Cases: denied")

        assert job.cursor == 1
        assert job.failed
        assert job.steps[1].error == "denied"
        assert job.message == "Restore stopped at Cases: denied"

    def test_skip_counts_as_done(self):
        job = make_job("clients", "cases").advance().fail("denied").skip()

        assert job.steps[1].status == StepStatus.SKIPPED
        assert job.current is None
        assert job.finished
        assert job.message is None

    def test_retry_from_resets_one_step(self):
        job = make_job("clients", "cases", "stages").advance().fail("boom").retry_from(1)

        assert job.cursor == 1
        assert job.steps[0].status == StepStatus.SUCCESS
        assert job.steps[1].status == StepStatus.PENDING
        assert job.steps[1].error is None

    def test_retry_out_of_range(self):
        with pytest.raises(InvalidTransitionError):
            make_job("clients").retry_from(3)

    def test_no_step_left(self):
        job = make_job("clients").advance()
        with pytest.raises(InvalidTransitionError):
            job.advance()

    def test_to_response(self):
        response = make_job("clients", "cases").advance().to_response()

        assert response.cursor == 1
        assert [s.status for s in response.steps] == ["success", "pending"]


# =============================================================================
# Building a job
# =============================================================================

class TestBuildRestoreJob:
    """Tests for build_restore_job() and backup parsing"""

    def test_hierarchical_backup(self):
        job = build_restore_job(BACKUP, "owner-1")

        assert [s.table for s in job.steps] == ["clients", "cases", "invoices", "invoice_items", "admin_tasks"]
        assert job.data["cases"][0]["client_id"] == "c1"
        assert job.data["invoice_items"][0]["invoice_id"] == "i1"
        assert job.cursor == 0

    def test_flat_backup_with_camel_case(self):
        flat = backup_to_flat({
            "clients": [{"id": "c1", "contactInfo": "555-0100"}],
            "cases": [{"id": "k1", "clientId": "c1"}],
            "stages": [{"id": "s1", "caseId": "k1", "caseNumber": "12/2026"}],
        })

        assert flat["clients"][0]["contact_info"] == "555-0100"
        assert flat["cases"] == [{"id": "k1", "client_id": "c1"}]
        assert flat["stages"][0]["case_number"] == "12/2026"

    def test_profiles_are_never_restored(self):
        job = build_restore_job({"profiles": [{"id": "u1"}], "assistants": ["Sara"]}, "owner-1")
        assert [s.table for s in job.steps] == ["assistants"]

    @pytest.mark.parametrize("backup", [
        {},
        {"clients": []},
        {"profiles": [{"id": "u1"}]},
    ])
    def test_empty_backup_rejected(self, backup):
        with pytest.raises(InvalidBackupError):
            build_restore_job(backup, "owner-1")

    def test_invalid_records_rejected(self):
        with pytest.raises(InvalidBackupError):
            build_restore_job({"clients": [{"name": "no id"}]}, "owner-1")

    def test_non_object_rejected(self):
        with pytest.raises(InvalidBackupError):
            build_restore_job(["clients"], "owner-1")

    def test_load_backup_bad_json(self, tmp_path):
        path = tmp_path / "backup.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(InvalidBackupError):
            load_backup(str(path))

    def test_load_backup_missing_file(self, tmp_path):
        with pytest.raises(InvalidBackupError):
            load_backup(str(tmp_path / "missing.json"))

    def test_load_backup_not_utf8(self, tmp_path):
        path = tmp_path / "backup.json"
        path.write_bytes(b'{"clients": "\xff\xfe"}')

        with pytest.raises(InvalidBackupError):
            load_backup(str(path))


# =============================================================================
# Running a job
# =============================================================================

class TestRunRestore:
    """Tests for run_restore()"""

    @pytest.mark.asyncio
    async def test_uploads_every_table(self, backend, remote):
        updates = []
        job = await run_restore(build_restore_job(BACKUP, "owner-1"), remote, on_update=updates.append)

        assert job.finished
        assert job.message.startswith("Restore complete")
        assert backend.rows("clients")[0]["user_id"] == "owner-1"
        assert backend.rows("invoice_items")[0]["invoice_id"] == "i1"
        assert updates[0].steps[0].status == StepStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_stops_at_failing_table_with_policy_hint(self, backend, remote):
        backend.fail_when.append(deny_writes("invoices"))

        job = await run_restore(build_restore_job(BACKUP, "owner-1"), remote)

        assert job.cursor == 2
        assert [s.status for s in job.steps] == [
            StepStatus.SUCCESS, StepStatus.SUCCESS, StepStatus.ERROR, StepStatus.PENDING, StepStatus.PENDING,
        ]
        assert job.message.startswith("Restore stopped at Invoices")
        assert POLICY_HINT in job.message
        assert backend.rows("invoice_items") == []

    @pytest.mark.asyncio
    async def test_skip_continues_without_repushing(self, backend, remote):
        backend.fail_when.append(deny_writes("invoices"))
        job = await run_restore(build_restore_job(BACKUP, "owner-1"), remote)

        job = await run_restore(job.skip(), remote)

        assert job.finished
        assert job.steps[2].status == StepStatus.SKIPPED
        assert len(backend.writes_to("clients")) == 1
        assert len(backend.writes_to("admin_tasks")) == 1

    @pytest.mark.asyncio
    async def test_retry_resumes_from_failed_step(self, backend, remote):
        backend.fail_when.append(deny_writes("invoices"))
        job = await run_restore(build_restore_job(BACKUP, "owner-1"), remote)
        backend.fail_when.clear()

        job = await run_restore(job.retry_from(job.cursor), remote)

        assert job.finished
        assert all(s.status == StepStatus.SUCCESS for s in job.steps)
        assert len(backend.writes_to("clients")) == 1
        assert len(backend.writes_to("invoices")) == 2
        assert backend.rows("invoices")[0]["id"] == "i1"
