"""
Bulk Restore Job
================

Uploads an exported backup table by table, parents first.

A job is a list of steps plus a cursor. Transitions (advance, fail, skip,
retry_from) are pure: they return a new job and never touch the network.
``run_restore`` drives the transitions against the backend and stops at the
first failing step so the user can retry it or skip it; steps that already
succeeded or were skipped are never pushed again.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Tuple

from pydantic import ValidationError

from .errors import SyncError, ErrorKind, InvalidBackupError, InvalidTransitionError, POLICY_HINT
from .flatten import flatten
from .mapping import FlatSet, TABLES, normalize_app_data, normalize_record
from .remote import RemoteClient
from .schemas import AppData, RestoreJobResponse, RestoreStepResponse

logger = logging.getLogger(__name__)

# Child tables a flat export carries at the top level
FLAT_BACKUP_TABLES = ("cases", "stages", "sessions", "invoice_items")

RESTORE_BATCH_SIZE = 50


class StepStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


DONE = {StepStatus.SUCCESS, StepStatus.SKIPPED}


@dataclass(frozen=True)
class RestoreStep:
    table: str
    label: str
    count: int
    status: StepStatus = StepStatus.PENDING
    error: Optional[str] = None


@dataclass(frozen=True)
class RestoreJob:
    owner_id: str
    steps: Tuple[RestoreStep, ...]
    data: FlatSet = field(repr=False, compare=False)
    cursor: int = 0
    message: Optional[str] = None
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def current(self) -> Optional[RestoreStep]:
        if self.cursor < len(self.steps):
            return self.steps[self.cursor]
        return None

    @property
    def finished(self) -> bool:
        return all(step.status in DONE for step in self.steps)

    @property
    def failed(self) -> bool:
        return any(step.status == StepStatus.ERROR for step in self.steps)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _require_current(self) -> RestoreStep:
        step = self.current
        if step is None:
            raise InvalidTransitionError("Restore job has no step left to process")
        return step

    def _with_step(self, index: int, **changes) -> Tuple[RestoreStep, ...]:
        steps = list(self.steps)
        steps[index] = replace(steps[index], **changes)
        return tuple(steps)

    def _next_open(self, steps: Tuple[RestoreStep, ...], start: int) -> int:
        index = start
        while index < len(steps) and steps[index].status in DONE:
            index += 1
        return index

    def start(self) -> "RestoreJob":
        """Mark the current step as being pushed"""
        self._require_current()
        return replace(self, steps=self._with_step(self.cursor, status=StepStatus.PROCESSING, error=None))

    def advance(self) -> "RestoreJob":
        """Mark the current step successful and move to the next open step"""
        self._require_current()
        steps = self._with_step(self.cursor, status=StepStatus.SUCCESS, error=None)
        return replace(self, steps=steps, cursor=self._next_open(steps, self.cursor + 1))

    def fail(self, error: str, message: Optional[str] = None) -> "RestoreJob":
        """Mark the current step failed; the cursor stays on it"""
        self._require_current()
        return replace(
            self,
            steps=self._with_step(self.cursor, status=StepStatus.ERROR, error=error),
            message=message or error,
        )

    def skip(self) -> "RestoreJob":
        """Give up on the current step and move to the next open step"""
        step = self._require_current()
        logger.info(f"Restore step {step.table} skipped")
        steps = self._with_step(self.cursor, status=StepStatus.SKIPPED)
        return replace(self, steps=steps, cursor=self._next_open(steps, self.cursor + 1), message=None)

    def retry_from(self, index: int) -> "RestoreJob":
        """Reset one step to pending and point the cursor at it"""
        if not 0 <= index < len(self.steps):
            raise InvalidTransitionError(f"No restore step at index {index}")
        return replace(
            self,
            steps=self._with_step(index, status=StepStatus.PENDING, error=None),
            cursor=index,
            message=None,
        )

    def to_response(self) -> RestoreJobResponse:
        return RestoreJobResponse(
            job_id=self.job_id,
            cursor=self.cursor,
            finished=self.finished,
            message=self.message,
            steps=[
                RestoreStepResponse(
                    table=s.table, label=s.label, status=s.status.value, count=s.count, error=s.error
                )
                for s in self.steps
            ],
        )


# =============================================================================
# BUILDING A JOB
# =============================================================================

def backup_to_flat(raw: Any) -> FlatSet:
    """
    Turn an exported document into flat collections.

    Accepts the hierarchical layout (clients -> cases -> stages -> sessions),
    the flat layout (cases/stages/sessions/invoice_items at the top level),
    or a mix, in camelCase or snake_case.
    """
    if not isinstance(raw, dict):
        raise InvalidBackupError("Backup must be a JSON object.")

    data = normalize_app_data(raw)
    try:
        doc = AppData.model_validate(data)
    except ValidationError as e:
        raise InvalidBackupError(f"Backup holds invalid records: {e.errors()[0]['msg']}") from e

    flat = flatten(doc)
    for table in FLAT_BACKUP_TABLES:
        flat[table].extend(normalize_record(r) for r in data.get(table) or [] if isinstance(r, dict))
    return flat


def build_restore_job(raw: Any, owner_id: str) -> RestoreJob:
    """
    Build a job with one step per non-empty table, in push order.

    Raises:
        InvalidBackupError: the backup is malformed or holds nothing to restore
    """
    flat = backup_to_flat(raw)
    steps = tuple(
        RestoreStep(table=spec.name, label=spec.label, count=len(flat[spec.name]))
        for spec in TABLES
        if not spec.pull_only and flat.get(spec.name)
    )
    if not steps:
        raise InvalidBackupError("The backup is empty or holds no compatible data.")
    logger.info(f"Restore job prepared: {sum(s.count for s in steps)} records in {len(steps)} tables")
    return RestoreJob(owner_id=owner_id, steps=steps, data=flat)


def load_backup(path: str) -> Any:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise InvalidBackupError(f"The backup file could not be read: {e.strerror or e}") from e
    except UnicodeDecodeError as e:
        raise InvalidBackupError("The selected file is not a UTF-8 text file.") from e
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidBackupError(f"The selected file is not valid JSON: {e.msg}") from e


# =============================================================================
# RUNNING A JOB
# =============================================================================

async def run_restore(
    job: RestoreJob,
    remote: RemoteClient,
    batch_size: int = RESTORE_BATCH_SIZE,
    on_update: Optional[Callable[[RestoreJob], None]] = None,
) -> RestoreJob:
    """
    Push every open step from the cursor on.

    Returns the job as it stands when it either finished or stopped at a
    failing step. Call again after ``retry_from`` or ``skip`` to resume.
    """
    def publish(updated: RestoreJob) -> RestoreJob:
        if on_update:
            on_update(updated)
        return updated

    job = replace(job, cursor=job._next_open(job.steps, job.cursor))
    while job.current is not None:
        step = job.current
        job = publish(job.start())
        try:
            await remote.push_table(step.table, job.data[step.table], job.owner_id, batch_size=batch_size)
        except SyncError as e:
            message = f"Restore stopped at {step.label}: {e.message}"
            if e.kind == ErrorKind.AUTHORIZATION_DENIED or "policy" in e.message.lower():
                message = f"{message} ({POLICY_HINT})"
            logger.error(message)
            return publish(job.fail(e.message, message))
        job = publish(job.advance())

    return publish(replace(job, message="Restore complete. Every selected table was uploaded."))
