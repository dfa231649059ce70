"""
Stage transition orchestration.

A job moves between stages through ``StageTransitionService.transition``: the
move is validated against the fixed stage graph, applied with a conditional
``UPDATE ... WHERE stage = :from`` so only one worker can win it, and then
handed to ``process_transition`` which claims the ``(job, from, to)`` key in
``stage_transition_claims`` and enqueues exactly one task for the new stage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, assert_never

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timetiles_app.importer.contracts import ErrorLogEntry
from timetiles_app.importer.errors import InvalidStageTransition, StageConflict, StageQueueError
from timetiles_app.importer.metrics import record_stage_transition
from timetiles_app.importer.queue import ImportTask, TaskQueue
from timetiles_app.models import ImportJob, ImportStage, StageTransitionClaim

from .job_state import append_errors, refresh_import_file_status

logger = logging.getLogger(__name__)

INITIAL_STAGE_KEY = "created"
TRANSITION_IN_PROGRESS = "Transition already in progress"

VALID_STAGE_TRANSITIONS: Mapping[ImportStage, frozenset[ImportStage]] = {
    ImportStage.ANALYZE_DUPLICATES: frozenset({ImportStage.DETECT_SCHEMA}),
    ImportStage.DETECT_SCHEMA: frozenset({ImportStage.VALIDATE_SCHEMA}),
    ImportStage.VALIDATE_SCHEMA: frozenset(
        {ImportStage.AWAIT_APPROVAL, ImportStage.CREATE_SCHEMA_VERSION, ImportStage.GEOCODE_BATCH}
    ),
    ImportStage.AWAIT_APPROVAL: frozenset({ImportStage.CREATE_SCHEMA_VERSION}),
    ImportStage.CREATE_SCHEMA_VERSION: frozenset({ImportStage.GEOCODE_BATCH}),
    ImportStage.GEOCODE_BATCH: frozenset({ImportStage.CREATE_EVENTS}),
    ImportStage.CREATE_EVENTS: frozenset({ImportStage.COMPLETED}),
    ImportStage.COMPLETED: frozenset(),
    ImportStage.FAILED: frozenset(),
}


def validate_stage_transition(from_stage: ImportStage | str, to_stage: ImportStage | str) -> bool:
    from_stage = ImportStage(from_stage)
    to_stage = ImportStage(to_stage)
    if from_stage == to_stage:
        return True
    if to_stage == ImportStage.FAILED:
        return not from_stage.is_terminal
    return to_stage in VALID_STAGE_TRANSITIONS[from_stage]


@dataclass(frozen=True)
class TransitionResult:
    success: bool
    job_queued: bool = False
    queued_task: ImportTask | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "job_queued": self.job_queued,
            "queued_task": self.queued_task.value if self.queued_task else None,
            "error": self.error,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageTransitionService:
    """Move jobs between stages and enqueue the task owning the new stage."""

    def __init__(self, session: Session, queue: TaskQueue, *, clock: Callable[[], datetime] = _utcnow):
        self.session = session
        self.queue = queue
        self._clock = clock

    # Stage changes ----------------------------------------------------

    def transition(self, job: ImportJob, to_stage: ImportStage | str) -> TransitionResult:
        """
        Apply ``job.stage -> to_stage``, commit, and enqueue the next task.

        Pending changes on the job are flushed and committed together with the
        stage change. Raises ``InvalidStageTransition`` (the job is left
        untouched), ``StageConflict`` when another worker moved the job
        first, or ``StageQueueError`` when the next task could not be queued.
        """
        from_stage = ImportStage(job.stage)
        to_stage = ImportStage(to_stage)
        if from_stage == to_stage:
            return TransitionResult(success=True)
        if not validate_stage_transition(from_stage, to_stage):
            record_stage_transition(from_stage.value, to_stage.value, "invalid")
            raise InvalidStageTransition(from_stage.value, to_stage.value)

        self.session.flush()
        now = self._clock()
        values: dict[str, Any] = {"stage": to_stage, "next_batch_number": 0, "updated_at": now}
        if to_stage.is_terminal:
            values["finished_at"] = now
        result = self.session.execute(
            update(ImportJob)
            .where(ImportJob.id == job.id, ImportJob.stage == from_stage)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            record_stage_transition(from_stage.value, to_stage.value, "conflict")
            raise StageConflict(job.id, from_stage.value)
        self.session.commit()
        logger.info(
            "Import job %s moved from %s to %s",
            job.id,
            from_stage.value,
            to_stage.value,
            extra={"importer_job_id": job.id, "importer_from_stage": from_stage.value, "importer_to_stage": to_stage.value},
        )
        return self._ensure_queued(job, self.process_transition(job, from_stage))

    def start(self, job: ImportJob) -> TransitionResult:
        """Queue the first task of a newly created job."""
        return self._ensure_queued(job, self.process_transition(job, None))

    def _ensure_queued(self, job: ImportJob, result: TransitionResult) -> TransitionResult:
        """
        Fail the job and raise ``StageQueueError`` when its stage task could not be enqueued.

        The stage change is already committed at this point, so the failure is
        written to the job's error log before the job moves to ``failed``.
        """
        if result.success or result.error == TRANSITION_IN_PROGRESS:
            return result
        stage = ImportStage(job.stage)
        error = StageQueueError(job.id, stage.value, result.error)
        append_errors(job, [ErrorLogEntry(error=str(error), stage=stage.value)])
        self.transition(job, ImportStage.FAILED)
        refresh_import_file_status(self.session, job.import_file_id)
        self.session.commit()
        raise error

    def mark_failed(
        self,
        job: ImportJob,
        error: str,
        *,
        stage: ImportStage | str | None = None,
        row: int | None = None,
    ) -> TransitionResult:
        current = ImportStage(job.stage)
        if current.is_terminal:
            logger.warning(
                "Not failing import job %s; already %s",
                job.id,
                current.value,
                extra={"importer_job_id": job.id, "importer_error": error},
            )
            return TransitionResult(success=False, error=f"Job is already {current.value}")
        stage_name = ImportStage(stage).value if stage is not None else current.value
        append_errors(job, [ErrorLogEntry(error=error, stage=stage_name, row=row)])
        return self.transition(job, ImportStage.FAILED)

    # Queueing ---------------------------------------------------------

    def process_transition(self, job: ImportJob, previous_stage: ImportStage | str | None) -> TransitionResult:
        """
        Enqueue the task for ``job.stage`` after a change from ``previous_stage``.

        A repeated stage is a no-op. An invalid change returns an error result.
        A transition already claimed by another caller returns "Transition
        already in progress" without enqueueing.
        """
        current = ImportStage(job.stage)
        previous = ImportStage(previous_stage) if previous_stage is not None else None
        if previous == current:
            return TransitionResult(success=True)
        if previous is not None and not validate_stage_transition(previous, current):
            error = f"Invalid stage transition from '{previous.value}' to '{current.value}'"
            logger.error(error, extra={"importer_job_id": job.id})
            record_stage_transition(previous.value, current.value, "invalid")
            return TransitionResult(success=False, error=error)

        from_key = previous.value if previous is not None else INITIAL_STAGE_KEY
        claim_id = self._claim(job.id, from_key, current.value)
        if claim_id is None:
            logger.warning(
                "Stage transition already in progress",
                extra={"importer_job_id": job.id, "importer_from_stage": from_key, "importer_to_stage": current.value},
            )
            record_stage_transition(from_key, current.value, "in_progress")
            return TransitionResult(success=False, error=TRANSITION_IN_PROGRESS)

        try:
            queued_task = self._queue_stage_job(job.id, current)
        except Exception as exc:
            logger.exception(
                "Stage transition failed",
                extra={"importer_job_id": job.id, "importer_from_stage": from_key, "importer_to_stage": current.value},
            )
            record_stage_transition(from_key, current.value, "error")
            return TransitionResult(success=False, error=str(exc))
        finally:
            self._release(claim_id)

        record_stage_transition(from_key, current.value, "queued" if queued_task else "settled")
        return TransitionResult(success=True, job_queued=queued_task is not None, queued_task=queued_task)

    def _queue_stage_job(self, import_job_id: int, stage: ImportStage) -> ImportTask | None:
        payload: dict[str, Any] = {"import_job_id": import_job_id}
        match stage:
            case ImportStage.ANALYZE_DUPLICATES:
                task = ImportTask.ANALYZE_DUPLICATES
            case ImportStage.DETECT_SCHEMA:
                task = ImportTask.DETECT_SCHEMA
                payload["batch_number"] = 0
            case ImportStage.VALIDATE_SCHEMA:
                task = ImportTask.VALIDATE_SCHEMA
            case ImportStage.AWAIT_APPROVAL:
                logger.info("Import job %s requires manual schema approval", import_job_id)
                return None
            case ImportStage.CREATE_SCHEMA_VERSION:
                task = ImportTask.CREATE_SCHEMA_VERSION
            case ImportStage.GEOCODE_BATCH:
                task = ImportTask.GEOCODE_BATCH
                payload["batch_number"] = 0
            case ImportStage.CREATE_EVENTS:
                task = ImportTask.CREATE_EVENTS
                payload["batch_number"] = 0
            case ImportStage.COMPLETED:
                logger.info("Import job %s completed", import_job_id)
                return None
            case ImportStage.FAILED:
                logger.error("Import job %s failed", import_job_id)
                return None
            case _:
                assert_never(stage)
        self.queue.queue(task, payload)
        return task

    # Claims -----------------------------------------------------------

    def _claim(self, import_job_id: int, from_stage: str, to_stage: str) -> int | None:
        claim = StageTransitionClaim(
            import_job_id=import_job_id,
            from_stage=from_stage,
            to_stage=to_stage,
            claimed_at=self._clock(),
        )
        try:
            with self.session.begin_nested():
                self.session.add(claim)
        except IntegrityError:
            return None
        self.session.commit()
        return claim.id

    def _release(self, claim_id: int) -> None:
        self.session.execute(delete(StageTransitionClaim).where(StageTransitionClaim.id == claim_id))
        self.session.commit()

    def is_transitioning(
        self,
        import_job_id: int,
        from_stage: ImportStage | str | None = None,
        to_stage: ImportStage | str | None = None,
    ) -> bool:
        query = select(StageTransitionClaim.id).where(StageTransitionClaim.import_job_id == import_job_id)
        if from_stage is not None and to_stage is not None:
            query = query.where(
                StageTransitionClaim.from_stage == getattr(from_stage, "value", from_stage),
                StageTransitionClaim.to_stage == getattr(to_stage, "value", to_stage),
            )
        return self.session.execute(query.limit(1)).first() is not None

    def get_transitioning_count(self) -> int:
        return len(self.session.execute(select(StageTransitionClaim.id)).all())

    def cleanup_stale_claims(self, max_age: timedelta = timedelta(minutes=5)) -> int:
        """Delete claims older than ``max_age`` left behind by crashed workers."""
        cutoff = self._clock() - max_age
        result = self.session.execute(delete(StageTransitionClaim).where(StageTransitionClaim.claimed_at < cutoff))
        self.session.commit()
        cleaned = int(result.rowcount or 0)
        if cleaned:
            logger.info("Cleaned up %s stale stage transition claims", cleaned)
        return cleaned
