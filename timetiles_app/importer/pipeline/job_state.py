"""Helpers shared by stage handlers for reading and updating ImportJob state."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from sqlalchemy import update
from sqlalchemy.orm import Session

from timetiles_app.importer.contracts import ErrorLogEntry, ImportProgress
from timetiles_app.importer.errors import ImportJobNotFound, StageConflict
from timetiles_app.models import ImportFile, ImportFileStatus, ImportJob, ImportStage

if TYPE_CHECKING:
    from timetiles_app.importer.context import PipelineContext

logger = logging.getLogger(__name__)


def load_job(session: Session, import_job_id: int) -> ImportJob:
    job = session.get(ImportJob, import_job_id)
    if job is None:
        raise ImportJobNotFound(import_job_id)
    return job


def resolve_job_file(job: ImportJob, upload_dir: Path | None) -> Path:
    path = Path(job.import_file.filename)
    if not path.is_absolute() and upload_dir is not None:
        path = upload_dir / path
    return path


def is_current_stage(job: ImportJob, stage: ImportStage) -> bool:
    """Return False (and log) when a redelivered task finds the job elsewhere."""
    if job.stage == stage:
        return True
    logger.warning(
        "Skipping %s for import job %s; job is in stage %s",
        stage.value,
        job.id,
        job.stage.value,
        extra={"importer_job_id": job.id, "importer_stage": stage.value, "importer_job_stage": job.stage.value},
    )
    return False


def is_expected_batch(job: ImportJob, stage: ImportStage, batch_number: int) -> bool:
    """Return False (and log) for a batch other than the one the stage is waiting for."""
    if job.next_batch_number == batch_number:
        return True
    logger.warning(
        "Skipping batch %s of %s for import job %s; expected batch %s",
        batch_number,
        stage.value,
        job.id,
        job.next_batch_number,
        extra={"importer_job_id": job.id, "importer_stage": stage.value, "importer_batch_number": batch_number},
    )
    return False


def claim_batch(session: Session, job: ImportJob, stage: ImportStage, batch_number: int) -> bool:
    """
    Advance the job's batch cursor past ``batch_number`` in the current transaction.

    The conditional ``UPDATE`` only matches while the job is still in
    ``stage`` waiting for ``batch_number``. When another delivery of the same
    batch got there first, the batch's pending changes are rolled back and
    False is returned.
    """
    session.flush()
    result = session.execute(
        update(ImportJob)
        .where(
            ImportJob.id == job.id,
            ImportJob.stage == stage,
            ImportJob.next_batch_number == batch_number,
        )
        .values(next_batch_number=batch_number + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return True
    import_job_id = job.id
    session.rollback()
    logger.warning(
        "Batch %s of %s for import job %s was already processed",
        batch_number,
        stage.value,
        import_job_id,
        extra={"importer_job_id": import_job_id, "importer_stage": stage.value, "importer_batch_number": batch_number},
    )
    return False


def update_stage_progress(
    job: ImportJob,
    stage: ImportStage,
    *,
    processed: int,
    total: int | None = None,
    batch_completed: bool = True,
) -> ImportProgress:
    progress = ImportProgress.coerce(job.progress_json)
    entry = progress.stage(stage.value)
    entry.processed = processed
    if total is not None:
        entry.total = total
    if batch_completed:
        entry.batches_processed += 1
    job.progress_json = progress.as_dict(job.stage)
    return progress


def set_total_rows(job: ImportJob, total_rows: int) -> None:
    progress = ImportProgress.coerce(job.progress_json)
    progress.total_rows = total_rows
    job.progress_json = progress.as_dict(job.stage)


def append_errors(job: ImportJob, entries: Iterable[ErrorLogEntry]) -> int:
    new_entries = [entry.as_dict() for entry in entries]
    if not new_entries:
        return 0
    error_log = list(job.error_log_json or [])
    error_log.extend(new_entries)
    job.error_log_json = error_log
    return len(new_entries)


def fail_stage(context: "PipelineContext", import_job_id: int, stage: ImportStage, exc: BaseException) -> None:
    """
    Record ``exc`` on the job and move it to ``failed``.

    Called from a stage handler's ``except`` block; the handler re-raises.
    """
    session = context.session
    session.rollback()
    job = session.get(ImportJob, import_job_id)
    if job is not None and not job.stage.is_terminal:
        try:
            context.transitions.mark_failed(job, str(exc), stage=stage)
        except StageConflict:
            logger.warning(
                "Import job %s moved before it could be marked failed",
                import_job_id,
                extra={"importer_job_id": import_job_id},
            )
        else:
            refresh_import_file_status(session, job.import_file_id)
            session.commit()
    logger.exception(
        "Import stage %s failed",
        stage.value,
        extra={
            "importer_job_id": import_job_id,
            "importer_stage": stage.value,
            "importer_error": str(exc),
        },
    )


def refresh_import_file_status(session: Session, import_file_id: int) -> ImportFileStatus | None:
    """Mark the file completed or failed once every one of its jobs is terminal."""
    import_file = session.get(ImportFile, import_file_id)
    if import_file is None:
        return None
    stages = [job.stage for job in import_file.jobs]
    if not stages or not all(stage.is_terminal for stage in stages):
        return import_file.status
    status = ImportFileStatus.FAILED if ImportStage.FAILED in stages else ImportFileStatus.COMPLETED
    if import_file.status != status:
        import_file.status = status
        import_file.completed_at = datetime.now(timezone.utc)
        logger.info(
            "Import file %s marked %s",
            import_file_id,
            status.value,
            extra={"importer_file_id": import_file_id, "importer_file_status": status.value},
        )
    return status
