"""
Duplicate analysis stage.

Every data row is classified exactly once: first-seen unique, internal
duplicate (its unique id already appeared earlier in the file) or external
duplicate (its unique id already belongs to a persisted event of the
dataset). Rows whose id cannot be derived are logged and counted as invalid.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from timetiles_app.importer.adapters import count_rows, iter_batches
from timetiles_app.importer.contracts import DatasetSettings, DuplicateAnalysis, DuplicateSummary, ErrorLogEntry
from timetiles_app.importer.errors import StageConflict, UniqueIdError
from timetiles_app.importer.metrics import record_stage_duration
from timetiles_app.models import Event, ImportStage

from .job_state import (
    append_errors,
    fail_stage,
    is_current_stage,
    load_job,
    resolve_job_file,
    set_total_rows,
    update_stage_progress,
)
from .unique_id import generate_unique_id

if TYPE_CHECKING:
    from timetiles_app.importer.context import PipelineContext

logger = logging.getLogger(__name__)

STAGE = ImportStage.ANALYZE_DUPLICATES


def _chunks(values: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def find_existing_events(
    session: Session,
    dataset_id: int,
    unique_ids: Sequence[str],
    *,
    chunk_size: int = 1000,
) -> dict[str, int]:
    """Map each already persisted unique id to its event id, querying ``chunk_size`` ids at a time."""
    existing: dict[str, int] = {}
    for chunk in _chunks(list(unique_ids), chunk_size):
        rows = session.execute(
            select(Event.unique_id, Event.id).where(Event.dataset_id == dataset_id, Event.unique_id.in_(chunk))
        ).all()
        for unique_id, event_id in rows:
            existing.setdefault(unique_id, event_id)
    return existing


def analyze_duplicates(import_job_id: int, context: "PipelineContext") -> dict[str, Any]:
    session = context.session
    started = time.monotonic()
    try:
        job = load_job(session, import_job_id)
        if not is_current_stage(job, STAGE):
            return {"skipped": True, "reason": "stage_mismatch"}

        dataset_settings = DatasetSettings.from_dataset(job.dataset)
        file_path = resolve_job_file(job, context.upload_dir)

        if not dataset_settings.deduplication.enabled:
            total_rows = count_rows(file_path, sheet_index=job.sheet_index)
            analysis = DuplicateAnalysis(
                strategy="disabled",
                summary=DuplicateSummary(total_rows=total_rows, unique_rows=total_rows),
            )
            logger.info(
                "Deduplication disabled for dataset %s; skipping analysis",
                job.dataset_id,
                extra={"importer_job_id": import_job_id, "importer_dataset_id": job.dataset_id},
            )
        else:
            analysis, row_errors = _analyze_file(job, dataset_settings, file_path, context)
            append_errors(job, row_errors)

        job.duplicates_json = analysis.as_dict()
        set_total_rows(job, analysis.summary.total_rows)
        update_stage_progress(
            job,
            STAGE,
            processed=analysis.summary.total_rows,
            total=analysis.summary.total_rows,
        )
        summary = analysis.summary
        context.transitions.transition(job, ImportStage.DETECT_SCHEMA)
        logger.info(
            "Duplicate analysis finished for import job %s",
            import_job_id,
            extra={
                "importer_job_id": import_job_id,
                "importer_total_rows": summary.total_rows,
                "importer_unique_rows": summary.unique_rows,
                "importer_internal_duplicates": summary.internal_duplicates,
                "importer_external_duplicates": summary.external_duplicates,
                "importer_invalid_rows": summary.invalid_rows,
            },
        )
        record_stage_duration(STAGE.value, status="success", duration_seconds=time.monotonic() - started)
        return {"import_job_id": import_job_id, "summary": analysis.as_dict()["summary"]}
    except StageConflict:
        logger.warning("Import job %s was moved by another worker", import_job_id, extra={"importer_job_id": import_job_id})
        return {"skipped": True, "reason": "stage_conflict"}
    except Exception as exc:
        record_stage_duration(STAGE.value, status="failure", duration_seconds=time.monotonic() - started)
        fail_stage(context, import_job_id, STAGE, exc)
        raise


def _analyze_file(job, dataset_settings: DatasetSettings, file_path, context: "PipelineContext"):
    strategy = dataset_settings.id_strategy
    seen: dict[str, int] = {}
    internal: list[dict[str, Any]] = []
    invalid: list[dict[str, Any]] = []
    row_errors: list[ErrorLogEntry] = []
    total_rows = 0

    for batch in iter_batches(
        file_path,
        sheet_index=job.sheet_index,
        batch_size=context.settings.duplicate_batch_size,
    ):
        for row_number, row in batch.numbered_rows():
            total_rows += 1
            try:
                unique_id = generate_unique_id(row, strategy, job.dataset_id, row_number=row_number)
            except UniqueIdError as exc:
                invalid.append({"row_number": row_number})
                row_errors.append(ErrorLogEntry(error=str(exc), stage=STAGE.value, row=row_number))
                continue
            first = seen.get(unique_id)
            if first is not None:
                internal.append({"row_number": row_number, "unique_id": unique_id, "first_occurrence": first})
            else:
                seen[unique_id] = row_number
        for error in batch.errors:
            row_errors.append(ErrorLogEntry(error=error.message, stage=STAGE.value, row=error.row_number))

    existing = find_existing_events(
        context.session,
        job.dataset_id,
        list(seen),
        chunk_size=context.settings.existence_chunk_size,
    )
    external = [
        {"row_number": seen[unique_id], "unique_id": unique_id, "existing_event_id": event_id}
        for unique_id, event_id in sorted(existing.items(), key=lambda item: seen[item[0]])
    ]
    analysis = DuplicateAnalysis(
        strategy=strategy.type,
        internal=internal,
        external=external,
        invalid=invalid,
        summary=DuplicateSummary(
            total_rows=total_rows,
            unique_rows=len(seen) - len(external),
            internal_duplicates=len(internal),
            external_duplicates=len(external),
            invalid_rows=len(invalid),
        ),
    )
    return analysis, row_errors
