"""
Geocode-batch stage.

Rows with usable coordinates of their own are counted as imported. Location
strings of the remaining non-duplicate rows are geocoded once each and the
results are stored on the job keyed by the trimmed source text, so the
create-events stage can look them up without calling a provider again.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from timetiles_app.importer.adapters import read_batch
from timetiles_app.importer.contracts import DuplicateAnalysis, FieldMappings, GeocodingStatistics, ImportProgress
from timetiles_app.importer.errors import GeocodingFailed, StageConflict
from timetiles_app.importer.metrics import record_stage_duration
from timetiles_app.importer.queue import ImportTask
from timetiles_app.models import ImportStage
from timetiles_app.services.geocoding.coordinates import validate_coordinates

from .job_state import (
    claim_batch,
    fail_stage,
    is_current_stage,
    is_expected_batch,
    load_job,
    resolve_job_file,
    update_stage_progress,
)
from .unique_id import get_by_path

if TYPE_CHECKING:
    from timetiles_app.importer.context import PipelineContext

logger = logging.getLogger(__name__)

STAGE = ImportStage.GEOCODE_BATCH


def location_text(row: dict[str, Any], location_path: str | None) -> str | None:
    value = get_by_path(row, location_path)
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def has_import_coordinates(row: dict[str, Any], mappings: FieldMappings) -> bool:
    if not mappings.has_coordinates:
        return False
    validation = validate_coordinates(
        get_by_path(row, mappings.latitude_path),
        get_by_path(row, mappings.longitude_path),
    )
    return validation.is_valid


def geocode_batch(import_job_id: int, batch_number: int, context: "PipelineContext") -> dict[str, Any]:
    session = context.session
    started = time.monotonic()
    try:
        job = load_job(session, import_job_id)
        if not is_current_stage(job, STAGE):
            return {"skipped": True, "reason": "stage_mismatch"}
        if not is_expected_batch(job, STAGE, batch_number):
            return {"skipped": True, "reason": "batch_mismatch"}

        mappings = FieldMappings.coerce(job.field_mappings_json)
        location_path = mappings.location_path if context.settings.geocoding_enabled else None
        if not location_path and not mappings.has_coordinates:
            logger.info(
                "No location or coordinate fields for import job %s; skipping geocoding",
                import_job_id,
                extra={"importer_job_id": import_job_id},
            )
            context.transitions.transition(job, ImportStage.CREATE_EVENTS)
            record_stage_duration(STAGE.value, status="success", duration_seconds=time.monotonic() - started)
            return {"import_job_id": import_job_id, "skipped": True, "reason": "no_location_fields"}

        batch_size = context.settings.geocode_batch_size
        batch = read_batch(
            resolve_job_file(job, context.upload_dir),
            sheet_index=job.sheet_index,
            start_row=batch_number * batch_size,
            limit=batch_size,
        )
        duplicate_rows = DuplicateAnalysis.coerce(job.duplicates_json).duplicate_rows()
        stats = GeocodingStatistics.coerce(job.geocoding_stats_json)
        results: dict[str, Any] = dict(job.geocoding_results_json or {})

        processed = 0
        pending: list[str] = []
        for row_number, row in batch.numbered_rows():
            if row_number in duplicate_rows:
                continue
            processed += 1
            if has_import_coordinates(row, mappings):
                stats.from_import += 1
                continue
            text = location_text(row, location_path)
            if text and text not in results and text not in pending:
                pending.append(text)

        geocoded = failed = 0
        if pending:
            service = context.get_geocoding_service()
            for text in pending:
                stats.total += 1
                try:
                    result = service.geocode(text)
                except GeocodingFailed as exc:
                    failed += 1
                    stats.failed += 1
                    results[text] = {"error": str(exc)}
                    logger.debug(
                        "Geocoding failed for %r",
                        text,
                        extra={"importer_job_id": import_job_id, "importer_error": str(exc)},
                    )
                    continue
                geocoded += 1
                stats.successful += 1
                if result.from_cache:
                    stats.cached += 1
                else:
                    stats.record_provider_call(result.provider)
                results[text] = result.as_dict()

        job.geocoding_results_json = results
        job.geocoding_stats_json = stats.as_dict()
        progress = ImportProgress.coerce(job.progress_json)
        previous = progress.stage(STAGE.value).processed if batch_number else 0
        update_stage_progress(job, STAGE, processed=previous + processed, total=progress.total_rows)

        summary = {
            "import_job_id": import_job_id,
            "batch_number": batch_number,
            "geocoded": geocoded,
            "failed": failed,
            "has_more": not batch.end_of_file,
        }
        if not claim_batch(session, job, STAGE, batch_number):
            return {"skipped": True, "reason": "batch_mismatch"}
        if not batch.end_of_file:
            session.commit()
            context.queue.queue(
                ImportTask.GEOCODE_BATCH,
                {"import_job_id": import_job_id, "batch_number": batch_number + 1},
            )
        else:
            logger.info(
                "Geocoding finished for import job %s",
                import_job_id,
                extra={"importer_job_id": import_job_id, "importer_geocoding_stats": stats.as_dict()},
            )
            context.transitions.transition(job, ImportStage.CREATE_EVENTS)
        record_stage_duration(STAGE.value, status="success", duration_seconds=time.monotonic() - started)
        return summary
    except StageConflict:
        logger.warning("Import job %s was moved by another worker", import_job_id, extra={"importer_job_id": import_job_id})
        return {"skipped": True, "reason": "stage_conflict"}
    except Exception as exc:
        record_stage_duration(STAGE.value, status="failure", duration_seconds=time.monotonic() - started)
        fail_stage(context, import_job_id, STAGE, exc)
        raise
