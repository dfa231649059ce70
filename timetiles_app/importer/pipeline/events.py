"""
Create-events stage.

Turns every non-duplicate row into an ``Event`` carrying its unique id,
coordinates, timestamp and the schema version it was validated against.
The last batch records the job results, charges the owner's
``total_events_created`` usage and completes the job.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Mapping

import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from timetiles_app.importer.adapters import read_batch
from timetiles_app.importer.contracts import (
    DatasetSettings,
    DuplicateAnalysis,
    ErrorLogEntry,
    FieldMappings,
    ImportProgress,
)
from timetiles_app.importer.errors import StageConflict, UniqueIdError
from timetiles_app.importer.metrics import record_events_created, record_stage_duration
from timetiles_app.importer.queue import ImportTask
from timetiles_app.models import CoordinateSource, Event, ImportStage
from timetiles_app.services.geocoding.coordinates import validate_coordinates
from timetiles_app.services.quota_constants import UsageType

from .duplicates import find_existing_events
from .geocoding_stage import location_text
from .job_state import (
    append_errors,
    claim_batch,
    fail_stage,
    is_current_stage,
    is_expected_batch,
    load_job,
    refresh_import_file_status,
    resolve_job_file,
    update_stage_progress,
)
from .unique_id import generate_unique_id, get_by_path

if TYPE_CHECKING:
    from timetiles_app.importer.context import PipelineContext

logger = logging.getLogger(__name__)

STAGE = ImportStage.CREATE_EVENTS

FALLBACK_TIMESTAMP_FIELDS = ("timestamp", "date", "datetime", "created_at", "event_date", "event_time")

# Epoch numbers above this are taken to be milliseconds.
_EPOCH_MILLISECONDS_THRESHOLD = 100_000_000_000


@dataclass(frozen=True)
class ResolvedCoordinates:
    latitude: float | None = None
    longitude: float | None = None
    source: CoordinateSource = CoordinateSource.NONE
    validation_status: str | None = None
    provider: str | None = None
    confidence: float | None = None
    normalized_address: str | None = None


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) >= _EPOCH_MILLISECONDS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    parsed = pd.to_datetime(str(value), utc=True, errors="coerce")
    if pd.isna(parsed):
        return None
    return parsed.to_pydatetime()


def extract_timestamp(row: Mapping[str, Any], timestamp_path: str | None, *, now: datetime | None = None) -> datetime:
    """Mapped field first, then common column names, else ``now``."""
    candidates = [get_by_path(row, timestamp_path)] if timestamp_path else []
    candidates.extend(row.get(name) for name in FALLBACK_TIMESTAMP_FIELDS)
    for candidate in candidates:
        parsed = parse_timestamp(candidate)
        if parsed is not None:
            return parsed
    return now or datetime.now(timezone.utc)


def resolve_coordinates(
    row: Mapping[str, Any],
    mappings: FieldMappings,
    geocoding_results: Mapping[str, Any],
) -> ResolvedCoordinates:
    """Validated import coordinates, then the geocoded location, else none."""
    validation_status = None
    if mappings.has_coordinates:
        validation = validate_coordinates(
            get_by_path(row, mappings.latitude_path),
            get_by_path(row, mappings.longitude_path),
        )
        validation_status = validation.status
        if validation.is_valid:
            return ResolvedCoordinates(
                latitude=validation.latitude,
                longitude=validation.longitude,
                source=CoordinateSource.IMPORT,
                validation_status=validation.status,
                confidence=validation.confidence,
            )

    text = location_text(dict(row), mappings.location_path)
    geocoded = geocoding_results.get(text) if text else None
    if geocoded and geocoded.get("latitude") is not None and geocoded.get("longitude") is not None:
        return ResolvedCoordinates(
            latitude=float(geocoded["latitude"]),
            longitude=float(geocoded["longitude"]),
            source=CoordinateSource.GEOCODED,
            validation_status=validation_status,
            provider=geocoded.get("provider"),
            confidence=geocoded.get("confidence"),
            normalized_address=geocoded.get("normalized_address"),
        )
    return ResolvedCoordinates(validation_status=validation_status)


def _schema_version_number(job) -> int | None:
    return job.dataset_schema.version_number if job.dataset_schema is not None else None


def create_events_batch(import_job_id: int, batch_number: int, context: "PipelineContext") -> dict[str, Any]:
    session = context.session
    started = time.monotonic()
    try:
        job = load_job(session, import_job_id)
        if not is_current_stage(job, STAGE):
            return {"skipped": True, "reason": "stage_mismatch"}
        if not is_expected_batch(job, STAGE, batch_number):
            return {"skipped": True, "reason": "batch_mismatch"}

        dataset_settings = DatasetSettings.from_dataset(job.dataset)
        mappings = FieldMappings.coerce(job.field_mappings_json)
        geocoding_results = dict(job.geocoding_results_json or {})
        analysis = DuplicateAnalysis.coerce(job.duplicates_json)
        duplicate_rows = analysis.duplicate_rows()
        invalid_rows = analysis.invalid_rows()
        schema_version_number = _schema_version_number(job)

        batch_size = context.settings.event_batch_size
        batch = read_batch(
            resolve_job_file(job, context.upload_dir),
            sheet_index=job.sheet_index,
            start_row=batch_number * batch_size,
            limit=batch_size,
        )

        candidates: list[tuple[int, dict[str, Any], str]] = []
        errors: list[ErrorLogEntry] = []
        skipped = 0
        for row_number, row in batch.numbered_rows():
            if row_number in duplicate_rows:
                skipped += 1
                continue
            if row_number in invalid_rows:
                continue
            try:
                unique_id = generate_unique_id(row, dataset_settings.id_strategy, job.dataset_id, row_number=row_number)
            except UniqueIdError as exc:
                errors.append(ErrorLogEntry(error=str(exc), stage=STAGE.value, row=row_number))
                continue
            candidates.append((row_number, row, unique_id))

        # Rows persisted since the duplicate analysis ran are skipped.
        existing = find_existing_events(
            session,
            job.dataset_id,
            [unique_id for _, _, unique_id in candidates],
            chunk_size=context.settings.existence_chunk_size,
        )
        created = 0
        for row_number, row, unique_id in candidates:
            if unique_id in existing:
                skipped += 1
                continue
            try:
                coordinates = resolve_coordinates(row, mappings, geocoding_results)
                event = Event(
                    dataset_id=job.dataset_id,
                    import_job_id=job.id,
                    unique_id=unique_id,
                    data_json=row,
                    event_timestamp=extract_timestamp(row, mappings.timestamp_path),
                    location_name=location_text(row, mappings.location_path),
                    latitude=coordinates.latitude,
                    longitude=coordinates.longitude,
                    coordinate_source=coordinates.source,
                    coordinate_validation_status=coordinates.validation_status,
                    geocoding_provider=coordinates.provider,
                    geocoding_confidence=coordinates.confidence,
                    normalized_address=coordinates.normalized_address,
                    schema_version_number=schema_version_number,
                )
                with session.begin_nested():
                    session.add(event)
            except IntegrityError:
                logger.info(
                    "Event %s for row %s already exists; skipping",
                    unique_id,
                    row_number,
                    extra={"importer_job_id": import_job_id, "importer_row": row_number},
                )
                skipped += 1
                continue
            except Exception as exc:
                errors.append(ErrorLogEntry(error=str(exc), stage=STAGE.value, row=row_number))
                logger.warning(
                    "Failed to create event for row %s",
                    row_number,
                    extra={"importer_job_id": import_job_id, "importer_row": row_number, "importer_error": str(exc)},
                )
                continue
            existing[unique_id] = event.id
            created += 1

        append_errors(job, errors)
        progress = ImportProgress.coerce(job.progress_json)
        previous = progress.stage(STAGE.value).processed if batch_number else 0
        update_stage_progress(job, STAGE, processed=previous + created, total=progress.total_rows)
        if not claim_batch(session, job, STAGE, batch_number):
            return {"skipped": True, "reason": "batch_mismatch"}
        record_events_created(created)

        summary = {
            "import_job_id": import_job_id,
            "batch_number": batch_number,
            "events_created": created,
            "events_skipped": skipped,
            "errors": len(errors),
            "has_more": not batch.end_of_file,
        }
        if not batch.end_of_file:
            session.commit()
            context.queue.queue(
                ImportTask.CREATE_EVENTS,
                {"import_job_id": import_job_id, "batch_number": batch_number + 1},
            )
        else:
            _complete_job(context, job)
        record_stage_duration(STAGE.value, status="success", duration_seconds=time.monotonic() - started)
        return summary
    except StageConflict:
        logger.warning("Import job %s was moved by another worker", import_job_id, extra={"importer_job_id": import_job_id})
        return {"skipped": True, "reason": "stage_conflict"}
    except Exception as exc:
        record_stage_duration(STAGE.value, status="failure", duration_seconds=time.monotonic() - started)
        fail_stage(context, import_job_id, STAGE, exc)
        raise


def _complete_job(context: "PipelineContext", job) -> None:
    session = context.session
    total_events = session.execute(select(func.count(Event.id)).where(Event.import_job_id == job.id)).scalar_one()
    duplicates = DuplicateAnalysis.coerce(job.duplicates_json).summary
    job.results_json = {
        "total_events": int(total_events),
        "duplicates_skipped": duplicates.internal_duplicates + duplicates.external_duplicates,
        "geocoded": sum(
            1 for result in (job.geocoding_results_json or {}).values() if isinstance(result, dict) and "error" not in result
        ),
        "errors": len(job.error_log_json or []),
    }

    user_id = job.import_file.user_id
    if user_id is not None and total_events:
        context.quota_service.increment_usage(user_id, UsageType.TOTAL_EVENTS_CREATED, int(total_events))

    import_job_id, import_file_id = job.id, job.import_file_id
    context.transitions.transition(job, ImportStage.COMPLETED)
    refresh_import_file_status(session, import_file_id)
    session.commit()
    logger.info(
        "Import job %s completed with %s events",
        import_job_id,
        total_events,
        extra={"importer_job_id": import_job_id, "importer_total_events": int(total_events)},
    )
