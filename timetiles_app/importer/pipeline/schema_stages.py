"""
Schema stages: detect-schema, validate-schema, create-schema-version and the
approval actions that move a job out of ``await-approval``.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from timetiles_app.importer.adapters import read_batch
from timetiles_app.importer.contracts import (
    DatasetSettings,
    DuplicateAnalysis,
    ErrorLogEntry,
    ImportProgress,
    SchemaValidation,
)
from timetiles_app.importer.errors import ImporterError, SchemaApprovalError, StageConflict
from timetiles_app.importer.metrics import record_stage_duration
from timetiles_app.importer.queue import ImportTask
from timetiles_app.models import ImportStage, User
from timetiles_app.services.quota_constants import QuotaType

from .field_mappings import detect_field_mappings
from .field_stats import ProgressiveSchemaBuilder
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
from .schema_comparison import compare_schemas, generate_change_summary
from .schema_versioning import create_schema_version, decide_approval, get_latest_schema

if TYPE_CHECKING:
    from timetiles_app.importer.context import PipelineContext

logger = logging.getLogger(__name__)


def _stage_conflict(import_job_id: int) -> dict[str, Any]:
    logger.warning(
        "Import job %s was moved by another worker",
        import_job_id,
        extra={"importer_job_id": import_job_id},
    )
    return {"skipped": True, "reason": "stage_conflict"}


# detect-schema ------------------------------------------------------------


def detect_schema(import_job_id: int, batch_number: int, context: "PipelineContext") -> dict[str, Any]:
    """
    Feed one batch of non-duplicate rows into the progressive schema builder.

    The builder state is persisted on the job after every batch. The last
    batch detects field mappings and moves the job to ``validate-schema``;
    earlier batches re-queue the task with ``batch_number + 1``.
    """
    stage = ImportStage.DETECT_SCHEMA
    session = context.session
    started = time.monotonic()
    try:
        job = load_job(session, import_job_id)
        if not is_current_stage(job, stage):
            return {"skipped": True, "reason": "stage_mismatch"}
        if not is_expected_batch(job, stage, batch_number):
            return {"skipped": True, "reason": "batch_mismatch"}

        dataset_settings = DatasetSettings.from_dataset(job.dataset)
        batch_size = context.settings.schema_batch_size
        batch = read_batch(
            resolve_job_file(job, context.upload_dir),
            sheet_index=job.sheet_index,
            start_row=batch_number * batch_size,
            limit=batch_size,
        )
        duplicate_rows = DuplicateAnalysis.coerce(job.duplicates_json).duplicate_rows()
        records = [row for row_number, row in batch.numbered_rows() if row_number not in duplicate_rows]

        builder = ProgressiveSchemaBuilder.for_schema_config(
            dataset_settings.schema_config,
            job.schema_builder_state_json,
        )
        if records:
            builder.process_batch(records)
        job.schema_builder_state_json = builder.get_state()
        job.schema_json = builder.get_schema()

        progress = ImportProgress.coerce(job.progress_json)
        processed = (progress.stage(stage.value).processed if batch_number else 0) + len(records)
        update_stage_progress(job, stage, processed=processed, total=progress.total_rows)
        if not claim_batch(session, job, stage, batch_number):
            return {"skipped": True, "reason": "batch_mismatch"}

        if not batch.end_of_file:
            session.commit()
            context.queue.queue(
                ImportTask.DETECT_SCHEMA,
                {"import_job_id": import_job_id, "batch_number": batch_number + 1},
            )
            record_stage_duration(stage.value, status="success", duration_seconds=time.monotonic() - started)
            return {"import_job_id": import_job_id, "batch_number": batch_number, "has_more": True}

        mappings = detect_field_mappings(
            builder.field_stats,
            job.dataset.language or "eng",
            dataset_settings.field_mapping_overrides,
        )
        job.field_mappings_json = mappings.as_dict()
        logger.info(
            "Field mappings detected for import job %s",
            import_job_id,
            extra={"importer_job_id": import_job_id, "importer_field_mappings": mappings.as_dict()},
        )
        context.transitions.transition(job, ImportStage.VALIDATE_SCHEMA)
        record_stage_duration(stage.value, status="success", duration_seconds=time.monotonic() - started)
        return {"import_job_id": import_job_id, "batch_number": batch_number, "has_more": False}
    except StageConflict:
        return _stage_conflict(import_job_id)
    except Exception as exc:
        record_stage_duration(stage.value, status="failure", duration_seconds=time.monotonic() - started)
        fail_stage(context, import_job_id, stage, exc)
        raise


# validate-schema ----------------------------------------------------------


def _check_event_quotas(context: "PipelineContext", job) -> None:
    user_id = job.import_file.user_id
    if user_id is None:
        return
    user = context.session.get(User, user_id)
    if user is None:
        return
    summary = DuplicateAnalysis.coerce(job.duplicates_json).summary
    events_to_import = max(0, summary.total_rows - summary.internal_duplicates - summary.external_duplicates)
    context.quota_service.validate_quota(user, QuotaType.EVENTS_PER_IMPORT, events_to_import)
    context.quota_service.validate_quota(user, QuotaType.TOTAL_EVENTS, events_to_import)


def validate_schema(import_job_id: int, context: "PipelineContext") -> dict[str, Any]:
    stage = ImportStage.VALIDATE_SCHEMA
    session = context.session
    started = time.monotonic()
    try:
        job = load_job(session, import_job_id)
        if not is_current_stage(job, stage):
            return {"skipped": True, "reason": "stage_mismatch"}
        if job.schema_builder_state_json is None:
            raise ImporterError("Schema builder state not found; detect-schema must run first.")

        _check_event_quotas(context, job)

        dataset_settings = DatasetSettings.from_dataset(job.dataset)
        builder = ProgressiveSchemaBuilder.for_schema_config(
            dataset_settings.schema_config,
            job.schema_builder_state_json,
        )
        detected = builder.get_schema()
        latest = get_latest_schema(session, job.dataset_id)
        comparison = compare_schemas(latest.schema_json if latest else None, detected)
        decision = decide_approval(
            dataset_settings.schema_config,
            comparison,
            has_existing_version=latest is not None,
        )
        is_breaking = comparison.is_breaking and latest is not None

        validation = SchemaValidation(
            is_compatible=not is_breaking,
            has_changes=comparison.has_changes,
            breaking_changes=[change.as_dict() for change in comparison.breaking_changes] if latest else [],
            new_fields=[change.as_dict() for change in comparison.new_fields],
            changes=[change.as_dict() for change in comparison.changes],
            requires_approval=decision.requires_approval,
            approval_reason=decision.reason,
        )
        job.schema_json = detected
        job.schema_validation_json = validation.as_dict()

        if decision.requires_approval:
            next_stage = ImportStage.AWAIT_APPROVAL
        elif latest is not None and not comparison.has_changes:
            job.dataset_schema_id = latest.id
            next_stage = ImportStage.GEOCODE_BATCH
        else:
            next_stage = ImportStage.CREATE_SCHEMA_VERSION

        logger.info(
            "Schema validated for import job %s: %s",
            import_job_id,
            generate_change_summary(comparison).splitlines()[0],
            extra={
                "importer_job_id": import_job_id,
                "importer_schema_breaking": is_breaking,
                "importer_schema_requires_approval": decision.requires_approval,
                "importer_next_stage": next_stage.value,
            },
        )
        context.transitions.transition(job, next_stage)
        record_stage_duration(stage.value, status="success", duration_seconds=time.monotonic() - started)
        return {
            "import_job_id": import_job_id,
            "requires_approval": decision.requires_approval,
            "has_breaking_changes": is_breaking,
            "new_fields": len(comparison.new_fields),
            "next_stage": next_stage.value,
        }
    except StageConflict:
        return _stage_conflict(import_job_id)
    except Exception as exc:
        record_stage_duration(stage.value, status="failure", duration_seconds=time.monotonic() - started)
        fail_stage(context, import_job_id, stage, exc)
        raise


# create-schema-version ----------------------------------------------------


def create_schema_version_stage(import_job_id: int, context: "PipelineContext") -> dict[str, Any]:
    stage = ImportStage.CREATE_SCHEMA_VERSION
    session = context.session
    started = time.monotonic()
    try:
        job = load_job(session, import_job_id)
        if not is_current_stage(job, stage):
            return {"skipped": True, "reason": "stage_mismatch"}
        if not job.schema_json:
            raise ImporterError("No detected schema stored on the import job.")

        validation = SchemaValidation.coerce(job.schema_validation_json)
        state = job.schema_builder_state_json or {}
        version = create_schema_version(
            session,
            dataset_id=job.dataset_id,
            schema=job.schema_json,
            field_metadata=state.get("field_stats"),
            auto_approved=not validation.requires_approval,
            approved_by_id=validation.approved_by_id,
            approval_notes=validation.approval_notes,
            import_job_ids=[job.id],
        )
        job.dataset_schema_id = version.id
        version_number = version.version_number
        context.transitions.transition(job, ImportStage.GEOCODE_BATCH)
        record_stage_duration(stage.value, status="success", duration_seconds=time.monotonic() - started)
        return {"import_job_id": import_job_id, "version_number": version_number}
    except StageConflict:
        return _stage_conflict(import_job_id)
    except Exception as exc:
        record_stage_duration(stage.value, status="failure", duration_seconds=time.monotonic() - started)
        fail_stage(context, import_job_id, stage, exc)
        raise


# approval actions ---------------------------------------------------------


def approve_schema(
    import_job_id: int,
    context: "PipelineContext",
    *,
    approved_by_id: int | None = None,
    notes: str | None = None,
):
    """Record the approval and move the job to ``create-schema-version``."""
    job = load_job(context.session, import_job_id)
    if job.stage != ImportStage.AWAIT_APPROVAL:
        raise SchemaApprovalError(
            f"Import job {import_job_id} is in stage '{job.stage.value}', not awaiting approval."
        )
    validation = SchemaValidation.coerce(job.schema_validation_json)
    validation.approved = True
    validation.approved_by_id = approved_by_id
    validation.approved_at = datetime.now(timezone.utc).isoformat()
    validation.approval_notes = notes
    job.schema_validation_json = validation.as_dict()
    logger.info(
        "Schema approved for import job %s",
        import_job_id,
        extra={"importer_job_id": import_job_id, "importer_approved_by": approved_by_id},
    )
    return context.transitions.transition(job, ImportStage.CREATE_SCHEMA_VERSION)


def reject_schema(
    import_job_id: int,
    context: "PipelineContext",
    *,
    rejected_by_id: int | None = None,
    reason: str | None = None,
):
    """Record the rejection and fail the job."""
    job = load_job(context.session, import_job_id)
    if job.stage != ImportStage.AWAIT_APPROVAL:
        raise SchemaApprovalError(
            f"Import job {import_job_id} is in stage '{job.stage.value}', not awaiting approval."
        )
    validation = SchemaValidation.coerce(job.schema_validation_json)
    validation.approved = False
    validation.approved_by_id = rejected_by_id
    validation.approved_at = datetime.now(timezone.utc).isoformat()
    validation.approval_notes = reason
    job.schema_validation_json = validation.as_dict()
    message = f"Schema changes rejected{': ' + reason if reason else ''}"
    append_errors(job, [ErrorLogEntry(error=message, stage=ImportStage.AWAIT_APPROVAL.value)])
    logger.info(
        "Schema rejected for import job %s",
        import_job_id,
        extra={"importer_job_id": import_job_id, "importer_rejected_by": rejected_by_id},
    )
    import_file_id = job.import_file_id
    result = context.transitions.transition(job, ImportStage.FAILED)
    refresh_import_file_status(context.session, import_file_id)
    context.session.commit()
    return result
