import pytest

from timetiles_app.importer.context import PipelineSettings
from timetiles_app.importer.errors import QuotaExceededError, SchemaApprovalError
from timetiles_app.importer.pipeline import (
    approve_schema,
    create_schema_version,
    create_schema_version_stage,
    detect_schema,
    reject_schema,
    validate_schema,
)
from timetiles_app.importer.pipeline.field_stats import ProgressiveSchemaBuilder
from timetiles_app.importer.queue import ImportTask
from timetiles_app.models import DatasetSchema, ImportFileStatus, ImportJob, ImportStage, db

BASE_RECORDS = [{"title": "Alpha", "count": 1}, {"title": "Beta", "count": 2}]


def _state(records):
    builder = ProgressiveSchemaBuilder()
    builder.process_batch(records)
    return builder.get_state(), builder.get_schema()


@pytest.fixture
def validating_job(dataset_factory, job_factory, write_csv, sample_rows):
    """Build a job parked in validate-schema, optionally against an existing version."""
    path = write_csv(sample_rows)

    def _factory(records, *, schema_config=None, existing=BASE_RECORDS, user=None, summary=None):
        dataset = dataset_factory(schema_config=schema_config)
        if existing is not None:
            _, schema = _state(existing)
            create_schema_version(db.session, dataset_id=dataset.id, schema=schema, auto_approved=True)
            db.session.commit()
        state, _ = _state(records)
        return job_factory(
            dataset,
            path,
            stage=ImportStage.VALIDATE_SCHEMA,
            user=user,
            schema_builder_state_json=state,
            duplicates_json={"summary": summary or {"total_rows": len(records)}},
        )

    return _factory


def test_detect_schema_walks_batches_and_skips_duplicates(
    pipeline_context, recording_queue, dataset_factory, job_factory, write_csv, sample_rows
):
    dataset = dataset_factory()
    job = job_factory(
        dataset,
        write_csv(sample_rows),
        stage=ImportStage.DETECT_SCHEMA,
        duplicates_json={"internal": [{"row_number": 1, "unique_id": "x", "first_occurrence": 0}]},
    )

    first = detect_schema(job.id, 0, pipeline_context)
    assert first["has_more"] is True
    assert recording_queue.calls == [(ImportTask.DETECT_SCHEMA, {"import_job_id": job.id, "batch_number": 1})]

    second = detect_schema(job.id, 1, pipeline_context)
    assert second["has_more"] is False

    job = db.session.get(ImportJob, job.id)
    assert job.stage == ImportStage.VALIDATE_SCHEMA
    assert job.schema_builder_state_json["record_count"] == 2
    assert job.progress_json["stages"]["detect-schema"]["processed"] == 2
    assert set(job.schema_json["properties"]) == {"id", "title", "date", "location"}
    assert job.field_mappings_json["title_path"] == "title"
    assert job.field_mappings_json["timestamp_path"] == "date"
    assert job.field_mappings_json["location_path"] == "location"
    assert recording_queue.tasks[-1] is ImportTask.VALIDATE_SCHEMA


def test_detect_schema_redelivered_batch_is_skipped(
    pipeline_context, recording_queue, dataset_factory, job_factory, write_csv, sample_rows
):
    job = job_factory(dataset_factory(), write_csv(sample_rows), stage=ImportStage.DETECT_SCHEMA)

    detect_schema(job.id, 0, pipeline_context)

    assert detect_schema(job.id, 0, pipeline_context) == {"skipped": True, "reason": "batch_mismatch"}
    job = db.session.get(ImportJob, job.id)
    assert job.next_batch_number == 1
    assert job.schema_builder_state_json["record_count"] == 2
    assert recording_queue.calls == [(ImportTask.DETECT_SCHEMA, {"import_job_id": job.id, "batch_number": 1})]


def test_field_mapping_overrides_win(pipeline_context, dataset_factory, job_factory, write_csv, sample_rows):
    dataset = dataset_factory(overrides={"title_path": "location"})
    job = job_factory(dataset, write_csv(sample_rows), stage=ImportStage.DETECT_SCHEMA)
    pipeline_context.settings = PipelineSettings(schema_batch_size=10)

    detect_schema(job.id, 0, pipeline_context)

    mappings = db.session.get(ImportJob, job.id).field_mappings_json
    assert mappings["title_path"] == "location"
    assert mappings["confidence"]["title"] == 1.0


def test_unchanged_schema_reuses_latest_version(pipeline_context, recording_queue, validating_job):
    job = validating_job(BASE_RECORDS)

    result = validate_schema(job.id, pipeline_context)

    assert result["next_stage"] == "geocode-batch"
    job = db.session.get(ImportJob, job.id)
    assert job.dataset_schema.version_number == 1
    assert recording_queue.tasks == [ImportTask.GEOCODE_BATCH]


def test_removed_field_needs_approval_in_additive_mode(pipeline_context, recording_queue, validating_job):
    job = validating_job([{"title": "Gamma"}])

    result = validate_schema(job.id, pipeline_context)

    assert result["requires_approval"] is True
    assert result["has_breaking_changes"] is True
    job = db.session.get(ImportJob, job.id)
    assert job.stage == ImportStage.AWAIT_APPROVAL
    assert job.schema_validation_json["breaking_changes"][0]["path"] == "count"
    assert recording_queue.calls == []


def test_optional_new_field_is_auto_approved(pipeline_context, recording_queue, validating_job):
    records = [
        {"title": "Gamma", "count": 3},
        {"title": "Delta", "count": 4},
        {"title": "Epsilon", "count": 5, "venue": "Hall"},
    ]
    job = validating_job(records)

    result = validate_schema(job.id, pipeline_context)

    assert result["requires_approval"] is False
    assert result["new_fields"] == 1
    assert recording_queue.tasks == [ImportTask.CREATE_SCHEMA_VERSION]


def test_strict_mode_approves_every_change(pipeline_context, validating_job):
    records = [{"title": "Gamma", "count": 3}, {"title": "Delta", "count": 4}, {"title": "Eps", "count": 5, "venue": "Hall"}]
    job = validating_job(records, schema_config={"mode": "strict"})

    assert validate_schema(job.id, pipeline_context)["next_stage"] == "await-approval"


def test_flexible_mode_accepts_breaking_changes(pipeline_context, recording_queue, validating_job):
    job = validating_job([{"title": "Gamma"}], schema_config={"mode": "flexible"})

    result = validate_schema(job.id, pipeline_context)

    assert result["has_breaking_changes"] is True
    assert result["next_stage"] == "create-schema-version"


def test_first_version_of_a_dataset_is_created_without_approval(pipeline_context, validating_job):
    job = validating_job(BASE_RECORDS, existing=None)

    assert validate_schema(job.id, pipeline_context)["next_stage"] == "create-schema-version"


def test_event_quota_is_checked_before_validation(pipeline_context, validating_job, user_factory):
    user = user_factory(quotas={"maxEventsPerImport": 2})
    job = validating_job(
        BASE_RECORDS,
        user=user,
        summary={"total_rows": 4, "internal_duplicates": 1, "external_duplicates": 0},
    )

    with pytest.raises(QuotaExceededError):
        validate_schema(job.id, pipeline_context)

    job = db.session.get(ImportJob, job.id)
    assert job.stage == ImportStage.FAILED
    assert "maximum events per import" in job.error_log_json[-1]["error"]


def test_approval_creates_a_manually_approved_version(
    pipeline_context, recording_queue, validating_job, user_factory
):
    approver = user_factory()
    job = validating_job([{"title": "Gamma"}])
    validate_schema(job.id, pipeline_context)

    approve_schema(job.id, pipeline_context, approved_by_id=approver.id, notes="Looks fine")
    assert db.session.get(ImportJob, job.id).stage == ImportStage.CREATE_SCHEMA_VERSION

    result = create_schema_version_stage(job.id, pipeline_context)

    assert result["version_number"] == 2
    job = db.session.get(ImportJob, job.id)
    version = db.session.get(DatasetSchema, job.dataset_schema_id)
    assert version.auto_approved is False
    assert version.approved_by_id == approver.id
    assert version.approval_notes == "Looks fine"
    assert version.import_job_ids == [job.id]
    assert job.schema_validation_json["approved"] is True
    assert recording_queue.tasks == [ImportTask.CREATE_SCHEMA_VERSION, ImportTask.GEOCODE_BATCH]


def test_rejection_fails_job_and_file(pipeline_context, validating_job):
    job = validating_job([{"title": "Gamma"}])
    validate_schema(job.id, pipeline_context)

    reject_schema(job.id, pipeline_context, reason="Lost the count column")

    job = db.session.get(ImportJob, job.id)
    assert job.stage == ImportStage.FAILED
    assert job.error_log_json[-1]["error"] == "Schema changes rejected: Lost the count column"
    assert job.schema_validation_json["approved"] is False
    assert job.import_file.status == ImportFileStatus.FAILED


def test_approval_requires_awaiting_job(pipeline_context, validating_job):
    job = validating_job(BASE_RECORDS)

    with pytest.raises(SchemaApprovalError):
        approve_schema(job.id, pipeline_context)
    with pytest.raises(SchemaApprovalError):
        reject_schema(job.id, pipeline_context)
