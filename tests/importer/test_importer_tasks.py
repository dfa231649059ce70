from datetime import datetime, timedelta, timezone

import pytest

from timetiles_app.importer import tasks
from timetiles_app.importer.queue import ImportTask
from timetiles_app.models import (
    GeocodeCacheEntry,
    ImportJob,
    ImportStage,
    StageTransitionClaim,
    UserUsage,
    db,
)


@pytest.fixture
def task_context(monkeypatch, pipeline_context):
    monkeypatch.setattr(tasks, "build_pipeline_context", lambda app: pipeline_context)
    return pipeline_context


def test_task_names_match_queue_routing():
    assert tasks.analyze_duplicates_task.name == ImportTask.ANALYZE_DUPLICATES.value
    assert tasks.detect_schema_task.name == ImportTask.DETECT_SCHEMA.value
    assert tasks.validate_schema_task.name == ImportTask.VALIDATE_SCHEMA.value
    assert tasks.create_schema_version_task.name == ImportTask.CREATE_SCHEMA_VERSION.value
    assert tasks.geocode_batch_task.name == ImportTask.GEOCODE_BATCH.value
    assert tasks.create_events_task.name == ImportTask.CREATE_EVENTS.value


def test_analyze_duplicates_task_runs_stage(task_context, recording_queue, dataset_factory, job_factory, write_csv, sample_rows):
    job = job_factory(dataset_factory(), write_csv(sample_rows))

    result = tasks.analyze_duplicates_task.run(import_job_id=job.id)

    assert result["summary"]["unique_rows"] == 3
    assert recording_queue.tasks == [ImportTask.DETECT_SCHEMA]
    assert db.session.get(ImportJob, job.id).stage == ImportStage.DETECT_SCHEMA


def test_stage_task_skips_job_in_other_stage(task_context, recording_queue, dataset_factory, job_factory, write_csv, sample_rows):
    job = job_factory(dataset_factory(), write_csv(sample_rows), stage=ImportStage.GEOCODE_BATCH)

    assert tasks.detect_schema_task.run(import_job_id=job.id, batch_number=0) == {
        "skipped": True,
        "reason": "stage_mismatch",
    }
    assert recording_queue.calls == []


def test_healthcheck_task_runs_eagerly():
    payload = tasks.importer_healthcheck.apply().get()

    assert payload["status"] == "ok"
    assert "timestamp" in payload


def test_reset_daily_quotas_task(task_context, user_factory):
    user = user_factory()
    db.session.add(UserUsage(user_id=user.id, file_uploads_today=4, import_jobs_today=2, total_events_created=9))
    db.session.commit()

    result = tasks.reset_daily_quotas_task.run()

    assert result["users_reset"] == 1
    db.session.expire_all()
    usage = db.session.query(UserUsage).filter_by(user_id=user.id).one()
    assert (usage.file_uploads_today, usage.import_jobs_today) == (0, 0)
    assert usage.total_events_created == 9


def test_cleanup_transition_claims_task(task_context, dataset_factory, job_factory, write_csv, sample_rows):
    job = job_factory(dataset_factory(), write_csv(sample_rows))
    db.session.add(
        StageTransitionClaim(
            import_job_id=job.id,
            from_stage=ImportStage.ANALYZE_DUPLICATES.value,
            to_stage=ImportStage.DETECT_SCHEMA.value,
            claimed_at=datetime.now(timezone.utc) - timedelta(hours=1),
        )
    )
    db.session.commit()

    assert tasks.cleanup_transition_claims_task.run(max_age_minutes=5) == {"claims_removed": 1, "claims_remaining": 0}


def test_cleanup_geocode_cache_task(app):
    old = datetime.now(timezone.utc) - timedelta(days=90)
    db.session.add_all(
        [
            GeocodeCacheEntry(
                original_address="Old Street",
                normalized_address="old street",
                latitude=1.0,
                longitude=2.0,
                provider="fake",
                created_at=old,
                last_used=old,
            ),
            GeocodeCacheEntry(
                original_address="New Street",
                normalized_address="new street",
                latitude=1.0,
                longitude=2.0,
                provider="fake",
            ),
        ]
    )
    db.session.commit()

    assert tasks.cleanup_geocode_cache_task.run() == {"entries_removed": 1}
    assert [entry.normalized_address for entry in db.session.query(GeocodeCacheEntry)] == ["new street"]


def test_schema_freshness_task_reports_summary(app, dataset_factory):
    dataset_factory(name="Empty")

    summary = tasks.schema_freshness_task.run(force=True)

    assert summary["datasets_checked"] == 1
    assert summary["schemas_skipped"] == 1
    assert summary["details"][0]["reason"] == "No events in dataset"
