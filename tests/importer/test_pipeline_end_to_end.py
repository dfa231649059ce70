import pytest

from timetiles_app.importer.context import PipelineContext
from timetiles_app.importer.pipeline import register_import_file, start_import_job
from timetiles_app.importer.queue import ImportTask
from timetiles_app.models import (
    CoordinateSource,
    DatasetSchema,
    Event,
    ImportFileStatus,
    ImportJob,
    ImportStage,
    UserUsage,
    db,
)


@pytest.fixture
def draining_context(pipeline_context, draining_queue):
    return PipelineContext(
        session=db.session,
        queue=draining_queue,
        settings=pipeline_context.settings,
        upload_dir=pipeline_context.upload_dir,
        geocoding_service=pipeline_context.geocoding_service,
    )


def _import(context, path, dataset, user):
    import_file = register_import_file(context, path.name, file_size=path.stat().st_size, user_id=user.id)
    job, result = start_import_job(context, import_file.id, dataset.id)
    assert result.queued_task is ImportTask.ANALYZE_DUPLICATES
    context.queue.drain(context)
    return db.session.get(ImportJob, job.id)


def test_file_flows_through_every_stage(
    draining_context, draining_queue, fake_geocoder, user_factory, dataset_factory, write_csv, sample_rows
):
    user = user_factory()
    dataset = dataset_factory()

    job = _import(draining_context, write_csv(sample_rows), dataset, user)

    assert job.stage == ImportStage.COMPLETED
    assert job.import_file.status == ImportFileStatus.COMPLETED
    assert job.duplicates_json["summary"]["unique_rows"] == 3
    assert job.field_mappings_json["title_path"] == "title"
    assert job.results_json == {"total_events": 3, "duplicates_skipped": 0, "geocoded": 3, "errors": 0}
    assert [task for task in draining_queue.tasks] == [
        ImportTask.ANALYZE_DUPLICATES,
        ImportTask.DETECT_SCHEMA,
        ImportTask.DETECT_SCHEMA,
        ImportTask.VALIDATE_SCHEMA,
        ImportTask.CREATE_SCHEMA_VERSION,
        ImportTask.GEOCODE_BATCH,
        ImportTask.GEOCODE_BATCH,
        ImportTask.CREATE_EVENTS,
        ImportTask.CREATE_EVENTS,
    ]
    assert sorted(fake_geocoder.calls) == ["Berlin", "Hamburg", "Munich"]

    [version] = db.session.query(DatasetSchema).filter_by(dataset_id=dataset.id).all()
    assert version.version_number == 1
    assert job.dataset_schema_id == version.id

    events = db.session.query(Event).filter_by(dataset_id=dataset.id).order_by(Event.unique_id).all()
    assert [event.data_json["title"] for event in events] == [row["title"] for row in sample_rows]
    assert {event.coordinate_source for event in events} == {CoordinateSource.GEOCODED}
    assert {event.schema_version_number for event in events} == {1}

    usage = db.session.query(UserUsage).filter_by(user_id=user.id).one()
    assert (usage.file_uploads_today, usage.import_jobs_today, usage.total_events_created) == (1, 1, 3)


def test_reimport_only_adds_new_rows(
    draining_context, fake_geocoder, user_factory, dataset_factory, write_csv, sample_rows
):
    user = user_factory()
    dataset = dataset_factory()
    _import(draining_context, write_csv(sample_rows, name="first.csv"), dataset, user)
    fake_geocoder.calls.clear()

    second_rows = [
        sample_rows[0],
        {"id": "evt-4", "title": "Spring book fair", "date": "2024-04-20", "location": "Dresden"},
    ]
    job = _import(draining_context, write_csv(second_rows, name="second.csv"), dataset, user)

    assert job.stage == ImportStage.COMPLETED
    assert job.duplicates_json["summary"]["external_duplicates"] == 1
    assert job.results_json["total_events"] == 1
    assert job.results_json["duplicates_skipped"] == 1
    assert fake_geocoder.calls == ["Dresden"]
    assert db.session.query(Event).filter_by(dataset_id=dataset.id).count() == 4
    assert db.session.query(DatasetSchema).filter_by(dataset_id=dataset.id).count() == 1
    assert job.dataset_schema.version_number == 1
