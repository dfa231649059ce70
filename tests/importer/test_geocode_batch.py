import pytest

from timetiles_app.importer.pipeline import geocode_batch
from timetiles_app.importer.pipeline import geocoding_stage as geocoding_stage_module
from timetiles_app.importer.queue import ImportTask
from timetiles_app.models import ImportJob, ImportStage, db

LOCATION_MAPPINGS = {"title_path": "title", "location_path": "location"}


def _rows(*locations):
    return [[f"evt-{n}", f"Event number {n}", location] for n, location in enumerate(locations, start=1)]


def test_each_location_is_geocoded_once(
    pipeline_context, recording_queue, fake_geocoder, dataset_factory, job_factory, write_csv
):
    path = write_csv(_rows("Berlin", "Hamburg", "Munich", " Berlin "), header=["id", "title", "location"])
    job = job_factory(
        dataset_factory(),
        path,
        stage=ImportStage.GEOCODE_BATCH,
        field_mappings_json=LOCATION_MAPPINGS,
        progress_json={"total_rows": 4, "stages": {}},
    )

    first = geocode_batch(job.id, 0, pipeline_context)
    assert first["has_more"] is True
    assert recording_queue.calls == [(ImportTask.GEOCODE_BATCH, {"import_job_id": job.id, "batch_number": 1})]

    second = geocode_batch(job.id, 1, pipeline_context)
    assert second["geocoded"] == 1

    assert fake_geocoder.calls == ["Berlin", "Hamburg", "Munich"]
    job = db.session.get(ImportJob, job.id)
    assert job.stage == ImportStage.CREATE_EVENTS
    assert set(job.geocoding_results_json) == {"Berlin", "Hamburg", "Munich"}
    assert job.geocoding_results_json["Hamburg"]["provider"] == "fake"
    assert job.geocoding_stats_json["successful"] == 3
    assert job.geocoding_stats_json["provider_calls"] == {"fake": 3}
    assert job.progress_json["stages"]["geocode-batch"]["processed"] == 4
    assert recording_queue.tasks[-1] is ImportTask.CREATE_EVENTS


def test_duplicates_and_rows_with_coordinates_are_not_geocoded(
    pipeline_context, fake_geocoder, dataset_factory, job_factory, write_csv
):
    path = write_csv(
        [
            ["evt-1", "Berlin", 52.52, 13.405],
            ["evt-2", "Hamburg", "", ""],
            ["evt-1", "Dresden", "", ""],
        ],
        header=["id", "location", "lat", "lon"],
    )
    job = job_factory(
        dataset_factory(),
        path,
        stage=ImportStage.GEOCODE_BATCH,
        field_mappings_json={"location_path": "location", "latitude_path": "lat", "longitude_path": "lon"},
        duplicates_json={"internal": [{"row_number": 2, "unique_id": "x", "first_occurrence": 0}]},
    )

    geocode_batch(job.id, 0, pipeline_context)
    geocode_batch(job.id, 1, pipeline_context)

    assert fake_geocoder.calls == ["Hamburg"]
    stats = db.session.get(ImportJob, job.id).geocoding_stats_json
    assert stats["from_import"] == 1
    assert stats["total"] == 1


def test_failed_addresses_are_recorded_without_failing_the_job(
    pipeline_context, fake_geocoder, dataset_factory, job_factory, write_csv
):
    fake_geocoder.error = "offline"
    path = write_csv(_rows("Atlantis"), header=["id", "title", "location"])
    job = job_factory(dataset_factory(), path, stage=ImportStage.GEOCODE_BATCH, field_mappings_json=LOCATION_MAPPINGS)

    result = geocode_batch(job.id, 0, pipeline_context)

    assert result["failed"] == 1
    job = db.session.get(ImportJob, job.id)
    assert job.stage == ImportStage.CREATE_EVENTS
    assert "offline" in job.geocoding_results_json["Atlantis"]["error"]
    assert job.geocoding_stats_json["failed"] == 1


def test_cached_addresses_skip_providers(pipeline_context, fake_geocoder, dataset_factory, job_factory, write_csv):
    pipeline_context.geocoding_service.geocode("Berlin")
    db.session.commit()
    fake_geocoder.calls.clear()
    path = write_csv(_rows("Berlin"), header=["id", "title", "location"])
    job = job_factory(dataset_factory(), path, stage=ImportStage.GEOCODE_BATCH, field_mappings_json=LOCATION_MAPPINGS)

    geocode_batch(job.id, 0, pipeline_context)

    assert fake_geocoder.calls == []
    stats = db.session.get(ImportJob, job.id).geocoding_stats_json
    assert stats["cached"] == 1
    assert stats["provider_calls"] == {}


def test_jobs_without_location_fields_move_on(
    pipeline_context, recording_queue, fake_geocoder, dataset_factory, job_factory, write_csv
):
    path = write_csv(_rows("Berlin"), header=["id", "title", "location"])
    job = job_factory(
        dataset_factory(), path, stage=ImportStage.GEOCODE_BATCH, field_mappings_json={"title_path": "title"}
    )

    result = geocode_batch(job.id, 0, pipeline_context)

    assert result["reason"] == "no_location_fields"
    assert fake_geocoder.calls == []
    assert recording_queue.tasks == [ImportTask.CREATE_EVENTS]


@pytest.fixture
def five_row_job(dataset_factory, job_factory, write_csv):
    path = write_csv(_rows("Berlin", "Hamburg", "Munich", "Cologne", "Bremen"), header=["id", "title", "location"])
    return job_factory(
        dataset_factory(),
        path,
        stage=ImportStage.GEOCODE_BATCH,
        field_mappings_json=LOCATION_MAPPINGS,
        progress_json={"total_rows": 5, "stages": {}},
    )


def test_redelivered_batch_is_not_counted_twice(pipeline_context, recording_queue, fake_geocoder, five_row_job):
    job = five_row_job

    geocode_batch(job.id, 0, pipeline_context)
    geocode_batch(job.id, 1, pipeline_context)
    assert geocode_batch(job.id, 1, pipeline_context) == {"skipped": True, "reason": "batch_mismatch"}
    assert recording_queue.calls == [
        (ImportTask.GEOCODE_BATCH, {"import_job_id": job.id, "batch_number": 1}),
        (ImportTask.GEOCODE_BATCH, {"import_job_id": job.id, "batch_number": 2}),
    ]

    geocode_batch(job.id, 2, pipeline_context)

    job = db.session.get(ImportJob, job.id)
    assert job.stage == ImportStage.CREATE_EVENTS
    assert job.progress_json["stages"]["geocode-batch"] == {"processed": 5, "total": 5, "batches_processed": 3}
    assert job.geocoding_stats_json["total"] == 5
    assert len(fake_geocoder.calls) == 5


def test_concurrent_delivery_of_a_batch_is_rolled_back(monkeypatch, pipeline_context, recording_queue, five_row_job):
    job = five_row_job
    monkeypatch.setattr(geocoding_stage_module, "is_expected_batch", lambda job, stage, batch_number: True)

    geocode_batch(job.id, 0, pipeline_context)

    assert geocode_batch(job.id, 0, pipeline_context) == {"skipped": True, "reason": "batch_mismatch"}
    assert recording_queue.calls == [(ImportTask.GEOCODE_BATCH, {"import_job_id": job.id, "batch_number": 1})]
    job = db.session.get(ImportJob, job.id)
    assert job.next_batch_number == 1
    assert job.progress_json["stages"]["geocode-batch"]["processed"] == 2
    assert job.progress_json["stages"]["geocode-batch"]["batches_processed"] == 1
