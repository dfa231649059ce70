import json
from functools import partial
from pathlib import Path

import pytest

from timetiles_app.importer import cli
from timetiles_app.importer.pipeline import register_url_import
from timetiles_app.importer.queue import ImportTask
from timetiles_app.models import (
    GeocodingProvider,
    ImportFile,
    ImportJob,
    ImportStage,
    UserUsage,
    db,
)


@pytest.fixture
def cli_context(monkeypatch, pipeline_context):
    monkeypatch.setattr(cli, "build_pipeline_context", lambda app: pipeline_context)
    return pipeline_context


def _json(result):
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def test_importer_group_reports_state(runner):
    result = runner.invoke(args=["importer"])

    assert result.exit_code == 0, result.output
    assert "Importer enabled (queue: imports" in result.output


def test_start_job_stores_file_and_queues_first_stage(
    app, runner, cli_context, recording_queue, user_factory, dataset_factory, write_csv, sample_rows
):
    user = user_factory()
    dataset = dataset_factory()
    source = write_csv(sample_rows, name="festival.csv")

    payload = _json(
        runner.invoke(
            args=["importer", "start-job", "--file", str(source), "--dataset-id", str(dataset.id), "--user-id", str(user.id)]
        )
    )

    import_file = db.session.get(ImportFile, payload["import_file_id"])
    assert import_file.original_name == "festival.csv"
    assert import_file.filename != "festival.csv"
    assert (Path(app.config["IMPORTER_UPLOAD_DIR"]) / import_file.filename).exists()
    [job_payload] = payload["jobs"]
    assert job_payload["sheet_index"] == 0
    assert job_payload["transition"]["queued_task"] == "importer.pipeline.analyze_duplicates"
    assert recording_queue.calls == [(ImportTask.ANALYZE_DUPLICATES, {"import_job_id": job_payload["import_job_id"]})]
    usage = db.session.query(UserUsage).filter_by(user_id=user.id).one()
    assert (usage.file_uploads_today, usage.import_jobs_today) == (1, 1)


def test_start_job_one_job_per_sheet(runner, cli_context, dataset_factory, write_csv, sample_rows):
    dataset = dataset_factory()
    source = write_csv(sample_rows)

    payload = _json(
        runner.invoke(
            args=[
                "importer",
                "start-job",
                "--file",
                str(source),
                "--dataset-id",
                str(dataset.id),
                "--sheet",
                "0",
                "--sheet",
                "1",
            ]
        )
    )

    assert [job["sheet_index"] for job in payload["jobs"]] == [0, 1]
    assert db.session.query(ImportJob).count() == 2


@pytest.mark.parametrize(
    ("name", "dataset_id", "message"),
    [
        ("notes.txt", None, "Unsupported file type: notes.txt"),
        ("events.csv", 999, "Dataset 999 not found."),
    ],
)
def test_start_job_rejects_bad_input(runner, cli_context, dataset_factory, tmp_path, name, dataset_id, message):
    dataset = dataset_factory()
    source = tmp_path / name
    source.write_text("id,title\n1,Alpha\n", encoding="utf-8")

    result = runner.invoke(
        args=["importer", "start-job", "--file", str(source), "--dataset-id", str(dataset_id or dataset.id)]
    )

    assert result.exit_code != 0
    assert message in result.output
    assert db.session.query(ImportJob).count() == 0


def test_start_job_reports_quota_errors(runner, cli_context, user_factory, dataset_factory, write_csv, sample_rows):
    user = user_factory(quotas={"maxFileUploadsPerDay": 0})
    dataset = dataset_factory()

    result = runner.invoke(
        args=[
            "importer",
            "start-job",
            "--file",
            str(write_csv(sample_rows)),
            "--dataset-id",
            str(dataset.id),
            "--user-id",
            str(user.id),
        ]
    )

    assert result.exit_code != 0
    assert "Quota exceeded" in result.output
    assert db.session.query(ImportFile).count() == 0



def test_start_job_from_url(
    monkeypatch, runner, cli_context, recording_queue, user_factory, dataset_factory, download_response, download_session
):
    user = user_factory()
    dataset = dataset_factory()
    http = download_session(download_response(b"id,title\nevt-1,Alpha\n", headers={"Content-Type": "text/csv"}))
    monkeypatch.setattr(cli, "register_url_import", partial(register_url_import, http=http))

    payload = _json(
        runner.invoke(
            args=[
                "importer",
                "start-job",
                "--url",
                "https://data.example.com/feed.csv",
                "--dataset-id",
                str(dataset.id),
                "--user-id",
                str(user.id),
            ]
        )
    )

    import_file = db.session.get(ImportFile, payload["import_file_id"])
    assert import_file.original_name == "feed.csv"
    assert recording_queue.tasks == [ImportTask.ANALYZE_DUPLICATES]
    usage = db.session.query(UserUsage).filter_by(user_id=user.id).one()
    assert (usage.url_fetches_today, usage.file_uploads_today, usage.import_jobs_today) == (1, 1, 1)


@pytest.mark.parametrize("both", [False, True], ids=["neither", "both"])
def test_start_job_needs_exactly_one_source(runner, cli_context, dataset_factory, write_csv, sample_rows, both):
    dataset = dataset_factory()
    sources = ["--file", str(write_csv(sample_rows)), "--url", "https://data.example.com/feed.csv"] if both else []

    result = runner.invoke(args=["importer", "start-job", *sources, "--dataset-id", str(dataset.id)])

    assert result.exit_code != 0
    assert "Pass exactly one of --file or --url." in result.output
    assert db.session.query(ImportFile).count() == 0


def test_job_status(runner, dataset_factory, job_factory, write_csv, sample_rows):
    job = job_factory(
        dataset_factory(),
        write_csv(sample_rows),
        stage=ImportStage.COMPLETED,
        results_json={"total_events": 3},
        error_log_json=[{"error": "bad row", "stage": "create-events", "row": 1}],
    )

    payload = _json(runner.invoke(args=["importer", "job-status", "--job-id", str(job.id)]))

    assert payload["stage"] == "completed"
    assert payload["results"] == {"total_events": 3}
    assert payload["errors"] == 1

    missing = runner.invoke(args=["importer", "job-status", "--job-id", "404"])
    assert missing.exit_code != 0
    assert "Import job 404 not found." in missing.output


def test_approve_and_reject(runner, cli_context, recording_queue, dataset_factory, job_factory, write_csv, sample_rows):
    dataset = dataset_factory()
    approved = job_factory(dataset, write_csv(sample_rows, name="a.csv"), stage=ImportStage.AWAIT_APPROVAL)
    rejected = job_factory(dataset, write_csv(sample_rows, name="b.csv"), stage=ImportStage.AWAIT_APPROVAL)

    payload = _json(runner.invoke(args=["importer", "approve", "--job-id", str(approved.id), "--notes", "looks good"]))
    assert payload["approved"] is True
    assert payload["transition"]["queued_task"] == "importer.pipeline.create_schema_version"

    payload = _json(runner.invoke(args=["importer", "reject", "--job-id", str(rejected.id), "--reason", "wrong file"]))
    assert payload["approved"] is False
    job = db.session.get(ImportJob, rejected.id)
    assert job.stage == ImportStage.FAILED
    assert job.error_log_json[-1]["error"] == "Schema changes rejected: wrong file"

    again = runner.invoke(args=["importer", "approve", "--job-id", str(rejected.id)])
    assert again.exit_code != 0
    assert "not awaiting approval" in again.output


def test_schema_maintenance_command(runner, dataset_factory):
    dataset_factory(name="Empty")

    payload = _json(runner.invoke(args=["importer", "schema-maintenance", "--force"]))

    assert payload["datasets_checked"] == 1
    assert payload["schemas_skipped"] == 1


def test_reset_quotas_and_summary(runner, user_factory):
    user = user_factory()
    db.session.add(UserUsage(user_id=user.id, file_uploads_today=3))
    db.session.commit()

    result = runner.invoke(args=["importer", "reset-quotas"])
    assert result.exit_code == 0, result.output
    assert "Reset daily quota counters for 1 user(s)." in result.output

    summary = _json(runner.invoke(args=["importer", "quota-summary", "--user-id", str(user.id)]))
    assert summary["maxFileUploadsPerDay"]["current"] == 0
    assert summary["maxFileUploadsPerDay"]["allowed"] is True


def test_providers_load_and_list(runner, tmp_path):
    empty = runner.invoke(args=["importer", "providers", "list"])
    assert "built-in defaults apply" in empty.output

    config = tmp_path / "providers.yaml"
    config.write_text("providers:\n  - name: osm\n    type: nominatim\n    priority: 3\n", encoding="utf-8")
    result = runner.invoke(args=["importer", "providers", "load", str(config)])
    assert result.exit_code == 0, result.output
    assert "Loaded 1 provider(s): 1 created, 0 updated." in result.output
    assert db.session.query(GeocodingProvider).filter_by(name="osm").one().priority == 3

    rows = _json(runner.invoke(args=["importer", "providers", "list"]))
    assert rows == [
        {"name": "osm", "type": "nominatim", "enabled": True, "priority": 3, "total_requests": 0, "failed_requests": 0}
    ]


def test_providers_load_rejects_invalid_file(runner, tmp_path):
    config = tmp_path / "providers.yaml"
    config.write_text("providers:\n  - name: g\n    type: google\n", encoding="utf-8")

    result = runner.invoke(args=["importer", "providers", "load", str(config)])

    assert result.exit_code != 0
    assert "requires an api_key" in result.output
