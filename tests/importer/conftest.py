from __future__ import annotations

import csv
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

import pytest
import requests

from timetiles_app.importer.context import PipelineContext, PipelineSettings
from timetiles_app.importer.errors import ProviderError
from timetiles_app.importer.pipeline import (
    analyze_duplicates,
    create_events_batch,
    create_schema_version_stage,
    detect_schema,
    geocode_batch,
    validate_schema,
)
from timetiles_app.importer.queue import ImportTask
from timetiles_app.models import (
    Dataset,
    ImportFile,
    ImportFileStatus,
    ImportJob,
    ImportStage,
    User,
    db,
)
from timetiles_app.services.geocoding import GeocodeCache, GeocodingResult, GeocodingService

SMALL_BATCHES = PipelineSettings(
    duplicate_batch_size=2,
    existence_chunk_size=2,
    schema_batch_size=2,
    geocode_batch_size=2,
    event_batch_size=2,
)


class RecordingQueue:
    """Task queue that only remembers what was enqueued."""

    def __init__(self):
        self.calls: list[tuple[ImportTask, dict[str, Any]]] = []

    def queue(self, task: ImportTask, payload: Mapping[str, Any]) -> str:
        self.calls.append((task, dict(payload)))
        return f"task-{len(self.calls)}"

    @property
    def tasks(self) -> list[ImportTask]:
        return [task for task, _ in self.calls]


class UnavailableQueue(RecordingQueue):
    """Queue whose broker refuses every task."""

    def queue(self, task: ImportTask, payload: Mapping[str, Any]) -> str:
        raise ConnectionError("broker unavailable")


class DrainingQueue(RecordingQueue):
    """Recording queue that can run the enqueued stage handlers in order."""

    def __init__(self):
        super().__init__()
        self.pending: deque[tuple[ImportTask, dict[str, Any]]] = deque()

    def queue(self, task: ImportTask, payload: Mapping[str, Any]) -> str:
        self.pending.append((task, dict(payload)))
        return super().queue(task, payload)

    def drain(self, context: PipelineContext, *, max_tasks: int = 100) -> list[dict[str, Any]]:
        results = []
        while self.pending:
            if len(results) >= max_tasks:
                raise AssertionError("Pipeline did not settle; possible task loop.")
            task, payload = self.pending.popleft()
            job_id = payload["import_job_id"]
            batch = payload.get("batch_number", 0)
            if task is ImportTask.ANALYZE_DUPLICATES:
                results.append(analyze_duplicates(job_id, context))
            elif task is ImportTask.DETECT_SCHEMA:
                results.append(detect_schema(job_id, batch, context))
            elif task is ImportTask.VALIDATE_SCHEMA:
                results.append(validate_schema(job_id, context))
            elif task is ImportTask.CREATE_SCHEMA_VERSION:
                results.append(create_schema_version_stage(job_id, context))
            elif task is ImportTask.GEOCODE_BATCH:
                results.append(geocode_batch(job_id, batch, context))
            elif task is ImportTask.CREATE_EVENTS:
                results.append(create_events_batch(job_id, batch, context))
        return results


class FakeGeocoder:
    """Stand-in provider: answers from a dict, or fails the way it is told to."""

    def __init__(
        self,
        name: str,
        priority: int = 10,
        *,
        answers: Mapping[str, tuple[float, float]] | None = None,
        confidence: float = 0.9,
        error: str | None = None,
        empty: bool = False,
    ):
        self.name = name
        self.priority = priority
        self.answers = dict(answers or {})
        self.confidence = confidence
        self.error = error
        self.empty = empty
        self.calls: list[str] = []

    def geocode(self, address: str) -> GeocodingResult | None:
        self.calls.append(address)
        if self.error:
            raise ProviderError(self.name, self.error)
        if self.empty:
            return None
        latitude, longitude = self.answers.get(address, (52.52, 13.405))
        return GeocodingResult(
            latitude=latitude,
            longitude=longitude,
            confidence=self.confidence,
            provider=self.name,
            formatted_address=address,
        )


class DownloadResponse:
    """Streaming response stand-in for remote file downloads."""

    def __init__(self, body=b"", *, status_code=200, headers=None, fail_midway=False):
        self.body = body
        self.status_code = status_code
        self.headers = dict(headers or {})
        self.fail_midway = fail_midway
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.body), chunk_size):
            yield self.body[start : start + chunk_size]
            if self.fail_midway:
                raise requests.ConnectionError("connection reset")

    def close(self):
        self.closed = True


class DownloadSession:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def get(self, url, stream=False, timeout=None):
        self.requests.append({"url": url, "stream": stream, "timeout": timeout})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


class FrozenClock:
    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def queue_factory():
    return RecordingQueue


@pytest.fixture
def recording_queue():
    return RecordingQueue()


@pytest.fixture
def draining_queue():
    return DrainingQueue()


@pytest.fixture
def unavailable_queue():
    return UnavailableQueue()


@pytest.fixture
def download_response():
    return DownloadResponse


@pytest.fixture
def download_session():
    return DownloadSession


@pytest.fixture
def geocoder_factory():
    return FakeGeocoder


@pytest.fixture
def fake_geocoder():
    return FakeGeocoder("fake", priority=1)


@pytest.fixture
def pipeline_context(app, recording_queue, fake_geocoder, tmp_path):
    service = GeocodingService(db.session, [fake_geocoder], cache=GeocodeCache(db.session, ttl_days=30))
    return PipelineContext(
        session=db.session,
        queue=recording_queue,
        settings=SMALL_BATCHES,
        upload_dir=tmp_path,
        geocoding_service=service,
    )


@pytest.fixture
def user_factory(app):
    created = {"count": 0}

    def _factory(*, trust_level: int | None = 2, quotas: dict | None = None) -> User:
        created["count"] += 1
        user = User(
            email=f"importer{created['count']}@example.com",
            trust_level=trust_level,
            quotas_json=quotas,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _factory


@pytest.fixture
def dataset_factory(app):
    def _factory(
        *,
        name: str = "Events",
        id_strategy: dict | None = None,
        deduplication: dict | None = None,
        schema_config: dict | None = None,
        overrides: dict | None = None,
        owner: User | None = None,
    ) -> Dataset:
        dataset = Dataset(
            name=name,
            language="eng",
            owner_id=owner.id if owner else None,
            id_strategy_json=id_strategy if id_strategy is not None else {"type": "external", "external_id_path": "id"},
            deduplication_json=deduplication,
            schema_config_json=schema_config,
            field_mapping_overrides_json=overrides,
        )
        db.session.add(dataset)
        db.session.commit()
        return dataset

    return _factory


@pytest.fixture
def write_csv(tmp_path) -> Callable[..., Path]:
    def _write(rows: list[dict[str, Any]] | list[list[Any]], *, name: str = "events.csv", header: list[str] | None = None) -> Path:
        path = tmp_path / name
        with path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle)
            if header is None:
                header = list(rows[0].keys()) if rows else []
                writer.writerow(header)
                writer.writerows([[row.get(column, "") for column in header] for row in rows])
            else:
                writer.writerow(header)
                writer.writerows(rows)
        return path

    return _write


@pytest.fixture
def import_file_factory(app):
    def _factory(path: Path, *, user: User | None = None) -> ImportFile:
        import_file = ImportFile(
            filename=path.name,
            original_name=path.name,
            mime_type="text/csv",
            file_size=path.stat().st_size,
            user_id=user.id if user else None,
            status=ImportFileStatus.PROCESSING,
        )
        db.session.add(import_file)
        db.session.commit()
        return import_file

    return _factory


@pytest.fixture
def job_factory(app, import_file_factory):
    def _factory(
        dataset: Dataset,
        path: Path,
        *,
        stage: ImportStage = ImportStage.ANALYZE_DUPLICATES,
        user: User | None = None,
        **fields: Any,
    ) -> ImportJob:
        import_file = import_file_factory(path, user=user)
        fields.setdefault("progress_json", {"total_rows": 0, "stages": {}})
        job = ImportJob(dataset_id=dataset.id, import_file_id=import_file.id, stage=stage, **fields)
        db.session.add(job)
        db.session.commit()
        return job

    return _factory


SAMPLE_ROWS = [
    {"id": "evt-1", "title": "Opening night concert", "date": "2024-01-05", "location": "Berlin"},
    {"id": "evt-2", "title": "Harbour festival parade", "date": "2024-02-10", "location": "Hamburg"},
    {"id": "evt-3", "title": "Winter market opening", "date": "2024-03-15", "location": "Munich"},
]


@pytest.fixture
def sample_rows() -> list[dict[str, Any]]:
    return [dict(row) for row in SAMPLE_ROWS]
