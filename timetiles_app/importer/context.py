"""
Per-scope wiring of the pipeline's collaborators.

Stage handlers receive a ``PipelineContext`` instead of reaching for module
level singletons, so tests can hand in a recording queue or fake geocoding
providers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

from sqlalchemy.orm import Session

from .queue import TaskQueue

if TYPE_CHECKING:
    from flask import Flask

    from timetiles_app.services.geocoding import GeocodingService
    from timetiles_app.services.quota_service import QuotaService

    from .pipeline.transitions import StageTransitionService


@dataclass(frozen=True)
class PipelineSettings:
    duplicate_batch_size: int = 5000
    existence_chunk_size: int = 1000
    schema_batch_size: int = 10000
    geocode_batch_size: int = 100
    event_batch_size: int = 1000
    geocoding_enabled: bool = True
    geocoding_cache_ttl_days: int = 30
    geocoding_min_confidence: float = 0.5
    geocoding_timeout_seconds: float = 10.0
    geocoding_providers_path: str | None = None
    google_api_key: str | None = None
    opencage_api_key: str | None = None
    nominatim_user_agent: str | None = None
    schema_maintenance_max_datasets: int = 100
    url_fetch_timeout_seconds: float = 30.0
    url_fetch_max_bytes: int = 100 * 1024 * 1024

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PipelineSettings":
        defaults = cls()
        return cls(
            duplicate_batch_size=int(config.get("IMPORTER_DUPLICATE_BATCH_SIZE", defaults.duplicate_batch_size)),
            existence_chunk_size=int(config.get("IMPORTER_EXISTENCE_CHUNK_SIZE", defaults.existence_chunk_size)),
            schema_batch_size=int(config.get("IMPORTER_SCHEMA_BATCH_SIZE", defaults.schema_batch_size)),
            geocode_batch_size=int(config.get("IMPORTER_GEOCODE_BATCH_SIZE", defaults.geocode_batch_size)),
            event_batch_size=int(config.get("IMPORTER_EVENT_BATCH_SIZE", defaults.event_batch_size)),
            geocoding_enabled=bool(config.get("GEOCODING_ENABLED", defaults.geocoding_enabled)),
            geocoding_cache_ttl_days=int(config.get("GEOCODING_CACHE_TTL_DAYS", defaults.geocoding_cache_ttl_days)),
            geocoding_min_confidence=float(config.get("GEOCODING_MIN_CONFIDENCE", defaults.geocoding_min_confidence)),
            geocoding_timeout_seconds=float(
                config.get("GEOCODING_TIMEOUT_SECONDS", defaults.geocoding_timeout_seconds)
            ),
            geocoding_providers_path=config.get("GEOCODING_PROVIDERS_PATH"),
            google_api_key=config.get("GOOGLE_MAPS_API_KEY"),
            opencage_api_key=config.get("OPENCAGE_API_KEY"),
            nominatim_user_agent=config.get("NOMINATIM_USER_AGENT"),
            schema_maintenance_max_datasets=int(
                config.get("SCHEMA_MAINTENANCE_MAX_DATASETS", defaults.schema_maintenance_max_datasets)
            ),
            url_fetch_timeout_seconds=float(
                config.get("IMPORTER_URL_FETCH_TIMEOUT_SECONDS", defaults.url_fetch_timeout_seconds)
            ),
            url_fetch_max_bytes=int(config.get("IMPORTER_URL_FETCH_MAX_BYTES", defaults.url_fetch_max_bytes)),
        )


@dataclass
class PipelineContext:
    session: Session
    queue: TaskQueue
    settings: PipelineSettings = field(default_factory=PipelineSettings)
    upload_dir: Path | None = None
    quota_service: "QuotaService | None" = None
    geocoding_service: "GeocodingService | None" = None

    def __post_init__(self) -> None:
        if self.quota_service is None:
            from timetiles_app.services.quota_service import QuotaService

            self.quota_service = QuotaService(self.session)

    @property
    def transitions(self) -> "StageTransitionService":
        from .pipeline.transitions import StageTransitionService

        return StageTransitionService(self.session, self.queue)

    def get_geocoding_service(self) -> "GeocodingService":
        if self.geocoding_service is None:
            from timetiles_app.services.geocoding import GeocodingService

            self.geocoding_service = GeocodingService.from_settings(self.session, self.settings)
        return self.geocoding_service


def build_pipeline_context(app: "Flask", *, queue: TaskQueue | None = None) -> PipelineContext:
    """Assemble the context for the current app scope (task, request or CLI command)."""
    from timetiles_app.models import db

    from .celery_app import get_celery_app
    from .queue import JobQueue
    from .utils import resolve_upload_directory

    if queue is None:
        celery_app = get_celery_app(app)
        if celery_app is None:
            raise RuntimeError("Importer Celery app is not configured; is IMPORTER_ENABLED set?")
        queue = JobQueue(celery_app)
    return PipelineContext(
        session=db.session,
        queue=queue,
        settings=PipelineSettings.from_config(app.config),
        upload_dir=resolve_upload_directory(app),
    )
