"""
Importer Celery tasks.

Each pipeline task is a thin wrapper: it builds a ``PipelineContext`` for the
current app and hands off to the stage handler, which owns stage checks,
error recording and queueing of the next task.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from timetiles_app.importer.context import build_pipeline_context
from timetiles_app.importer.pipeline import (
    analyze_duplicates,
    create_events_batch,
    create_schema_version_stage,
    detect_schema,
    geocode_batch,
    run_schema_maintenance,
    validate_schema,
)
from timetiles_app.models.base import db
from timetiles_app.services.geocoding import GeocodeCache


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": getattr(self.app, "user_options", {}).get("version"),
    }


# pipeline stages ----------------------------------------------------------


@shared_task(name="importer.pipeline.analyze_duplicates", bind=True)
def analyze_duplicates_task(self, *, import_job_id: int) -> dict[str, Any]:
    return analyze_duplicates(import_job_id, build_pipeline_context(current_app))


@shared_task(name="importer.pipeline.detect_schema", bind=True)
def detect_schema_task(self, *, import_job_id: int, batch_number: int = 0) -> dict[str, Any]:
    return detect_schema(import_job_id, batch_number, build_pipeline_context(current_app))


@shared_task(name="importer.pipeline.validate_schema", bind=True)
def validate_schema_task(self, *, import_job_id: int) -> dict[str, Any]:
    return validate_schema(import_job_id, build_pipeline_context(current_app))


@shared_task(name="importer.pipeline.create_schema_version", bind=True)
def create_schema_version_task(self, *, import_job_id: int) -> dict[str, Any]:
    return create_schema_version_stage(import_job_id, build_pipeline_context(current_app))


@shared_task(name="importer.pipeline.geocode_batch", bind=True)
def geocode_batch_task(self, *, import_job_id: int, batch_number: int = 0) -> dict[str, Any]:
    """Geocode one batch; provider calls are throttled inside the provider clients."""
    return geocode_batch(import_job_id, batch_number, build_pipeline_context(current_app))


@shared_task(name="importer.pipeline.create_events", bind=True)
def create_events_task(self, *, import_job_id: int, batch_number: int = 0) -> dict[str, Any]:
    return create_events_batch(import_job_id, batch_number, build_pipeline_context(current_app))


# maintenance ----------------------------------------------------------------


@shared_task(name="importer.maintenance.schema_freshness", bind=True)
def schema_freshness_task(self, *, force: bool = False, max_datasets: int | None = None) -> dict[str, Any]:
    """
    Regenerate dataset schemas that fell behind the stored events.

    Scheduled nightly through Celery beat; ``force`` regenerates regardless of
    freshness.
    """
    limit = max_datasets or current_app.config.get("SCHEMA_MAINTENANCE_MAX_DATASETS", 100)
    summary = run_schema_maintenance(db.session, max_datasets=int(limit), force=force)
    return summary.as_dict()


@shared_task(name="importer.maintenance.reset_daily_quotas", bind=True)
def reset_daily_quotas_task(self) -> dict[str, Any]:
    context = build_pipeline_context(current_app)
    reset = context.quota_service.reset_all_daily_counters()
    db.session.commit()
    return {"users_reset": reset, "reset_at": datetime.now(timezone.utc).isoformat()}


@shared_task(name="importer.maintenance.cleanup_transition_claims", bind=True)
def cleanup_transition_claims_task(self, *, max_age_minutes: int = 5) -> dict[str, Any]:
    context = build_pipeline_context(current_app)
    cleaned = context.transitions.cleanup_stale_claims(timedelta(minutes=max_age_minutes))
    return {"claims_removed": cleaned, "claims_remaining": context.transitions.get_transitioning_count()}


@shared_task(name="importer.maintenance.cleanup_geocode_cache", bind=True)
def cleanup_geocode_cache_task(self) -> dict[str, Any]:
    """Drop geocode cache entries older than the cache TTL."""
    ttl_days = int(current_app.config.get("GEOCODING_CACHE_TTL_DAYS", 30))
    removed = GeocodeCache(db.session, ttl_days=ttl_days).cleanup_expired()
    db.session.commit()
    return {"entries_removed": removed}
