"""
Periodic schema maintenance.

Datasets whose latest schema no longer matches their live event count are
re-inferred from a sample of persisted events and receive a new auto-approved
schema version.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal

from sqlalchemy import select
from sqlalchemy.orm import Session

from timetiles_app.importer.contracts import SchemaConfig
from timetiles_app.models import Dataset, Event

from .field_stats import ProgressiveSchemaBuilder
from .schema_comparison import compare_schemas
from .schema_versioning import create_schema_version, get_latest_schema, get_schema_freshness

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 500
DEFAULT_BATCH_SIZE = 100
MAINTENANCE_NOTE = "Regenerated by schema maintenance"


@dataclass
class DatasetMaintenanceResult:
    dataset_id: int
    dataset_name: str
    action: Literal["generated", "skipped", "failed"]
    reason: str | None = None
    version_number: int | None = None
    events_sampled: int = 0


@dataclass
class SchemaMaintenanceSummary:
    datasets_checked: int = 0
    generated: int = 0
    skipped: int = 0
    failed: int = 0
    duration_seconds: float = 0.0
    details: list[DatasetMaintenanceResult] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.failed == 0,
            "datasets_checked": self.datasets_checked,
            "schemas_generated": self.generated,
            "schemas_skipped": self.skipped,
            "schemas_failed": self.failed,
            "duration_seconds": round(self.duration_seconds, 3),
            "details": [vars(detail) for detail in self.details],
        }


def _sample_event_data(session: Session, dataset_id: int, *, sample_size: int, batch_size: int) -> Iterable[list[dict]]:
    offset = 0
    while offset < sample_size:
        limit = min(batch_size, sample_size - offset)
        rows = (
            session.execute(
                select(Event.data_json)
                .where(Event.dataset_id == dataset_id)
                .order_by(Event.id)
                .offset(offset)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        if not rows:
            return
        yield [data for data in rows if isinstance(data, dict)]
        offset += len(rows)
        if len(rows) < limit:
            return


def infer_schema_from_events(
    session: Session,
    dataset: Dataset,
    *,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> tuple[ProgressiveSchemaBuilder, int]:
    schema_config = SchemaConfig.coerce(dataset.schema_config_json)
    builder = ProgressiveSchemaBuilder(
        max_samples=sample_size,
        enum_threshold=schema_config.enum_threshold,
        enum_mode=schema_config.enum_mode,
        max_depth=schema_config.max_schema_depth,
    )
    sampled = 0
    for records in _sample_event_data(session, dataset.id, sample_size=sample_size, batch_size=batch_size):
        if records:
            builder.process_batch(records)
        sampled += len(records)
    return builder, sampled


def maintain_dataset_schema(
    session: Session,
    dataset: Dataset,
    *,
    force: bool = False,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> DatasetMaintenanceResult:
    freshness = get_schema_freshness(session, dataset.id)
    if not freshness.stale and not force:
        return DatasetMaintenanceResult(dataset.id, dataset.name, "skipped", "Schema is up-to-date")
    if freshness.current_event_count == 0:
        return DatasetMaintenanceResult(dataset.id, dataset.name, "skipped", "No events in dataset")

    builder, sampled = infer_schema_from_events(session, dataset, sample_size=sample_size, batch_size=batch_size)
    schema = builder.get_schema()
    latest = get_latest_schema(session, dataset.id)
    comparison = compare_schemas(latest.schema_json if latest else None, schema)

    version = create_schema_version(
        session,
        dataset_id=dataset.id,
        schema=schema,
        field_metadata=builder.field_statistics(),
        event_count=freshness.current_event_count,
        auto_approved=True,
        approval_notes=MAINTENANCE_NOTE,
    )
    session.commit()
    reason = freshness.reason or "forced"
    logger.info(
        "Schema regenerated for dataset %s",
        dataset.id,
        extra={
            "importer_dataset_id": dataset.id,
            "importer_schema_version": version.version_number,
            "importer_schema_reason": reason,
            "importer_schema_changed": comparison.has_changes,
            "importer_events_sampled": sampled,
        },
    )
    return DatasetMaintenanceResult(
        dataset.id,
        dataset.name,
        "generated",
        f"Generated from {sampled} events ({reason})",
        version_number=version.version_number,
        events_sampled=sampled,
    )


def run_schema_maintenance(
    session: Session,
    *,
    max_datasets: int = 100,
    force: bool = False,
    dataset_ids: Iterable[int] | None = None,
) -> SchemaMaintenanceSummary:
    """Check up to ``max_datasets`` datasets and regenerate stale schemas."""
    started = time.monotonic()
    query = select(Dataset).order_by(Dataset.id).limit(max_datasets)
    if dataset_ids:
        query = query.where(Dataset.id.in_(list(dataset_ids)))
    datasets = session.execute(query).scalars().all()

    summary = SchemaMaintenanceSummary(datasets_checked=len(datasets))
    for dataset in datasets:
        dataset_id, dataset_name = dataset.id, dataset.name
        try:
            result = maintain_dataset_schema(session, dataset, force=force)
        except Exception as exc:
            session.rollback()
            logger.exception(
                "Schema maintenance failed for dataset %s",
                dataset_id,
                extra={"importer_dataset_id": dataset_id, "importer_error": str(exc)},
            )
            result = DatasetMaintenanceResult(dataset_id, dataset_name, "failed", str(exc))
        summary.details.append(result)
        if result.action == "generated":
            summary.generated += 1
        elif result.action == "skipped":
            summary.skipped += 1
        else:
            summary.failed += 1

    summary.duration_seconds = time.monotonic() - started
    logger.info(
        "Schema maintenance finished",
        extra={
            "importer_datasets_checked": summary.datasets_checked,
            "importer_schemas_generated": summary.generated,
            "importer_schemas_skipped": summary.skipped,
            "importer_schemas_failed": summary.failed,
        },
    )
    return summary
