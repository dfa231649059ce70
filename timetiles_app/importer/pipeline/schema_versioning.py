"""
Dataset schema versions, approval policy and freshness.

Version numbers are assigned by the only strict read-then-insert section of
the pipeline: ``max(version_number) + 1`` is read under a row lock on the
dataset and the insert is backed by the ``(dataset_id, version_number)``
unique constraint, retrying with a fresh maximum if another writer won.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timetiles_app.importer.contracts import SchemaConfig
from timetiles_app.importer.errors import ImporterError
from timetiles_app.models import Dataset, DatasetSchema, Event

from .schema_comparison import SchemaComparison

logger = logging.getLogger(__name__)

MAX_VERSION_ATTEMPTS = 5


def get_latest_schema(session: Session, dataset_id: int) -> DatasetSchema | None:
    return (
        session.query(DatasetSchema)
        .filter(DatasetSchema.dataset_id == dataset_id)
        .order_by(DatasetSchema.version_number.desc())
        .first()
    )


def count_dataset_events(session: Session, dataset_id: int) -> int:
    return int(session.execute(select(func.count(Event.id)).where(Event.dataset_id == dataset_id)).scalar() or 0)


def _next_version_number(session: Session, dataset_id: int) -> int:
    current = session.execute(
        select(func.max(DatasetSchema.version_number)).where(DatasetSchema.dataset_id == dataset_id)
    ).scalar()
    return int(current or 0) + 1


def create_schema_version(
    session: Session,
    *,
    dataset_id: int,
    schema: Mapping[str, Any],
    field_metadata: Mapping[str, Any] | None = None,
    event_count: int | None = None,
    auto_approved: bool = False,
    approved_by_id: int | None = None,
    approval_notes: str | None = None,
    import_job_ids: Iterable[int] = (),
) -> DatasetSchema:
    """
    Insert the next schema version for ``dataset_id``.

    The caller commits. Raises ``ImporterError`` if no version number could be
    claimed after ``MAX_VERSION_ATTEMPTS`` attempts.
    """
    # Serializes concurrent writers on backends that support row locks.
    session.query(Dataset).filter(Dataset.id == dataset_id).with_for_update(of=Dataset).first()

    if event_count is None:
        event_count = count_dataset_events(session, dataset_id)

    for attempt in range(1, MAX_VERSION_ATTEMPTS + 1):
        version_number = _next_version_number(session, dataset_id)
        version = DatasetSchema(
            dataset_id=dataset_id,
            version_number=version_number,
            schema_json=dict(schema),
            field_metadata_json=dict(field_metadata) if field_metadata else None,
            event_count_at_creation=event_count,
            auto_approved=auto_approved,
            approved_by_id=approved_by_id,
            approval_notes=approval_notes,
            import_job_ids=list(import_job_ids),
        )
        try:
            with session.begin_nested():
                session.add(version)
        except IntegrityError:
            logger.warning(
                "Schema version %s for dataset %s already taken (attempt %s); retrying",
                version_number,
                dataset_id,
                attempt,
                extra={"importer_dataset_id": dataset_id, "importer_schema_version": version_number},
            )
            continue
        logger.info(
            "Created schema version %s for dataset %s",
            version_number,
            dataset_id,
            extra={
                "importer_dataset_id": dataset_id,
                "importer_schema_version": version_number,
                "importer_schema_auto_approved": auto_approved,
            },
        )
        return version

    raise ImporterError(f"Could not allocate a schema version for dataset {dataset_id}.")


@dataclass(frozen=True)
class ApprovalDecision:
    requires_approval: bool
    reason: str | None = None


def decide_approval(
    schema_config: SchemaConfig,
    comparison: SchemaComparison,
    *,
    has_existing_version: bool,
) -> ApprovalDecision:
    """
    Apply the dataset's schema mode to a comparison.

    ``strict`` and ``locked`` datasets approve every change by hand,
    ``additive`` auto-accepts non-breaking changes and ``flexible`` accepts
    everything. The first version of a dataset has nothing to break, so it is
    treated as non-breaking. ``auto_approve_non_breaking=False`` forces manual
    approval of any change.
    """
    if not comparison.has_changes and has_existing_version:
        return ApprovalDecision(False)

    is_breaking = comparison.is_breaking and has_existing_version

    if schema_config.locked:
        return ApprovalDecision(True, "Schema is locked")
    if schema_config.mode == "strict":
        return ApprovalDecision(True, "Strict schema mode requires approval for all changes")
    if schema_config.auto_approve_non_breaking is False:
        return ApprovalDecision(True, "Auto-approval of schema changes is disabled")
    if schema_config.mode == "flexible":
        return ApprovalDecision(False)
    if is_breaking:
        return ApprovalDecision(True, "Breaking schema changes detected")
    return ApprovalDecision(False)


@dataclass(frozen=True)
class SchemaFreshness:
    stale: bool
    reason: str | None
    current_event_count: int
    schema_event_count: int
    latest_version: int | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "stale": self.stale,
            "reason": self.reason,
            "current_event_count": self.current_event_count,
            "schema_event_count": self.schema_event_count,
            "latest_version": self.latest_version,
        }


def get_schema_freshness(session: Session, dataset_id: int) -> SchemaFreshness:
    """A schema is fresh exactly when the live event count matches the count it was built from."""
    current_count = count_dataset_events(session, dataset_id)
    latest = get_latest_schema(session, dataset_id)
    if latest is None:
        return SchemaFreshness(
            stale=True,
            reason="no_schema",
            current_event_count=current_count,
            schema_event_count=0,
            latest_version=None,
        )

    schema_count = int(latest.event_count_at_creation or 0)
    if current_count > schema_count:
        reason: str | None = "added"
    elif current_count < schema_count:
        reason = "deleted"
    else:
        reason = None
    return SchemaFreshness(
        stale=reason is not None,
        reason=reason,
        current_event_count=current_count,
        schema_event_count=schema_count,
        latest_version=latest.version_number,
    )
