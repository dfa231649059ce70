"""Importer pipeline stages and the transition orchestrator."""

from __future__ import annotations

from .admission import register_import_file, register_url_import, start_import_job
from .duplicates import analyze_duplicates, find_existing_events
from .events import create_events_batch
from .geocoding_stage import geocode_batch
from .schema_maintenance import SchemaMaintenanceSummary, run_schema_maintenance
from .schema_stages import (
    approve_schema,
    create_schema_version_stage,
    detect_schema,
    reject_schema,
    validate_schema,
)
from .schema_versioning import SchemaFreshness, create_schema_version, get_latest_schema, get_schema_freshness
from .transitions import (
    VALID_STAGE_TRANSITIONS,
    StageTransitionService,
    TransitionResult,
    validate_stage_transition,
)
from .unique_id import generate_unique_id

__all__ = [
    "VALID_STAGE_TRANSITIONS",
    "SchemaFreshness",
    "SchemaMaintenanceSummary",
    "StageTransitionService",
    "TransitionResult",
    "analyze_duplicates",
    "approve_schema",
    "create_events_batch",
    "create_schema_version",
    "create_schema_version_stage",
    "detect_schema",
    "find_existing_events",
    "generate_unique_id",
    "geocode_batch",
    "get_latest_schema",
    "get_schema_freshness",
    "register_import_file",
    "register_url_import",
    "reject_schema",
    "run_schema_maintenance",
    "start_import_job",
    "validate_schema",
    "validate_stage_transition",
]
