"""Typed views over the JSON state an ImportJob accumulates across stages."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping


def _mapping(raw: Any) -> Mapping[str, Any]:
    return raw if isinstance(raw, Mapping) else {}


@dataclass(frozen=True)
class ErrorLogEntry:
    """A row-level or stage-level problem recorded on the job."""

    error: str
    stage: str
    row: int | None = None
    occurred_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StageProgress:
    processed: int = 0
    total: int = 0
    batches_processed: int = 0

    @classmethod
    def coerce(cls, raw: Any) -> "StageProgress":
        data = _mapping(raw)
        return cls(
            processed=int(data.get("processed") or 0),
            total=int(data.get("total") or 0),
            batches_processed=int(data.get("batches_processed") or 0),
        )


# Relative time each stage takes; stages without a weight do not count towards the percentage.
STAGE_WEIGHTS: Mapping[str, int] = {
    "analyze-duplicates": 1,
    "detect-schema": 2,
    "validate-schema": 1,
    "create-schema-version": 1,
    "geocode-batch": 5,
    "create-events": 3,
}

PIPELINE_ORDER = (
    "analyze-duplicates",
    "detect-schema",
    "validate-schema",
    "await-approval",
    "create-schema-version",
    "geocode-batch",
    "create-events",
)


@dataclass
class ImportProgress:
    total_rows: int = 0
    stages: dict[str, StageProgress] = field(default_factory=dict)

    @classmethod
    def coerce(cls, raw: Any) -> "ImportProgress":
        data = _mapping(raw)
        return cls(
            total_rows=int(data.get("total_rows") or 0),
            stages={name: StageProgress.coerce(value) for name, value in _mapping(data.get("stages")).items()},
        )

    def stage(self, name: str) -> StageProgress:
        return self.stages.setdefault(name, StageProgress())

    def percentage(self, current_stage: Any = None) -> int:
        """
        Overall completion from 0 to 100, weighted by ``STAGE_WEIGHTS``.

        Stages that come before ``current_stage`` count as finished, including
        ones the job skipped; the others contribute their processed/total ratio.
        """
        current = getattr(current_stage, "value", current_stage)
        if current == "completed":
            return 100
        finished = set(PIPELINE_ORDER[: PIPELINE_ORDER.index(current)]) if current in PIPELINE_ORDER else set()
        weighted = 0.0
        for name, weight in STAGE_WEIGHTS.items():
            if name in finished:
                weighted += weight
                continue
            progress = self.stages.get(name)
            if progress is not None and progress.total > 0:
                weighted += weight * min(progress.processed / progress.total, 1.0)
        return round(weighted * 100 / sum(STAGE_WEIGHTS.values()))

    def as_dict(self, current_stage: Any = None) -> dict[str, Any]:
        return {
            "total_rows": self.total_rows,
            "percentage": self.percentage(current_stage),
            "stages": {name: asdict(progress) for name, progress in self.stages.items()},
        }


@dataclass
class DuplicateSummary:
    total_rows: int = 0
    unique_rows: int = 0
    internal_duplicates: int = 0
    external_duplicates: int = 0
    invalid_rows: int = 0


@dataclass
class DuplicateAnalysis:
    """
    Outcome of the duplicate analysis stage.

    ``internal`` entries point at the first row that carried the same unique
    id; ``external`` entries point at the already persisted event. ``invalid``
    lists the rows whose unique id could not be derived; their errors are
    already in the job's error log.
    """

    strategy: str = "skip"
    internal: list[dict[str, Any]] = field(default_factory=list)
    external: list[dict[str, Any]] = field(default_factory=list)
    invalid: list[dict[str, Any]] = field(default_factory=list)
    summary: DuplicateSummary = field(default_factory=DuplicateSummary)

    @classmethod
    def coerce(cls, raw: Any) -> "DuplicateAnalysis":
        data = _mapping(raw)
        summary = _mapping(data.get("summary"))
        return cls(
            strategy=str(data.get("strategy") or "skip"),
            internal=list(data.get("internal") or ()),
            external=list(data.get("external") or ()),
            invalid=list(data.get("invalid") or ()),
            summary=DuplicateSummary(
                total_rows=int(summary.get("total_rows") or 0),
                unique_rows=int(summary.get("unique_rows") or 0),
                internal_duplicates=int(summary.get("internal_duplicates") or 0),
                external_duplicates=int(summary.get("external_duplicates") or 0),
                invalid_rows=int(summary.get("invalid_rows") or 0),
            ),
        )

    def duplicate_rows(self) -> set[int]:
        """Row numbers that later stages must skip."""
        return {int(entry["row_number"]) for entry in (*self.internal, *self.external)}

    def invalid_rows(self) -> set[int]:
        return {int(entry["row_number"]) for entry in self.invalid}

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FieldMappings:
    """Detected (or overridden) paths of the semantically meaningful fields."""

    title_path: str | None = None
    description_path: str | None = None
    timestamp_path: str | None = None
    location_path: str | None = None
    latitude_path: str | None = None
    longitude_path: str | None = None
    confidence: Mapping[str, float] = field(default_factory=dict)

    @classmethod
    def coerce(cls, raw: Any) -> "FieldMappings":
        data = _mapping(raw)
        return cls(
            title_path=data.get("title_path"),
            description_path=data.get("description_path"),
            timestamp_path=data.get("timestamp_path"),
            location_path=data.get("location_path"),
            latitude_path=data.get("latitude_path"),
            longitude_path=data.get("longitude_path"),
            confidence=dict(_mapping(data.get("confidence"))),
        )

    @property
    def has_coordinates(self) -> bool:
        return bool(self.latitude_path and self.longitude_path)

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["confidence"] = dict(self.confidence)
        return payload


@dataclass
class SchemaValidation:
    is_compatible: bool = True
    has_changes: bool = False
    breaking_changes: list[dict[str, Any]] = field(default_factory=list)
    new_fields: list[dict[str, Any]] = field(default_factory=list)
    changes: list[dict[str, Any]] = field(default_factory=list)
    requires_approval: bool = False
    approval_reason: str | None = None
    approved: bool | None = None
    approved_by_id: int | None = None
    approved_at: str | None = None
    approval_notes: str | None = None

    @classmethod
    def coerce(cls, raw: Any) -> "SchemaValidation":
        data = dict(_mapping(raw))
        known = {key: data[key] for key in cls.__dataclass_fields__ if key in data}
        return cls(**known)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GeocodingStatistics:
    total: int = 0
    successful: int = 0
    failed: int = 0
    cached: int = 0
    from_import: int = 0
    provider_calls: dict[str, int] = field(default_factory=dict)

    @classmethod
    def coerce(cls, raw: Any) -> "GeocodingStatistics":
        data = _mapping(raw)
        return cls(
            total=int(data.get("total") or 0),
            successful=int(data.get("successful") or 0),
            failed=int(data.get("failed") or 0),
            cached=int(data.get("cached") or 0),
            from_import=int(data.get("from_import") or 0),
            provider_calls={str(k): int(v) for k, v in _mapping(data.get("provider_calls")).items()},
        )

    def record_provider_call(self, provider: str) -> None:
        self.provider_calls[provider] = self.provider_calls.get(provider, 0) + 1

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)
