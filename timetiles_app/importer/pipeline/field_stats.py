"""
Progressive schema inference.

``ProgressiveSchemaBuilder`` accumulates per-field statistics across batches
and can be serialized into the import job between batch tasks. The generated
schema is a JSON-schema-like dict (``type``/``properties``/``required``) that
``schema_comparison`` diffs against the dataset's stored versions.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

logger = logging.getLogger(__name__)

MAX_UNIQUE_SAMPLES = 100
REQUIRED_OCCURRENCE_RATIO = 0.9

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}(T\d{2}:\d{2}:\d{2})?$")
_SLASH_DATE = re.compile(r"^\d{1,2}/\d{1,2}/\d{2,4}$")
_URL = re.compile(r"^https?://\S+")
_DATE_TIME = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")
_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_NUMERIC = re.compile(r"^-?\d+(\.\d+)?$")

JSON_SCHEMA_TYPES = {
    "string": "string",
    "number": "number",
    "integer": "integer",
    "boolean": "boolean",
    "object": "object",
    "array": "array",
    "null": "null",
    "date": "string",
    "boolean-string": "string",
}


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_date_string(value: str) -> bool:
    if _ISO_DATE.match(value):
        try:
            datetime.fromisoformat(value)
        except ValueError:
            return False
        return True
    return bool(_SLASH_DATE.match(value))


def get_value_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return "integer"
        return "number"
    if isinstance(value, str):
        if _is_date_string(value):
            return "date"
        if value in ("true", "false"):
            return "boolean-string"
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return "string"


def _is_email(value: str) -> bool:
    at = value.find("@")
    if at <= 0 or at >= len(value) - 1 or " " in value:
        return False
    parts = value.split("@")
    return len(parts) == 2 and "." in parts[1]


def detect_formats(value: str) -> list[str]:
    formats: list[str] = []
    if _is_email(value):
        formats.append("email")
    if _URL.match(value):
        formats.append("url")
    if _DATE_TIME.match(value):
        formats.append("date_time")
    if _DATE.match(value):
        formats.append("date")
    if _NUMERIC.match(value):
        formats.append("numeric")
    return formats


@dataclass
class NumericStats:
    min: float
    max: float
    avg: float
    is_integer: bool


@dataclass
class FieldStatistics:
    path: str
    occurrences: int = 0
    null_count: int = 0
    type_distribution: dict[str, int] = field(default_factory=dict)
    numeric_stats: NumericStats | None = None
    unique_values: int = 0
    unique_samples: list[Any] = field(default_factory=list)
    formats: dict[str, int] = field(default_factory=dict)
    value_counts: dict[str, int] = field(default_factory=dict)
    value_counts_overflow: bool = False
    is_enum_candidate: bool = False
    enum_values: list[dict[str, Any]] = field(default_factory=list)
    first_seen: str = field(default_factory=_utcnow_iso)
    last_seen: str = field(default_factory=_utcnow_iso)

    @property
    def depth(self) -> int:
        return self.path.count(".")

    def update(self, value: Any, max_unique_values: int = MAX_UNIQUE_SAMPLES) -> None:
        self.occurrences += 1
        if value is None:
            self.null_count += 1

        value_type = get_value_type(value)
        self.type_distribution[value_type] = self.type_distribution.get(value_type, 0) + 1

        if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
            self._update_numeric(float(value) if isinstance(value, float) else value)

        if (
            len(self.unique_samples) < max_unique_values
            and (value is None or isinstance(value, (str, int, float, bool)))
            and value not in self.unique_samples
        ):
            self.unique_samples.append(value)

        if isinstance(value, str):
            for fmt in detect_formats(value):
                self.formats[fmt] = self.formats.get(fmt, 0) + 1
            self._count_value(value, max_unique_values)

        self.unique_values = len(self.unique_samples)
        self.last_seen = _utcnow_iso()

    def _update_numeric(self, value: float) -> None:
        is_integer = isinstance(value, int) or float(value).is_integer()
        if self.numeric_stats is None:
            self.numeric_stats = NumericStats(min=value, max=value, avg=float(value), is_integer=is_integer)
            return
        numeric_count = self.type_distribution.get("integer", 0) + self.type_distribution.get("number", 0)
        stats = self.numeric_stats
        stats.min = min(stats.min, value)
        stats.max = max(stats.max, value)
        stats.avg = (stats.avg * (numeric_count - 1) + value) / max(numeric_count, 1)
        stats.is_integer = stats.is_integer and is_integer

    def _count_value(self, value: str, max_unique_values: int) -> None:
        if value in self.value_counts:
            self.value_counts[value] += 1
        elif len(self.value_counts) < max_unique_values:
            self.value_counts[value] = 1
        else:
            self.value_counts_overflow = True

    def detect_enum(self, threshold: int, mode: str = "count") -> None:
        non_null = self.occurrences - self.null_count
        string_count = self.type_distribution.get("string", 0)
        distinct = len(self.value_counts)
        candidate = False
        if non_null > 0 and string_count == non_null and not self.value_counts_overflow and distinct:
            if mode == "percentage":
                candidate = (distinct / non_null) * 100 <= threshold
            else:
                candidate = distinct <= threshold and distinct < non_null
        self.is_enum_candidate = candidate
        if candidate:
            self.enum_values = [
                {"value": value, "count": count, "percent": (count / non_null) * 100}
                for value, count in sorted(self.value_counts.items(), key=lambda item: (-item[1], item[0]))
            ]
        else:
            self.enum_values = []

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FieldStatistics":
        data = dict(raw)
        numeric = data.pop("numeric_stats", None)
        known = {key: data[key] for key in cls.__dataclass_fields__ if key in data}
        stats = cls(**known)
        stats.numeric_stats = NumericStats(**numeric) if numeric else None
        return stats


def merge_field_stats(existing: FieldStatistics, incoming: FieldStatistics) -> FieldStatistics:
    """Combine statistics for the same path collected by separate passes."""
    merged = FieldStatistics(path=existing.path)
    merged.occurrences = existing.occurrences + incoming.occurrences
    merged.null_count = existing.null_count + incoming.null_count
    for source in (existing.type_distribution, incoming.type_distribution):
        for key, count in source.items():
            merged.type_distribution[key] = merged.type_distribution.get(key, 0) + count
    for source in (existing.formats, incoming.formats):
        for key, count in source.items():
            merged.formats[key] = merged.formats.get(key, 0) + count
    for source in (existing.value_counts, incoming.value_counts):
        for key, count in source.items():
            merged.value_counts[key] = merged.value_counts.get(key, 0) + count
    merged.value_counts_overflow = existing.value_counts_overflow or incoming.value_counts_overflow

    if existing.numeric_stats and incoming.numeric_stats:
        total = max(merged.occurrences, 1)
        merged.numeric_stats = NumericStats(
            min=min(existing.numeric_stats.min, incoming.numeric_stats.min),
            max=max(existing.numeric_stats.max, incoming.numeric_stats.max),
            avg=(
                existing.numeric_stats.avg * existing.occurrences
                + incoming.numeric_stats.avg * incoming.occurrences
            )
            / total,
            is_integer=existing.numeric_stats.is_integer and incoming.numeric_stats.is_integer,
        )
    else:
        merged.numeric_stats = existing.numeric_stats or incoming.numeric_stats

    samples: list[Any] = []
    for sample in (*existing.unique_samples, *incoming.unique_samples):
        if sample not in samples:
            samples.append(sample)
    merged.unique_values = len(samples)
    merged.unique_samples = samples[:MAX_UNIQUE_SAMPLES]
    merged.is_enum_candidate = existing.is_enum_candidate or incoming.is_enum_candidate
    merged.first_seen = min(existing.first_seen, incoming.first_seen)
    merged.last_seen = max(existing.last_seen, incoming.last_seen)
    return merged


@dataclass
class SchemaChange:
    type: str
    path: str
    details: dict[str, Any] = field(default_factory=dict)
    severity: str = "info"
    auto_approvable: bool = True

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class ProgressiveSchemaBuilder:
    """Accumulate field statistics batch by batch and render a schema from them."""

    def __init__(
        self,
        state: Mapping[str, Any] | None = None,
        *,
        max_samples: int = 100,
        max_unique_values: int = MAX_UNIQUE_SAMPLES,
        enum_threshold: int = 50,
        enum_mode: str = "count",
        max_depth: int = 3,
    ):
        self.max_samples = max_samples
        self.max_unique_values = max_unique_values
        self.enum_threshold = enum_threshold
        self.enum_mode = enum_mode
        self.max_depth = max_depth

        state = dict(state or {})
        self.version: int = int(state.get("version", 0))
        self.record_count: int = int(state.get("record_count", 0))
        self.batch_count: int = int(state.get("batch_count", 0))
        self.data_samples: list[dict[str, Any]] = list(state.get("data_samples", ()))
        self.type_conflicts: list[dict[str, Any]] = list(state.get("type_conflicts", ()))
        self.field_stats: dict[str, FieldStatistics] = {
            path: FieldStatistics.from_dict(raw) for path, raw in (state.get("field_stats") or {}).items()
        }

    @classmethod
    def for_schema_config(cls, schema_config, state: Mapping[str, Any] | None = None) -> "ProgressiveSchemaBuilder":
        return cls(
            state,
            enum_threshold=schema_config.enum_threshold,
            enum_mode=schema_config.enum_mode,
            max_depth=schema_config.max_schema_depth,
        )

    # Accumulation -----------------------------------------------------

    def process_batch(self, records: Iterable[Mapping[str, Any]]) -> tuple[bool, list[SchemaChange]]:
        records = list(records)
        changes: list[SchemaChange] = []
        self.data_samples.extend(dict(record) for record in records)
        if len(self.data_samples) > self.max_samples:
            self.data_samples = self.data_samples[-self.max_samples :]

        for record in records:
            changes.extend(self._process_record(record, ""))

        self.record_count += len(records)
        self.batch_count += 1
        for stats in self.field_stats.values():
            stats.detect_enum(self.enum_threshold, self.enum_mode)

        schema_changed = any(change.type in ("new_field", "type_change") for change in changes)
        if schema_changed:
            self.version += 1
        return schema_changed, changes

    def _process_record(self, record: Any, prefix: str, depth: int = 0) -> list[SchemaChange]:
        changes: list[SchemaChange] = []
        if depth >= self.max_depth or not isinstance(record, Mapping):
            return changes

        for key, value in record.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            stats = self.field_stats.get(path)
            if stats is None:
                stats = FieldStatistics(path=path)
                self.field_stats[path] = stats
                changes.append(
                    SchemaChange(type="new_field", path=path, details={"data_type": get_value_type(value)})
                )

            value_type = get_value_type(value)
            conflict = self._check_type_conflict(stats, value_type, value)
            if conflict is not None:
                changes.append(conflict)

            stats.update(value, self.max_unique_values)

            if isinstance(value, Mapping):
                changes.extend(self._process_record(value, path, depth + 1))
            elif isinstance(value, (list, tuple)) and value and isinstance(value[0], Mapping):
                changes.extend(self._process_record(value[0], f"{path}[]", depth + 1))
        return changes

    def _check_type_conflict(self, stats: FieldStatistics, new_type: str, value: Any) -> SchemaChange | None:
        if stats.occurrences == 0 or new_type == "null":
            return None
        existing_types = [t for t, count in stats.type_distribution.items() if t != "null" and count > 0]
        if new_type in existing_types or not existing_types:
            return None

        conflict = next((item for item in self.type_conflicts if item["path"] == stats.path), None)
        if conflict is None:
            conflict = {
                "path": stats.path,
                "types": {t: stats.type_distribution[t] for t in existing_types},
                "samples": [],
            }
            self.type_conflicts.append(conflict)
        conflict["types"][new_type] = conflict["types"].get(new_type, 0) + 1
        if len(conflict["samples"]) < 5:
            conflict["samples"].append({"type": new_type, "value": value})

        return SchemaChange(
            type="type_change",
            path=stats.path,
            details={"old_type": existing_types[0], "new_type": new_type},
            severity="warning",
            auto_approvable=False,
        )

    # Rendering --------------------------------------------------------

    def _property_schema(self, stats: FieldStatistics) -> dict[str, Any]:
        schema: dict[str, Any] = {}
        type_entries = sorted(
            ((t, count) for t, count in stats.type_distribution.items() if t != "null"),
            key=lambda item: -item[1],
        )
        if len(type_entries) == 1:
            schema["type"] = JSON_SCHEMA_TYPES.get(type_entries[0][0], "string")
        elif len(type_entries) > 1:
            types: list[str] = []
            for value_type, _ in type_entries:
                mapped = JSON_SCHEMA_TYPES.get(value_type, "string")
                if mapped not in types:
                    types.append(mapped)
            if stats.null_count > 0:
                schema["type"] = types
                schema["nullable"] = True
            else:
                schema["type"] = types[0] if len(types) == 1 else types

        if stats.is_enum_candidate and stats.enum_values:
            schema["enum"] = [item["value"] for item in stats.enum_values]
        if stats.type_distribution.get("date"):
            schema["format"] = "date-time"
        if stats.numeric_stats is not None:
            schema["minimum"] = stats.numeric_stats.min
            schema["maximum"] = stats.numeric_stats.max
        return schema

    def get_schema(self) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        required: list[str] = []

        for path in sorted(self.field_stats):
            stats = self.field_stats[path]
            parts = [part for part in path.split(".") if part]
            current = properties
            for index, part in enumerate(parts):
                is_last = index == len(parts) - 1
                if part.endswith("[]"):
                    name = part[:-2]
                    node = current.setdefault(name, {"type": "array", "items": {"type": "object", "properties": {}}})
                    node.setdefault("items", {"type": "object", "properties": {}}).setdefault("properties", {})
                    current = node["items"]["properties"]
                elif is_last:
                    existing = current.get(part, {})
                    prop = self._property_schema(stats)
                    if "properties" in existing:
                        prop["properties"] = existing["properties"]
                    current[part] = prop
                    if index == 0 and stats.occurrences >= self.record_count * REQUIRED_OCCURRENCE_RATIO:
                        required.append(part)
                else:
                    node = current.setdefault(part, {"type": "object", "properties": {}})
                    current = node.setdefault("properties", {})

        return {
            "type": "object",
            "properties": properties,
            "required": required,
            "additionalProperties": False,
        }

    def field_statistics(self) -> dict[str, dict[str, Any]]:
        return {path: stats.as_dict() for path, stats in self.field_stats.items()}

    def get_state(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "record_count": self.record_count,
            "batch_count": self.batch_count,
            "data_samples": list(self.data_samples),
            "type_conflicts": list(self.type_conflicts),
            "field_stats": self.field_statistics(),
        }

    def get_summary(self) -> dict[str, Any]:
        return {
            "record_count": self.record_count,
            "field_count": len(self.field_stats),
            "version": self.version,
            "enum_fields": sorted(path for path, stats in self.field_stats.items() if stats.is_enum_candidate),
            "type_conflicts": len(self.type_conflicts),
        }
