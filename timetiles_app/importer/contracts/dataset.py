"""Typed views over the per-dataset pipeline configuration columns.

Datasets store their configuration as JSON; the pipeline only ever reads it
through these frozen dataclasses so defaults live in one place.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Mapping, Tuple

IdStrategyType = Literal["external", "content-hash", "positional", "computed", "hybrid"]
SchemaMode = Literal["strict", "additive", "flexible"]
EnumMode = Literal["count", "percentage"]

ID_STRATEGY_TYPES: Tuple[str, ...] = ("external", "content-hash", "positional", "computed", "hybrid")
SCHEMA_MODES: Tuple[str, ...] = ("strict", "additive", "flexible")

# Older datasets call the content-hash strategy "auto".
_ID_STRATEGY_ALIASES = {"auto": "content-hash", "hash": "content-hash"}


def _mapping(raw: Any) -> Mapping[str, Any]:
    return raw if isinstance(raw, Mapping) else {}


@dataclass(frozen=True)
class DeduplicationConfig:
    enabled: bool = True
    strategy: str = "skip"

    @classmethod
    def coerce(cls, raw: Any) -> "DeduplicationConfig":
        data = _mapping(raw)
        return cls(
            enabled=bool(data.get("enabled", True)),
            strategy=str(data.get("strategy") or "skip"),
        )


@dataclass(frozen=True)
class IdStrategy:
    """How a row's unique identifier is derived."""

    type: IdStrategyType = "content-hash"
    external_id_path: str | None = None
    computed_id_fields: Tuple[str, ...] = ()

    @classmethod
    def coerce(cls, raw: Any) -> "IdStrategy":
        data = _mapping(raw)
        strategy_type = str(data.get("type") or "content-hash").strip().lower()
        strategy_type = _ID_STRATEGY_ALIASES.get(strategy_type, strategy_type)
        if strategy_type not in ID_STRATEGY_TYPES:
            raise ValueError(f"Unknown ID strategy: {strategy_type}")
        fields_raw = data.get("computed_id_fields") or ()
        computed_fields: list[str] = []
        for item in fields_raw:
            # Accept both plain paths and {"field_path": ...} entries.
            if isinstance(item, Mapping):
                item = item.get("field_path")
            if item:
                computed_fields.append(str(item))
        return cls(
            type=strategy_type,  # type: ignore[arg-type]
            external_id_path=data.get("external_id_path") or None,
            computed_id_fields=tuple(computed_fields),
        )


@dataclass(frozen=True)
class SchemaConfig:
    mode: SchemaMode = "additive"
    locked: bool = False
    auto_grow: bool = True
    auto_approve_non_breaking: bool | None = None
    strict_validation: bool = False
    max_schema_depth: int = 3
    enum_threshold: int = 50
    enum_mode: EnumMode = "count"

    @classmethod
    def coerce(cls, raw: Any) -> "SchemaConfig":
        data = _mapping(raw)
        mode = str(data.get("mode") or "additive").strip().lower()
        if mode not in SCHEMA_MODES:
            raise ValueError(f"Unknown schema mode: {mode}")
        enum_mode = str(data.get("enum_mode") or "count").strip().lower()
        if enum_mode not in ("count", "percentage"):
            enum_mode = "count"
        auto_approve = data.get("auto_approve_non_breaking")
        return cls(
            mode=mode,  # type: ignore[arg-type]
            locked=bool(data.get("locked", False)),
            auto_grow=bool(data.get("auto_grow", True)),
            auto_approve_non_breaking=None if auto_approve is None else bool(auto_approve),
            strict_validation=bool(data.get("strict_validation", False)),
            max_schema_depth=int(data.get("max_schema_depth") or 3),
            enum_threshold=int(data.get("enum_threshold") or 50),
            enum_mode=enum_mode,  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class FieldMappingOverrides:
    """Manually configured field paths that win over detection."""

    title_path: str | None = None
    description_path: str | None = None
    timestamp_path: str | None = None
    location_path: str | None = None
    latitude_path: str | None = None
    longitude_path: str | None = None

    @classmethod
    def coerce(cls, raw: Any) -> "FieldMappingOverrides":
        data = _mapping(raw)
        return cls(**{key: data.get(key) or None for key in cls.__dataclass_fields__})

    def as_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value}


@dataclass(frozen=True)
class DatasetSettings:
    """All pipeline-relevant configuration of a dataset, parsed once per stage."""

    dataset_id: int
    deduplication: DeduplicationConfig = field(default_factory=DeduplicationConfig)
    id_strategy: IdStrategy = field(default_factory=IdStrategy)
    schema_config: SchemaConfig = field(default_factory=SchemaConfig)
    field_mapping_overrides: FieldMappingOverrides = field(default_factory=FieldMappingOverrides)

    @classmethod
    def from_dataset(cls, dataset) -> "DatasetSettings":
        return cls(
            dataset_id=dataset.id,
            deduplication=DeduplicationConfig.coerce(dataset.deduplication_json),
            id_strategy=IdStrategy.coerce(dataset.id_strategy_json),
            schema_config=SchemaConfig.coerce(dataset.schema_config_json),
            field_mapping_overrides=FieldMappingOverrides.coerce(dataset.field_mapping_overrides_json),
        )
