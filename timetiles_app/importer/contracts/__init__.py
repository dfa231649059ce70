"""
Importer contract definitions.

Typed views over the JSON configuration stored on datasets and the JSON state
accumulated on import jobs.
"""

from .dataset import (
    DatasetSettings,
    DeduplicationConfig,
    FieldMappingOverrides,
    IdStrategy,
    SchemaConfig,
)
from .job import (
    DuplicateAnalysis,
    DuplicateSummary,
    ErrorLogEntry,
    FieldMappings,
    GeocodingStatistics,
    ImportProgress,
    SchemaValidation,
    StageProgress,
)

__all__ = [
    "DatasetSettings",
    "DeduplicationConfig",
    "DuplicateAnalysis",
    "DuplicateSummary",
    "ErrorLogEntry",
    "FieldMappingOverrides",
    "FieldMappings",
    "GeocodingStatistics",
    "IdStrategy",
    "ImportProgress",
    "SchemaConfig",
    "SchemaValidation",
    "StageProgress",
]
