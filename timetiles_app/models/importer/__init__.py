"""
Importer-specific SQLAlchemy models.

These models back the staged pipeline: files, jobs, transition claims and the
geocoding provider registry and cache.
"""

from .schema import (
    GeocodeCacheEntry,
    GeocodingProvider,
    GeocodingProviderType,
    ImportFile,
    ImportFileStatus,
    ImportJob,
    ImportStage,
    StageTransitionClaim,
)

__all__ = [
    "GeocodeCacheEntry",
    "GeocodingProvider",
    "GeocodingProviderType",
    "ImportFile",
    "ImportFileStatus",
    "ImportJob",
    "ImportStage",
    "StageTransitionClaim",
]
