# timetiles_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .dataset import Dataset, DatasetSchema
from .event import CoordinateSource, Event
from .importer import (
    GeocodeCacheEntry,
    GeocodingProvider,
    GeocodingProviderType,
    ImportFile,
    ImportFileStatus,
    ImportJob,
    ImportStage,
    StageTransitionClaim,
)
from .user import User, UserUsage

__all__ = [
    "db",
    "BaseModel",
    "User",
    "UserUsage",
    "Dataset",
    "DatasetSchema",
    "Event",
    "CoordinateSource",
    # Importer models
    "ImportFile",
    "ImportFileStatus",
    "ImportJob",
    "ImportStage",
    "StageTransitionClaim",
    "GeocodingProvider",
    "GeocodingProviderType",
    "GeocodeCacheEntry",
]
