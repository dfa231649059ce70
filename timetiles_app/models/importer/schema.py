"""
SQLAlchemy models for the import pipeline.

An ``ImportFile`` is the uploaded or fetched source; each sheet of it is
processed by one ``ImportJob`` that walks the fixed stage graph. The remaining
tables back transition claims and geocoding (provider registry and the
address cache).
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db, utcnow


class ImportFileStatus(str, enum.Enum):
    """Lifecycle states for an uploaded file."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ImportStage(str, enum.Enum):
    """Stages of the import pipeline, in processing order."""

    ANALYZE_DUPLICATES = "analyze-duplicates"
    DETECT_SCHEMA = "detect-schema"
    VALIDATE_SCHEMA = "validate-schema"
    AWAIT_APPROVAL = "await-approval"
    CREATE_SCHEMA_VERSION = "create-schema-version"
    GEOCODE_BATCH = "geocode-batch"
    CREATE_EVENTS = "create-events"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ImportStage.COMPLETED, ImportStage.FAILED)


class ImportFile(BaseModel):
    """A source file stored on disk, processed by one job per sheet."""

    __tablename__ = "import_files"

    id: Mapped[int] = mapped_column(primary_key=True)
    filename: Mapped[str] = mapped_column(
        db.String(1024),
        nullable=False,
        comment="Path of the stored file relative to IMPORTER_UPLOAD_DIR (or absolute).",
    )
    original_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    mime_type: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    file_size: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    status: Mapped[ImportFileStatus] = mapped_column(
        Enum(ImportFileStatus, name="import_file_status_enum"),
        nullable=False,
        default=ImportFileStatus.PENDING,
        index=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    user = relationship("User", foreign_keys=[user_id])
    jobs = relationship(
        "ImportJob",
        back_populates="import_file",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ImportJob(BaseModel):
    """State of one sheet moving through the import stages."""

    __tablename__ = "import_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    dataset_id: Mapped[int] = mapped_column(ForeignKey("datasets.id"), nullable=False, index=True)
    import_file_id: Mapped[int] = mapped_column(
        ForeignKey("import_files.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sheet_index: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    stage: Mapped[ImportStage] = mapped_column(
        Enum(ImportStage, name="import_stage_enum"),
        nullable=False,
        default=ImportStage.ANALYZE_DUPLICATES,
        index=True,
    )
    next_batch_number: Mapped[int] = mapped_column(
        db.Integer,
        nullable=False,
        default=0,
        comment="Next batch the current stage accepts; reset on every stage change.",
    )
    progress_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    duplicates_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    schema_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    schema_builder_state_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    field_mappings_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    schema_validation_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    dataset_schema_id: Mapped[int | None] = mapped_column(ForeignKey("dataset_schemas.id"), nullable=True)
    geocoding_stats_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    geocoding_results_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Geocoding results keyed by the trimmed source location text.",
    )
    results_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_log_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    dataset = relationship("Dataset")
    import_file = relationship("ImportFile", back_populates="jobs")
    dataset_schema = relationship("DatasetSchema", foreign_keys=[dataset_schema_id])
    events = relationship("Event", back_populates="import_job", passive_deletes=True)

    def __repr__(self) -> str:
        return f"<ImportJob {self.id} stage={self.stage.value if self.stage else None}>"


class StageTransitionClaim(BaseModel):
    """
    Row presence marks a transition as in progress.

    The unique constraint makes the claim atomic across worker processes: the
    second INSERT for the same ``(job, from, to)`` fails with an integrity
    error instead of queueing a duplicate stage task.
    """

    __tablename__ = "stage_transition_claims"

    id: Mapped[int] = mapped_column(primary_key=True)
    import_job_id: Mapped[int] = mapped_column(
        ForeignKey("import_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    from_stage: Mapped[str] = mapped_column(db.String(50), nullable=False)
    to_stage: Mapped[str] = mapped_column(db.String(50), nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "import_job_id",
            "from_stage",
            "to_stage",
            name="uq_stage_transition_claim",
        ),
    )


class GeocodingProviderType(str, enum.Enum):
    """Supported geocoding backends."""

    GOOGLE = "google"
    OPENCAGE = "opencage"
    NOMINATIM = "nominatim"


class GeocodingProvider(BaseModel):
    """Configured geocoding provider instance; lower priority is tried first."""

    __tablename__ = "geocoding_providers"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(100), nullable=False, unique=True)
    provider_type: Mapped[GeocodingProviderType] = mapped_column(
        Enum(GeocodingProviderType, name="geocoding_provider_type_enum"),
        nullable=False,
    )
    enabled: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    priority: Mapped[int] = mapped_column(db.Integer, nullable=False, default=10)
    config_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Provider settings: api_key, base_url, user_agent, rate_limit, timeout, language.",
    )
    total_requests: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    failed_requests: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    last_used: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)


class GeocodeCacheEntry(BaseModel):
    """Cached geocoding result keyed by normalized address."""

    __tablename__ = "geocode_cache"

    id: Mapped[int] = mapped_column(primary_key=True)
    original_address: Mapped[str] = mapped_column(db.String(500), nullable=False)
    normalized_address: Mapped[str] = mapped_column(db.String(500), nullable=False, unique=True)
    latitude: Mapped[float] = mapped_column(db.Float, nullable=False)
    longitude: Mapped[float] = mapped_column(db.Float, nullable=False)
    confidence: Mapped[float | None] = mapped_column(db.Float, nullable=True)
    provider: Mapped[str] = mapped_column(db.String(100), nullable=False)
    formatted_address: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    components_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    hit_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    last_used: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("idx_geocode_cache_last_used", "last_used"),)
