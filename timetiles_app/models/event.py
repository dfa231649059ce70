# timetiles_app/models/event.py

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class CoordinateSource(str, enum.Enum):
    """Where an event's coordinates came from."""

    IMPORT = "import"
    GEOCODED = "geocoded"
    MANUAL = "manual"
    NONE = "none"


class Event(BaseModel):
    """A persisted row of a dataset, keyed by its deterministic unique id."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(primary_key=True)
    dataset_id: Mapped[int] = mapped_column(
        ForeignKey("datasets.id", ondelete="CASCADE"),
        nullable=False,
    )
    import_job_id: Mapped[int | None] = mapped_column(
        ForeignKey("import_jobs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    unique_id: Mapped[str] = mapped_column(db.String(512), nullable=False)
    data_json: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    event_timestamp: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    location_name: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    latitude: Mapped[float | None] = mapped_column(db.Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(db.Float, nullable=True)
    coordinate_source: Mapped[CoordinateSource] = mapped_column(
        Enum(CoordinateSource, name="coordinate_source_enum"),
        nullable=False,
        default=CoordinateSource.NONE,
    )
    coordinate_validation_status: Mapped[str | None] = mapped_column(db.String(32), nullable=True)
    geocoding_provider: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    geocoding_confidence: Mapped[float | None] = mapped_column(db.Float, nullable=True)
    normalized_address: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    schema_version_number: Mapped[int | None] = mapped_column(db.Integer, nullable=True)

    dataset = relationship("Dataset")
    import_job = relationship("ImportJob", back_populates="events")

    __table_args__ = (
        Index(
            "idx_events_dataset_unique_id",
            "dataset_id",
            "unique_id",
            unique=True,
        ),
    )

    def __repr__(self) -> str:
        return f"<Event {self.unique_id}>"
