# timetiles_app/models/dataset.py

from __future__ import annotations

from sqlalchemy import ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class Dataset(BaseModel):
    """
    A named collection of events sharing one evolving schema.

    The JSON columns hold the per-dataset pipeline configuration; they are
    parsed through the typed contracts in ``timetiles_app.importer.contracts``
    before use so callers never read raw dictionaries.
    """

    __tablename__ = "datasets"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(255), nullable=False, index=True)
    language: Mapped[str] = mapped_column(db.String(8), nullable=False, default="eng")
    owner_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    deduplication_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    id_strategy_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    schema_config_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    field_mapping_overrides_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Manual field paths overriding detection (title/description/timestamp/location).",
    )

    owner = relationship("User", foreign_keys=[owner_id])
    schema_versions = relationship(
        "DatasetSchema",
        back_populates="dataset",
        order_by="DatasetSchema.version_number",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Dataset {self.id}:{self.name}>"


class DatasetSchema(BaseModel):
    """Immutable schema version for a dataset; never updated after insert."""

    __tablename__ = "dataset_schemas"

    id: Mapped[int] = mapped_column(primary_key=True)
    dataset_id: Mapped[int] = mapped_column(
        ForeignKey("datasets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version_number: Mapped[int] = mapped_column(db.Integer, nullable=False)
    schema_json: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    field_metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    event_count_at_creation: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    auto_approved: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    approved_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    approval_notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    import_job_ids: Mapped[list | None] = mapped_column(db.JSON, nullable=True)

    dataset = relationship("Dataset", back_populates="schema_versions")
    approved_by = relationship("User", foreign_keys=[approved_by_id])

    __table_args__ = (
        UniqueConstraint(
            "dataset_id",
            "version_number",
            name="uq_dataset_schema_version",
        ),
    )

    def __repr__(self) -> str:
        return f"<DatasetSchema dataset={self.dataset_id} v{self.version_number}>"
