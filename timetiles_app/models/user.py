# timetiles_app/models/user.py

from __future__ import annotations

from datetime import datetime

from sqlalchemy import ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db, utcnow


class User(BaseModel):
    """Account owning uploads and datasets; carries trust level and quota overrides."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(db.String(255), unique=True, nullable=False, index=True)
    trust_level: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    quotas_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Per-field overrides of the trust-level defaults (camelCase quota names).",
    )
    custom_quotas_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Free-form overrides merged after quotas_json.",
    )

    usage = relationship(
        "UserUsage",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class UserUsage(BaseModel):
    """Running usage counters for a user; daily counters reset at the UTC day boundary."""

    __tablename__ = "user_usage"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    current_active_schedules: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    url_fetches_today: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    file_uploads_today: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    import_jobs_today: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_events_created: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    current_catalogs: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    last_reset_date: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    user = relationship("User", back_populates="usage")
