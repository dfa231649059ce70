"""
Quota and trust-level enforcement.

``check_quota`` never mutates usage; callers increment usage only after the
guarded operation committed. Daily counters reset lazily at the UTC day
boundary: checks past the boundary report ``current=0`` and the next
increment performs the actual reset.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from timetiles_app.importer.errors import QuotaExceededError
from timetiles_app.models import User, UserUsage
from timetiles_app.models.base import ensure_utc

from .quota_constants import (
    DAILY_USAGE_TYPES,
    DEFAULT_QUOTAS,
    QUOTA_USAGE_FIELDS,
    UNLIMITED,
    QuotaType,
    TrustLevel,
    UsageType,
    format_quota_message,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QuotaCheckResult:
    allowed: bool
    current: int
    limit: int
    remaining: int
    quota_type: QuotaType
    reset_time: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "current": self.current,
            "limit": self.limit,
            "remaining": self.remaining,
            "quota_type": self.quota_type.value,
            "reset_time": self.reset_time.isoformat() if self.reset_time else None,
        }


class QuotaService:
    """Resolve effective quotas and track usage for users."""

    def __init__(self, session: Session, *, clock: Callable[[], datetime] = _utcnow):
        self.session = session
        self._clock = clock

    # Quota resolution -------------------------------------------------

    def get_effective_quotas(self, user: User | None) -> Dict[QuotaType, int]:
        if user is None:
            return dict(DEFAULT_QUOTAS[TrustLevel.UNTRUSTED])

        try:
            trust_level = TrustLevel(int(user.trust_level if user.trust_level is not None else TrustLevel.REGULAR))
        except ValueError:
            logger.warning(
                "Unknown trust level %s for user %s; using REGULAR defaults.",
                user.trust_level,
                user.id,
            )
            trust_level = TrustLevel.REGULAR

        effective: Dict[QuotaType, int] = dict(DEFAULT_QUOTAS[trust_level])
        self._apply_overrides(effective, user.quotas_json)
        self._apply_overrides(effective, user.custom_quotas_json)
        return effective

    @staticmethod
    def _apply_overrides(quotas: Dict[QuotaType, int], overrides: Mapping[str, Any] | None) -> None:
        if not isinstance(overrides, Mapping):
            return
        for quota_type in QuotaType:
            value = overrides.get(quota_type.value)
            if value is None:
                continue
            try:
                quotas[quota_type] = int(value)
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric quota override %s=%r", quota_type.value, value)

    # Usage records ----------------------------------------------------

    def get_usage(self, user_id: int) -> UserUsage | None:
        return self.session.execute(select(UserUsage).where(UserUsage.user_id == user_id)).scalar_one_or_none()

    def get_or_create_usage(self, user_id: int) -> UserUsage:
        usage = self.get_usage(user_id)
        if usage is None:
            usage = UserUsage(user_id=user_id, last_reset_date=self._clock())
            self.session.add(usage)
            self.session.flush()
        return usage

    def next_reset_time(self) -> datetime:
        now = self._clock()
        tomorrow = (now + timedelta(days=1)).date()
        return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=timezone.utc)

    def should_reset_daily_usage(self, last_reset: datetime | None) -> bool:
        if last_reset is None:
            return True
        return ensure_utc(last_reset).date() != self._clock().date()

    # Checks -----------------------------------------------------------

    def check_quota(self, user: User | None, quota_type: QuotaType, amount: int = 1) -> QuotaCheckResult:
        limit = self.get_effective_quotas(user)[quota_type]

        if limit == UNLIMITED:
            return QuotaCheckResult(allowed=True, current=0, limit=UNLIMITED, remaining=UNLIMITED, quota_type=quota_type)

        if user is None:
            allowed = amount <= limit
            return QuotaCheckResult(
                allowed=allowed,
                current=0,
                limit=limit,
                remaining=limit - amount if allowed else 0,
                quota_type=quota_type,
            )

        usage_field = QUOTA_USAGE_FIELDS[quota_type]
        if usage_field is None:
            return QuotaCheckResult(
                allowed=amount <= limit,
                current=0,
                limit=limit,
                remaining=limit,
                quota_type=quota_type,
            )

        usage = self.get_usage(user.id)
        if usage is None:
            return QuotaCheckResult(
                allowed=amount <= limit,
                current=0,
                limit=limit,
                remaining=limit,
                quota_type=quota_type,
            )

        reset_time: datetime | None = None
        if quota_type.is_daily:
            reset_time = self.next_reset_time()
            if self.should_reset_daily_usage(usage.last_reset_date):
                return QuotaCheckResult(
                    allowed=amount <= limit,
                    current=0,
                    limit=limit,
                    remaining=limit,
                    quota_type=quota_type,
                    reset_time=reset_time,
                )

        current = int(getattr(usage, usage_field.value) or 0)
        return QuotaCheckResult(
            allowed=current + amount <= limit,
            current=current,
            limit=limit,
            remaining=max(0, limit - current),
            quota_type=quota_type,
            reset_time=reset_time,
        )

    def validate_quota(self, user: User | None, quota_type: QuotaType, amount: int = 1) -> QuotaCheckResult:
        """Return the check result or raise ``QuotaExceededError``."""
        result = self.check_quota(user, quota_type, amount)
        if not result.allowed:
            from timetiles_app.importer.metrics import record_quota_denial

            record_quota_denial(quota_type.value)
            raise QuotaExceededError(
                quota_type.value,
                result.current,
                result.limit,
                result.reset_time,
                message=format_quota_message(quota_type, result.current, result.limit),
            )
        return result

    # Mutations --------------------------------------------------------

    def _reset_daily_fields(self, usage: UserUsage) -> None:
        for usage_type in DAILY_USAGE_TYPES:
            setattr(usage, usage_type.value, 0)
        usage.last_reset_date = self._clock()

    def increment_usage(self, user_id: int, usage_type: UsageType, amount: int = 1) -> UserUsage:
        usage = self.get_or_create_usage(user_id)
        if usage_type.is_daily and self.should_reset_daily_usage(usage.last_reset_date):
            self._reset_daily_fields(usage)
        current = int(getattr(usage, usage_type.value) or 0)
        setattr(usage, usage_type.value, current + amount)
        self.session.flush()
        logger.debug(
            "Incremented usage %s for user %s to %s",
            usage_type.value,
            user_id,
            current + amount,
            extra={"quota_user_id": user_id, "quota_usage_type": usage_type.value},
        )
        return usage

    def decrement_usage(self, user_id: int, usage_type: UsageType, amount: int = 1) -> UserUsage | None:
        usage = self.get_usage(user_id)
        if usage is None:
            return None
        current = int(getattr(usage, usage_type.value) or 0)
        setattr(usage, usage_type.value, max(0, current - amount))
        self.session.flush()
        return usage

    def reset_daily_counters(self, user_id: int) -> None:
        usage = self.get_usage(user_id)
        if usage is None:
            return
        self._reset_daily_fields(usage)
        self.session.flush()

    def reset_all_daily_counters(self) -> int:
        """Reset every user's daily counters; returns the number of rows touched."""
        values: dict[str, Any] = {usage_type.value: 0 for usage_type in DAILY_USAGE_TYPES}
        values["last_reset_date"] = self._clock()
        result = self.session.execute(update(UserUsage).values(**values))
        self.session.flush()
        logger.info("Reset daily quota counters for %s users", result.rowcount)
        return int(result.rowcount or 0)

    def get_quota_summary(self, user: User) -> dict[str, dict[str, Any]]:
        return {quota_type.value: self.check_quota(user, quota_type, 0).as_dict() for quota_type in QuotaType}
