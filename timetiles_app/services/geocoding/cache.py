"""Geocode cache backed by the ``geocode_cache`` table."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timetiles_app.models import GeocodeCacheEntry
from timetiles_app.models.base import ensure_utc

from .providers import GeocodingResult

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_SPECIAL_CHARS_RE = re.compile(r"[^\w\s,.-]")
_REPEATED_COMMAS_RE = re.compile(r",{2,}")
_LEADING_RE = re.compile(r"^[\s,]+")


def normalize_address(address: str) -> str:
    """
    Build the cache key for ``address``.

    >>> normalize_address("  123 Main St.,, Springfield!  ")
    '123 main st., springfield'
    """
    normalized = address.lower().strip()
    normalized = _WHITESPACE_RE.sub(" ", normalized)
    normalized = _SPECIAL_CHARS_RE.sub("", normalized)
    normalized = _REPEATED_COMMAS_RE.sub(",", normalized)
    normalized = _LEADING_RE.sub("", normalized).rstrip()
    if normalized.endswith(","):
        normalized = normalized[:-1].rstrip()
    return normalized


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GeocodeCache:
    """Read-through cache of successful geocoding results.

    Entries older than ``ttl_days`` are treated as misses and removed. A
    ``ttl_days`` of 0 disables the cache.
    """

    def __init__(self, session: Session, *, ttl_days: int = 30, clock: Callable[[], datetime] = _utcnow):
        self.session = session
        self.ttl_days = ttl_days
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self.ttl_days > 0

    def _find(self, normalized_address: str) -> GeocodeCacheEntry | None:
        return self.session.execute(
            select(GeocodeCacheEntry).where(GeocodeCacheEntry.normalized_address == normalized_address)
        ).scalar_one_or_none()

    def is_expired(self, entry: GeocodeCacheEntry) -> bool:
        created = ensure_utc(entry.created_at)
        if created is None:
            return True
        return created < self._clock() - timedelta(days=self.ttl_days)

    def lookup(self, normalized_address: str) -> GeocodingResult | None:
        if not self.enabled or not normalized_address:
            return None
        entry = self._find(normalized_address)
        if entry is None:
            return None
        if self.is_expired(entry):
            logger.debug("Expired geocode cache entry for %s", normalized_address)
            self.session.delete(entry)
            self.session.flush()
            return None

        entry.hit_count = (entry.hit_count or 0) + 1
        entry.last_used = self._clock()
        return GeocodingResult(
            latitude=entry.latitude,
            longitude=entry.longitude,
            confidence=entry.confidence if entry.confidence is not None else 0.0,
            provider=entry.provider,
            normalized_address=entry.normalized_address,
            formatted_address=entry.formatted_address,
            components=dict(entry.components_json or {}),
            from_cache=True,
        )

    def store(self, original_address: str, normalized_address: str, result: GeocodingResult) -> None:
        """Upsert ``result`` under ``normalized_address``; concurrent writers resolve last-writer-wins."""
        if not self.enabled:
            return
        key = normalized_address or original_address
        now = self._clock()
        entry = self._find(key)
        if entry is None:
            entry = GeocodeCacheEntry(normalized_address=key, hit_count=0, created_at=now)
            self._apply(entry, original_address, result, now)
            try:
                with self.session.begin_nested():
                    self.session.add(entry)
                return
            except IntegrityError:
                entry = self._find(key)
                if entry is None:
                    raise
        self._apply(entry, original_address, result, now)
        entry.created_at = now

    @staticmethod
    def _apply(entry: GeocodeCacheEntry, original_address: str, result: GeocodingResult, now: datetime) -> None:
        entry.original_address = original_address[:500]
        entry.latitude = result.latitude
        entry.longitude = result.longitude
        entry.confidence = result.confidence
        entry.provider = result.provider
        entry.formatted_address = result.formatted_address
        entry.components_json = dict(result.components)
        entry.last_used = now

    def cleanup_expired(self) -> int:
        cutoff = self._clock() - timedelta(days=self.ttl_days)
        result = self.session.execute(delete(GeocodeCacheEntry).where(GeocodeCacheEntry.created_at < cutoff))
        return int(result.rowcount or 0)
