"""Prometheus metrics helpers for the importer."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_stage_transitions = Counter(
    "importer_stage_transitions_total",
    "Import job stage transitions by outcome.",
    ["from_stage", "to_stage", "outcome"],
)
_stage_duration = Histogram(
    "importer_stage_duration_seconds",
    "Duration of a single stage handler invocation in seconds.",
    ["stage", "status"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600),
)
_geocoding_requests = Counter(
    "importer_geocoding_requests_total",
    "Geocoding provider requests by provider and outcome.",
    ["provider", "outcome"],
)
_geocode_cache_lookups = Counter(
    "importer_geocode_cache_lookups_total",
    "Geocode cache lookups by result.",
    ["result"],
)
_quota_denials = Counter(
    "importer_quota_denials_total",
    "Requests rejected because a user quota was exhausted.",
    ["quota_type"],
)
_events_created = Counter(
    "importer_events_created_total",
    "Events persisted by the create-events stage.",
)


def record_stage_transition(from_stage: str, to_stage: str, outcome: str) -> None:
    _stage_transitions.labels(from_stage=from_stage, to_stage=to_stage, outcome=outcome).inc()


def record_stage_duration(stage: str, *, status: Literal["success", "failure"], duration_seconds: float) -> None:
    _stage_duration.labels(stage=stage, status=status).observe(duration_seconds)


def record_geocoding_request(provider: str, outcome: Literal["success", "failure", "rate_limited", "low_confidence"]) -> None:
    _geocoding_requests.labels(provider=provider, outcome=outcome).inc()


def record_geocode_cache_lookup(hit: bool) -> None:
    _geocode_cache_lookups.labels(result="hit" if hit else "miss").inc()


def record_quota_denial(quota_type: str) -> None:
    """Increment the quota denial counter."""

    _quota_denials.labels(quota_type=quota_type).inc()


def record_events_created(count: int) -> None:
    if count > 0:
        _events_created.inc(count)
