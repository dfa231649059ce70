"""
Loading geocoding provider configuration.

Providers come from the ``geocoding_providers`` table. The table can be
seeded from a YAML file of the form::

    providers:
      - name: google
        type: google
        priority: 1
        api_key: ${GOOGLE_MAPS_API_KEY}
      - name: osm
        type: nominatim
        priority: 10
        user_agent: "TimeTiles.io/1.0"
        rate_limit: 1

When the table is empty, defaults are derived from the application config.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Sequence

import yaml
from sqlalchemy import select
from sqlalchemy.orm import Session

from timetiles_app.importer.errors import ProviderConfigError
from timetiles_app.models import GeocodingProvider, GeocodingProviderType

from .providers import ProviderConfig

if TYPE_CHECKING:
    from timetiles_app.importer.context import PipelineSettings

logger = logging.getLogger(__name__)

DEFAULT_PRIORITIES = {
    GeocodingProviderType.GOOGLE: 1,
    GeocodingProviderType.OPENCAGE: 5,
    GeocodingProviderType.NOMINATIM: 10,
}

_OPTION_KEYS = ("api_key", "base_url", "user_agent", "rate_limit", "timeout", "language")


def default_provider_configs(settings: "PipelineSettings") -> list[ProviderConfig]:
    """Google and OpenCage when their API keys are configured, Nominatim always."""
    configs: list[ProviderConfig] = []
    if settings.google_api_key:
        configs.append(
            ProviderConfig(
                name="google",
                provider_type=GeocodingProviderType.GOOGLE,
                priority=DEFAULT_PRIORITIES[GeocodingProviderType.GOOGLE],
                api_key=settings.google_api_key,
            )
        )
    if settings.opencage_api_key:
        configs.append(
            ProviderConfig(
                name="opencage",
                provider_type=GeocodingProviderType.OPENCAGE,
                priority=DEFAULT_PRIORITIES[GeocodingProviderType.OPENCAGE],
                api_key=settings.opencage_api_key,
            )
        )
    configs.append(
        ProviderConfig(
            name="nominatim",
            provider_type=GeocodingProviderType.NOMINATIM,
            priority=DEFAULT_PRIORITIES[GeocodingProviderType.NOMINATIM],
            user_agent=settings.nominatim_user_agent,
        )
    )
    return configs


def _expand(value: Any) -> Any:
    if isinstance(value, str):
        return os.path.expandvars(value)
    return value


def _parse_entry(entry: Any, position: int) -> ProviderConfig:
    if not isinstance(entry, Mapping):
        raise ProviderConfigError(f"Provider entry #{position} must be a mapping, got {entry!r}")
    name = str(entry.get("name") or "").strip()
    if not name:
        raise ProviderConfigError(f"Provider entry #{position} is missing 'name'.")
    raw_type = entry.get("type") or entry.get("provider_type")
    try:
        provider_type = GeocodingProviderType(str(raw_type).strip().lower())
    except ValueError as exc:
        raise ProviderConfigError(f"Provider '{name}' has unsupported type {raw_type!r}.") from exc

    try:
        priority = int(entry.get("priority", DEFAULT_PRIORITIES[provider_type]))
        options = {key: _expand(entry.get(key)) for key in _OPTION_KEYS}
        rate_limit = float(options["rate_limit"]) if options["rate_limit"] not in (None, "") else None
        timeout = float(options["timeout"]) if options["timeout"] not in (None, "") else None
    except (TypeError, ValueError) as exc:
        raise ProviderConfigError(f"Provider '{name}' has an invalid value: {exc}") from exc

    if provider_type in (GeocodingProviderType.GOOGLE, GeocodingProviderType.OPENCAGE) and not options["api_key"]:
        raise ProviderConfigError(f"Provider '{name}' ({provider_type.value}) requires an api_key.")

    return ProviderConfig(
        name=name,
        provider_type=provider_type,
        enabled=bool(entry.get("enabled", True)),
        priority=priority,
        api_key=options["api_key"],
        base_url=options["base_url"],
        user_agent=options["user_agent"],
        rate_limit=rate_limit,
        timeout=timeout,
        language=options["language"],
    )


def load_provider_configs(path: str | Path) -> list[ProviderConfig]:
    path = Path(path)
    if not path.exists():
        raise ProviderConfigError(f"Provider configuration not found at {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ProviderConfigError(f"Failed to parse provider YAML at {path}: {exc}") from exc

    entries = raw.get("providers") if isinstance(raw, Mapping) else None
    if not isinstance(entries, list):
        raise ProviderConfigError(f"Provider YAML at {path} must contain a 'providers' list.")

    configs = [_parse_entry(entry, position) for position, entry in enumerate(entries, start=1)]
    names = [config.name for config in configs]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ProviderConfigError(f"Duplicate provider names in {path}: {', '.join(duplicates)}")
    return configs


def sync_providers(session: Session, configs: Iterable[ProviderConfig]) -> tuple[int, int]:
    """Insert or update provider rows by name. Returns ``(created, updated)``; the caller commits."""
    created = updated = 0
    for config in configs:
        provider = session.execute(
            select(GeocodingProvider).where(GeocodingProvider.name == config.name)
        ).scalar_one_or_none()
        if provider is None:
            provider = GeocodingProvider(name=config.name)
            session.add(provider)
            created += 1
        else:
            updated += 1
        provider.provider_type = config.provider_type
        provider.enabled = config.enabled
        provider.priority = config.priority
        provider.config_json = config.options()
    session.flush()
    logger.info("Synchronized geocoding providers", extra={"providers_created": created, "providers_updated": updated})
    return created, updated


def load_enabled_provider_configs(session: Session) -> Sequence[ProviderConfig] | None:
    """Enabled providers by ascending priority, or None when no provider rows exist at all."""
    rows = session.execute(select(GeocodingProvider).order_by(GeocodingProvider.priority, GeocodingProvider.id)).scalars().all()
    if not rows:
        return None
    return [ProviderConfig.from_model(row) for row in rows if row.enabled]
