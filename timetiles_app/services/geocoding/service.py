"""
Address geocoding with caching and provider fallthrough.

``GeocodingService.geocode`` checks the cache first, then asks each enabled
provider in ascending priority until one returns an acceptable result.
Accepted results are cached before they are returned.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Sequence

import requests
from sqlalchemy import update
from sqlalchemy.orm import Session

from timetiles_app.importer.errors import GeocodingFailed, ProviderError
from timetiles_app.importer.metrics import record_geocode_cache_lookup, record_geocoding_request
from timetiles_app.models import GeocodingProvider

from .cache import GeocodeCache, normalize_address
from .coordinates import is_valid_latitude, is_valid_longitude
from .provider_config import default_provider_configs, load_enabled_provider_configs, load_provider_configs
from .providers import GeocodingProviderClient, GeocodingResult, build_provider, with_normalized_address

if TYPE_CHECKING:
    from timetiles_app.importer.context import PipelineSettings

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GeocodingService:
    def __init__(
        self,
        session: Session,
        providers: Sequence[GeocodingProviderClient],
        *,
        cache: GeocodeCache | None = None,
        min_confidence: float = 0.5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session = session
        self.providers = sorted(providers, key=lambda provider: provider.priority)
        self.cache = cache if cache is not None else GeocodeCache(session, clock=clock)
        self.min_confidence = min_confidence
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        session: Session,
        settings: "PipelineSettings",
        *,
        http_session: requests.Session | None = None,
    ) -> "GeocodingService":
        """
        Build the service from the provider table.

        An empty table falls back to ``GEOCODING_PROVIDERS_PATH`` when set and
        to the config-derived defaults otherwise.
        """
        configs = load_enabled_provider_configs(session)
        if configs is None:
            if settings.geocoding_providers_path:
                configs = [config for config in load_provider_configs(settings.geocoding_providers_path) if config.enabled]
            else:
                configs = default_provider_configs(settings)
        http_session = http_session or requests.Session()
        providers = [
            build_provider(config, session=http_session, timeout=settings.geocoding_timeout_seconds)
            for config in configs
        ]
        logger.debug("Geocoding providers: %s", ", ".join(provider.name for provider in providers) or "none")
        return cls(
            session,
            providers,
            cache=GeocodeCache(session, ttl_days=settings.geocoding_cache_ttl_days),
            min_confidence=settings.geocoding_min_confidence,
        )

    def is_acceptable(self, result: GeocodingResult) -> bool:
        return (
            result.confidence >= self.min_confidence
            and is_valid_latitude(result.latitude)
            and is_valid_longitude(result.longitude)
        )

    def geocode(self, address: str) -> GeocodingResult:
        """Geocode ``address``; raises ``GeocodingFailed`` when no provider produced an acceptable result."""
        address = (address or "").strip()
        if not address:
            raise GeocodingFailed(address, ["empty address"])
        normalized = normalize_address(address)

        if self.cache.enabled:
            cached = self.cache.lookup(normalized)
            record_geocode_cache_lookup(cached is not None)
            if cached is not None:
                logger.debug("Geocode cache hit for %s", normalized)
                return cached

        failures: list[str] = []
        for provider in self.providers:
            try:
                result = provider.geocode(address)
            except ProviderError as exc:
                outcome = "rate_limited" if exc.rate_limited else "failure"
                record_geocoding_request(provider.name, outcome)
                self._record_provider_usage(provider, failed=True)
                logger.warning(
                    "Geocoding provider %s failed",
                    provider.name,
                    extra={"geocoding_provider": provider.name, "geocoding_error": str(exc)},
                )
                failures.append(str(exc))
                continue

            if result is None:
                record_geocoding_request(provider.name, "failure")
                self._record_provider_usage(provider, failed=True)
                failures.append(f"{provider.name}: no results")
                continue
            if not self.is_acceptable(result):
                record_geocoding_request(provider.name, "low_confidence")
                self._record_provider_usage(provider, failed=True)
                failures.append(
                    f"{provider.name}: result rejected (confidence {result.confidence:.2f}, "
                    f"{result.latitude}, {result.longitude})"
                )
                continue

            record_geocoding_request(provider.name, "success")
            self._record_provider_usage(provider, failed=False)
            result = with_normalized_address(result, normalized)
            self.cache.store(address, normalized, result)
            return result

        raise GeocodingFailed(address, failures)

    def _record_provider_usage(self, provider: GeocodingProviderClient, *, failed: bool) -> None:
        values = {
            "total_requests": GeocodingProvider.total_requests + 1,
            "last_used": self._clock(),
        }
        if failed:
            values["failed_requests"] = GeocodingProvider.failed_requests + 1
        self.session.execute(
            update(GeocodingProvider)
            .where(GeocodingProvider.name == provider.name)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
