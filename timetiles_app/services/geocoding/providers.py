"""
HTTP clients for the supported geocoding backends.

Each client turns one address into at most one ``GeocodingResult``. Transport
problems, HTTP errors and rate limiting raise ``ProviderError`` so the
service can fall through to the next provider; an empty answer returns None.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, ClassVar, Mapping

import requests

from timetiles_app.importer.errors import ProviderError
from timetiles_app.models import GeocodingProviderType

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

GOOGLE_LOCATION_TYPE_CONFIDENCE = {
    "ROOFTOP": 0.95,
    "RANGE_INTERPOLATED": 0.85,
    "GEOMETRIC_CENTER": 0.7,
}


@dataclass(frozen=True)
class GeocodingResult:
    latitude: float
    longitude: float
    confidence: float
    provider: str
    normalized_address: str | None = None
    formatted_address: str | None = None
    components: Mapping[str, Any] = field(default_factory=dict)
    from_cache: bool = False

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["components"] = dict(self.components)
        return payload


@dataclass(frozen=True)
class ProviderConfig:
    """Settings for one configured provider instance."""

    name: str
    provider_type: GeocodingProviderType
    enabled: bool = True
    priority: int = 10
    api_key: str | None = None
    base_url: str | None = None
    user_agent: str | None = None
    rate_limit: float | None = None
    timeout: float | None = None
    language: str | None = None

    @classmethod
    def from_model(cls, provider) -> "ProviderConfig":
        options = dict(provider.config_json or {})
        return cls(
            name=provider.name,
            provider_type=GeocodingProviderType(provider.provider_type),
            enabled=bool(provider.enabled),
            priority=int(provider.priority),
            api_key=options.get("api_key"),
            base_url=options.get("base_url"),
            user_agent=options.get("user_agent"),
            rate_limit=_optional_float(options.get("rate_limit")),
            timeout=_optional_float(options.get("timeout")),
            language=options.get("language"),
        )

    def options(self) -> dict[str, Any]:
        """Values stored in ``GeocodingProvider.config_json``."""
        payload = {
            "api_key": self.api_key,
            "base_url": self.base_url,
            "user_agent": self.user_agent,
            "rate_limit": self.rate_limit,
            "timeout": self.timeout,
            "language": self.language,
        }
        return {key: value for key, value in payload.items() if value is not None}


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def clamp_confidence(value: float) -> float:
    return min(max(float(value), 0.0), 1.0)


class GeocodingProviderClient:
    """Base class holding the shared HTTP plumbing."""

    provider_type: ClassVar[GeocodingProviderType]
    default_base_url: ClassVar[str]
    default_rate_limit: ClassVar[float | None] = None

    def __init__(
        self,
        config: ProviderConfig,
        *,
        session: requests.Session | None = None,
        timeout: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.name = config.name
        self.priority = config.priority
        self.session = session or requests.Session()
        self.timeout = config.timeout or timeout or DEFAULT_TIMEOUT_SECONDS
        self.base_url = config.base_url or self.default_base_url
        self.rate_limit = config.rate_limit if config.rate_limit is not None else self.default_rate_limit
        self._sleep = sleep
        self._last_request: float | None = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} priority={self.priority}>"

    def geocode(self, address: str) -> GeocodingResult | None:
        raise NotImplementedError

    def _throttle(self) -> None:
        if not self.rate_limit:
            return
        interval = 1.0 / self.rate_limit
        now = time.monotonic()
        if self._last_request is not None:
            wait = interval - (now - self._last_request)
            if wait > 0:
                self._sleep(wait)
        self._last_request = time.monotonic()

    def _get_json(self, params: Mapping[str, Any], headers: Mapping[str, str] | None = None) -> Any:
        self._throttle()
        try:
            response = self.session.get(self.base_url, params=dict(params), headers=dict(headers or {}), timeout=self.timeout)
        except requests.RequestException as exc:
            raise ProviderError(self.name, f"request failed: {exc}") from exc

        if response.status_code == 429:
            raise ProviderError(self.name, "rate limited (HTTP 429)", rate_limited=True)
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise ProviderError(self.name, f"HTTP {response.status_code}") from exc
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(self.name, "invalid JSON response") from exc

    def _coordinates(self, latitude: Any, longitude: Any) -> tuple[float, float]:
        try:
            return float(latitude), float(longitude)
        except (TypeError, ValueError) as exc:
            raise ProviderError(self.name, f"invalid coordinates in response: {latitude!r}, {longitude!r}") from exc


class GoogleGeocoder(GeocodingProviderClient):
    provider_type = GeocodingProviderType.GOOGLE
    default_base_url = "https://maps.googleapis.com/maps/api/geocode/json"

    def geocode(self, address: str) -> GeocodingResult | None:
        if not self.config.api_key:
            raise ProviderError(self.name, "missing API key")
        params = {"address": address, "key": self.config.api_key}
        if self.config.language:
            params["language"] = self.config.language
        payload = self._get_json(params)

        status = payload.get("status")
        if status == "ZERO_RESULTS":
            return None
        if status == "OVER_QUERY_LIMIT":
            raise ProviderError(self.name, "query limit exceeded", rate_limited=True)
        if status != "OK":
            raise ProviderError(self.name, f"status {status}: {payload.get('error_message', '')}".strip())

        results = payload.get("results") or []
        if not results:
            return None
        first = results[0]
        geometry = first.get("geometry") or {}
        location = geometry.get("location") or {}
        if location.get("lat") is None or location.get("lng") is None:
            return None
        latitude, longitude = self._coordinates(location["lat"], location["lng"])
        return GeocodingResult(
            latitude=latitude,
            longitude=longitude,
            confidence=self.confidence(first),
            provider=self.name,
            formatted_address=first.get("formatted_address"),
            components=self._components(first.get("address_components") or []),
        )

    @staticmethod
    def confidence(result: Mapping[str, Any]) -> float:
        location_type = (result.get("geometry") or {}).get("location_type")
        return clamp_confidence(GOOGLE_LOCATION_TYPE_CONFIDENCE.get(location_type, 0.6))

    @staticmethod
    def _components(parts: list[Mapping[str, Any]]) -> dict[str, Any]:
        by_type: dict[str, Mapping[str, Any]] = {}
        for part in parts:
            for kind in part.get("types") or ():
                by_type.setdefault(kind, part)

        def long_name(kind: str) -> str | None:
            part = by_type.get(kind)
            return part.get("long_name") if part else None

        region = by_type.get("administrative_area_level_1")
        return {
            "street_number": long_name("street_number"),
            "street_name": long_name("route"),
            "city": long_name("locality"),
            "region": region.get("short_name") if region else None,
            "postal_code": long_name("postal_code"),
            "country": long_name("country"),
        }


class OpenCageGeocoder(GeocodingProviderClient):
    provider_type = GeocodingProviderType.OPENCAGE
    default_base_url = "https://api.opencagedata.com/geocode/v1/json"

    def geocode(self, address: str) -> GeocodingResult | None:
        if not self.config.api_key:
            raise ProviderError(self.name, "missing API key")
        params = {"q": address, "key": self.config.api_key, "limit": 1, "no_annotations": 1}
        if self.config.language:
            params["language"] = self.config.language
        payload = self._get_json(params)

        results = payload.get("results") or []
        if not results:
            return None
        first = results[0]
        geometry = first.get("geometry") or {}
        if geometry.get("lat") is None or geometry.get("lng") is None:
            return None
        latitude, longitude = self._coordinates(geometry["lat"], geometry["lng"])
        components = first.get("components") or {}
        return GeocodingResult(
            latitude=latitude,
            longitude=longitude,
            confidence=self.confidence(first),
            provider=self.name,
            formatted_address=first.get("formatted"),
            components={
                "street_number": components.get("house_number"),
                "street_name": components.get("road"),
                "city": components.get("city") or components.get("town") or components.get("village"),
                "region": components.get("state_code") or components.get("state"),
                "postal_code": components.get("postcode"),
                "country": components.get("country"),
            },
        )

    @staticmethod
    def confidence(result: Mapping[str, Any]) -> float:
        # OpenCage reports confidence on a 1-10 scale.
        raw = result.get("confidence")
        try:
            return clamp_confidence(float(raw) / 10)
        except (TypeError, ValueError):
            return 0.7


class NominatimGeocoder(GeocodingProviderClient):
    provider_type = GeocodingProviderType.NOMINATIM
    default_base_url = "https://nominatim.openstreetmap.org/search"
    default_rate_limit = 1.0

    def geocode(self, address: str) -> GeocodingResult | None:
        params = {"q": address, "format": "jsonv2", "addressdetails": 1, "limit": 1}
        if self.config.language:
            params["accept-language"] = self.config.language
        headers = {"User-Agent": self.config.user_agent or "TimeTiles.io/1.0 (https://timetiles.io)"}
        payload = self._get_json(params, headers)

        if not isinstance(payload, list) or not payload:
            return None
        first = payload[0]
        if first.get("lat") is None or first.get("lon") is None:
            return None
        latitude, longitude = self._coordinates(first["lat"], first["lon"])
        details = first.get("address") or {}
        components = {
            "street_number": details.get("house_number"),
            "street_name": details.get("road"),
            "city": details.get("city") or details.get("town") or details.get("village"),
            "region": details.get("state"),
            "postal_code": details.get("postcode"),
            "country": details.get("country"),
        }
        return GeocodingResult(
            latitude=latitude,
            longitude=longitude,
            confidence=self.confidence(components),
            provider=self.name,
            formatted_address=first.get("display_name"),
            components=components,
        )

    @staticmethod
    def confidence(components: Mapping[str, Any]) -> float:
        confidence = 0.6
        if components.get("street_number") and components.get("street_name"):
            confidence += 0.2
        if components.get("city") and components.get("region"):
            confidence += 0.1
        return clamp_confidence(confidence)


PROVIDER_CLASSES: dict[GeocodingProviderType, type[GeocodingProviderClient]] = {
    GeocodingProviderType.GOOGLE: GoogleGeocoder,
    GeocodingProviderType.OPENCAGE: OpenCageGeocoder,
    GeocodingProviderType.NOMINATIM: NominatimGeocoder,
}


def build_provider(
    config: ProviderConfig,
    *,
    session: requests.Session | None = None,
    timeout: float | None = None,
) -> GeocodingProviderClient:
    provider_cls = PROVIDER_CLASSES[GeocodingProviderType(config.provider_type)]
    return provider_cls(config, session=session, timeout=timeout)


def with_normalized_address(result: GeocodingResult, normalized_address: str) -> GeocodingResult:
    return replace(result, normalized_address=normalized_address)
