"""
Geocoding services package
"""

from .cache import GeocodeCache, normalize_address
from .coordinates import CoordinateValidation, parse_coordinate, validate_coordinates
from .provider_config import default_provider_configs, load_provider_configs, sync_providers
from .providers import (
    GeocodingProviderClient,
    GeocodingResult,
    GoogleGeocoder,
    NominatimGeocoder,
    OpenCageGeocoder,
    ProviderConfig,
    build_provider,
)
from .service import GeocodingService

__all__ = [
    "CoordinateValidation",
    "GeocodeCache",
    "GeocodingProviderClient",
    "GeocodingResult",
    "GeocodingService",
    "GoogleGeocoder",
    "NominatimGeocoder",
    "OpenCageGeocoder",
    "ProviderConfig",
    "build_provider",
    "default_provider_configs",
    "load_provider_configs",
    "normalize_address",
    "parse_coordinate",
    "sync_providers",
    "validate_coordinates",
]
