"""
Detect which fields carry title, description, timestamp, location and
coordinates, based on field names and the collected value statistics.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Sequence

from timetiles_app.importer.contracts import FieldMappingOverrides, FieldMappings

from .field_stats import FieldStatistics

LATITUDE_BOUNDS = (-90.0, 90.0)
LONGITUDE_BOUNDS = (-180.0, 180.0)

_SEP = r"[_\s.-]?"

LATITUDE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^lat(itude)?$",
        rf"^lat{_SEP}deg(rees)?$",
        rf"^y{_SEP}coord(inate)?$",
        rf"^location{_SEP}lat(itude)?$",
        rf"^geo{_SEP}lat(itude)?$",
        rf"^decimal{_SEP}lat(itude)?$",
        rf"^wgs84{_SEP}lat(itude)?$",
        rf"^latitude{_SEP}decimal$",
        r"^breite$",
        r"^breitengrad$",
    )
)

LONGITUDE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^lon(g|gitude)?$",
        r"^lng$",
        rf"^lon{_SEP}deg(rees)?$",
        rf"^long{_SEP}deg(rees)?$",
        rf"^x{_SEP}coord(inate)?$",
        rf"^location{_SEP}(lon|lng|long|longitude)$",
        rf"^geo{_SEP}(lon|lng|long|longitude)$",
        rf"^decimal{_SEP}(lon|long|longitude)$",
        rf"^wgs84{_SEP}(lon|long|longitude)$",
        rf"^longitude{_SEP}decimal$",
        r"^länge$",
        r"^laenge$",
        r"^längengrad$",
    )
)

ADDRESS_PATTERN = re.compile(r"^(address|addr|location|place|street|city|state|zip|postal|country)", re.IGNORECASE)


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


FIELD_PATTERNS: Mapping[str, Mapping[str, Sequence[re.Pattern[str]]]] = {
    "title": {
        "eng": _compile(r"^title$", r"^name$", r"^event.*name$", r"^event.*title$", r"^label$", r"^event$"),
        "deu": _compile(r"^titel$", r"^name$", r"^bezeichnung$", r"^veranstaltung.*name$", r"^veranstaltung$"),
    },
    "description": {
        "eng": _compile(
            r"^description$", r"^details$", r"^summary$", r"^notes$", r"^text$", r"^content$", r"^event.*description$"
        ),
        "deu": _compile(r"^beschreibung$", r"^details$", r"^zusammenfassung$", r"^notizen$", r"^text$", r"^inhalt$"),
    },
    "timestamp": {
        "eng": _compile(
            r"^date$",
            r"^timestamp$",
            r"^datetime$",
            r"^date.*time$",
            r"^created.*at$",
            r"^event.*date$",
            r"^event.*time$",
            r"^time$",
            r"^when$",
        ),
        "deu": _compile(r"^datum$", r"^zeitstempel$", r"^erstellt.*am$", r"^veranstaltung.*datum$", r"^zeit$"),
    },
    "location": {
        "eng": _compile(
            r"^address$",
            r"^addr$",
            r"^location$",
            r"^place$",
            r"^venue$",
            r"^city$",
            r"^town$",
            r"^region$",
            r"^area$",
            r"^street$",
            r"^full.*address$",
            r"^event.*location$",
            r"^event.*address$",
            r"^event.*place$",
            r"^postal.*address$",
        ),
        "deu": _compile(
            r"^adresse$", r"^ort$", r"^standort$", r"^veranstaltungsort$", r"^stadt$", r"^straße$", r"^strasse$"
        ),
    },
}

# Original three-letter codes map onto the pattern tables above.
_LANGUAGE_ALIASES = {"en": "eng", "de": "deu", "ger": "deu"}


def _field_name(path: str) -> str:
    return path.split(".")[-1].replace("[]", "")


def _string_values(stats: FieldStatistics) -> list[str]:
    return [value for value in stats.unique_samples if isinstance(value, str)]


def _avg_length(values: Sequence[str]) -> float:
    return sum(len(value) for value in values) / len(values) if values else 0.0


def _string_ratio(stats: FieldStatistics) -> float:
    if not stats.occurrences:
        return 0.0
    return stats.type_distribution.get("string", 0) / stats.occurrences


def _validate_title(stats: FieldStatistics) -> float:
    if _string_ratio(stats) < 0.8:
        return 0.0
    values = _string_values(stats)
    if not values:
        return 0.0 if stats.unique_samples else 0.5
    avg = _avg_length(values)
    if 10 <= avg <= 100:
        return 1.0
    if 5 <= avg <= 200:
        return 0.8
    if avg < 3 or avg > 500:
        return 0.3
    return 0.6


def _validate_description(stats: FieldStatistics) -> float:
    if _string_ratio(stats) < 0.7:
        return 0.0
    values = _string_values(stats)
    if not values:
        return 0.0 if stats.unique_samples else 0.5
    avg = _avg_length(values)
    if 20 <= avg <= 500:
        return 1.0
    if 10 <= avg <= 1000:
        return 0.8
    if avg < 5:
        return 0.2
    if avg > 1000:
        return 0.7
    return 0.6


def _validate_timestamp(stats: FieldStatistics) -> float:
    if not stats.occurrences:
        return 0.0
    date_formats = stats.formats.get("date", 0) + stats.formats.get("date_time", 0)
    if date_formats:
        return min(1.0, 0.7 + (date_formats / stats.occurrences) * 0.3)
    if stats.type_distribution.get("date"):
        return 0.8
    numeric = stats.numeric_stats
    if numeric is not None:
        if 1_000_000_000 < numeric.min and numeric.max < 9_999_999_999:
            return 0.8
        if 1_000_000_000_000 < numeric.min and numeric.max < 9_999_999_999_999:
            return 0.8
    return 0.0


def _validate_location(stats: FieldStatistics) -> float:
    if _string_ratio(stats) < 0.7:
        return 0.0
    values = _string_values(stats)
    if not values:
        return 0.5
    avg = _avg_length(values)
    if 3 <= avg <= 200:
        return 1.0
    return 0.5


_VALIDATORS = {
    "title": _validate_title,
    "description": _validate_description,
    "timestamp": _validate_timestamp,
    "location": _validate_location,
}


def _find_best_match(
    field_stats: Mapping[str, FieldStatistics],
    patterns: Sequence[re.Pattern[str]],
    field_type: str,
) -> tuple[str, float] | None:
    best: tuple[str, float] | None = None
    for path, stats in field_stats.items():
        name = _field_name(path)
        index = next((i for i, pattern in enumerate(patterns) if pattern.search(name)), None)
        if index is None:
            continue
        validation = _VALIDATORS[field_type](stats)
        if validation == 0:
            continue
        score = (1 - index / len(patterns)) * 0.6 + validation * 0.4
        if best is None or score > best[1]:
            best = (path, score)
    return best


def detect_field(field_stats: Mapping[str, FieldStatistics], field_type: str, language: str = "eng") -> tuple[str, float] | None:
    language = _LANGUAGE_ALIASES.get(language, language)
    tables = FIELD_PATTERNS[field_type]
    match = _find_best_match(field_stats, tables.get(language, tables["eng"]), field_type)
    if match is None and language != "eng":
        match = _find_best_match(field_stats, tables["eng"], field_type)
    return match


def _coordinate_confidence(stats: FieldStatistics, bounds: tuple[float, float]) -> float:
    """
    Confidence that a name-matched field holds coordinates.

    Weights: name pattern 0.4, numeric type 0.3, values inside bounds 0.2,
    completeness 0.1.
    """
    if not stats.occurrences:
        return 0.0
    score = 0.4
    numeric_count = stats.type_distribution.get("integer", 0) + stats.type_distribution.get("number", 0)
    numeric_strings = stats.formats.get("numeric", 0)
    non_null = stats.occurrences - stats.null_count
    if non_null and (numeric_count + numeric_strings) / non_null >= 0.8:
        score += 0.3
    numeric = stats.numeric_stats
    if numeric is not None and bounds[0] <= numeric.min and numeric.max <= bounds[1]:
        score += 0.2
    elif numeric is None and numeric_strings:
        in_bounds = [
            float(value)
            for value in stats.unique_samples
            if isinstance(value, str) and re.match(r"^-?\d+(\.\d+)?$", value)
        ]
        if in_bounds and all(bounds[0] <= value <= bounds[1] for value in in_bounds):
            score += 0.2
    score += 0.1 * (non_null / stats.occurrences)
    return round(min(score, 1.0), 4)


def _detect_coordinate(
    field_stats: Mapping[str, FieldStatistics],
    patterns: Sequence[re.Pattern[str]],
    bounds: tuple[float, float],
) -> tuple[str, float] | None:
    best: tuple[str, float] | None = None
    for path, stats in field_stats.items():
        name = _field_name(path)
        if not any(pattern.match(name) for pattern in patterns):
            continue
        confidence = _coordinate_confidence(stats, bounds)
        # Name match alone is not enough: the values must look like coordinates.
        if confidence < 0.7:
            continue
        if best is None or confidence > best[1]:
            best = (path, confidence)
    return best


def _detect_address(field_stats: Mapping[str, FieldStatistics]) -> tuple[str, float] | None:
    for path in sorted(field_stats):
        if ADDRESS_PATTERN.match(_field_name(path)) and _validate_location(field_stats[path]) > 0:
            return path, 0.6
    return None


def detect_field_mappings(
    field_stats: Mapping[str, FieldStatistics],
    language: str = "eng",
    overrides: FieldMappingOverrides | None = None,
) -> FieldMappings:
    """Detect mappings, letting non-empty dataset overrides win."""
    confidence: dict[str, float] = {}
    detected: dict[str, Any] = {}

    for field_type in ("title", "description", "timestamp"):
        match = detect_field(field_stats, field_type, language)
        if match:
            detected[f"{field_type}_path"], confidence[field_type] = match[0], round(match[1], 4)

    latitude = _detect_coordinate(field_stats, LATITUDE_PATTERNS, LATITUDE_BOUNDS)
    longitude = _detect_coordinate(field_stats, LONGITUDE_PATTERNS, LONGITUDE_BOUNDS)
    if latitude and longitude:
        detected["latitude_path"], confidence["latitude"] = latitude
        detected["longitude_path"], confidence["longitude"] = longitude

    location = detect_field(field_stats, "location", language) or _detect_address(field_stats)
    if location:
        detected["location_path"], confidence["location"] = location[0], round(location[1], 4)

    if overrides is not None:
        for key, value in overrides.as_dict().items():
            detected[key] = value
            confidence[key.removesuffix("_path")] = 1.0

    return FieldMappings(confidence=confidence, **detected)
