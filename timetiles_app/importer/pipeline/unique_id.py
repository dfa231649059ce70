"""
Deterministic unique identifiers for imported rows.

The identifier decides duplicate detection, so every strategy here is a pure
function of the row, the dataset id and (for ``positional``) the row number.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Mapping

from timetiles_app.importer.contracts import IdStrategy
from timetiles_app.importer.errors import UniqueIdError

MAX_EXTERNAL_ID_LENGTH = 255
_EXTERNAL_ID_PATTERN = re.compile(r"^[\w\-.:]+$")


def get_by_path(row: Any, path: str | None) -> Any:
    """Return the value at a dotted path (``metadata.uuid``) or None."""
    if not path:
        return None
    current = row
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def _stable_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def sanitize_external_id(value: Any) -> str:
    text = str(value).strip()
    if not text or len(text) > MAX_EXTERNAL_ID_LENGTH:
        raise UniqueIdError(f"External ID must be 1-{MAX_EXTERNAL_ID_LENGTH} characters")
    if not _EXTERNAL_ID_PATTERN.match(text):
        raise UniqueIdError(f"External ID contains invalid characters: {text!r}")
    return text


def content_hash(row: Mapping[str, Any]) -> str:
    return hashlib.sha256(_stable_json(row).encode("utf-8")).hexdigest()


def _external_id(row: Mapping[str, Any], strategy: IdStrategy, dataset_id: int | str) -> str:
    value = get_by_path(row, strategy.external_id_path)
    if value is None or value == "":
        raise UniqueIdError(f"Missing external ID at path: {strategy.external_id_path or 'unknown'}")
    return f"{dataset_id}:ext:{sanitize_external_id(value)}"


def _computed_id(row: Mapping[str, Any], strategy: IdStrategy, dataset_id: int | str) -> str:
    if not strategy.computed_id_fields:
        raise UniqueIdError("Computed ID strategy has no fields configured")
    values: list[tuple[str, Any]] = []
    missing: list[str] = []
    for field_path in strategy.computed_id_fields:
        value = get_by_path(row, field_path)
        if value is None:
            missing.append(field_path)
        else:
            values.append((field_path, value))
    if missing:
        raise UniqueIdError(f"Missing required fields for computed ID: {', '.join(missing)}")
    joined = "|".join(f"{field_path}:{_stable_json(value)}" for field_path, value in sorted(values))
    digest = hashlib.sha256(f"{dataset_id}:{joined}".encode("utf-8")).hexdigest()[:16]
    return f"{dataset_id}:comp:{digest}"


def generate_unique_id(
    row: Mapping[str, Any],
    strategy: IdStrategy,
    dataset_id: int | str,
    *,
    row_number: int | None = None,
) -> str:
    """
    Derive the unique id of ``row`` under ``strategy``.

    Raises:
        UniqueIdError: when the strategy cannot produce an id for the row.
    """
    if strategy.type == "external":
        return _external_id(row, strategy, dataset_id)
    if strategy.type == "content-hash":
        return f"{dataset_id}:hash:{content_hash(row)}"
    if strategy.type == "positional":
        if row_number is None:
            raise UniqueIdError("Positional ID strategy requires a row number")
        return f"{dataset_id}:row:{row_number}"
    if strategy.type == "computed":
        return _computed_id(row, strategy, dataset_id)
    if strategy.type == "hybrid":
        try:
            return _external_id(row, strategy, dataset_id)
        except UniqueIdError as external_error:
            try:
                return _computed_id(row, strategy, dataset_id)
            except UniqueIdError as computed_error:
                raise UniqueIdError(
                    f"Hybrid ID failed: external ({external_error}); computed ({computed_error})"
                ) from computed_error
    raise UniqueIdError(f"Unknown ID strategy: {strategy.type}")
