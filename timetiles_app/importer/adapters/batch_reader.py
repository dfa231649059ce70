"""Stateless batch reader for tabular import files.

Every call re-opens the file and returns one window of data rows, so a stage
can be retried or resumed on another worker from nothing but ``start_row``.
Row numbers are zero-based offsets over the data rows (the header row is not
counted); blank and malformed rows consume a number but are not returned.
"""

from __future__ import annotations

import csv
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from itertools import islice
from pathlib import Path
from typing import Any, Iterator, Sequence

import pandas as pd

from timetiles_app.importer.errors import BatchReaderError, UnsupportedFileType

logger = logging.getLogger(__name__)

CSV_EXTENSIONS: tuple[str, ...] = (".csv", ".tsv", ".txt")
SPREADSHEET_EXTENSIONS: tuple[str, ...] = (".xlsx", ".xlsm", ".xls")

_INT_PATTERN = re.compile(r"^-?\d+$")
_FLOAT_PATTERN = re.compile(r"^-?(\d+\.\d*|\.\d+|\d+)([eE][-+]?\d+)?$")


@dataclass(frozen=True)
class RowError:
    row_number: int
    message: str


@dataclass
class BatchReadResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    row_numbers: list[int] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    start_row: int = 0
    rows_scanned: int = 0
    end_of_file: bool = True

    def numbered_rows(self) -> Iterator[tuple[int, dict[str, Any]]]:
        return zip(self.row_numbers, self.rows)

    @property
    def next_start_row(self) -> int:
        return self.start_row + self.rows_scanned


def _sanitize_header(header: Any, position: int) -> str:
    token = str(header if header is not None else "").strip().lstrip("\ufeff")
    return token or f"column_{position + 1}"


def coerce_cell(value: Any) -> Any:
    """Convert a raw CSV cell into None/bool/int/float/str."""
    if value is None:
        return None
    if not isinstance(value, str):
        return value
    text = value.strip()
    if text == "":
        return None
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if _INT_PATTERN.match(text):
        try:
            return int(text)
        except ValueError:
            return text
    if _FLOAT_PATTERN.match(text):
        try:
            return float(text)
        except ValueError:
            return text
    return text


def _normalize_spreadsheet_cell(value: Any) -> Any:
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    if isinstance(value, (pd.Timestamp, datetime)):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if hasattr(value, "item"):
        # numpy scalar
        value = value.item()
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        return coerce_cell(value)
    return value


def _row_is_blank(cells: Sequence[Any]) -> bool:
    return all(cell is None or (isinstance(cell, str) and cell.strip() == "") for cell in cells)


def _file_kind(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in CSV_EXTENSIONS:
        return "csv"
    if suffix in SPREADSHEET_EXTENSIONS:
        return "spreadsheet"
    raise UnsupportedFileType(str(path))


def _read_csv_batch(path: Path, start_row: int, limit: int) -> BatchReadResult:
    result = BatchReadResult(start_row=start_row)
    delimiter = "\t" if path.suffix.lower() == ".tsv" else ","
    try:
        handle = path.open("r", encoding="utf-8-sig", newline="")
    except OSError as exc:
        raise BatchReaderError(f"Unable to open '{path}': {exc}") from exc

    with handle:
        reader = csv.reader(handle, delimiter=delimiter)
        try:
            raw_headers = next(reader)
        except StopIteration:
            return result
        except csv.Error as exc:
            raise BatchReaderError(f"Unable to read header row of '{path}': {exc}") from exc
        headers = [_sanitize_header(header, position) for position, header in enumerate(raw_headers)]

        row_number = -1
        while True:
            try:
                cells = next(reader)
            except StopIteration:
                result.end_of_file = True
                break
            except csv.Error as exc:
                row_number += 1
                if row_number >= start_row:
                    result.errors.append(RowError(row_number, f"Malformed CSV row: {exc}"))
                    result.rows_scanned += 1
                if result.rows_scanned >= limit:
                    result.end_of_file = False
                    break
                continue

            row_number += 1
            if row_number < start_row:
                continue
            result.rows_scanned += 1

            if not _row_is_blank(cells):
                if len(cells) > len(headers):
                    result.errors.append(
                        RowError(
                            row_number,
                            f"Row has {len(cells)} cells but the header defines {len(headers)} columns.",
                        )
                    )
                else:
                    padded = list(cells) + [None] * (len(headers) - len(cells))
                    result.rows.append({header: coerce_cell(cell) for header, cell in zip(headers, padded)})
                    result.row_numbers.append(row_number)

            if result.rows_scanned >= limit:
                # Peek so the final full batch reports end_of_file correctly.
                try:
                    result.end_of_file = next(reader, None) is None
                except csv.Error:
                    result.end_of_file = False
                break
    return result


def _read_spreadsheet(path: Path, sheet_index: int, **kwargs: Any) -> pd.DataFrame:
    engine = "openpyxl" if path.suffix.lower() in (".xlsx", ".xlsm") else None
    try:
        return pd.read_excel(path, sheet_name=sheet_index, header=0, engine=engine, **kwargs)
    except (ValueError, IndexError, KeyError, ImportError, OSError) as exc:
        raise BatchReaderError(f"Unable to read sheet {sheet_index} of '{path}': {exc}") from exc


def _read_spreadsheet_batch(path: Path, sheet_index: int, start_row: int, limit: int) -> BatchReadResult:
    result = BatchReadResult(start_row=start_row)
    # Fetch one extra row to learn whether more data follows this window.
    frame = _read_spreadsheet(
        path,
        sheet_index,
        skiprows=range(1, start_row + 1) if start_row else None,
        nrows=limit + 1,
        dtype=object,
    )
    headers = [_sanitize_header(column, position) for position, column in enumerate(frame.columns)]
    records = frame.itertuples(index=False, name=None)
    for offset, cells in enumerate(islice(records, limit)):
        row_number = start_row + offset
        result.rows_scanned += 1
        values = [_normalize_spreadsheet_cell(cell) for cell in cells]
        if _row_is_blank(values):
            continue
        result.rows.append(dict(zip(headers, values)))
        result.row_numbers.append(row_number)
    result.end_of_file = len(frame.index) <= limit
    return result


def read_batch(
    path: str | Path,
    *,
    sheet_index: int = 0,
    start_row: int = 0,
    limit: int = 1000,
) -> BatchReadResult:
    """
    Read ``limit`` data rows starting at ``start_row``.

    Returns an empty result with ``end_of_file`` set once ``start_row`` is past
    the last row. Raises ``UnsupportedFileType`` for unknown extensions and
    ``BatchReaderError`` when the file cannot be opened.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    if start_row < 0:
        raise ValueError("start_row must not be negative")
    source = Path(path)
    kind = _file_kind(source)
    if not source.exists():
        raise BatchReaderError(f"Import file '{source}' does not exist.")
    if kind == "csv":
        result = _read_csv_batch(source, start_row, limit)
    else:
        result = _read_spreadsheet_batch(source, sheet_index, start_row, limit)
    if result.errors:
        logger.debug(
            "Batch read recorded %s row errors",
            len(result.errors),
            extra={"importer_file": str(source), "importer_start_row": start_row},
        )
    return result


def iter_batches(
    path: str | Path,
    *,
    sheet_index: int = 0,
    batch_size: int = 1000,
    start_row: int = 0,
) -> Iterator[BatchReadResult]:
    """Yield consecutive batches until the end of the file."""
    while True:
        batch = read_batch(path, sheet_index=sheet_index, start_row=start_row, limit=batch_size)
        if batch.rows_scanned == 0:
            return
        yield batch
        if batch.end_of_file:
            return
        start_row = batch.next_start_row


def count_rows(path: str | Path, *, sheet_index: int = 0) -> int:
    """Count data rows (blank rows excluded)."""
    source = Path(path)
    kind = _file_kind(source)
    if kind == "spreadsheet":
        frame = _read_spreadsheet(source, sheet_index, dtype=object)
        return int((~frame.isna().all(axis=1)).sum())
    total = 0
    for batch in iter_batches(source, sheet_index=sheet_index, batch_size=5000):
        total += len(batch.rows) + len(batch.errors)
    return total
