import pandas as pd
import pytest

from timetiles_app.importer.adapters import count_rows, iter_batches, read_batch
from timetiles_app.importer.adapters.batch_reader import coerce_cell
from timetiles_app.importer.errors import BatchReaderError, UnsupportedFileType


@pytest.fixture
def messy_csv(tmp_path):
    path = tmp_path / "messy.csv"
    path.write_text("id,name,count\n1,Alice,3\n\n2,Bob,4,extra\n3,Carol,\n", encoding="utf-8")
    return path


def test_read_batch_numbers_rows_and_records_errors(messy_csv):
    batch = read_batch(messy_csv, limit=10)

    assert batch.row_numbers == [0, 3]
    assert batch.rows == [
        {"id": 1, "name": "Alice", "count": 3},
        {"id": 3, "name": "Carol", "count": None},
    ]
    assert [error.row_number for error in batch.errors] == [2]
    assert batch.rows_scanned == 4
    assert batch.end_of_file is True


def test_read_batch_windows_are_resumable(messy_csv):
    first = read_batch(messy_csv, start_row=0, limit=2)
    assert first.row_numbers == [0]
    assert first.end_of_file is False
    assert first.next_start_row == 2

    second = read_batch(messy_csv, start_row=first.next_start_row, limit=2)
    assert second.row_numbers == [3]
    assert [error.row_number for error in second.errors] == [2]
    assert second.end_of_file is True


def test_read_batch_past_end_is_empty(messy_csv):
    batch = read_batch(messy_csv, start_row=50, limit=5)
    assert batch.rows == []
    assert batch.rows_scanned == 0
    assert batch.end_of_file is True


def test_iter_batches_and_count_rows(messy_csv):
    batches = list(iter_batches(messy_csv, batch_size=2))
    assert len(batches) == 2
    assert count_rows(messy_csv) == 3


def test_read_batch_handles_bom_and_blank_headers(tmp_path):
    path = tmp_path / "bom.csv"
    path.write_text("﻿id,,title\n1,x,Hello\n", encoding="utf-8")

    batch = read_batch(path)
    assert batch.rows == [{"id": 1, "column_2": "x", "title": "Hello"}]


def test_read_batch_rejects_unknown_and_missing_files(tmp_path):
    with pytest.raises(UnsupportedFileType):
        read_batch(tmp_path / "data.json")
    with pytest.raises(BatchReaderError):
        read_batch(tmp_path / "missing.csv")
    with pytest.raises(ValueError):
        read_batch(tmp_path / "missing.csv", limit=0)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("true", True),
        ("FALSE", False),
        ("42", 42),
        ("-1.5", -1.5),
        ("  padded  ", "padded"),
        ("", None),
        ("2024-01-05", "2024-01-05"),
    ],
)
def test_coerce_cell(raw, expected):
    assert coerce_cell(raw) == expected


def test_read_batch_reads_selected_sheet(tmp_path):
    path = tmp_path / "workbook.xlsx"
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        pd.DataFrame({"id": [9], "city": ["Paris"]}).to_excel(writer, sheet_name="first", index=False)
        pd.DataFrame({"id": [1, 2, 3], "city": ["Oslo", "Rome", "Lima"]}).to_excel(
            writer, sheet_name="second", index=False
        )

    batch = read_batch(path, sheet_index=1, start_row=1, limit=1)
    assert batch.rows == [{"id": 2, "city": "Rome"}]
    assert batch.row_numbers == [1]
    assert batch.end_of_file is False

    assert count_rows(path, sheet_index=1) == 3
    with pytest.raises(BatchReaderError):
        read_batch(path, sheet_index=5)
