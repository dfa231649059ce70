import pytest

from timetiles_app.importer.contracts import IdStrategy
from timetiles_app.importer.errors import UniqueIdError
from timetiles_app.importer.pipeline.unique_id import content_hash, generate_unique_id, get_by_path


def test_external_id_reads_nested_path():
    strategy = IdStrategy.coerce({"type": "external", "external_id_path": "meta.uuid"})
    row = {"meta": {"uuid": "abc-123"}, "title": "x"}

    assert generate_unique_id(row, strategy, 7) == "7:ext:abc-123"


@pytest.mark.parametrize("value", [None, "", "has space", "x" * 256])
def test_external_id_rejects_missing_or_invalid_values(value):
    strategy = IdStrategy(type="external", external_id_path="id")

    with pytest.raises(UniqueIdError):
        generate_unique_id({"id": value}, strategy, 1)


def test_content_hash_ignores_key_order():
    strategy = IdStrategy(type="content-hash")
    first = generate_unique_id({"a": 1, "b": "two"}, strategy, 3)
    second = generate_unique_id({"b": "two", "a": 1}, strategy, 3)

    assert first == second
    assert first == f"3:hash:{content_hash({'a': 1, 'b': 'two'})}"
    assert generate_unique_id({"a": 2, "b": "two"}, strategy, 3) != first


def test_positional_requires_row_number():
    strategy = IdStrategy(type="positional")

    assert generate_unique_id({}, strategy, 4, row_number=12) == "4:row:12"
    with pytest.raises(UniqueIdError):
        generate_unique_id({}, strategy, 4)


def test_computed_id_is_stable_and_scoped_to_dataset():
    strategy = IdStrategy.coerce(
        {"type": "computed", "computed_id_fields": [{"field_path": "title"}, "date"]}
    )
    row = {"title": "Parade", "date": "2024-05-01", "noise": 1}

    first = generate_unique_id(row, strategy, 5)
    assert first.startswith("5:comp:")
    assert len(first.split(":")[-1]) == 16
    assert generate_unique_id({**row, "noise": 2}, strategy, 5) == first
    assert generate_unique_id(row, strategy, 6).split(":")[-1] != first.split(":")[-1]

    with pytest.raises(UniqueIdError, match="date"):
        generate_unique_id({"title": "Parade"}, strategy, 5)


def test_hybrid_falls_back_to_computed():
    strategy = IdStrategy.coerce(
        {"type": "hybrid", "external_id_path": "id", "computed_id_fields": ["title"]}
    )

    assert generate_unique_id({"id": "e1", "title": "A"}, strategy, 2) == "2:ext:e1"
    assert generate_unique_id({"title": "A"}, strategy, 2).startswith("2:comp:")
    with pytest.raises(UniqueIdError, match="Hybrid ID failed"):
        generate_unique_id({"other": 1}, strategy, 2)


def test_legacy_strategy_alias_and_unknown_type():
    assert IdStrategy.coerce({"type": "auto"}).type == "content-hash"
    with pytest.raises(ValueError):
        IdStrategy.coerce({"type": "sequence"})


def test_get_by_path_walks_lists():
    row = {"tags": [{"name": "music"}, {"name": "outdoor"}]}

    assert get_by_path(row, "tags.1.name") == "outdoor"
    assert get_by_path(row, "tags.5.name") is None
    assert get_by_path(row, "") is None
