import pytest

from timetiles_app.importer.contracts import SchemaConfig
from timetiles_app.importer.errors import ImporterError
from timetiles_app.importer.pipeline import (
    create_schema_version,
    get_latest_schema,
    get_schema_freshness,
    run_schema_maintenance,
)
from timetiles_app.importer.pipeline import schema_versioning
from timetiles_app.importer.pipeline.schema_comparison import compare_schemas, generate_change_summary
from timetiles_app.importer.pipeline.schema_maintenance import MAINTENANCE_NOTE
from timetiles_app.importer.pipeline.schema_versioning import decide_approval
from timetiles_app.models import DatasetSchema, Event, db

OLD = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "count": {"type": "integer"},
        "kind": {"type": "string", "enum": ["a", "b"]},
    },
    "required": ["title"],
}


def _schema(properties, required=()):
    return {"type": "object", "properties": properties, "required": list(required)}


def _add_events(dataset, count):
    for n in range(count):
        db.session.add(
            Event(dataset_id=dataset.id, unique_id=f"{dataset.id}:row:{n}", data_json={"title": f"Event {n}", "n": n})
        )
    db.session.commit()


class TestCompareSchemas:
    def test_identical_schemas_have_no_changes(self):
        comparison = compare_schemas(OLD, OLD)

        assert comparison.has_changes is False
        assert generate_change_summary(comparison) == "No schema changes detected"

    def test_removed_field_and_type_change_are_breaking(self):
        new = _schema({"title": {"type": "integer"}, "kind": OLD["properties"]["kind"]}, ["title"])

        comparison = compare_schemas(OLD, new)

        assert comparison.is_breaking is True
        assert {(change.type, change.path) for change in comparison.breaking_changes} == {
            ("removed_field", "count"),
            ("type_change", "title"),
        }
        assert comparison.can_auto_approve is False
        assert "Breaking changes: Yes" in generate_change_summary(comparison)

    def test_optional_new_field_and_added_enum_value_are_safe(self):
        new = _schema(
            {
                **OLD["properties"],
                "kind": {"type": "string", "enum": ["a", "b", "c"]},
                "venue": {"type": "string"},
            },
            ["title"],
        )

        comparison = compare_schemas(OLD, new)

        assert comparison.is_breaking is False
        assert comparison.requires_approval is False
        assert [change.path for change in comparison.new_fields] == ["venue"]

    def test_removed_enum_value_and_required_field_are_breaking(self):
        new = _schema(
            {**OLD["properties"], "kind": {"type": "string", "enum": ["a"]}, "venue": {"type": "string"}},
            ["title", "count", "venue"],
        )

        comparison = compare_schemas(OLD, new)

        kinds = {(change.type, change.path, change.severity) for change in comparison.changes}
        assert ("enum_change", "kind", "warning") in kinds
        assert ("new_field", "venue", "error") in kinds
        assert ("format_change", "count", "error") in kinds
        assert comparison.is_breaking is True

    def test_nullable_union_types_compare_by_non_null_members(self):
        old = _schema({"score": {"type": ["integer", "null"]}})
        new = _schema({"score": {"type": "integer"}})

        assert compare_schemas(old, new).has_changes is False


class TestDecideApproval:
    breaking = compare_schemas(OLD, _schema({"title": {"type": "string"}}))
    additive = compare_schemas(OLD, _schema({**OLD["properties"], "venue": {"type": "string"}}, ["title"]))
    unchanged = compare_schemas(OLD, OLD)

    def test_no_changes_never_need_approval(self):
        assert decide_approval(SchemaConfig(mode="strict"), self.unchanged, has_existing_version=True).requires_approval is False

    @pytest.mark.parametrize(
        ("config", "comparison_name", "expected"),
        [
            (SchemaConfig(mode="additive"), "additive", False),
            (SchemaConfig(mode="additive"), "breaking", True),
            (SchemaConfig(mode="flexible"), "breaking", False),
            (SchemaConfig(mode="strict"), "additive", True),
            (SchemaConfig(mode="flexible", locked=True), "additive", True),
            (SchemaConfig(mode="additive", auto_approve_non_breaking=False), "additive", True),
        ],
    )
    def test_mode_policy(self, config, comparison_name, expected):
        comparison = getattr(self, comparison_name)

        decision = decide_approval(config, comparison, has_existing_version=True)

        assert decision.requires_approval is expected
        assert (decision.reason is not None) is expected

    def test_first_version_is_never_breaking(self):
        first = compare_schemas(None, OLD)

        assert first.is_breaking is True
        assert decide_approval(SchemaConfig(), first, has_existing_version=False).requires_approval is False


def test_versions_are_numbered_per_dataset(dataset_factory):
    first = dataset_factory()
    second = dataset_factory(name="Second")

    v1 = create_schema_version(db.session, dataset_id=first.id, schema=OLD)
    v2 = create_schema_version(db.session, dataset_id=first.id, schema=OLD, import_job_ids=[4, 5])
    other = create_schema_version(db.session, dataset_id=second.id, schema=OLD)
    db.session.commit()

    assert (v1.version_number, v2.version_number, other.version_number) == (1, 2, 1)
    assert v2.import_job_ids == [4, 5]
    assert get_latest_schema(db.session, first.id).id == v2.id


def test_taken_version_number_is_retried(dataset_factory, monkeypatch):
    dataset = dataset_factory()
    create_schema_version(db.session, dataset_id=dataset.id, schema=OLD)
    db.session.commit()

    # A stale read hands out the already used number first.
    numbers = iter([1, 2])
    monkeypatch.setattr(schema_versioning, "_next_version_number", lambda session, dataset_id: next(numbers))

    version = create_schema_version(db.session, dataset_id=dataset.id, schema=OLD)
    db.session.commit()

    assert version.version_number == 2
    assert db.session.query(DatasetSchema).filter_by(dataset_id=dataset.id).count() == 2


def test_version_allocation_gives_up(dataset_factory, monkeypatch):
    dataset = dataset_factory()
    create_schema_version(db.session, dataset_id=dataset.id, schema=OLD)
    db.session.commit()
    monkeypatch.setattr(schema_versioning, "_next_version_number", lambda session, dataset_id: 1)

    with pytest.raises(ImporterError, match="Could not allocate"):
        create_schema_version(db.session, dataset_id=dataset.id, schema=OLD)


def test_schema_freshness_tracks_event_count(dataset_factory):
    dataset = dataset_factory()
    assert get_schema_freshness(db.session, dataset.id).reason == "no_schema"

    create_schema_version(db.session, dataset_id=dataset.id, schema=OLD)
    db.session.commit()
    assert get_schema_freshness(db.session, dataset.id).stale is False

    _add_events(dataset, 2)
    freshness = get_schema_freshness(db.session, dataset.id)
    assert (freshness.stale, freshness.reason, freshness.current_event_count) == (True, "added", 2)

    create_schema_version(db.session, dataset_id=dataset.id, schema=OLD, event_count=5)
    db.session.commit()
    freshness = get_schema_freshness(db.session, dataset.id)
    assert freshness.reason == "deleted"
    assert freshness.latest_version == 2


def test_maintenance_regenerates_only_stale_schemas(dataset_factory):
    stale = dataset_factory(name="Stale")
    _add_events(stale, 3)
    empty = dataset_factory(name="Empty")
    fresh = dataset_factory(name="Fresh")
    _add_events(fresh, 1)
    create_schema_version(db.session, dataset_id=fresh.id, schema=OLD, event_count=1)
    db.session.commit()

    summary = run_schema_maintenance(db.session).as_dict()

    assert summary["datasets_checked"] == 3
    assert summary["schemas_generated"] == 1
    assert summary["schemas_skipped"] == 2
    reasons = {detail["dataset_name"]: detail["reason"] for detail in summary["details"]}
    assert reasons["Empty"] == "No events in dataset"
    assert reasons["Fresh"] == "Schema is up-to-date"

    version = get_latest_schema(db.session, stale.id)
    assert version.version_number == 1
    assert version.auto_approved is True
    assert version.approval_notes == MAINTENANCE_NOTE
    assert version.event_count_at_creation == 3
    assert set(version.schema_json["properties"]) == {"title", "n"}
    assert get_schema_freshness(db.session, stale.id).stale is False
    assert get_latest_schema(db.session, empty.id) is None


def test_forced_maintenance_limited_to_selected_datasets(dataset_factory):
    fresh = dataset_factory(name="Fresh")
    _add_events(fresh, 1)
    create_schema_version(db.session, dataset_id=fresh.id, schema=OLD, event_count=1)
    other = dataset_factory(name="Other")
    _add_events(other, 1)

    summary = run_schema_maintenance(db.session, force=True, dataset_ids=[fresh.id])

    assert summary.datasets_checked == 1
    assert summary.generated == 1
    assert get_latest_schema(db.session, fresh.id).version_number == 2
    assert get_latest_schema(db.session, other.id) is None
    assert run_schema_maintenance(db.session, max_datasets=1).datasets_checked == 1
