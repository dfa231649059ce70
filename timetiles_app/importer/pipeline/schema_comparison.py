"""Diff two generated schemas and classify the changes."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping

from .field_stats import SchemaChange


@dataclass
class SchemaComparison:
    changes: list[SchemaChange] = field(default_factory=list)
    is_breaking: bool = False
    requires_approval: bool = False
    can_auto_approve: bool = True

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    @property
    def breaking_changes(self) -> list[SchemaChange]:
        return [change for change in self.changes if change.severity == "error"]

    @property
    def new_fields(self) -> list[SchemaChange]:
        return [change for change in self.changes if change.type == "new_field"]


def get_field_type(prop: Any) -> str:
    if not isinstance(prop, Mapping):
        return "unknown"
    prop_type = prop.get("type")
    if prop_type:
        if isinstance(prop_type, list):
            return " | ".join(str(t) for t in prop_type if t != "null")
        if isinstance(prop_type, Mapping):
            return json.dumps(prop_type, sort_keys=True)
        return str(prop_type)
    if prop.get("oneOf") or prop.get("anyOf"):
        return "union"
    if prop.get("enum"):
        return "enum"
    return "unknown"


def compare_schemas(old_schema: Mapping[str, Any] | None, new_schema: Mapping[str, Any]) -> SchemaComparison:
    """
    Compare top-level properties of ``old_schema`` and ``new_schema``.

    Removed fields, required new fields, type changes, removed enum values and
    fields becoming required are breaking.
    """
    old_props: Mapping[str, Any] = (old_schema or {}).get("properties") or {}
    new_props: Mapping[str, Any] = new_schema.get("properties") or {}
    old_required = list((old_schema or {}).get("required") or ())
    new_required = list(new_schema.get("required") or ())

    result = SchemaComparison()
    changes = result.changes

    for name in old_props:
        if name not in new_props:
            changes.append(
                SchemaChange(
                    type="removed_field",
                    path=name,
                    details={"description": f"Field '{name}' was removed"},
                    severity="error",
                    auto_approvable=False,
                )
            )
            result.is_breaking = True

    for name in new_props:
        if name in old_props:
            continue
        is_required = name in new_required
        changes.append(
            SchemaChange(
                type="new_field",
                path=name,
                details={
                    "description": f"Field '{name}' was added{' (required)' if is_required else ''}",
                    "required": is_required,
                },
                severity="error" if is_required else "info",
                auto_approvable=not is_required,
            )
        )
        if is_required:
            result.is_breaking = True

    for name, old_prop in old_props.items():
        new_prop = new_props.get(name)
        if new_prop is None:
            continue
        old_type = get_field_type(old_prop)
        new_type = get_field_type(new_prop)
        if old_type != new_type:
            changes.append(
                SchemaChange(
                    type="type_change",
                    path=name,
                    details={
                        "description": f"Field '{name}' type changed from {old_type} to {new_type}",
                        "old_type": old_type,
                        "new_type": new_type,
                    },
                    severity="error",
                    auto_approvable=False,
                )
            )
            result.is_breaking = True
            continue

        old_enum = list(old_prop.get("enum") or ()) if isinstance(old_prop, Mapping) else []
        new_enum = list(new_prop.get("enum") or ()) if isinstance(new_prop, Mapping) else []
        if old_enum and new_enum:
            added = [value for value in new_enum if value not in old_enum]
            removed = [value for value in old_enum if value not in new_enum]
            if added or removed:
                changes.append(
                    SchemaChange(
                        type="enum_change",
                        path=name,
                        details={
                            "description": f"Enum values changed for '{name}'",
                            "added": added,
                            "removed": removed,
                        },
                        severity="warning" if removed else "info",
                        auto_approvable=not removed,
                    )
                )
                if removed:
                    result.is_breaking = True

    for name in new_required:
        if name not in old_required and name in old_props:
            changes.append(
                SchemaChange(
                    type="format_change",
                    path=name,
                    details={"description": f"Field '{name}' became required"},
                    severity="error",
                    auto_approvable=False,
                )
            )
            result.is_breaking = True

    for name in old_required:
        if name not in new_required and name in new_props:
            changes.append(
                SchemaChange(
                    type="format_change",
                    path=name,
                    details={"description": f"Field '{name}' became optional"},
                    severity="info",
                    auto_approvable=True,
                )
            )

    result.requires_approval = any(change.severity in ("error", "warning") for change in changes)
    result.can_auto_approve = all(change.auto_approvable for change in changes)
    return result


def generate_change_summary(comparison: SchemaComparison) -> str:
    if not comparison.changes:
        return "No schema changes detected"

    lines = [
        "Schema Changes Summary:",
        f"- Total changes: {len(comparison.changes)}",
        f"- Breaking changes: {'Yes' if comparison.is_breaking else 'No'}",
        f"- Requires approval: {'Yes' if comparison.requires_approval else 'No'}",
        f"- Can auto-approve: {'Yes' if comparison.can_auto_approve else 'No'}",
    ]
    breaking = [change for change in comparison.changes if change.severity == "error"]
    other = [change for change in comparison.changes if change.severity != "error"]
    for title, group in (("Breaking Changes:", breaking), ("Non-Breaking Changes:", other)):
        if not group:
            continue
        lines.extend(("", title))
        for change in group:
            lines.append(f"  - {change.details.get('description') or f'{change.type} at {change.path}'}")
    return "\n".join(lines)
