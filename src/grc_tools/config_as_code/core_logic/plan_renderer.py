from typing import Any, List

from ..models import ApplyResult, Plan, PlannedChange
from ..resources.registry import get_definition


def _display(value: Any) -> str:
    return f"'{value}'" if value is not None else "not set (None)"


def _address(change: PlannedChange) -> str:
    return f"{get_definition(change.resource_type).block_type}.{change.natural_key}"


def describe_plan(plan: Plan) -> List[str]:
    """
    Human-readable plan, in the order the applier would run it.

    Returns a list of lines; empty plans produce a single "No changes" line.
    """
    lines: List[str] = []

    for message in plan.errors:
        lines.append(f"Error: {message}")
    for message in plan.warnings:
        lines.append(f"Warning: {message}")

    if plan.errors:
        lines.append("Plan has errors; fix the configuration before applying.")
        return lines

    if plan.is_empty:
        lines.append("No changes. Live state matches the configuration.")
        return lines

    for change in plan.to_create:
        lines.append(f"+ create {_address(change)}")
        for name, value in change.attributes.items():
            lines.append(f"    {name} = {_display(value)}")

    for change in plan.to_update:
        lines.append(f"~ update {_address(change)}")
        for attr in change.changes:
            lines.append(f"    {attr.attribute}: {_display(attr.current)} -> {_display(attr.desired)}")

    for change in plan.to_delete:
        lines.append(f"- delete {_address(change)}")

    lines.append(
        f"Plan: {len(plan.to_create)} to create, {len(plan.to_update)} to update, {len(plan.to_delete)} to delete."
    )
    return lines


def describe_apply_result(result: ApplyResult) -> List[str]:
    prefix = "Dry run: " if result.dry_run else ""
    lines = [
        f"{prefix}{result.created} created, {result.updated} updated, {result.deleted} deleted, "
        f"{result.skipped} skipped, {len(result.errors)} error(s)."
    ]
    if result.cancelled:
        lines.append("Apply was cancelled before all items ran.")
    for error in result.errors:
        if error.natural_key:
            action = error.action.value if error.action else "apply"
            lines.append(f"  ! {action} {error.resource_type.value}/{error.natural_key}: {error.reason}")
        else:
            lines.append(f"  ! {error.reason}")
    for conflict in result.conflicts:
        lines.append(
            f"  ~ conflict {conflict.resource_type.value}/{conflict.natural_key} ({conflict.severity}): {conflict.message}"
        )
    return lines
