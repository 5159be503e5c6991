import json
from typing import Any, Dict, List, Optional, Tuple

from ..models import AttributeChange, ChangeAction, Plan, PlannedChange, ResourceDescriptor, ResourceType
from ..resources.registry import get_definition

# Attributes never compared, per resource type. Empty by default: every field
# in the schemas is user-managed. EngineConfig.ignored_attributes overrides this.
DEFAULT_IGNORED_ATTRIBUTES: Dict[ResourceType, List[str]] = {}


def _attribute_order(resource_type: ResourceType, names) -> List[str]:
    schema_order = get_definition(resource_type).field_names
    known = [n for n in schema_order if n in names]
    extra = sorted(n for n in names if n not in schema_order)
    return known + extra


def compare_attributes(
    desired_attrs: Dict[str, Any],
    current_attrs: Dict[str, Any],
    resource_type: ResourceType,
    ignored_attributes_config: Optional[Dict[ResourceType, List[str]]] = None,
) -> List[AttributeChange]:
    """
    Field-by-field comparison of two canonical attribute maps.

    An attribute missing on one side compares as None, so removing an optional
    attribute from a file clears it on apply. Changes come back in schema order.
    """
    ignored = set((ignored_attributes_config or DEFAULT_IGNORED_ATTRIBUTES).get(resource_type, []))
    changes: List[AttributeChange] = []
    all_keys = set(desired_attrs.keys()) | set(current_attrs.keys())

    for key in _attribute_order(resource_type, all_keys):
        if key in ignored:
            continue
        desired_value = desired_attrs.get(key)
        current_value = current_attrs.get(key)
        if desired_value != current_value:
            changes.append(AttributeChange(attribute=key, current=current_value, desired=desired_value))
    return changes


def _stable_dump(descriptor: ResourceDescriptor) -> str:
    return json.dumps(descriptor.attributes, sort_keys=True, default=str)


def _index(
    descriptors: List[ResourceDescriptor], label: str, messages: List[str]
) -> Tuple[Dict[Tuple[str, str], ResourceDescriptor], set]:
    """Indexes by (type, key). Returns the index and the set of duplicated keys."""
    grouped: Dict[Tuple[str, str], List[ResourceDescriptor]] = {}
    for descriptor in descriptors:
        grouped.setdefault(descriptor.index_key, []).append(descriptor)

    index: Dict[Tuple[str, str], ResourceDescriptor] = {}
    duplicated = set()
    for index_key in sorted(grouped):
        group = sorted(grouped[index_key], key=_stable_dump)
        if len(group) > 1:
            duplicated.add(index_key)
            messages.append(f"{label} state declares {index_key[0]}/{index_key[1]} {len(group)} times")
        index[index_key] = group[0]
    return index, duplicated


def plan_changes(
    desired: List[ResourceDescriptor],
    current: List[ResourceDescriptor],
    ignored_attributes_config: Optional[Dict[ResourceType, List[str]]] = None,
) -> Plan:
    """
    Computes the create/update/delete sets that reconcile current with desired.

    Pure: nothing is read or written besides the arguments, and the result is
    independent of input ordering. Keys declared more than once in the desired
    state are reported as errors and left out of the plan.
    """
    plan = Plan()
    desired_index, desired_duplicates = _index(desired, "Desired", plan.errors)
    current_index, _ = _index(current, "Current", plan.warnings)

    for index_key in sorted(set(desired_index) | set(current_index)):
        if index_key in desired_duplicates:
            continue
        desired_res = desired_index.get(index_key)
        current_res = current_index.get(index_key)

        if desired_res is not None and current_res is None:
            plan.to_create.append(
                PlannedChange(
                    action=ChangeAction.CREATE,
                    resource_type=desired_res.resource_type,
                    natural_key=desired_res.natural_key,
                    attributes=dict(desired_res.attributes),
                )
            )
        elif desired_res is None and current_res is not None:
            plan.to_delete.append(
                PlannedChange(
                    action=ChangeAction.DELETE,
                    resource_type=current_res.resource_type,
                    natural_key=current_res.natural_key,
                    attributes=dict(current_res.attributes),
                )
            )
        else:
            changes = compare_attributes(
                desired_res.attributes, current_res.attributes,
                desired_res.resource_type, ignored_attributes_config,
            )
            if changes:
                plan.to_update.append(
                    PlannedChange(
                        action=ChangeAction.UPDATE,
                        resource_type=desired_res.resource_type,
                        natural_key=desired_res.natural_key,
                        attributes=dict(desired_res.attributes),
                        changes=changes,
                    )
                )

    return plan
