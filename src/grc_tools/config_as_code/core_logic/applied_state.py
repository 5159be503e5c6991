"""
Last-applied state: the attributes the config pipeline itself most recently
wrote for each resource.

Live state alone cannot tell a file change from an edit made in the UI. With
the last applied value as a third point the engine can report drift (live
moved away from what was applied) and flag conflicts before an apply would
overwrite such an edit.
"""

import copy
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models import ConflictItem, DriftItem, DriftReport, Plan, ResourceDescriptor, ResourceType

logger = logging.getLogger(__name__)

_StateKey = Tuple[ResourceType, str]


def _address(key: _StateKey) -> str:
    return f"{key[0].value}/{key[1]}"


def compare_applied(
    last_applied: Dict[str, Any],
    current: Dict[str, Any],
    ignored: Iterable[str] = (),
) -> List[Tuple[str, Any, Any, str]]:
    """(attribute, last applied, current, change type) for every attribute that differs."""
    skip = set(ignored)
    differences = []
    for name in sorted((set(last_applied) | set(current)) - skip):
        if name not in current:
            differences.append((name, last_applied[name], None, "removed"))
        elif name not in last_applied:
            differences.append((name, None, current[name], "added"))
        elif last_applied[name] != current[name]:
            differences.append((name, last_applied[name], current[name], "modified"))
    return differences


class AppliedStateTracker:
    """In-memory last-applied attributes for one workspace, keyed by natural key."""

    def __init__(self):
        self._state: Dict[_StateKey, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def record(self, descriptor: ResourceDescriptor) -> None:
        with self._lock:
            self._state[(descriptor.resource_type, descriptor.natural_key)] = copy.deepcopy(descriptor.attributes)

    def forget(self, resource_type: ResourceType, natural_key: str) -> None:
        with self._lock:
            self._state.pop((ResourceType(resource_type), natural_key), None)

    def get(self, resource_type: ResourceType, natural_key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            attributes = self._state.get((ResourceType(resource_type), natural_key))
            return copy.deepcopy(attributes) if attributes is not None else None

    def tracked_keys(self, resource_type: Optional[ResourceType] = None) -> List[_StateKey]:
        with self._lock:
            keys = [k for k in self._state if resource_type is None or k[0] == ResourceType(resource_type)]
        return sorted(keys, key=lambda k: (k[0].value, k[1]))

    def find_conflicts(self, plan: Plan) -> List[ConflictItem]:
        """
        Three-way check of a plan: file value, live value and last applied value.

        Only resources this tracker has seen applied can conflict; a resource
        the pipeline never wrote is simply adopted by the file.
        """
        conflicts: List[ConflictItem] = []
        for item in plan.to_update:
            last_applied = self.get(item.resource_type, item.natural_key)
            if last_applied is None:
                continue
            for change in item.changes:
                last = last_applied.get(change.attribute)
                if change.current == last:
                    continue
                if change.desired == last:
                    severity = "warning"
                    message = (
                        f"{change.attribute} was changed outside the config pipeline since the last apply "
                        f"and will be overwritten"
                    )
                else:
                    severity = "error"
                    message = f"{change.attribute} was changed both in the file and outside the config pipeline"
                conflicts.append(
                    ConflictItem(
                        resource_type=item.resource_type, natural_key=item.natural_key, attribute=change.attribute,
                        desired=change.desired, live=change.current, last_applied=last,
                        severity=severity, message=message,
                    )
                )

        for item in plan.to_delete:
            last_applied = self.get(item.resource_type, item.natural_key)
            if last_applied is None:
                continue
            changed = [d[0] for d in compare_applied(last_applied, item.attributes)]
            if changed:
                conflicts.append(
                    ConflictItem(
                        resource_type=item.resource_type, natural_key=item.natural_key, attribute="*",
                        live=item.attributes, last_applied=last_applied, severity="warning",
                        message=f"changed outside the config pipeline ({', '.join(changed)}) and will be deleted",
                    )
                )

        if conflicts:
            logger.info("Found %d conflict(s) with edits made outside the config pipeline", len(conflicts))
        return conflicts

    def drift_report(
        self,
        current: List[ResourceDescriptor],
        resource_types: Iterable[ResourceType],
        workspace_id: Optional[str] = None,
        ignored_attributes: Optional[Dict[ResourceType, List[str]]] = None,
    ) -> DriftReport:
        """Compares a fresh snapshot of ``resource_types`` with the last applied attributes."""
        types = {ResourceType(t) for t in resource_types}
        ignored_attributes = ignored_attributes or {}
        live = {(d.resource_type, d.natural_key): d for d in current if d.resource_type in types}
        with self._lock:
            tracked = {k: copy.deepcopy(v) for k, v in self._state.items() if k[0] in types}

        report = DriftReport(workspace_id=workspace_id)
        for key in sorted(tracked, key=lambda k: (k[0].value, k[1])):
            descriptor = live.get(key)
            if descriptor is None:
                report.missing_live.append(_address(key))
                continue
            differences = compare_applied(tracked[key], descriptor.attributes, ignored_attributes.get(key[0], ()))
            if not differences:
                continue
            report.drifted.append(_address(key))
            for attribute, last, now, change_type in differences:
                report.items.append(
                    DriftItem(
                        resource_type=key[0], natural_key=key[1], attribute=attribute,
                        last_applied=last, current=now, change_type=change_type,
                    )
                )

        report.untracked = [_address(k) for k in sorted(set(live) - set(tracked), key=lambda k: (k[0].value, k[1]))]
        report.has_drift = bool(report.items or report.missing_live)
        logger.info(
            "Drift check for workspace %s: %d drifted, %d missing, %d untracked",
            workspace_id or "-", len(report.drifted), len(report.missing_live), len(report.untracked),
        )
        return report
