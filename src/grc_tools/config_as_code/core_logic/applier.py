import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from ..connectors.resource_store import ResourceStore, StoredResource
from ..errors import ConflictError, ResourceNotFoundError
from ..models import (
    ApplyError,
    ApplyResult,
    ChangeAction,
    ConflictItem,
    ConflictResolution,
    Plan,
    PlannedChange,
    ResourceType,
)
from .applied_state import AppliedStateTracker
from .snapshotter import stored_to_descriptor

logger = logging.getLogger(__name__)

InvalidationListener = Callable[[ResourceType], None]


class PlanApplier:
    """
    Executes a Plan against the resource stores, one item at a time.

    Creates run first, then updates, then deletes. A failing item is recorded
    in ``ApplyResult.errors`` and the rest of the plan still runs. Items of the
    same resource type are always applied in order on one thread; with
    ``max_workers > 1`` different resource types run in parallel.

    Items whose live record no longer matches the plan raise ConflictError.
    ``conflict_resolution`` decides what happens to them: ABORT records an
    error, SKIP leaves the record alone, FORCE writes the file's values anyway.
    """

    def __init__(
        self,
        stores: Dict[ResourceType, ResourceStore],
        listeners: Optional[List[InvalidationListener]] = None,
        max_workers: int = 1,
        applied_state: Optional[AppliedStateTracker] = None,
    ):
        self.stores = stores
        self.listeners: List[InvalidationListener] = list(listeners or [])
        self.max_workers = max(1, max_workers)
        self.applied_state = applied_state

    def add_listener(self, listener: InvalidationListener) -> None:
        self.listeners.append(listener)

    def _notify(self, resource_type: ResourceType) -> None:
        for listener in self.listeners:
            try:
                listener(resource_type)
            except Exception:
                logger.exception("Invalidation listener failed for %s", resource_type.value)

    def _track(self, item: PlannedChange, record: Optional[StoredResource]) -> None:
        if self.applied_state is None:
            return
        descriptor = stored_to_descriptor(record) if record is not None and item.action != ChangeAction.DELETE else None
        if descriptor is None:
            self.applied_state.forget(item.resource_type, item.natural_key)
        else:
            self.applied_state.record(descriptor)

    # --- single items ---

    @staticmethod
    def _overwrite(store: ResourceStore, record: StoredResource, attributes: Dict[str, Any]) -> StoredResource:
        live = stored_to_descriptor(record)
        payload: Dict[str, Any] = {k: None for k in (live.attributes if live is not None else {}) if k not in attributes}
        payload.update(attributes)
        return store.update(record.id, payload)

    def _create(self, store: ResourceStore, item: PlannedChange, force: bool) -> Optional[StoredResource]:
        try:
            record = store.find_by_natural_key(item.natural_key)
        except ResourceNotFoundError:
            return store.create(dict(item.attributes))
        if force:
            logger.warning("Overwriting %s '%s' created outside the config pipeline", item.resource_type.value, item.natural_key)
            return self._overwrite(store, record, item.attributes)
        raise ConflictError(f"{item.resource_type.value} '{item.natural_key}' was created outside the config pipeline")

    def _update(self, store: ResourceStore, item: PlannedChange, force: bool) -> Optional[StoredResource]:
        try:
            record = store.find_by_natural_key(item.natural_key)
        except ResourceNotFoundError:
            if force and item.attributes:
                logger.warning("Recreating %s '%s', deleted since the plan was computed", item.resource_type.value, item.natural_key)
                return store.create(dict(item.attributes))
            raise ConflictError(f"{item.resource_type.value} '{item.natural_key}' no longer exists")

        live = stored_to_descriptor(record)
        live_attributes = live.attributes if live is not None else {}
        modified = [c.attribute for c in item.changes if live_attributes.get(c.attribute) != c.current]
        if modified and not force:
            raise ConflictError(
                f"{item.resource_type.value} '{item.natural_key}' was modified since the plan was computed "
                f"({', '.join(modified)})"
            )
        return store.update(record.id, item.changed_attributes())

    def _delete(self, store: ResourceStore, item: PlannedChange, force: bool) -> Optional[StoredResource]:
        try:
            record = store.find_by_natural_key(item.natural_key)
        except ResourceNotFoundError:
            if force:
                return None
            raise ConflictError(f"{item.resource_type.value} '{item.natural_key}' no longer exists")
        store.delete(record.id)
        return record

    # --- batches ---

    def _apply_batch(
        self,
        resource_type: ResourceType,
        items: List[PlannedChange],
        cancel_event: Optional[threading.Event],
        conflict_resolution: ConflictResolution,
    ) -> ApplyResult:
        result = ApplyResult()
        store = self.stores.get(resource_type)
        handlers = {
            ChangeAction.CREATE: self._create,
            ChangeAction.UPDATE: self._update,
            ChangeAction.DELETE: self._delete,
        }
        force = conflict_resolution == ConflictResolution.FORCE

        for position, item in enumerate(items):
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                result.skipped += len(items) - position
                logger.warning("Apply cancelled, skipping %d %s item(s)", len(items) - position, resource_type.value)
                break

            if store is None:
                result.errors.append(
                    ApplyError(
                        resource_type=resource_type, natural_key=item.natural_key, action=item.action,
                        reason=f"No resource store registered for {resource_type.value}",
                    )
                )
                continue

            try:
                record = handlers[item.action](store, item, force)
            except ConflictError as e:
                if conflict_resolution == ConflictResolution.SKIP:
                    logger.info("Skipping %s %s '%s': %s", item.action.value, resource_type.value, item.natural_key, e)
                    result.skipped += 1
                    result.conflicts.append(
                        ConflictItem(
                            resource_type=resource_type, natural_key=item.natural_key, attribute="*",
                            severity="error", message=str(e),
                        )
                    )
                    continue
                result.errors.append(
                    ApplyError(resource_type=resource_type, natural_key=item.natural_key, action=item.action, reason=str(e))
                )
                continue
            except Exception as e:
                logger.warning("Failed to %s %s '%s'", item.action.value, resource_type.value, item.natural_key, exc_info=True)
                result.errors.append(
                    ApplyError(resource_type=resource_type, natural_key=item.natural_key, action=item.action, reason=str(e))
                )
                continue

            self._track(item, record)
            if item.action == ChangeAction.DELETE and record is None:
                # Forced delete of a record that was already gone
                result.skipped += 1
                continue
            if item.action == ChangeAction.CREATE:
                result.created += 1
            elif item.action == ChangeAction.UPDATE:
                result.updated += 1
            else:
                result.deleted += 1
            logger.info("Applied %s %s '%s'", item.action.value, resource_type.value, item.natural_key)
            self._notify(resource_type)

        return result

    def apply(
        self,
        plan: Plan,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
        conflict_resolution: ConflictResolution = ConflictResolution.ABORT,
    ) -> ApplyResult:
        started = time.monotonic()
        conflict_resolution = ConflictResolution(conflict_resolution)

        if plan.errors:
            # Plans with errors come from invalid files and must be fixed first.
            return ApplyResult(
                dry_run=dry_run,
                skipped=plan.item_count,
                errors=[ApplyError(reason=message) for message in plan.errors],
                conflict_resolution=conflict_resolution,
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        if dry_run:
            return ApplyResult(
                created=len(plan.to_create),
                updated=len(plan.to_update),
                deleted=len(plan.to_delete),
                dry_run=True,
                conflict_resolution=conflict_resolution,
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        batches: Dict[ResourceType, List[PlannedChange]] = {}
        for item in plan.to_create + plan.to_update + plan.to_delete:
            batches.setdefault(item.resource_type, []).append(item)
        ordered_types = sorted(batches, key=lambda t: t.value)

        if self.max_workers > 1 and len(ordered_types) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = [
                    executor.submit(self._apply_batch, t, batches[t], cancel_event, conflict_resolution)
                    for t in ordered_types
                ]
                partials = [f.result() for f in futures]
        else:
            partials = [self._apply_batch(t, batches[t], cancel_event, conflict_resolution) for t in ordered_types]

        result = ApplyResult(conflict_resolution=conflict_resolution)
        for partial in partials:
            result.created += partial.created
            result.updated += partial.updated
            result.deleted += partial.deleted
            result.skipped += partial.skipped
            result.cancelled = result.cancelled or partial.cancelled
            result.errors.extend(partial.errors)
            result.conflicts.extend(partial.conflicts)
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Apply finished: %d created, %d updated, %d deleted, %d skipped, %d errors",
            result.created, result.updated, result.deleted, result.skipped, len(result.errors),
        )
        return result
