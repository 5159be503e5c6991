import json
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..connectors.resource_store import ResourceStore, StoredResource
from ..models import ResourceDescriptor, ResourceType
from ..resources.registry import canonicalize_attributes, derive_natural_key, get_definition

logger = logging.getLogger(__name__)


def stored_to_descriptor(record: StoredResource) -> Optional[ResourceDescriptor]:
    """
    Converts a live record with the same registry rules the parsers use.
    Returns None for records without a natural key; they cannot be managed
    from files.
    """
    definition = get_definition(record.resource_type)
    natural_key = derive_natural_key(record.resource_type, record.attributes)
    if natural_key is None:
        logger.warning("Skipping %s %s: no %s", record.resource_type.value, record.id, definition.key_field)
        return None
    try:
        attributes, _ = canonicalize_attributes(record.resource_type, record.attributes, natural_key)
    except ValidationError as e:
        # Live data that no longer fits the schema still has to be diffed,
        # otherwise the planner would try to create it again.
        logger.warning(
            "Live %s '%s' does not match its schema, using raw attributes: %s",
            record.resource_type.value, natural_key, e.errors(),
        )
        known = definition.field_names
        attributes = {k: record.attributes[k] for k in known if record.attributes.get(k) is not None}
    return ResourceDescriptor(
        resource_type=record.resource_type,
        natural_key=str(attributes.get(definition.key_field, natural_key)),
        attributes=attributes,
    )


def _fingerprint(records: List[StoredResource]) -> Tuple:
    """Identity of the live rows a snapshot was built from."""
    return tuple(sorted(
        (r.id, r.deleted_at is not None, json.dumps(r.attributes, sort_keys=True, default=str))
        for r in records
    ))


class StateSnapshotter:
    """
    Reads live state per resource type through the store contract.

    With a positive ``cache_ttl_seconds`` previews (``use_cache=True``) may
    reuse the descriptors of an earlier snapshot, but only while the store
    still returns the same rows; apply paths always rebuild.
    """

    def __init__(
        self,
        stores: Dict[ResourceType, ResourceStore],
        cache_ttl_seconds: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.stores = stores
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._cache: Dict[ResourceType, Tuple[float, Tuple, List[ResourceDescriptor]]] = {}
        self._lock = threading.Lock()

    def snapshot(self, resource_type: ResourceType, use_cache: bool = False) -> List[ResourceDescriptor]:
        resource_type = ResourceType(resource_type)
        store = self.stores.get(resource_type)
        if store is None:
            raise KeyError(f"No resource store registered for {resource_type.value}")

        records = store.list()
        fingerprint = _fingerprint(records) if self.cache_ttl_seconds > 0 else None
        if use_cache and fingerprint is not None:
            with self._lock:
                cached = self._cache.get(resource_type)
            if cached is not None:
                taken_at, cached_fingerprint, cached_descriptors = cached
                if self._clock() - taken_at < self.cache_ttl_seconds and cached_fingerprint == fingerprint:
                    return [d.model_copy(deep=True) for d in cached_descriptors]
                logger.debug("Cached %s snapshot is stale, rebuilding", resource_type.value)

        descriptors = []
        for record in records:
            if record.is_deleted:
                continue
            descriptor = stored_to_descriptor(record)
            if descriptor is not None:
                descriptors.append(descriptor)
        descriptors.sort(key=lambda d: d.natural_key)

        if fingerprint is not None:
            with self._lock:
                self._cache[resource_type] = (self._clock(), fingerprint, [d.model_copy(deep=True) for d in descriptors])
        return descriptors

    def snapshot_many(self, resource_types: List[ResourceType], use_cache: bool = False) -> List[ResourceDescriptor]:
        current: List[ResourceDescriptor] = []
        for resource_type in resource_types:
            current.extend(self.snapshot(resource_type, use_cache=use_cache))
        return current

    def invalidate(self, resource_type: Optional[ResourceType] = None) -> None:
        with self._lock:
            if resource_type is None:
                self._cache.clear()
            else:
                self._cache.pop(ResourceType(resource_type), None)
