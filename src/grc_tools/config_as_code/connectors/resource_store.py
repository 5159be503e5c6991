"""
Resource-store contract consumed by the snapshotter and the applier.

The five CRUD domains (controls, frameworks, policies, risks, vendors) live
outside this engine; anything that implements ``ResourceStore`` can be
reconciled. ``InMemoryResourceStore`` is the stand-in used by the server, the
CLI and the tests.
"""

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

from ..errors import ResourceNotFoundError, StoreError
from ..models import ResourceType, utcnow
from ..resources.registry import get_definition

logger = logging.getLogger(__name__)


class StoredResource(BaseModel):
    id: str  # database id; never written to config files
    resource_type: ResourceType
    attributes: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class ResourceStore(ABC):
    """Uniform read/write contract for one resource type."""

    resource_type: ResourceType

    @abstractmethod
    def list(self) -> List[StoredResource]:
        """All records, soft-deleted ones included."""

    @abstractmethod
    def find_by_natural_key(self, key: str) -> StoredResource:
        """Raises ResourceNotFoundError when no live record has this key."""

    @abstractmethod
    def create(self, attributes: Dict[str, Any]) -> StoredResource:
        ...

    @abstractmethod
    def update(self, resource_id: str, attributes: Dict[str, Any]) -> StoredResource:
        ...

    @abstractmethod
    def delete(self, resource_id: str) -> None:
        ...


class InMemoryResourceStore(ResourceStore):
    """
    Thread-safe store with soft deletes and a unique live natural key,
    the constraint the real domain tables enforce.
    """

    def __init__(self, resource_type: ResourceType, records: Optional[List[Dict[str, Any]]] = None):
        self.resource_type = ResourceType(resource_type)
        self.key_field = get_definition(self.resource_type).key_field
        self._records: Dict[str, StoredResource] = {}
        self._lock = threading.RLock()
        for attributes in records or []:
            self.create(attributes)

    def _live_by_key(self, key: str) -> Optional[StoredResource]:
        for record in self._records.values():
            if not record.is_deleted and str(record.attributes.get(self.key_field)) == key:
                return record
        return None

    def list(self) -> List[StoredResource]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values()]

    def find_by_natural_key(self, key: str) -> StoredResource:
        with self._lock:
            record = self._live_by_key(key)
            if record is None:
                raise ResourceNotFoundError(self.resource_type.value, key)
            return record.model_copy(deep=True)

    def create(self, attributes: Dict[str, Any]) -> StoredResource:
        key = attributes.get(self.key_field)
        if key is None or str(key) == "":
            raise StoreError(f"{self.key_field} is required")
        with self._lock:
            if self._live_by_key(str(key)) is not None:
                raise StoreError(f"Unique constraint failed: {self.resource_type.value} '{key}' already exists")
            record = StoredResource(
                id=str(uuid.uuid4()), resource_type=self.resource_type, attributes=dict(attributes)
            )
            self._records[record.id] = record
            logger.debug("Created %s %s (%s)", self.resource_type.value, key, record.id)
            return record.model_copy(deep=True)

    def update(self, resource_id: str, attributes: Dict[str, Any]) -> StoredResource:
        with self._lock:
            record = self._records.get(resource_id)
            if record is None or record.is_deleted:
                raise ResourceNotFoundError(self.resource_type.value, resource_id)
            new_key = attributes.get(self.key_field)
            if new_key is not None and str(new_key) != str(record.attributes.get(self.key_field)):
                other = self._live_by_key(str(new_key))
                if other is not None and other.id != resource_id:
                    raise StoreError(f"Unique constraint failed: {self.resource_type.value} '{new_key}' already exists")
            for name, value in attributes.items():
                if value is None:
                    record.attributes.pop(name, None)
                else:
                    record.attributes[name] = value
            record.updated_at = utcnow()
            return record.model_copy(deep=True)

    def delete(self, resource_id: str) -> None:
        with self._lock:
            record = self._records.get(resource_id)
            if record is None or record.is_deleted:
                raise ResourceNotFoundError(self.resource_type.value, resource_id)
            record.deleted_at = utcnow()


def build_memory_stores(seed: Optional[Dict[str, List[Dict[str, Any]]]] = None) -> Dict[ResourceType, ResourceStore]:
    """One in-memory store per resource type, optionally seeded from a dict keyed by type name."""
    seed = seed or {}
    unknown = sorted(set(seed) - {t.value for t in ResourceType})
    if unknown:
        raise ValueError(f"Unknown resource types in state data: {', '.join(unknown)}")
    return {t: InMemoryResourceStore(t, seed.get(t.value) or []) for t in ResourceType}


def load_state_file(file_path: str) -> Dict[ResourceType, ResourceStore]:
    """
    Seeds in-memory stores from a JSON or YAML file shaped as
    {"controls": [{"control_id": "AC-1", ...}], "vendors": [...]}.
    """
    with open(file_path, "r") as f:
        raw = f.read()
    if file_path.endswith((".yaml", ".yml")):
        data = yaml.safe_load(raw) or {}
    else:
        data = json.loads(raw) if raw.strip() else {}
    if not isinstance(data, dict):
        raise ValueError(f"State file {file_path} must contain a mapping of resource types")
    return build_memory_stores(data)


def dump_state(stores: Dict[ResourceType, ResourceStore]) -> Dict[str, List[Dict[str, Any]]]:
    """Live records per type, ordered by natural key; the inverse of load_state_file."""
    state: Dict[str, List[Dict[str, Any]]] = {}
    for resource_type in sorted(stores, key=lambda t: t.value):
        key_field = get_definition(resource_type).key_field
        live = [r for r in stores[resource_type].list() if not r.is_deleted]
        live.sort(key=lambda r: str(r.attributes.get(key_field)))
        state[resource_type.value] = [r.attributes for r in live]
    return state
