import pytest

from src.grc_tools.config_as_code.connectors.resource_store import (
    InMemoryResourceStore,
    StoredResource,
    build_memory_stores,
    dump_state,
    load_state_file,
)
from src.grc_tools.config_as_code.core_logic import snapshotter as snapshotter_module
from src.grc_tools.config_as_code.core_logic.snapshotter import StateSnapshotter, stored_to_descriptor
from src.grc_tools.config_as_code.errors import ResourceNotFoundError, StoreError
from src.grc_tools.config_as_code.models import ResourceType


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_snapshot_excludes_deleted_and_sorts():
    stores = build_memory_stores({"vendors": [{"name": "Zeta"}, {"name": "Acme"}, {"name": "Gone"}]})
    store = stores[ResourceType.VENDORS]
    store.delete(store.find_by_natural_key("Gone").id)

    snapshot = StateSnapshotter(stores).snapshot(ResourceType.VENDORS)
    assert [d.natural_key for d in snapshot] == ["Acme", "Zeta"]
    assert snapshot[0].attributes == {"name": "Acme", "status": "ACTIVE", "tags": []}


def test_snapshot_unknown_store():
    with pytest.raises(KeyError):
        StateSnapshotter({}).snapshot(ResourceType.RISKS)


def test_stored_to_descriptor_skips_records_without_key():
    record = StoredResource(id="1", resource_type=ResourceType.CONTROLS, attributes={"title": "No id"})
    assert stored_to_descriptor(record) is None


def test_stored_to_descriptor_keeps_out_of_schema_live_data():
    record = StoredResource(
        id="1", resource_type=ResourceType.CONTROLS,
        attributes={"control_id": "AC-1", "title": "A", "status": "legacy_value", "internal_flag": True},
    )
    descriptor = stored_to_descriptor(record)
    assert descriptor.natural_key == "AC-1"
    assert descriptor.attributes == {"control_id": "AC-1", "title": "A", "status": "legacy_value"}


def _count_conversions(monkeypatch):
    calls = []
    original = snapshotter_module.stored_to_descriptor

    def counting(record):
        calls.append(record.id)
        return original(record)

    monkeypatch.setattr(snapshotter_module, "stored_to_descriptor", counting)
    return calls


def test_cache_used_only_when_requested(monkeypatch):
    clock = FakeClock()
    stores = build_memory_stores({"controls": [{"control_id": "AC-1", "title": "A"}]})
    snapshotter = StateSnapshotter(stores, cache_ttl_seconds=300, clock=clock)
    calls = _count_conversions(monkeypatch)

    assert len(snapshotter.snapshot(ResourceType.CONTROLS, use_cache=True)) == 1
    assert len(snapshotter.snapshot(ResourceType.CONTROLS, use_cache=True)) == 1
    assert len(calls) == 1
    snapshotter.snapshot(ResourceType.CONTROLS)
    assert len(calls) == 2


def test_cache_dropped_when_live_rows_change():
    clock = FakeClock()
    stores = build_memory_stores({"controls": [{"control_id": "AC-1", "title": "A"}]})
    store = stores[ResourceType.CONTROLS]
    snapshotter = StateSnapshotter(stores, cache_ttl_seconds=300, clock=clock)
    snapshotter.snapshot(ResourceType.CONTROLS, use_cache=True)

    # Edited outside the engine, so no invalidation was sent
    store.update(store.find_by_natural_key("AC-1").id, {"title": "Edited elsewhere"})
    snapshot = snapshotter.snapshot(ResourceType.CONTROLS, use_cache=True)
    assert snapshot[0].attributes["title"] == "Edited elsewhere"

    store.create({"control_id": "AC-2", "title": "B"})
    assert len(snapshotter.snapshot(ResourceType.CONTROLS, use_cache=True)) == 2

    store.delete(store.find_by_natural_key("AC-1").id)
    assert [d.natural_key for d in snapshotter.snapshot(ResourceType.CONTROLS, use_cache=True)] == ["AC-2"]


def test_cache_expires_and_invalidates(monkeypatch):
    clock = FakeClock()
    stores = build_memory_stores({"controls": [{"control_id": "AC-1", "title": "A"}]})
    snapshotter = StateSnapshotter(stores, cache_ttl_seconds=300, clock=clock)
    calls = _count_conversions(monkeypatch)
    snapshotter.snapshot(ResourceType.CONTROLS, use_cache=True)

    clock.now += 301
    snapshotter.snapshot(ResourceType.CONTROLS, use_cache=True)
    assert len(calls) == 2

    snapshotter.invalidate(ResourceType.CONTROLS)
    snapshotter.snapshot(ResourceType.CONTROLS, use_cache=True)
    assert len(calls) == 3


def test_zero_ttl_never_caches(monkeypatch):
    stores = build_memory_stores({"controls": [{"control_id": "AC-1", "title": "A"}]})
    snapshotter = StateSnapshotter(stores)
    calls = _count_conversions(monkeypatch)
    snapshotter.snapshot(ResourceType.CONTROLS, use_cache=True)
    snapshotter.snapshot(ResourceType.CONTROLS, use_cache=True)
    assert len(calls) == 2


def test_snapshot_many_concatenates_types():
    stores = build_memory_stores({"controls": [{"control_id": "AC-1", "title": "A"}], "vendors": [{"name": "Acme"}]})
    snapshot = StateSnapshotter(stores).snapshot_many([ResourceType.CONTROLS, ResourceType.VENDORS])
    assert [d.index_key for d in snapshot] == [("controls", "AC-1"), ("vendors", "Acme")]


# --- InMemoryResourceStore ---

def test_store_unique_live_key():
    store = InMemoryResourceStore(ResourceType.CONTROLS, [{"control_id": "AC-1", "title": "A"}])
    with pytest.raises(StoreError):
        store.create({"control_id": "AC-1", "title": "again"})
    with pytest.raises(StoreError):
        store.create({"title": "no key"})

    store.delete(store.find_by_natural_key("AC-1").id)
    store.create({"control_id": "AC-1", "title": "recreated"})
    assert store.find_by_natural_key("AC-1").attributes["title"] == "recreated"


def test_store_update_merges_and_removes():
    store = InMemoryResourceStore(ResourceType.CONTROLS, [{"control_id": "AC-1", "title": "A", "category": "x"}])
    record = store.find_by_natural_key("AC-1")
    updated = store.update(record.id, {"title": "B", "category": None})
    assert updated.attributes == {"control_id": "AC-1", "title": "B"}


def test_store_missing_records():
    store = InMemoryResourceStore(ResourceType.CONTROLS)
    with pytest.raises(ResourceNotFoundError):
        store.find_by_natural_key("AC-1")
    with pytest.raises(ResourceNotFoundError):
        store.update("missing", {"title": "x"})
    with pytest.raises(ResourceNotFoundError):
        store.delete("missing")


def test_build_memory_stores_rejects_unknown_types():
    with pytest.raises(ValueError):
        build_memory_stores({"assets": []})


def test_state_file_round_trip(tmp_path):
    state_file = tmp_path / "state.yaml"
    state_file.write_text("vendors:\n  - name: Zeta\n  - name: Acme\n")
    stores = load_state_file(str(state_file))
    state = dump_state(stores)
    assert state["vendors"] == [{"name": "Acme"}, {"name": "Zeta"}]
    assert state["controls"] == []
