import pytest
from fastapi.testclient import TestClient

import src.grc_server.main as server
from src.grc_server.main import app
from src.grc_tools.config_as_code.config import EngineConfig
from src.grc_tools.config_as_code.connectors.resource_store import build_memory_stores
from src.grc_tools.config_as_code.models import ResourceType
from src.grc_tools.config_as_code.service import ConfigAsCodeService

client = TestClient(app)

LIVE_STATE = {"controls": [{"control_id": "AC-1", "title": "Old title"}, {"control_id": "AC-3", "title": "Retired"}]}

CONTROLS_TF = """resource "grc_control" "ac_1" {
  control_id = "AC-1"
  title      = "New title"
}

resource "grc_control" "ac_2" {
  control_id = "AC-2"
  title      = "Account Management"
}
"""


@pytest.fixture(autouse=True)
def fresh_service():
    """Each test gets its own in-memory files and live state."""
    service = ConfigAsCodeService(
        config=EngineConfig(snapshot_cache_ttl_seconds=0),
        store_factory=lambda workspace_id: build_memory_stores(LIVE_STATE),
    )
    server.reset_service(service)
    yield service
    server.reset_service()


def test_health_check():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_create_get_and_list_files():
    response = client.post("/v1/config/files", json={"path": "controls/main.tf", "content": CONTROLS_TF})
    assert response.status_code == 201
    body = response.json()
    assert body["version"] == 1
    assert body["format"] == "declarative"

    response = client.get("/v1/config/files/controls/main.tf")
    assert response.status_code == 200
    assert response.json()["content"] == CONTROLS_TF

    response = client.get("/v1/config/files", params={"prefix": "controls/"})
    assert [f["path"] for f in response.json()] == ["controls/main.tf"]


def test_create_existing_file_conflicts():
    client.post("/v1/config/files", json={"path": "main.tf", "content": ""})
    response = client.post("/v1/config/files", json={"path": "main.tf", "content": ""})
    assert response.status_code == 409
    assert response.json() == {"detail": "Config file already exists: main.tf"}


def test_get_missing_file():
    response = client.get("/v1/config/files/nope.tf")
    assert response.status_code == 404
    assert response.json() == {"detail": "Config file not found: nope.tf"}


def test_update_with_stale_version():
    client.post("/v1/config/files", json={"path": "main.tf", "content": "a"})
    response = client.put("/v1/config/files/main.tf", json={"content": "b", "expected_version": 1})
    assert response.status_code == 200
    assert response.json()["version"] == 2

    response = client.put("/v1/config/files/main.tf", json={"content": "c", "expected_version": 1})
    assert response.status_code == 409


def test_file_history_and_delete():
    client.post("/v1/config/files", json={"path": "controls/main.tf", "content": "a", "commit_message": "one"})
    client.put("/v1/config/files/controls/main.tf", json={"content": "b", "commit_message": "two"})

    response = client.get("/v1/config/files/controls/main.tf/history")
    assert response.status_code == 200
    assert [v["commit_message"] for v in response.json()] == ["two", "one"]

    assert client.delete("/v1/config/files/controls/main.tf").status_code == 204
    assert client.get("/v1/config/files/controls/main.tf").status_code == 404
    assert client.delete("/v1/config/files/controls/main.tf").status_code == 404


def test_preview_and_apply():
    payload = {"path": "controls/main.tf", "content": CONTROLS_TF}
    response = client.post("/v1/config/preview", json=payload)
    assert response.status_code == 200
    preview = response.json()
    assert (preview["to_create"], preview["to_update"], preview["to_delete"]) == (1, 1, 1)
    assert preview["samples"]["delete"] == ["controls/AC-3"]

    response = client.post("/v1/config/apply", json={**payload, "commit_message": "Apply controls"})
    assert response.status_code == 200
    result = response.json()
    assert (result["created"], result["updated"], result["deleted"]) == (1, 1, 1)
    assert result["errors"] == []

    saved = client.get("/v1/config/files/controls/main.tf").json()
    assert saved["commit_message"] == "Apply controls"

    history = client.get("/v1/config/history").json()
    assert history[0]["id"] == result["history_id"]

    preview = client.post("/v1/config/preview", json=payload).json()
    assert preview["to_create"] == preview["to_update"] == preview["to_delete"] == 0


def test_apply_invalid_content_reports_errors():
    payload = {"path": "controls/main.tf", "content": 'resource "grc_control" "x" {\n  title = \n'}
    response = client.post("/v1/config/apply", json=payload)
    assert response.status_code == 200
    assert response.json()["errors"]
    assert client.get("/v1/config/files/controls/main.tf").status_code == 404


def test_apply_while_locked(fresh_service):
    fresh_service.locks.acquire(None, [ResourceType.CONTROLS], "someone-else")
    response = client.post("/v1/config/apply", json={"path": "controls/main.tf", "content": CONTROLS_TF})
    assert response.status_code == 409
    assert "someone-else" in response.json()["detail"]

    locks = client.get("/v1/config/lock").json()
    assert [lock["resource_type"] for lock in locks] == ["controls"]
    assert "token" not in locks[0]
    assert client.delete("/v1/config/lock").json() == {"released": 1}
    assert client.get("/v1/config/lock").json() == []


def test_refresh_and_bootstrap():
    response = client.get("/v1/config/files", params={"bootstrap": True})
    assert [f["path"] for f in response.json()] == ["controls/main.tf"]

    response = client.post("/v1/config/refresh", json={})
    assert response.json() == {"files_written": 0}


def test_workspace_query_parameter():
    client.post("/v1/config/apply", params={"workspace_id": "ws-1"},
                json={"path": "controls/main.tf", "content": CONTROLS_TF})
    assert len(client.get("/v1/config/files", params={"workspace_id": "ws-1"}).json()) == 1
    assert client.get("/v1/config/files").json() == []


def test_drift_report_and_conflict_resolution(fresh_service):
    payload = {"path": "controls/main.tf", "content": CONTROLS_TF}
    assert client.post("/v1/config/apply", json=payload).status_code == 200
    assert client.get("/v1/config/drift").json()["has_drift"] is False

    store = fresh_service.workspace().stores[ResourceType.CONTROLS]
    store.update(store.find_by_natural_key("AC-1").id, {"title": "Edited in the UI"})

    drift = client.get("/v1/config/drift", params={"resource_type": "controls"}).json()
    assert drift["has_drift"] is True
    assert drift["drifted"] == ["controls/AC-1"]
    assert drift["items"][0]["current"] == "Edited in the UI"

    response = client.post("/v1/config/apply", json=payload)
    assert response.status_code == 409
    detail = response.json()["detail"]
    assert "aborted" in detail["message"]
    assert [c["natural_key"] for c in detail["conflicts"]] == ["AC-1"]

    response = client.post("/v1/config/apply", json={**payload, "conflict_resolution": "force"})
    assert response.status_code == 200
    result = response.json()
    assert result["updated"] == 1
    assert result["conflict_resolution"] == "force"
    assert client.get("/v1/config/drift").json()["has_drift"] is False


def test_apply_rejects_unknown_conflict_resolution():
    response = client.post(
        "/v1/config/apply",
        json={"path": "controls/main.tf", "content": CONTROLS_TF, "conflict_resolution": "merge"},
    )
    assert response.status_code == 422
