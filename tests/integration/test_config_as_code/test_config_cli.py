import json
import subprocess
import sys
from pathlib import Path

import pytest

CLI_MODULE_PATH = "src.grc_tools.config_as_code.cli"
REPO_ROOT = Path(__file__).resolve().parents[3]

LIVE_STATE = {
    "controls": [
        {"control_id": "AC-1", "title": "Old title"},
        {"control_id": "AC-3", "title": "Retired control"},
    ],
}

CONTROLS_TF = """resource "grc_control" "ac_1" {
  control_id = "AC-1"
  title      = "New title"
}

resource "grc_control" "ac_2" {
  control_id = "AC-2"
  title      = "Account Management"
}
"""


@pytest.fixture
def state_file(tmp_path: Path) -> Path:
    file_path = tmp_path / "state.json"
    file_path.write_text(json.dumps(LIVE_STATE))
    return file_path


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    file_path = tmp_path / "controls.tf"
    file_path.write_text(CONTROLS_TF)
    return file_path


def run_config_cli(args: list) -> subprocess.CompletedProcess:
    """Runs the CLI from the repository root so the src package resolves."""
    cmd = [sys.executable, "-m", CLI_MODULE_PATH] + args
    return subprocess.run(cmd, capture_output=True, text=True, cwd=REPO_ROOT)


def test_cli_help_message():
    result = run_config_cli(["--help"])
    assert result.returncode == 0
    assert "plan" in result.stdout
    assert "apply" in result.stdout
    assert "export" in result.stdout


def test_cli_plan_shows_changes(state_file, config_file):
    result = run_config_cli(["plan", "--file", str(config_file), "--state", str(state_file)])
    assert result.returncode == 1, result.stderr
    assert "+ create grc_control.AC-2" in result.stdout
    assert "~ update grc_control.AC-1" in result.stdout
    assert "    title: 'Old title' -> 'New title'" in result.stdout
    assert "- delete grc_control.AC-3" in result.stdout
    assert "Plan: 1 to create, 1 to update, 1 to delete." in result.stdout
    # plan never writes
    assert json.loads(state_file.read_text()) == LIVE_STATE


def test_cli_apply_writes_state_then_plan_is_clean(state_file, config_file):
    result = run_config_cli(["apply", "--file", str(config_file), "--state", str(state_file)])
    assert result.returncode == 0, result.stderr
    assert "1 created, 1 updated, 1 deleted, 0 skipped, 0 error(s)." in result.stdout

    state = json.loads(state_file.read_text())
    assert [c["control_id"] for c in state["controls"]] == ["AC-1", "AC-2"]
    assert state["controls"][0]["title"] == "New title"

    result = run_config_cli(["plan", "--file", str(config_file), "--state", str(state_file)])
    assert result.returncode == 0
    assert "No changes." in result.stdout


def test_cli_apply_dry_run(state_file, config_file):
    result = run_config_cli(["apply", "--file", str(config_file), "--state", str(state_file), "--dry-run"])
    assert result.returncode == 0
    assert result.stdout.startswith("Dry run: 1 created")
    assert json.loads(state_file.read_text()) == LIVE_STATE


def test_cli_plan_with_invalid_file(tmp_path, state_file):
    bad = tmp_path / "bad.yaml"
    bad.write_text("grc_control:\n  - control_id: AC-9\n")
    result = run_config_cli(["plan", "--file", str(bad), "--state", str(state_file)])
    assert result.returncode == 2
    assert "Error:" in result.stdout
    assert "AC-9" in result.stdout


def test_cli_missing_config_file(state_file):
    result = run_config_cli(["plan", "--file", "does-not-exist.tf", "--state", str(state_file)])
    assert result.returncode == 2
    assert "not found" in result.stderr


def test_cli_export_yaml(tmp_path, state_file):
    output = tmp_path / "controls.yaml"
    result = run_config_cli([
        "export", "--type", "controls", "--state", str(state_file), "--format", "yaml", "--output", str(output),
    ])
    assert result.returncode == 0, result.stderr
    content = output.read_text()
    assert content.startswith("grc_control:")
    assert "AC-3:" in content


def test_cli_export_declarative_to_stdout(state_file):
    result = run_config_cli(["export", "--type", "controls", "--state", str(state_file)])
    assert result.returncode == 0
    assert 'resource "grc_control" "ac_1" {' in result.stdout
    assert "# Controls" in result.stdout
