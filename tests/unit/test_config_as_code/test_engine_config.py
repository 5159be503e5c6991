import os

import pytest

from src.grc_tools.config_as_code.config import (
    DEFAULT_ENGINE_CONFIG_FILENAME,
    EngineConfig,
    load_engine_config,
)
from src.grc_tools.config_as_code.models import FileFormat, ResourceType


def test_defaults():
    config = EngineConfig()
    assert config.lock_ttl_seconds == 600
    assert config.snapshot_cache_ttl_seconds == 0
    assert config.default_format == FileFormat.DECLARATIVE
    assert config.ignored_attributes == {}
    assert config.state_file is None


def test_load_from_explicit_path(tmp_path):
    config_file = tmp_path / "engine.yml"
    config_file.write_text(
        "lock_ttl_seconds: 60\n"
        "default_format: yaml\n"
        "ignored_attributes:\n"
        "  controls: [category]\n"
        "  vendors:\n"
    )
    config = load_engine_config(str(config_file))
    assert config.lock_ttl_seconds == 60
    assert config.default_format == FileFormat.YAML
    assert config.ignored_attributes == {ResourceType.CONTROLS: ["category"], ResourceType.VENDORS: []}


def test_missing_explicit_path_uses_defaults(tmp_path):
    assert load_engine_config(str(tmp_path / "missing.yml")) == EngineConfig()


def test_empty_file_uses_defaults(tmp_path):
    config_file = tmp_path / "engine.yml"
    config_file.write_text("")
    assert load_engine_config(str(config_file)) == EngineConfig()


def test_discovered_from_parent_directory(tmp_path, monkeypatch):
    (tmp_path / DEFAULT_ENGINE_CONFIG_FILENAME).write_text("preview_sample_size: 3\n")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)
    assert load_engine_config().preview_sample_size == 3


@pytest.mark.parametrize("content", [
    "lock_ttl_seconds: 0\n",
    "default_format: xml\n",
    "ignored_attributes:\n  assets: [x]\n",
    "- not\n- a mapping\n",
    "lock_ttl_seconds: [unclosed\n",
])
def test_invalid_config_raises_value_error(tmp_path, content):
    config_file = tmp_path / "engine.yml"
    config_file.write_text(content)
    with pytest.raises(ValueError):
        load_engine_config(str(config_file))
