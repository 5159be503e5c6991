import logging
import os
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .models import FileFormat, ResourceType

logger = logging.getLogger(__name__)

DEFAULT_ENGINE_CONFIG_FILENAME = ".config-as-code.yml"


class EngineConfig(BaseModel):
    lock_ttl_seconds: int = Field(default=600, ge=1)  # apply lock expiry
    snapshot_cache_ttl_seconds: int = Field(default=0, ge=0)  # >0 lets previews reuse unchanged snapshots
    default_format: FileFormat = FileFormat.DECLARATIVE
    preview_sample_size: int = Field(default=10, ge=0)
    max_apply_workers: int = Field(default=1, ge=1)  # >1 applies resource types in parallel
    history_limit: int = Field(default=100, ge=1)
    # Attributes the planner never compares, per resource type
    ignored_attributes: Dict[ResourceType, List[str]] = Field(default_factory=dict)
    state_file: Optional[str] = None  # seed data for the in-memory stores

    @field_validator("ignored_attributes", mode="before")
    def drop_empty_ignore_lists(cls, v):
        if v is None:
            return {}
        return {k: list(vals or []) for k, vals in v.items()}


def _find_default_config() -> Optional[str]:
    current_dir = os.getcwd()
    while True:
        candidate = os.path.join(current_dir, DEFAULT_ENGINE_CONFIG_FILENAME)
        if os.path.exists(candidate):
            return candidate
        parent_dir = os.path.dirname(current_dir)
        if parent_dir == current_dir:
            return None
        current_dir = parent_dir


def load_engine_config(config_path: Optional[str] = None) -> EngineConfig:
    """
    Loads engine settings from a YAML file.
    If config_path is None, searches for '.config-as-code.yml' from the working
    directory upwards. Missing files fall back to defaults; invalid ones raise ValueError.
    """
    actual_config_path = config_path or _find_default_config()

    if not actual_config_path or not os.path.exists(actual_config_path):
        if config_path:
            logger.warning("Engine config file '%s' not found. Using defaults.", config_path)
        return EngineConfig()

    logger.info("Loading engine config from: %s", actual_config_path)
    try:
        with open(actual_config_path, "r") as f:
            config_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Error parsing YAML engine config {actual_config_path}: {e}")

    if config_data is None:
        logger.warning("Engine config file '%s' is empty. Using defaults.", actual_config_path)
        return EngineConfig()
    if not isinstance(config_data, dict):
        raise ValueError(f"Engine config {actual_config_path} must be a mapping")

    try:
        return EngineConfig(**config_data)
    except ValidationError as e:
        raise ValueError(f"Engine config validation error in {actual_config_path}:\n{e}")
