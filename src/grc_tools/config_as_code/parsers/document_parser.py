import json
import logging
from typing import Any, Optional

import yaml

from ..models import FileFormat, ParseError, ResourceType
from ..resources.registry import ResourceDefinition, definition_for_block_type, get_definition
from .raw_blocks import RawBlock, RawDocument

logger = logging.getLogger(__name__)


def _resolve_definition(key: str) -> Optional[ResourceDefinition]:
    """Top-level keys may be block types (grc_control) or type names (controls)."""
    definition = definition_for_block_type(key)
    if definition is not None:
        return definition
    try:
        return get_definition(ResourceType(key))
    except ValueError:
        return None


def _load(content: str, file_format: FileFormat, path: Optional[str]) -> Any:
    if file_format == FileFormat.YAML:
        return yaml.safe_load(content)
    return json.loads(content)


def parse_document_content(content: str, file_format: FileFormat, path: Optional[str] = None) -> RawDocument:
    """
    Parses YAML or JSON documents shaped as

        grc_control:
          ac_1:                 # map of label -> attributes
            control_id: AC-1
        grc_vendor:
          - name: Acme          # or a list of attribute maps

    An optional top-level `resources` key may wrap the same mapping.
    """
    document = RawDocument()
    if not content.strip():
        return document

    try:
        data = _load(content, file_format, path)
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        line = mark.line + 1 if mark is not None else None
        problem = getattr(e, "problem", None) or str(e)
        document.errors.append(ParseError(path=path, message=f"Invalid YAML: {problem}", line=line))
        return document
    except json.JSONDecodeError as e:
        document.errors.append(ParseError(path=path, message=f"Invalid JSON: {e.msg}", line=e.lineno))
        return document

    if data is None:
        return document
    if not isinstance(data, dict):
        document.errors.append(ParseError(path=path, message="Top level must be a mapping of resource types"))
        return document
    if isinstance(data.get("resources"), dict):
        data = data["resources"]

    for top_level_key, body in data.items():
        definition = _resolve_definition(str(top_level_key))
        if definition is None:
            document.warnings.append(f"Ignoring unknown top-level block type '{top_level_key}'")
            continue
        if body is None:
            continue

        if isinstance(body, dict):
            entries = [(str(label), attrs) for label, attrs in body.items()]
        elif isinstance(body, list):
            entries = [(None, attrs) for attrs in body]
        else:
            document.errors.append(
                ParseError(
                    path=path, resource_type=definition.resource_type,
                    message=f"'{top_level_key}' must be a mapping or a list of mappings",
                )
            )
            continue

        for position, (label, attributes) in enumerate(entries, 1):
            if not isinstance(attributes, dict):
                where = label if label is not None else f"entry {position}"
                document.errors.append(
                    ParseError(
                        path=path, resource_type=definition.resource_type,
                        message=f"{top_level_key} {where} must be a mapping of attributes",
                    )
                )
                continue
            document.blocks.append(
                RawBlock(resource_type=definition.resource_type, label=label, attributes=attributes)
            )

    return document
