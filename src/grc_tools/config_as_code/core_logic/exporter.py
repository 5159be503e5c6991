import json
import logging
import re
from typing import Any, Dict, List, Optional

import yaml

from ..models import FileFormat, ResourceDescriptor, ResourceType
from ..resources.registry import get_definition
from .snapshotter import StateSnapshotter

logger = logging.getLogger(__name__)

PROVIDER_HEADER = """terraform {
  required_providers {
    grc = {
      source = "grc/config"
    }
  }
}"""

_TYPE_ORDER = list(ResourceType)


def sanitize_label(name: str) -> str:
    """Block label derived from a natural key: lowercase, [a-z0-9_], at most 50 chars."""
    label = re.sub(r"[^a-z0-9_]", "_", name.lower())
    label = re.sub(r"_+", "_", label).strip("_")[:50]
    return label or "resource"


def _escape_string(value: str) -> str:
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
        .replace("${", "$${")
        .replace("%{", "%%{")
    )
    return f'"{escaped}"'


def render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return _escape_string(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(render_value(v) for v in value) + "]"
    if isinstance(value, dict):
        inner = ", ".join(f"{k} = {render_value(v)}" for k, v in value.items())
        return "{ " + inner + " }" if inner else "{}"
    return _escape_string(str(value))


def _group(descriptors: List[ResourceDescriptor]) -> Dict[ResourceType, List[ResourceDescriptor]]:
    grouped: Dict[ResourceType, List[ResourceDescriptor]] = {}
    for descriptor in descriptors:
        grouped.setdefault(descriptor.resource_type, []).append(descriptor)
    for items in grouped.values():
        items.sort(key=lambda d: d.natural_key)
    return {t: grouped[t] for t in _TYPE_ORDER if t in grouped}


def render_declarative(grouped: Dict[ResourceType, List[ResourceDescriptor]]) -> str:
    lines = [PROVIDER_HEADER, ""]
    for resource_type, descriptors in grouped.items():
        definition = get_definition(resource_type)
        lines.append(f"# {definition.section_title}")
        used_labels: Dict[str, int] = {}
        for descriptor in descriptors:
            label = sanitize_label(descriptor.natural_key)
            used_labels[label] = used_labels.get(label, 0) + 1
            if used_labels[label] > 1:
                label = f"{label}_{used_labels[label]}"
            lines.append(f'resource "{definition.block_type}" "{label}" {{')
            attributes = {k: v for k, v in descriptor.attributes.items() if v is not None}
            width = max((len(k) for k in attributes), default=0)
            for name, value in attributes.items():
                lines.append(f"  {name.ljust(width)} = {render_value(value)}")
            lines.append("}")
            lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def render_document(grouped: Dict[ResourceType, List[ResourceDescriptor]], file_format: FileFormat) -> str:
    data: Dict[str, Dict[str, Dict[str, Any]]] = {}
    for resource_type, descriptors in grouped.items():
        block_type = get_definition(resource_type).block_type
        data[block_type] = {
            d.natural_key: {k: v for k, v in d.attributes.items() if v is not None} for d in descriptors
        }
    if file_format == FileFormat.YAML:
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def render_descriptors(
    descriptors: List[ResourceDescriptor],
    file_format: FileFormat,
    resource_types: Optional[List[ResourceType]] = None,
) -> str:
    """
    Serializes descriptors to file content. ``resource_types`` forces a
    (possibly empty) section for each listed type.
    """
    grouped = _group(descriptors)
    for resource_type in resource_types or []:
        grouped.setdefault(ResourceType(resource_type), [])
    grouped = {t: grouped[t] for t in _TYPE_ORDER if t in grouped}
    if FileFormat(file_format) == FileFormat.DECLARATIVE:
        return render_declarative(grouped)
    return render_document(grouped, FileFormat(file_format))


class ConfigExporter:
    """Reverse sync: live state back into file content."""

    def __init__(self, snapshotter: StateSnapshotter):
        self.snapshotter = snapshotter

    def export(self, resource_type: ResourceType, file_format: FileFormat = FileFormat.DECLARATIVE) -> str:
        resource_type = ResourceType(resource_type)
        descriptors = self.snapshotter.snapshot(resource_type)
        logger.info("Exporting %d %s as %s", len(descriptors), resource_type.value, FileFormat(file_format).value)
        return render_descriptors(descriptors, file_format, [resource_type])
