import logging
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from ..models import FileFormat, ParseError, ParseResult, ResourceDescriptor
from ..resources.registry import canonicalize_attributes, derive_natural_key, get_definition
from .declarative_parser import parse_declarative_content
from .document_parser import parse_document_content
from .raw_blocks import RawDocument

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    ".tf": FileFormat.DECLARATIVE,
    ".hcl": FileFormat.DECLARATIVE,
    ".yaml": FileFormat.YAML,
    ".yml": FileFormat.YAML,
    ".json": FileFormat.JSON,
}


def detect_format(path: str, default: FileFormat = FileFormat.DECLARATIVE) -> FileFormat:
    for extension, file_format in _EXTENSIONS.items():
        if path.lower().endswith(extension):
            return file_format
    return default


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "attributes"
        parts.append(f"{location}: {err.get('msg')}")
    return "; ".join(parts)


def parse_config_content(content: str, file_format: FileFormat, path: Optional[str] = None) -> ParseResult:
    """
    Parses file content of any supported format into canonical descriptors.

    Syntax errors fail the file as a whole. Resource-level problems (schema
    violations, missing natural keys, duplicate keys) are reported per resource;
    any error makes the result unusable for apply.
    """
    file_format = FileFormat(file_format)
    if file_format == FileFormat.DECLARATIVE:
        raw: RawDocument = parse_declarative_content(content, path)
    else:
        raw = parse_document_content(content, file_format, path)

    result = ParseResult(warnings=list(raw.warnings))
    if raw.errors:
        result.errors = list(raw.errors)
        return result

    first_seen: Dict[Tuple[str, str], Optional[int]] = {}
    for block in raw.blocks:
        definition = get_definition(block.resource_type)
        where = block.label or "<unnamed>"

        natural_key = derive_natural_key(block.resource_type, block.attributes, block.label)
        if natural_key is None:
            result.errors.append(
                ParseError(
                    path=path, line=block.line, resource_type=block.resource_type, kind="validation",
                    message=f"{definition.block_type} {where} has no '{definition.key_field}'",
                )
            )
            continue

        try:
            attributes, unknown = canonicalize_attributes(block.resource_type, block.attributes, natural_key)
        except ValidationError as e:
            result.errors.append(
                ParseError(
                    path=path, line=block.line, resource_type=block.resource_type,
                    natural_key=natural_key, kind="validation", message=_format_validation_error(e),
                )
            )
            continue

        natural_key = str(attributes[definition.key_field])
        for attribute_name in unknown:
            result.warnings.append(
                f"Unknown attribute '{attribute_name}' on {definition.block_type} '{natural_key}' ignored"
            )

        index_key = (block.resource_type.value, natural_key)
        if index_key in first_seen:
            previous_line = first_seen[index_key]
            suffix = f" (first declared at line {previous_line})" if previous_line else ""
            result.errors.append(
                ParseError(
                    path=path, line=block.line, resource_type=block.resource_type,
                    natural_key=natural_key, kind="validation",
                    message=f"Duplicate natural key '{natural_key}'{suffix}",
                )
            )
            continue
        first_seen[index_key] = block.line

        result.descriptors.append(
            ResourceDescriptor(
                resource_type=block.resource_type,
                natural_key=natural_key,
                attributes=attributes,
                source_file=path,
            )
        )

    logger.debug(
        "Parsed %s: %d descriptors, %d errors, %d warnings",
        path or "<content>", len(result.descriptors), len(result.errors), len(result.warnings),
    )
    return result


def find_tree_collisions(results: Iterable[ParseResult]) -> List[ParseError]:
    """
    Natural keys must be unique per resource type across the whole tree.
    Reports every declaration after the first one.
    """
    owners: Dict[Tuple[str, str], Optional[str]] = {}
    errors: List[ParseError] = []
    for result in results:
        for descriptor in result.descriptors:
            index_key = descriptor.index_key
            if index_key in owners:
                errors.append(
                    ParseError(
                        path=descriptor.source_file, resource_type=descriptor.resource_type,
                        natural_key=descriptor.natural_key, kind="validation",
                        message=f"Natural key '{descriptor.natural_key}' is already declared in {owners[index_key]}",
                    )
                )
            else:
                owners[index_key] = descriptor.source_file
    return errors
