import logging
import re
from typing import Any, Dict, Optional, Tuple

import hcl2

from ..models import ParseError
from ..resources.registry import definition_for_block_type
from .raw_blocks import RawBlock, RawDocument

logger = logging.getLogger(__name__)

# Top-level blocks accepted without a warning. `terraform` carries the
# provider requirements header written by the exporter.
SILENT_BLOCK_TYPES = {"terraform"}

_RESOURCE_HEADER = re.compile(r'^\s*resource\s+"([^"]+)"\s+"([^"]+)"')
_ESCAPE = re.compile(r'\\(["\\ntr])|\$\$\{|%%\{')
_ESCAPE_MAP = {'"': '"', "\\": "\\", "n": "\n", "t": "\t", "r": "\r"}


def _unescape(value: str) -> str:
    def _replace(match: "re.Match") -> str:
        if match.group(1) is not None:
            return _ESCAPE_MAP[match.group(1)]
        return match.group(0)[1:]  # "$${" -> "${", "%%{" -> "%{"

    return _ESCAPE.sub(_replace, value)


def _clean_value(value: Any) -> Any:
    """
    Normalizes what hcl2 hands back: quoted strings, raw escape sequences,
    bookkeeping keys such as __start_line__, and list-wrapped block bodies.
    """
    if isinstance(value, str):
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            value = value[1:-1]
        return _unescape(value)
    if isinstance(value, list):
        return [_clean_value(v) for v in value]
    if isinstance(value, dict):
        return {k: _clean_value(v) for k, v in value.items() if not str(k).startswith("__")}
    return value


def _unwrap_body(body: Any) -> Optional[Dict[str, Any]]:
    # Older hcl2 releases wrap every block body in a single-item list
    if isinstance(body, list) and len(body) == 1:
        body = body[0]
    if isinstance(body, dict):
        return body
    return None


def _block_lines(content: str) -> Dict[Tuple[str, str], int]:
    """Maps (block type, label) to the 1-based line of its first declaration."""
    lines: Dict[Tuple[str, str], int] = {}
    for number, line in enumerate(content.splitlines(), 1):
        match = _RESOURCE_HEADER.match(line)
        if match:
            lines.setdefault((match.group(1), match.group(2)), number)
    return lines


def _error_line(exc: Exception) -> Optional[int]:
    line = getattr(exc, "line", None)
    if isinstance(line, int) and line > 0:
        return line
    return None


def parse_declarative_content(content: str, path: Optional[str] = None) -> RawDocument:
    """
    Parses Terraform-like resource blocks:

        resource "grc_control" "ac_1" {
          control_id = "AC-1"
          title      = "Access Policy"
        }

    A syntax error anywhere fails the whole file; no blocks are returned.
    """
    document = RawDocument()
    if not content.strip():
        return document

    try:
        parsed = hcl2.loads(content)
    except Exception as e:
        logger.info("Could not parse declarative file %s: %s", path or "<content>", e)
        message = str(e).strip().splitlines()[0] if str(e).strip() else type(e).__name__
        document.errors.append(ParseError(path=path, message=f"Syntax error: {message}", line=_error_line(e)))
        return document

    if not parsed:
        return document

    block_lines = _block_lines(content)

    for top_level_type, blocks in parsed.items():
        if str(top_level_type).startswith("__") or top_level_type in SILENT_BLOCK_TYPES:
            continue
        if top_level_type != "resource":
            document.warnings.append(f"Ignoring unknown top-level block type '{top_level_type}'")
            continue
        if not isinstance(blocks, list):
            blocks = [blocks]

        for block in blocks:
            if not isinstance(block, dict):
                continue
            for block_type, labelled_bodies in block.items():
                if str(block_type).startswith("__"):
                    continue
                block_type = _clean_value(block_type)
                definition = definition_for_block_type(block_type)
                if definition is None:
                    document.warnings.append(f"Ignoring unknown resource type '{block_type}'")
                    continue
                labelled_bodies = _unwrap_body(labelled_bodies) or {}
                for label, body in labelled_bodies.items():
                    if str(label).startswith("__"):
                        continue
                    label = _clean_value(label)
                    line = block_lines.get((block_type, label))
                    attributes = _unwrap_body(body)
                    if attributes is None:
                        document.errors.append(
                            ParseError(
                                path=path, line=line, resource_type=definition.resource_type,
                                message=f"Block {block_type}.{label} has no attribute body",
                            )
                        )
                        continue
                    document.blocks.append(
                        RawBlock(
                            resource_type=definition.resource_type,
                            label=label,
                            attributes=_clean_value(attributes),
                            line=line,
                        )
                    )

    return document
