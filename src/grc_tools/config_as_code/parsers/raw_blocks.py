from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models import ParseError, ResourceType


class RawBlock(BaseModel):
    """One resource declaration before validation, whatever the file format."""

    resource_type: ResourceType
    label: Optional[str] = None  # block label / mapping key; None for list entries
    attributes: Dict[str, Any] = Field(default_factory=dict)
    line: Optional[int] = None


class RawDocument(BaseModel):
    blocks: List[RawBlock] = Field(default_factory=list)
    errors: List[ParseError] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
