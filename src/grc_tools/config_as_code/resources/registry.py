"""
Central registry of managed resource types.

Every place that needs to know how a resource type is spelled in a file, which
attribute is its natural key, or what its attributes look like goes through
``get_definition``. The parsers, the snapshotter and the exporter all derive
natural keys and canonical attributes from here, so a file exported from live
state and parsed back produces the same descriptors the snapshotter does.
"""

from typing import Any, Dict, List, Literal, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models import FileFormat, ResourceType


def _stringify_number(value: Any) -> Any:
    # `version = 1.0` without quotes reaches us as a float
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    return value


def _normalize_tags(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        value = [part.strip() for part in value.split(",")]
    if isinstance(value, (list, tuple)):
        return sorted({str(v) for v in value if str(v).strip()})
    return value


def _lower_token(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower().replace(" ", "_").replace("-", "_")
    return value


def _upper_token(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper().replace(" ", "_").replace("-", "_")
    return value


LIKELIHOOD_SCALE = ["rare", "unlikely", "possible", "likely", "almost_certain"]
IMPACT_SCALE = ["negligible", "minor", "moderate", "significant", "catastrophic"]


def _scale_value(value: Any, scale: List[str]) -> Any:
    """Accepts 1-5 or a scale word in any case."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        index = int(value) - 1
        if 0 <= index < len(scale):
            return scale[index]
        return value
    return _lower_token(value)


# --- Attribute schemas ---


class ResourceAttributes(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("tags", mode="before", check_fields=False)
    @classmethod
    def normalize_tags(cls, v):
        return _normalize_tags(v)


class ControlAttributes(ResourceAttributes):
    control_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    status: Optional[Literal["not_started", "in_progress", "implemented", "not_applicable"]] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        return _lower_token(v)


class FrameworkAttributes(ResourceAttributes):
    name: str = Field(min_length=1)
    type: str = "REGULATORY"
    version: str = "1.0"
    description: Optional[str] = None
    is_active: bool = True

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v):
        return _upper_token(v)

    @field_validator("version", mode="before")
    @classmethod
    def normalize_version(cls, v):
        return _stringify_number(v)


class PolicyAttributes(ResourceAttributes):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    status: str = "DRAFT"
    version: str = "1.0"
    tags: List[str] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        return _upper_token(v)

    @field_validator("version", mode="before")
    @classmethod
    def normalize_version(cls, v):
        return _stringify_number(v)


class RiskAttributes(ResourceAttributes):
    risk_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    likelihood: Optional[Literal["rare", "unlikely", "possible", "likely", "almost_certain"]] = None
    impact: Optional[Literal["negligible", "minor", "moderate", "significant", "catastrophic"]] = None
    status: str = "IDENTIFIED"
    tags: List[str] = Field(default_factory=list)

    @field_validator("likelihood", mode="before")
    @classmethod
    def normalize_likelihood(cls, v):
        return _scale_value(v, LIKELIHOOD_SCALE)

    @field_validator("impact", mode="before")
    @classmethod
    def normalize_impact(cls, v):
        return _scale_value(v, IMPACT_SCALE)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        return _upper_token(v)


class VendorAttributes(ResourceAttributes):
    name: str = Field(min_length=1)
    vendor_id: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    status: str = "ACTIVE"
    tags: List[str] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        return _upper_token(v)

    @field_validator("vendor_id", mode="before")
    @classmethod
    def normalize_vendor_id(cls, v):
        return _stringify_number(v)


# --- Definitions ---


class ResourceDefinition(BaseModel):
    resource_type: ResourceType
    block_type: str  # label used in files: resource "<block_type>" "<label>"
    key_field: str
    schema_model: Type[ResourceAttributes]
    section_title: str  # comment header used by the exporter

    @property
    def field_names(self) -> List[str]:
        return list(self.schema_model.model_fields.keys())

    def file_path(self, file_format: FileFormat) -> str:
        extension = {FileFormat.DECLARATIVE: "tf", FileFormat.YAML: "yaml", FileFormat.JSON: "json"}[file_format]
        return f"{self.resource_type.value}/main.{extension}"


RESOURCE_DEFINITIONS: Dict[ResourceType, ResourceDefinition] = {
    ResourceType.CONTROLS: ResourceDefinition(
        resource_type=ResourceType.CONTROLS, block_type="grc_control",
        key_field="control_id", schema_model=ControlAttributes, section_title="Controls",
    ),
    ResourceType.FRAMEWORKS: ResourceDefinition(
        resource_type=ResourceType.FRAMEWORKS, block_type="grc_framework",
        key_field="name", schema_model=FrameworkAttributes, section_title="Frameworks",
    ),
    ResourceType.POLICIES: ResourceDefinition(
        resource_type=ResourceType.POLICIES, block_type="grc_policy",
        key_field="title", schema_model=PolicyAttributes, section_title="Policies",
    ),
    ResourceType.RISKS: ResourceDefinition(
        resource_type=ResourceType.RISKS, block_type="grc_risk",
        key_field="risk_id", schema_model=RiskAttributes, section_title="Risks",
    ),
    ResourceType.VENDORS: ResourceDefinition(
        resource_type=ResourceType.VENDORS, block_type="grc_vendor",
        key_field="name", schema_model=VendorAttributes, section_title="Vendors",
    ),
}

_BY_BLOCK_TYPE: Dict[str, ResourceDefinition] = {d.block_type: d for d in RESOURCE_DEFINITIONS.values()}


def get_definition(resource_type: ResourceType) -> ResourceDefinition:
    return RESOURCE_DEFINITIONS[ResourceType(resource_type)]


def definition_for_block_type(block_type: str) -> Optional[ResourceDefinition]:
    """Returns None for block types this engine does not manage."""
    return _BY_BLOCK_TYPE.get(block_type)


def derive_natural_key(resource_type: ResourceType, attributes: Dict[str, Any], label: Optional[str] = None) -> Optional[str]:
    """The key field's value wins; a block label is the fallback."""
    definition = get_definition(resource_type)
    value = attributes.get(definition.key_field)
    if value is not None and str(value).strip():
        return str(value).strip()
    if label is not None and str(label).strip():
        return str(label).strip()
    return None


def canonicalize_attributes(
    resource_type: ResourceType, raw: Dict[str, Any], natural_key: Optional[str] = None
) -> Tuple[Dict[str, Any], List[str]]:
    """
    Validates raw attributes against the type's schema.

    Returns the canonical attribute mapping (schema order, unset optionals
    dropped) and the list of unknown attribute names that were discarded.
    Raises pydantic.ValidationError when the attributes do not fit the schema.
    """
    definition = get_definition(resource_type)
    known = set(definition.field_names)
    unknown = sorted(k for k in raw.keys() if k not in known)
    data = {k: v for k, v in raw.items() if k in known}
    if natural_key is not None and data.get(definition.key_field) in (None, ""):
        data[definition.key_field] = natural_key
    model = definition.schema_model(**data)
    return model.model_dump(exclude_none=True), unknown
