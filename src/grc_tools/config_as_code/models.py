from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceType(str, Enum):
    CONTROLS = "controls"
    FRAMEWORKS = "frameworks"
    POLICIES = "policies"
    RISKS = "risks"
    VENDORS = "vendors"


class FileFormat(str, Enum):
    DECLARATIVE = "declarative"  # Terraform-like resource blocks (.tf)
    YAML = "yaml"
    JSON = "json"


class ChangeAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ConflictResolution(str, Enum):
    ABORT = "abort"  # refuse the apply when any resource conflicts
    FORCE = "force"  # overwrite live edits with the file
    SKIP = "skip"  # leave conflicting resources untouched


# --- Config files ---


class ConfigFileVersion(BaseModel):
    version: int
    content: str
    commit_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ConfigFile(BaseModel):
    """A versioned declarative file owned by the FileStore."""

    path: str  # e.g. "controls/access.tf"
    format: FileFormat
    content: str
    version: int = 1
    commit_message: Optional[str] = None
    workspace_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


# --- Descriptors and parse output ---


class ResourceDescriptor(BaseModel):
    """Canonical, format-independent view of one resource.

    Produced by the parsers from file content and by the snapshotter from live
    state, so the planner never needs to know where a descriptor came from.
    """

    resource_type: ResourceType
    natural_key: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    source_file: Optional[str] = None

    @property
    def index_key(self) -> tuple:
        return (self.resource_type.value, self.natural_key)


class ParseError(BaseModel):
    """Fatal problem in a file (syntax) or in one of its resources (validation)."""

    path: Optional[str] = None
    message: str
    line: Optional[int] = None
    resource_type: Optional[ResourceType] = None
    natural_key: Optional[str] = None
    kind: str = "parse"  # "parse" | "validation"

    def __str__(self) -> str:
        location = self.path or "<content>"
        if self.line is not None:
            location += f":{self.line}"
        if self.natural_key:
            return f"{location}: {self.resource_type.value if self.resource_type else ''}/{self.natural_key}: {self.message}"
        return f"{location}: {self.message}"


class ParseResult(BaseModel):
    descriptors: List[ResourceDescriptor] = Field(default_factory=list)
    errors: List[ParseError] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def resource_types(self) -> List[ResourceType]:
        seen = {d.resource_type for d in self.descriptors}
        return sorted(seen, key=lambda t: t.value)


# --- Plan ---


class AttributeChange(BaseModel):
    attribute: str
    current: Any = None
    desired: Any = None


class PlannedChange(BaseModel):
    action: ChangeAction
    resource_type: ResourceType
    natural_key: str
    attributes: Dict[str, Any] = Field(default_factory=dict)  # desired attrs for create and update, current for delete
    changes: List[AttributeChange] = Field(default_factory=list)  # update only

    def changed_attributes(self) -> Dict[str, Any]:
        return {c.attribute: c.desired for c in self.changes}


class Plan(BaseModel):
    to_create: List[PlannedChange] = Field(default_factory=list)
    to_update: List[PlannedChange] = Field(default_factory=list)
    to_delete: List[PlannedChange] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)

    @property
    def item_count(self) -> int:
        return len(self.to_create) + len(self.to_update) + len(self.to_delete)

    def summary(self, sample_size: int = 10) -> Dict[str, Any]:
        """Counts plus a few sample keys per action, as shown in the editor."""
        return {
            "to_create": len(self.to_create),
            "to_update": len(self.to_update),
            "to_delete": len(self.to_delete),
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "samples": {
                "create": [f"{c.resource_type.value}/{c.natural_key}" for c in self.to_create[:sample_size]],
                "update": [f"{c.resource_type.value}/{c.natural_key}" for c in self.to_update[:sample_size]],
                "delete": [f"{c.resource_type.value}/{c.natural_key}" for c in self.to_delete[:sample_size]],
            },
        }


# --- Apply ---


class ApplyError(BaseModel):
    resource_type: Optional[ResourceType] = None
    natural_key: Optional[str] = None
    action: Optional[ChangeAction] = None
    reason: str


class ConflictItem(BaseModel):
    """
    A resource whose live value moved away from what the pipeline last wrote.

    ``severity`` is "warning" when the file still holds the last applied value
    (the live edit would simply be overwritten) and "error" when the file and
    the live record both changed. Conflicts found while applying, such as a
    record deleted underneath the plan, use attribute "*".
    """

    resource_type: ResourceType
    natural_key: str
    attribute: str
    desired: Any = None
    live: Any = None
    last_applied: Any = None
    severity: str = "warning"  # "warning" | "error"
    message: str = ""


class ApplyResult(BaseModel):
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: List[ApplyError] = Field(default_factory=list)
    dry_run: bool = False
    cancelled: bool = False
    duration_ms: Optional[int] = None
    history_id: Optional[str] = None
    conflicts: List[ConflictItem] = Field(default_factory=list)
    conflict_resolution: Optional[ConflictResolution] = None

    @property
    def succeeded(self) -> int:
        return self.created + self.updated + self.deleted


class ApplyHistoryEntry(BaseModel):
    id: str
    workspace_id: Optional[str] = None
    source_file: str
    commit_message: Optional[str] = None
    resource_types: List[ResourceType] = Field(default_factory=list)
    result: ApplyResult
    applied_at: datetime = Field(default_factory=utcnow)


class LockInfo(BaseModel):
    workspace_id: Optional[str] = None
    resource_type: ResourceType
    holder: str
    token: str = Field(exclude=True)  # shared by the locks of one acquire call
    reason: Optional[str] = None
    acquired_at: datetime
    expires_at: datetime


# --- Drift ---


class DriftItem(BaseModel):
    resource_type: ResourceType
    natural_key: str
    attribute: str
    last_applied: Any = None
    current: Any = None
    change_type: str  # "modified" | "added" | "removed"


class DriftReport(BaseModel):
    """Live state compared with the attributes the pipeline last applied."""

    workspace_id: Optional[str] = None
    has_drift: bool = False
    items: List[DriftItem] = Field(default_factory=list)
    drifted: List[str] = Field(default_factory=list)  # "type/key" with attribute drift
    missing_live: List[str] = Field(default_factory=list)  # applied, since deleted outside the pipeline
    untracked: List[str] = Field(default_factory=list)  # live, never applied from a file
    checked_at: datetime = Field(default_factory=utcnow)
