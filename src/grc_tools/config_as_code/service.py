"""
Orchestration of the config-as-code pipeline for one process.

    preview: parse -> snapshot -> plan -> conflicts   (read-only)
    apply:   lock -> parse -> snapshot -> plan -> conflicts -> apply -> save file
    drift:   snapshot -> compare with last applied  (read-only)
    refresh: snapshot -> export -> save files

Desired state for a resource type is the whole declarative tree of the
workspace: the file being previewed or applied, plus every other stored file
that declares the same types.
"""

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from .config import EngineConfig
from .connectors.resource_store import ResourceStore, build_memory_stores, load_state_file
from .core_logic.applied_state import AppliedStateTracker
from .core_logic.applier import PlanApplier
from .core_logic.exporter import PROVIDER_HEADER, ConfigExporter, render_descriptors
from .core_logic.history import ApplyHistory
from .core_logic.locks import ApplyLockManager
from .core_logic.planner import plan_changes
from .core_logic.snapshotter import StateSnapshotter
from .errors import ApplyConflictError, ConflictError
from .models import (
    ApplyHistoryEntry,
    ApplyResult,
    ConfigFile,
    ConfigFileVersion,
    ConflictItem,
    ConflictResolution,
    DriftReport,
    FileFormat,
    LockInfo,
    ParseError,
    ParseResult,
    Plan,
    ResourceDescriptor,
    ResourceType,
)
from .parsers.config_parser import detect_format, find_tree_collisions, parse_config_content
from .resources.registry import get_definition
from .storage.file_store import FileStore

logger = logging.getLogger(__name__)

StoreFactory = Callable[[Optional[str]], Dict[ResourceType, ResourceStore]]
WorkspaceListener = Callable[[Optional[str], ResourceType], None]


class PreviewResult(BaseModel):
    to_create: int = 0
    to_update: int = 0
    to_delete: int = 0
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    samples: Dict[str, List[str]] = Field(default_factory=dict)
    conflicts: List[ConflictItem] = Field(default_factory=list)
    plan: Plan = Field(default_factory=Plan)


class _Workspace:
    def __init__(self, workspace_id: Optional[str], stores: Dict[ResourceType, ResourceStore], config: EngineConfig):
        self.workspace_id = workspace_id
        self.stores = stores
        self.snapshotter = StateSnapshotter(stores, cache_ttl_seconds=config.snapshot_cache_ttl_seconds)
        self.applied_state = AppliedStateTracker()
        self.applier = PlanApplier(
            stores,
            listeners=[self.snapshotter.invalidate],
            max_workers=config.max_apply_workers,
            applied_state=self.applied_state,
        )
        self.exporter = ConfigExporter(self.snapshotter)


class ConfigAsCodeService:
    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        file_store: Optional[FileStore] = None,
        store_factory: Optional[StoreFactory] = None,
        lock_manager: Optional[ApplyLockManager] = None,
    ):
        self.config = config or EngineConfig()
        self.file_store = file_store or FileStore()
        self.store_factory: StoreFactory = store_factory or self._default_stores
        self.locks = lock_manager or ApplyLockManager(ttl_seconds=self.config.lock_ttl_seconds)
        self.history = ApplyHistory(limit=self.config.history_limit)
        self._workspaces: Dict[Optional[str], _Workspace] = {}
        self._workspaces_lock = threading.Lock()
        self._listeners: List[WorkspaceListener] = []

    # --- wiring ---

    def _default_stores(self, workspace_id: Optional[str]) -> Dict[ResourceType, ResourceStore]:
        if self.config.state_file:
            logger.info("Seeding workspace %s from %s", workspace_id or "-", self.config.state_file)
            return load_state_file(self.config.state_file)
        return build_memory_stores()

    def workspace(self, workspace_id: Optional[str] = None) -> _Workspace:
        with self._workspaces_lock:
            ws = self._workspaces.get(workspace_id)
            if ws is None:
                ws = _Workspace(workspace_id, self.store_factory(workspace_id), self.config)
                ws.applier.add_listener(lambda resource_type: self._notify(workspace_id, resource_type))
                self._workspaces[workspace_id] = ws
            return ws

    def add_invalidation_listener(self, listener: WorkspaceListener) -> None:
        """Called with (workspace_id, resource_type) after each applied item."""
        self._listeners.append(listener)

    def _notify(self, workspace_id: Optional[str], resource_type: ResourceType) -> None:
        for listener in self._listeners:
            listener(workspace_id, resource_type)

    def _format_for(self, path: str, file_format: Optional[FileFormat]) -> FileFormat:
        if file_format is not None:
            return FileFormat(file_format)
        return detect_format(path, self.config.default_format)

    # --- files ---

    def list_files(
        self, workspace_id: Optional[str] = None, bootstrap: bool = False, prefix: Optional[str] = None
    ) -> List[ConfigFile]:
        files = self.file_store.list(prefix=prefix, workspace_id=workspace_id)
        if bootstrap and not self.file_store.list(workspace_id=workspace_id):
            logger.info("No config files for workspace %s, bootstrapping from live state", workspace_id or "-")
            written = self.refresh_from_database(workspace_id, commit_message="Initial export from platform state")
            if written == 0:
                self.file_store.create(
                    "main.tf", FileFormat.DECLARATIVE, PROVIDER_HEADER + "\n",
                    "Initial export from platform state (empty)", workspace_id,
                )
            files = self.file_store.list(prefix=prefix, workspace_id=workspace_id)
        return files

    def get_file(self, path: str, workspace_id: Optional[str] = None) -> ConfigFile:
        return self.file_store.get(path, workspace_id)

    def create_file(
        self,
        path: str,
        content: str,
        file_format: Optional[FileFormat] = None,
        commit_message: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> ConfigFile:
        return self.file_store.create(path, self._format_for(path, file_format), content, commit_message, workspace_id)

    def update_file(
        self,
        path: str,
        content: str,
        commit_message: Optional[str] = None,
        workspace_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ConfigFile:
        return self.file_store.update(path, content, commit_message, workspace_id, expected_version)

    def delete_file(self, path: str, workspace_id: Optional[str] = None) -> ConfigFile:
        return self.file_store.delete(path, workspace_id)

    def get_file_history(self, path: str, workspace_id: Optional[str] = None) -> List[ConfigFileVersion]:
        return self.file_store.history(path, workspace_id)

    # --- planning ---

    def _stored_parse(self, stored: ConfigFile) -> ParseResult:
        return parse_config_content(stored.content, stored.format, stored.path)

    def _affected_types(self, path: str, parsed: ParseResult, workspace_id: Optional[str]) -> List[ResourceType]:
        """Types declared by the new content, or by the stored version of the same path."""
        types: Set[ResourceType] = set(parsed.resource_types)
        types.update(e.resource_type for e in parsed.errors if e.resource_type is not None)
        if self.file_store.exists(path, workspace_id):
            previous = self._stored_parse(self.file_store.get(path, workspace_id))
            types.update(previous.resource_types)
        return sorted(types, key=lambda t: t.value)

    def build_plan(
        self,
        path: str,
        content: str,
        file_format: Optional[FileFormat] = None,
        workspace_id: Optional[str] = None,
        use_cache: bool = False,
        locked_types: Optional[Iterable[ResourceType]] = None,
    ) -> Tuple[Plan, List[ResourceType]]:
        """
        Plans ``content`` at ``path`` against the rest of the tree and live state.

        With ``locked_types`` the plan must stay within those types; if the
        stored tree changed so that more types are affected, ConflictError is
        raised and nothing is read from the resource stores.
        """
        file_format = self._format_for(path, file_format)
        parsed = parse_config_content(content, file_format, path)
        resource_types = self._affected_types(path, parsed, workspace_id)

        if locked_types is not None:
            unlocked = sorted(set(resource_types) - set(locked_types), key=lambda t: t.value)
            if unlocked:
                raise ConflictError(
                    f"{path} now affects {', '.join(t.value for t in unlocked)}, which this apply did not lock. "
                    f"The config tree changed while the apply was starting; retry it."
                )

        errors: List[ParseError] = list(parsed.errors)
        warnings: List[str] = list(parsed.warnings)
        tree: List[ParseResult] = [parsed]
        desired: List[ResourceDescriptor] = list(parsed.descriptors)

        for stored in self.file_store.list(workspace_id=workspace_id):
            if stored.path == path.strip().lstrip("/"):
                continue
            other = self._stored_parse(stored)
            if not other.ok:
                errors.append(
                    ParseError(path=stored.path, message="File in the config tree has errors; fix it before applying")
                )
                continue
            relevant = [d for d in other.descriptors if d.resource_type in resource_types]
            if relevant:
                desired.extend(relevant)
                tree.append(ParseResult(descriptors=relevant))

        errors.extend(find_tree_collisions(tree))
        if errors:
            return Plan(errors=[str(e) for e in errors], warnings=warnings), resource_types

        ws = self.workspace(workspace_id)
        current = ws.snapshotter.snapshot_many(resource_types, use_cache=use_cache)
        plan = plan_changes(desired, current, self.config.ignored_attributes or None)
        plan.warnings = warnings + plan.warnings
        return plan, resource_types

    def preview_changes(
        self,
        path: str,
        content: str,
        file_format: Optional[FileFormat] = None,
        workspace_id: Optional[str] = None,
    ) -> PreviewResult:
        plan, _ = self.build_plan(path, content, file_format, workspace_id, use_cache=True)
        conflicts = [] if plan.errors else self.workspace(workspace_id).applied_state.find_conflicts(plan)
        summary = plan.summary(self.config.preview_sample_size)
        errors_found = sum(1 for c in conflicts if c.severity == "error")
        if errors_found:
            summary["warnings"].append(
                f"{errors_found} attribute(s) were changed both in the file and outside the config pipeline"
            )
        if len(conflicts) > errors_found:
            summary["warnings"].append(
                f"{len(conflicts) - errors_found} edit(s) made outside the config pipeline will be overwritten"
            )
        logger.info(
            "Preview %s: %d to create, %d to update, %d to delete, %d error(s), %d conflict(s)",
            path, summary["to_create"], summary["to_update"], summary["to_delete"], len(plan.errors), len(conflicts),
        )
        return PreviewResult(plan=plan, conflicts=conflicts, **summary)

    # --- apply ---

    def _resolve_conflicts(
        self,
        ws: _Workspace,
        path: str,
        plan: Plan,
        resolution: ConflictResolution,
        dry_run: bool,
    ) -> Tuple[Plan, List[ConflictItem], int]:
        """Returns the plan to run, the conflicts found and how many items were left out."""
        if plan.errors:
            return plan, [], 0
        conflicts = ws.applied_state.find_conflicts(plan)
        if not conflicts:
            return plan, [], 0

        if resolution == ConflictResolution.ABORT and not dry_run:
            raise ApplyConflictError(
                f"Apply of {path} aborted due to {len(conflicts)} conflict(s) with edits made outside the "
                f"config pipeline. Use 'force' to overwrite them or 'skip' to leave those resources alone.",
                conflicts,
            )
        if resolution == ConflictResolution.SKIP:
            blocked = {(c.resource_type, c.natural_key) for c in conflicts}
            kept = plan.model_copy(update={
                "to_update": [i for i in plan.to_update if (i.resource_type, i.natural_key) not in blocked],
                "to_delete": [i for i in plan.to_delete if (i.resource_type, i.natural_key) not in blocked],
            })
            logger.info("Skipping %d conflicting resource(s) in %s", plan.item_count - kept.item_count, path)
            return kept, conflicts, plan.item_count - kept.item_count
        return plan, conflicts, 0

    def apply_changes(
        self,
        path: str,
        content: str,
        file_format: Optional[FileFormat] = None,
        commit_message: Optional[str] = None,
        workspace_id: Optional[str] = None,
        user_id: str = "system",
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
        conflict_resolution: ConflictResolution = ConflictResolution.ABORT,
    ) -> ApplyResult:
        """
        Runs the full pipeline. Raises ApplyLockedError when another apply
        holds any affected resource type in this workspace, and
        ApplyConflictError when ``conflict_resolution`` is ABORT and live
        edits made since the last apply would be overwritten. The file is
        saved whenever the content was valid, even if some items failed.

        A dry run reports conflicts in the result instead of raising.
        """
        file_format = self._format_for(path, file_format)
        resolution = ConflictResolution(conflict_resolution)
        ws = self.workspace(workspace_id)

        if dry_run:
            plan, _ = self.build_plan(path, content, file_format, workspace_id)
            plan, conflicts, left_out = self._resolve_conflicts(ws, path, plan, resolution, dry_run=True)
            result = ws.applier.apply(plan, dry_run=True, conflict_resolution=resolution)
            result.conflicts = conflicts
            result.skipped += left_out
            return result

        parsed = parse_config_content(content, file_format, path)
        resource_types = self._affected_types(path, parsed, workspace_id)

        with self.locks.hold(workspace_id, resource_types, holder=user_id, reason=f"Applying {path}"):
            plan, _ = self.build_plan(
                path, content, file_format, workspace_id, use_cache=False, locked_types=resource_types
            )
            plan, conflicts, left_out = self._resolve_conflicts(ws, path, plan, resolution, dry_run=False)
            result = ws.applier.apply(plan, cancel_event=cancel_event, conflict_resolution=resolution)
            result.conflicts = conflicts + result.conflicts
            result.skipped += left_out
            if not plan.errors:
                self.file_store.save(path, file_format, content, commit_message or "Applied changes", workspace_id)

        entry = self.history.record(path, result, resource_types, workspace_id, commit_message)
        result.history_id = entry.id
        logger.info(
            "Applied %s: %d created, %d updated, %d deleted, %d skipped, %d error(s)",
            path, result.created, result.updated, result.deleted, result.skipped, len(result.errors),
        )
        return result

    # --- drift ---

    def get_drift_report(
        self,
        workspace_id: Optional[str] = None,
        resource_type: Optional[ResourceType] = None,
    ) -> DriftReport:
        """
        Compares a fresh snapshot with the attributes the pipeline last
        applied. Only resources applied by this process are tracked.
        """
        ws = self.workspace(workspace_id)
        if resource_type is not None:
            resource_types = [ResourceType(resource_type)]
        else:
            resource_types = [t for t in ResourceType if t in ws.stores]
        current = ws.snapshotter.snapshot_many(resource_types)
        return ws.applied_state.drift_report(
            current, resource_types, workspace_id, self.config.ignored_attributes or None
        )

    # --- refresh ---

    def refresh_from_database(
        self,
        workspace_id: Optional[str] = None,
        file_format: Optional[FileFormat] = None,
        commit_message: str = "Refreshed from database state",
    ) -> int:
        """
        Rewrites the tree from live state. Resources already declared in a file
        stay in that file; the rest go to "<type>/main.<ext>". Returns the
        number of files written (unchanged files are not rewritten).

        The exported state becomes the new last-applied baseline for drift.
        """
        file_format = FileFormat(file_format or self.config.default_format)
        ws = self.workspace(workspace_id)

        existing: Dict[str, ConfigFile] = {}
        owners: Dict[Tuple[str, str], str] = {}
        declared_types: Dict[str, Set[ResourceType]] = {}
        for stored in self.file_store.list(workspace_id=workspace_id):
            existing[stored.path] = stored
            parsed = self._stored_parse(stored)
            if not parsed.ok:
                logger.warning("Refresh skips %s, which does not parse", stored.path)
                continue
            declared_types[stored.path] = set(parsed.resource_types)
            for descriptor in parsed.descriptors:
                owners.setdefault(descriptor.index_key, stored.path)

        grouped: Dict[str, List[ResourceDescriptor]] = {p: [] for p in declared_types}
        exported: Set[Tuple[ResourceType, str]] = set()
        for resource_type in ResourceType:
            default_path = get_definition(resource_type).file_path(file_format)
            for descriptor in ws.snapshotter.snapshot(resource_type):
                target = owners.get(descriptor.index_key, default_path)
                grouped.setdefault(target, []).append(descriptor)
                ws.applied_state.record(descriptor)
                exported.add((descriptor.resource_type, descriptor.natural_key))
                declared_types.setdefault(target, set()).add(resource_type)
        for resource_type, natural_key in ws.applied_state.tracked_keys():
            if (resource_type, natural_key) not in exported:
                ws.applied_state.forget(resource_type, natural_key)

        written = 0
        for path in sorted(grouped):
            stored = existing.get(path)
            target_format = stored.format if stored is not None else detect_format(path, file_format)
            content = render_descriptors(grouped[path], target_format, sorted(declared_types.get(path, set()), key=lambda t: t.value))
            if stored is not None and stored.content == content:
                continue
            self.file_store.save(path, target_format, content, commit_message, workspace_id)
            written += 1

        logger.info("Refreshed %d file(s) from database state for workspace %s", written, workspace_id or "-")
        return written

    # --- locks and history ---

    def get_lock_status(self, workspace_id: Optional[str] = None) -> List[LockInfo]:
        return self.locks.status(workspace_id)

    def force_release_lock(self, workspace_id: Optional[str] = None, resource_type: Optional[ResourceType] = None) -> int:
        return self.locks.force_release(workspace_id, resource_type)

    def get_apply_history(self, workspace_id: Optional[str] = None, limit: int = 20) -> List[ApplyHistoryEntry]:
        return self.history.list(workspace_id, limit)
