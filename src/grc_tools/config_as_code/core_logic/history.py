import threading
import uuid
from collections import deque
from typing import Deque, List, Optional

from ..models import ApplyHistoryEntry, ApplyResult, ResourceType


class ApplyHistory:
    """Bounded in-memory record of apply outcomes, newest last."""

    def __init__(self, limit: int = 100):
        self._entries: Deque[ApplyHistoryEntry] = deque(maxlen=limit)
        self._lock = threading.Lock()

    def record(
        self,
        source_file: str,
        result: ApplyResult,
        resource_types: List[ResourceType],
        workspace_id: Optional[str] = None,
        commit_message: Optional[str] = None,
    ) -> ApplyHistoryEntry:
        entry = ApplyHistoryEntry(
            id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            source_file=source_file,
            commit_message=commit_message,
            resource_types=sorted(resource_types, key=lambda t: t.value),
            result=result.model_copy(deep=True),
        )
        entry.result.history_id = entry.id
        with self._lock:
            self._entries.append(entry)
        return entry

    def list(self, workspace_id: Optional[str] = None, limit: int = 20) -> List[ApplyHistoryEntry]:
        """Newest first."""
        with self._lock:
            entries = [e for e in self._entries if e.workspace_id == workspace_id]
        return list(reversed(entries))[:limit]
