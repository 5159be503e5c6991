import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from ..errors import ApplyLockedError
from ..models import LockInfo, ResourceType, utcnow

logger = logging.getLogger(__name__)

_LockKey = Tuple[Optional[str], ResourceType]


class ApplyLockManager:
    """
    Single-flight guard for apply, keyed by (workspace, resource type).

    A second apply touching a held key is rejected, not queued. Locks expire
    after ``ttl_seconds`` so a crashed apply cannot block a workspace forever.
    This is an in-process guard; it does not coordinate separate processes.
    """

    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], datetime] = utcnow):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._locks: Dict[_LockKey, LockInfo] = {}
        self._mutex = threading.Lock()

    def _expire(self, now: datetime) -> None:
        for key in [k for k, info in self._locks.items() if info.expires_at <= now]:
            logger.warning("Apply lock for %s/%s expired", key[0] or "-", key[1].value)
            del self._locks[key]

    def acquire(
        self,
        workspace_id: Optional[str],
        resource_types: Iterable[ResourceType],
        holder: str,
        reason: Optional[str] = None,
    ) -> List[LockInfo]:
        """
        All-or-nothing: raises ApplyLockedError if any requested key is held.
        Every returned LockInfo carries the same token; pass it to release().
        """
        keys = sorted({(workspace_id, ResourceType(t)) for t in resource_types}, key=lambda k: k[1].value)
        with self._mutex:
            now = self._clock()
            self._expire(now)
            for key in keys:
                held = self._locks.get(key)
                if held is not None:
                    raise ApplyLockedError(
                        f"Apply for {key[1].value} is locked by {held.holder} until "
                        f"{held.expires_at.isoformat()}. Reason: {held.reason or 'No reason provided'}",
                        holder=held.holder,
                    )
            token = uuid.uuid4().hex
            acquired = []
            for key in keys:
                info = LockInfo(
                    workspace_id=workspace_id, resource_type=key[1], holder=holder, token=token,
                    reason=reason, acquired_at=now, expires_at=now + self.ttl,
                )
                self._locks[key] = info
                acquired.append(info)
            return acquired

    def release(self, workspace_id: Optional[str], resource_types: Iterable[ResourceType], token: str) -> None:
        """Drops only locks taken by the acquire() call that issued ``token``."""
        with self._mutex:
            for resource_type in resource_types:
                key = (workspace_id, ResourceType(resource_type))
                held = self._locks.get(key)
                if held is not None and held.token == token:
                    del self._locks[key]

    def status(self, workspace_id: Optional[str] = None) -> List[LockInfo]:
        with self._mutex:
            self._expire(self._clock())
            held = [info for (ws, _), info in self._locks.items() if ws == workspace_id]
        return sorted(held, key=lambda info: info.resource_type.value)

    def force_release(self, workspace_id: Optional[str], resource_type: Optional[ResourceType] = None) -> int:
        with self._mutex:
            keys = [
                k for k in self._locks
                if k[0] == workspace_id and (resource_type is None or k[1] == ResourceType(resource_type))
            ]
            for key in keys:
                del self._locks[key]
        if keys:
            logger.warning("Force released %d apply lock(s) for workspace %s", len(keys), workspace_id or "-")
        return len(keys)

    @contextmanager
    def hold(
        self,
        workspace_id: Optional[str],
        resource_types: Iterable[ResourceType],
        holder: str,
        reason: Optional[str] = None,
    ) -> Iterator[List[LockInfo]]:
        resource_types = list(resource_types)
        acquired = self.acquire(workspace_id, resource_types, holder, reason)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(workspace_id, resource_types, acquired[0].token)
