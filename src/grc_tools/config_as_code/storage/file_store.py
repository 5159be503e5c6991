import logging
import threading
from typing import Dict, List, Optional, Tuple

from ..errors import ConfigFileExistsError, ConfigFileNotFoundError, FileVersionConflictError
from ..models import ConfigFile, ConfigFileVersion, FileFormat, utcnow

logger = logging.getLogger(__name__)

_Key = Tuple[Optional[str], str]


class FileStore:
    """
    Owns ConfigFile records: one per (workspace, path), with a version counter
    that increases on every successful write. Content is never interpreted here.
    Deleted files are kept with ``deleted_at`` set and can be recreated, which
    continues their version sequence.
    """

    def __init__(self):
        self._files: Dict[_Key, ConfigFile] = {}
        self._versions: Dict[_Key, List[ConfigFileVersion]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _key(path: str, workspace_id: Optional[str]) -> _Key:
        return (workspace_id, path.strip().lstrip("/"))

    def _live(self, key: _Key) -> Optional[ConfigFile]:
        existing = self._files.get(key)
        if existing is None or existing.deleted_at is not None:
            return None
        return existing

    def _record_version(self, key: _Key, file: ConfigFile) -> None:
        self._versions.setdefault(key, []).append(
            ConfigFileVersion(
                version=file.version, content=file.content,
                commit_message=file.commit_message, created_at=file.updated_at,
            )
        )

    def get(self, path: str, workspace_id: Optional[str] = None) -> ConfigFile:
        with self._lock:
            existing = self._live(self._key(path, workspace_id))
            if existing is None:
                raise ConfigFileNotFoundError(path)
            return existing.model_copy()

    def exists(self, path: str, workspace_id: Optional[str] = None) -> bool:
        with self._lock:
            return self._live(self._key(path, workspace_id)) is not None

    def list(self, prefix: Optional[str] = None, workspace_id: Optional[str] = None) -> List[ConfigFile]:
        with self._lock:
            files = [
                f.model_copy()
                for (ws, path), f in self._files.items()
                if ws == workspace_id and f.deleted_at is None and (not prefix or path.startswith(prefix))
            ]
        return sorted(files, key=lambda f: f.path)

    def create(
        self,
        path: str,
        file_format: FileFormat,
        content: str,
        commit_message: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> ConfigFile:
        key = self._key(path, workspace_id)
        with self._lock:
            if self._live(key) is not None:
                raise ConfigFileExistsError(key[1])
            previous = self._files.get(key)
            now = utcnow()
            created = ConfigFile(
                path=key[1],
                format=FileFormat(file_format),
                content=content,
                version=previous.version + 1 if previous is not None else 1,
                commit_message=commit_message,
                workspace_id=workspace_id,
                created_at=now,
                updated_at=now,
            )
            self._files[key] = created
            self._record_version(key, created)
            logger.info("Created config file %s (v%d)", created.path, created.version)
            return created.model_copy()

    def update(
        self,
        path: str,
        content: str,
        commit_message: Optional[str] = None,
        workspace_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        file_format: Optional[FileFormat] = None,
    ) -> ConfigFile:
        """Fails when the path is absent, or when expected_version is stale."""
        key = self._key(path, workspace_id)
        with self._lock:
            existing = self._live(key)
            if existing is None:
                raise ConfigFileNotFoundError(key[1])
            if expected_version is not None and expected_version != existing.version:
                raise FileVersionConflictError(key[1], expected_version, existing.version)
            updated = existing.model_copy(
                update={
                    "content": content,
                    "version": existing.version + 1,
                    "commit_message": commit_message,
                    "format": FileFormat(file_format) if file_format is not None else existing.format,
                    "updated_at": utcnow(),
                }
            )
            self._files[key] = updated
            self._record_version(key, updated)
            logger.info("Updated config file %s (v%d)", updated.path, updated.version)
            return updated.model_copy()

    def save(
        self,
        path: str,
        file_format: FileFormat,
        content: str,
        commit_message: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> ConfigFile:
        """Create-or-update, used by apply and refresh."""
        with self._lock:
            if self.exists(path, workspace_id):
                return self.update(path, content, commit_message, workspace_id, file_format=file_format)
            return self.create(path, file_format, content, commit_message, workspace_id)

    def delete(self, path: str, workspace_id: Optional[str] = None) -> ConfigFile:
        key = self._key(path, workspace_id)
        with self._lock:
            existing = self._live(key)
            if existing is None:
                raise ConfigFileNotFoundError(key[1])
            existing.deleted_at = utcnow()
            logger.info("Deleted config file %s", existing.path)
            return existing.model_copy()

    def history(self, path: str, workspace_id: Optional[str] = None) -> List[ConfigFileVersion]:
        """Newest first."""
        key = self._key(path, workspace_id)
        with self._lock:
            if self._live(key) is None:
                raise ConfigFileNotFoundError(key[1])
            return list(reversed(self._versions.get(key, [])))
