from typing import List, Optional


class ConfigAsCodeError(Exception):
    """Base class for errors raised by the reconciliation engine."""


class ConfigFileNotFoundError(ConfigAsCodeError):
    def __init__(self, path: str):
        super().__init__(f"Config file not found: {path}")
        self.path = path


class ConfigFileExistsError(ConfigAsCodeError):
    def __init__(self, path: str):
        super().__init__(f"Config file already exists: {path}")
        self.path = path


class ConflictError(ConfigAsCodeError):
    """Recoverable by re-fetching and retrying."""


class FileVersionConflictError(ConflictError):
    def __init__(self, path: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Config file {path} is at version {actual_version}, expected {expected_version}"
        )
        self.path = path
        self.expected_version = expected_version
        self.actual_version = actual_version


class ApplyLockedError(ConflictError):
    def __init__(self, message: str, holder: Optional[str] = None):
        super().__init__(message)
        self.holder = holder


class ApplyConflictError(ConflictError):
    """Apply refused because live edits conflict with the file; nothing was written."""

    def __init__(self, message: str, conflicts: Optional[List] = None):
        super().__init__(message)
        self.conflicts = list(conflicts or [])


class ResourceNotFoundError(ConfigAsCodeError):
    def __init__(self, resource_type: str, key: str):
        super().__init__(f"{resource_type} '{key}' not found")
        self.resource_type = resource_type
        self.key = key


class StoreError(ConfigAsCodeError):
    """The underlying resource store rejected an operation."""

