from typing import List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from src.grc_tools.config_as_code.config import load_engine_config
from src.grc_tools.config_as_code.errors import (
    ApplyConflictError,
    ConfigAsCodeError,
    ConfigFileExistsError,
    ConfigFileNotFoundError,
    ConflictError,
)
from src.grc_tools.config_as_code.models import (
    ApplyHistoryEntry,
    ApplyResult,
    ConfigFile,
    ConfigFileVersion,
    ConflictResolution,
    DriftReport,
    FileFormat,
    LockInfo,
    ResourceType,
)
from src.grc_tools.config_as_code.service import ConfigAsCodeService, PreviewResult

app = FastAPI(
    title="GRC Config-as-Code Server",
    description="Manage compliance configuration files and reconcile them against live state.",
    version="0.1.0",
)

# One service per process; tests replace it through reset_service().
SERVICE = ConfigAsCodeService(config=load_engine_config())


def reset_service(service: Optional[ConfigAsCodeService] = None) -> ConfigAsCodeService:
    global SERVICE
    SERVICE = service or ConfigAsCodeService()
    return SERVICE


def _http_error(e: ConfigAsCodeError) -> HTTPException:
    if isinstance(e, ConfigFileNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ApplyConflictError):
        return HTTPException(
            status_code=409,
            detail={"message": str(e), "conflicts": [c.model_dump(mode="json") for c in e.conflicts]},
        )
    if isinstance(e, (ConfigFileExistsError, ConflictError)):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


class CreateFileRequest(BaseModel):
    path: str
    content: str
    format: Optional[FileFormat] = None
    commit_message: Optional[str] = None


class UpdateFileRequest(BaseModel):
    content: str
    commit_message: Optional[str] = None
    expected_version: Optional[int] = None


class ChangeRequest(BaseModel):
    path: str
    content: str
    format: Optional[FileFormat] = None
    commit_message: Optional[str] = None
    user_id: str = "api"
    dry_run: bool = False
    conflict_resolution: ConflictResolution = ConflictResolution.ABORT


class RefreshRequest(BaseModel):
    format: Optional[FileFormat] = None


@app.get("/health", status_code=200)
async def health_check():
    return {"status": "ok"}


# --- Files ---


@app.get("/v1/config/files", response_model=List[ConfigFile])
def list_files(workspace_id: Optional[str] = None, bootstrap: bool = False, prefix: Optional[str] = None):
    """
    Lists config files. With bootstrap=true an empty workspace is first
    populated from live state.
    """
    return SERVICE.list_files(workspace_id=workspace_id, bootstrap=bootstrap, prefix=prefix)


@app.post("/v1/config/files", response_model=ConfigFile, status_code=201)
def create_file(request: CreateFileRequest, workspace_id: Optional[str] = None):
    try:
        return SERVICE.create_file(
            request.path, request.content, request.format, request.commit_message, workspace_id
        )
    except ConfigAsCodeError as e:
        raise _http_error(e)


# Declared before the catch-all file route so ".../history" is not read as a path.
@app.get("/v1/config/files/{path:path}/history", response_model=List[ConfigFileVersion])
def get_file_history(path: str, workspace_id: Optional[str] = None):
    try:
        return SERVICE.get_file_history(path, workspace_id)
    except ConfigAsCodeError as e:
        raise _http_error(e)


@app.get("/v1/config/files/{path:path}", response_model=ConfigFile)
def get_file(path: str, workspace_id: Optional[str] = None):
    try:
        return SERVICE.get_file(path, workspace_id)
    except ConfigAsCodeError as e:
        raise _http_error(e)


@app.put("/v1/config/files/{path:path}", response_model=ConfigFile)
def update_file(path: str, request: UpdateFileRequest, workspace_id: Optional[str] = None):
    """Saves content without applying it. expected_version guards against lost updates."""
    try:
        return SERVICE.update_file(
            path, request.content, request.commit_message, workspace_id, request.expected_version
        )
    except ConfigAsCodeError as e:
        raise _http_error(e)


@app.delete("/v1/config/files/{path:path}", status_code=204)
def delete_file(path: str, workspace_id: Optional[str] = None):
    try:
        SERVICE.delete_file(path, workspace_id)
    except ConfigAsCodeError as e:
        raise _http_error(e)
    return


# --- Reconciliation ---


@app.post("/v1/config/preview", response_model=PreviewResult)
def preview_changes(request: ChangeRequest, workspace_id: Optional[str] = None):
    return SERVICE.preview_changes(request.path, request.content, request.format, workspace_id)


@app.post("/v1/config/apply", response_model=ApplyResult)
def apply_changes(request: ChangeRequest, workspace_id: Optional[str] = None):
    """
    Applies the content and saves it. Invalid content returns 200 with the
    errors in the result and nothing applied. A held apply lock returns 409,
    as do conflicts with live edits when conflict_resolution is "abort".
    """
    try:
        return SERVICE.apply_changes(
            request.path,
            request.content,
            request.format,
            commit_message=request.commit_message,
            workspace_id=workspace_id,
            user_id=request.user_id,
            dry_run=request.dry_run,
            conflict_resolution=request.conflict_resolution,
        )
    except ConfigAsCodeError as e:
        raise _http_error(e)


@app.post("/v1/config/refresh")
def refresh_from_database(request: Optional[RefreshRequest] = None, workspace_id: Optional[str] = None):
    file_format = request.format if request is not None else None
    written = SERVICE.refresh_from_database(workspace_id, file_format)
    return {"files_written": written}


@app.get("/v1/config/drift", response_model=DriftReport)
def get_drift_report(workspace_id: Optional[str] = None, resource_type: Optional[ResourceType] = None):
    """Live state compared with what the config pipeline last applied."""
    return SERVICE.get_drift_report(workspace_id, resource_type)


@app.get("/v1/config/lock", response_model=List[LockInfo])
def get_lock_status(workspace_id: Optional[str] = None):
    return SERVICE.get_lock_status(workspace_id)


@app.delete("/v1/config/lock")
def force_release_lock(workspace_id: Optional[str] = None, resource_type: Optional[ResourceType] = None):
    released = SERVICE.force_release_lock(workspace_id, resource_type)
    return {"released": released}


@app.get("/v1/config/history", response_model=List[ApplyHistoryEntry])
def get_apply_history(workspace_id: Optional[str] = None, limit: int = 20):
    return SERVICE.get_apply_history(workspace_id, limit)


if __name__ == "__main__":
    import uvicorn

    # Usually run as: `uvicorn src.grc_server.main:app --reload`
    uvicorn.run(app, host="0.0.0.0", port=8000)
