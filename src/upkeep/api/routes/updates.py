"""
Update API Routes - Check, download, apply and roll back releases
"""
import os
import platform
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from upkeep.config import Settings, get_settings
from upkeep.database import get_session
from upkeep.services.errors import (
    AttemptNotFoundError,
    IntegrityError,
    InvalidTransitionError,
    ManifestError,
    ReleaseNotFoundError,
    UpdateConflictError,
    UpdateError,
    ValidationError,
)
from upkeep.services.manifest_client import VersionManifestClient, get_manifest_client
from upkeep.services.rollback_executor import RollbackExecutor
from upkeep.services.update_orchestrator import UpdateOrchestrator

logger = structlog.get_logger(__name__)


def verify_update_token(
    x_update_token: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Enforce shared-secret auth for update endpoints when configured.

    If UPDATES_AUTH_TOKEN is set, requests must provide X-Update-Token header.
    """
    token = settings.updates_auth_token
    if not token:
        return
    if x_update_token != token:
        raise HTTPException(status_code=401, detail="Invalid or missing update token")


router = APIRouter(dependencies=[Depends(verify_update_token)])


def get_orchestrator(
    db: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    manifest_client: VersionManifestClient = Depends(get_manifest_client),
) -> UpdateOrchestrator:
    return UpdateOrchestrator(db, settings=settings, manifest_client=manifest_client)


def get_rollback_executor(
    db: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> RollbackExecutor:
    return RollbackExecutor(db, settings=settings)


def to_http_exception(error: UpdateError) -> HTTPException:
    """Map a pipeline error to its HTTP status"""
    if isinstance(error, UpdateConflictError):
        status_code = 409
    elif isinstance(error, (ReleaseNotFoundError, AttemptNotFoundError)):
        status_code = 404
    elif isinstance(error, (ValidationError, InvalidTransitionError)):
        status_code = 400
    elif isinstance(error, IntegrityError):
        status_code = 422
    elif isinstance(error, ManifestError):
        status_code = 503
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=str(error))


# Request Models
class VersionRequest(BaseModel):
    """Target release"""

    version: str = Field(..., min_length=1, description="Release version, e.g. 1.4.0")


class RollbackRequest(BaseModel):
    """Rollback options"""

    restore_assets: bool = Field(True, description="Also restore uploads/themes/plugins from the snapshot")


# Response Models
class ProgressResponse(BaseModel):
    stage: str
    percent: int
    message: str


class UpdateStatusResponse(BaseModel):
    """Current update status"""

    current_version: str = Field(..., description="Installed version")
    latest_version: Optional[str] = Field(None, description="Latest stable release")
    update_available: bool = Field(..., description="Whether a newer stable release exists")
    version_info: Optional[Dict[str, Any]] = Field(None, description="Metadata of the newest release")
    pending_migrations: List[str] = Field(default_factory=list)
    update_in_progress: bool = Field(..., description="Whether a pipeline is currently running")
    progress: ProgressResponse


class UpdateCheckResponse(BaseModel):
    """Update availability check result"""

    available: bool
    current_version: str
    latest_version: Optional[str]
    version_info: Optional[Dict[str, Any]]
    available_updates: List[Dict[str, Any]]
    checked_at: str


class CompatibilityResponse(BaseModel):
    compatible: bool
    issues: List[str]
    warnings: List[str]


class DownloadResponse(BaseModel):
    success: bool
    file_path: str
    attempt_id: int


class ApplyResponse(BaseModel):
    success: bool
    message: str
    attempt_id: int
    from_version: str
    to_version: str


class RollbackResponse(BaseModel):
    success: bool
    message: str
    attempt_id: int
    restored_files: bool
    restored_backup: bool


class UpdateAttemptEntry(BaseModel):
    """Single update history entry"""

    id: int
    from_version: str
    to_version: str
    status: str
    download_url: Optional[str]
    checksum: Optional[str]
    file_size: Optional[int]
    changelog: Optional[str]
    release_notes: Optional[str]
    backup_id: Optional[str]
    migrations_run: List[str]
    migration_logs: Optional[str]
    error_message: Optional[str]
    error_stack: Optional[str]
    initiated_by: Optional[str]
    started_at: Optional[str]
    completed_at: Optional[str]
    rolled_back: bool
    rollback_at: Optional[str]


class VersionResponse(BaseModel):
    current_version: str
    python_version: str
    implementation: str
    platform: str
    machine: str
    pid: int


# Endpoints
@router.get(
    "/status",
    response_model=UpdateStatusResponse,
    summary="Get Update Status",
    description="Installed version, latest release, pending migrations and live pipeline progress",
)
async def get_update_status(orchestrator: UpdateOrchestrator = Depends(get_orchestrator)):
    """Get current update status"""
    try:
        return await orchestrator.get_status()
    except UpdateError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error("update_status_error", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to get update status: {str(e)}")


@router.get(
    "/check",
    response_model=UpdateCheckResponse,
    summary="Check for Updates",
    description="Refresh the release manifest and list installable versions",
)
async def check_for_updates(orchestrator: UpdateOrchestrator = Depends(get_orchestrator)):
    """Check for available updates"""
    try:
        return await orchestrator.check_for_updates()
    except UpdateError as e:
        logger.warning("update_check_failed", error=str(e))
        raise to_http_exception(e)
    except Exception as e:
        logger.error("update_check_error", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to check for updates: {str(e)}")


@router.get(
    "/available",
    response_model=List[Dict[str, Any]],
    summary="List Available Updates",
    description="Releases newer than the installed version, newest first",
)
async def list_available_updates(
    manifest_client: VersionManifestClient = Depends(get_manifest_client),
):
    try:
        updates = await manifest_client.available_updates()
        return [info.to_dict() for info in updates]
    except UpdateError as e:
        raise to_http_exception(e)


@router.get(
    "/history",
    response_model=List[UpdateAttemptEntry],
    summary="Get Update History",
    description="Recent update attempts, newest first",
)
async def get_update_history(
    limit: int = Query(20, ge=1, le=100),
    orchestrator: UpdateOrchestrator = Depends(get_orchestrator),
):
    """Get update history"""
    try:
        attempts = await orchestrator.get_history(limit=limit)
        return [attempt.to_dict() for attempt in attempts]
    except Exception as e:
        logger.error("update_history_error", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to get update history: {str(e)}")


@router.get(
    "/history/{attempt_id}",
    response_model=UpdateAttemptEntry,
    summary="Get Update Attempt",
    description="A single update attempt, including its migration logs and captured traceback",
)
async def get_update_attempt(
    attempt_id: int,
    orchestrator: UpdateOrchestrator = Depends(get_orchestrator),
):
    try:
        attempt = await orchestrator.get_attempt(attempt_id)
    except UpdateError as e:
        raise to_http_exception(e)
    return attempt.to_dict()


@router.get(
    "/compatibility/{version}",
    response_model=CompatibilityResponse,
    summary="Check Compatibility",
    description="Check runtime version, disk space and release warnings for a version",
)
async def check_compatibility(
    version: str,
    manifest_client: VersionManifestClient = Depends(get_manifest_client),
):
    try:
        return await manifest_client.check_compatibility(version)
    except UpdateError as e:
        raise to_http_exception(e)


@router.post(
    "/download",
    response_model=DownloadResponse,
    summary="Download Update",
    description="Download and verify a release without applying it",
)
async def download_update(
    request: VersionRequest,
    x_operator: Optional[str] = Header(None),
    orchestrator: UpdateOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.download(request.version, initiated_by=x_operator)
    except UpdateError as e:
        logger.warning("update_download_failed", version=request.version, error=str(e))
        raise to_http_exception(e)


@router.post(
    "/apply",
    response_model=ApplyResponse,
    summary="Apply Update",
    description="Snapshot, apply, migrate, rebuild and verify a release. A restart is required afterwards.",
)
async def apply_update(
    request: VersionRequest,
    x_operator: Optional[str] = Header(None),
    orchestrator: UpdateOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.apply(request.version, initiated_by=x_operator)
    except UpdateError as e:
        logger.warning("update_apply_failed", version=request.version, error=str(e))
        raise to_http_exception(e)


@router.post(
    "/rollback/{attempt_id}",
    response_model=RollbackResponse,
    summary="Roll Back Update",
    description="Restore the files and snapshot recorded for a failed or completed attempt",
)
async def rollback_update(
    attempt_id: int,
    request: Optional[RollbackRequest] = Body(None),
    x_operator: Optional[str] = Header(None),
    executor: RollbackExecutor = Depends(get_rollback_executor),
):
    restore_assets = request.restore_assets if request is not None else True
    try:
        return await executor.rollback(
            attempt_id, initiated_by=x_operator, restore_assets=restore_assets
        )
    except UpdateError as e:
        logger.error("update_rollback_failed", attempt_id=attempt_id, error=str(e))
        raise to_http_exception(e)


@router.get(
    "/version",
    response_model=VersionResponse,
    summary="Get Version",
    description="Installed version and runtime details",
)
async def get_version(
    manifest_client: VersionManifestClient = Depends(get_manifest_client),
):
    return {
        "current_version": manifest_client.current_version(),
        "python_version": platform.python_version(),
        "implementation": platform.python_implementation(),
        "platform": platform.system(),
        "machine": platform.machine(),
        "pid": os.getpid(),
    }
