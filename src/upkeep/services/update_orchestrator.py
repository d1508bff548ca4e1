"""
Update Orchestrator - Download, snapshot, apply, migrate, rebuild, verify

Drives one update attempt through its states and records every step on the
UpdateAttempt row. Only one pipeline runs at a time (see PipelineState).
There is no automatic rollback: a failed attempt is left FAILED with its
backup_id so an operator can roll it back explicitly.
"""
import asyncio
import os
import shutil
import tarfile
import tempfile
import traceback
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select, update as sql_update
from sqlalchemy.ext.asyncio import AsyncSession

from upkeep.config import Settings, get_settings
from upkeep.models.update_attempt import (
    UpdateAttempt,
    UpdateAttemptStatus,
    can_transition,
    ensure_transition,
)
from upkeep.services.errors import (
    ApplyError,
    AttemptNotFoundError,
    ManifestError,
    MigrationError,
    ReleaseNotFoundError,
    SchemaValidationError,
    ValidationError,
)
from upkeep.services.manifest_client import (
    VersionInfo,
    VersionManifestClient,
    get_manifest_client,
)
from upkeep.services.migration_runner import MigrationRunner
from upkeep.services.package_fetcher import PackageFetcher
from upkeep.services.pipeline_state import PipelineState, get_pipeline_state
from upkeep.services.process_runner import AsyncProcessRunner, ProcessRunner, run_step
from upkeep.services.snapshot_manager import SnapshotManager, replace_file
from upkeep.services.snapshot_service import ArchiveSnapshotService, SnapshotService

logger = structlog.get_logger(__name__)

# Abort the overlay when more than this share of files fail to copy
MAX_COPY_FAILURE_RATIO = 0.1

# Build caches skipped at any depth; overlay_exclude only matches from the release root
ALWAYS_SKIPPED = {"__pycache__"}

# Progress percent reported for each apply stage
STAGE_PERCENT = {
    "backing_up": 10,
    "preparing": 20,
    "applying": 40,
    "migrating": 60,
    "installing": 75,
    "building": 85,
    "verifying": 95,
    "completed": 100,
    "failed": 0,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def artifact_suffix(info: VersionInfo) -> str:
    """Pick the artifact file extension from the asset name or URL"""
    for candidate in (info.asset_name or "", info.download_url or ""):
        lowered = candidate.lower().split("?")[0]
        for suffix in (".tar.gz", ".tgz", ".zip"):
            if lowered.endswith(suffix):
                return suffix
    if "/zipball/" in (info.download_url or ""):
        return ".zip"
    return ".tar.gz"


class UpdateOrchestrator:
    """
    Runs the update pipeline for one request

    Collaborators default to the production implementations and can be
    replaced individually (tests pass fakes for the process runner and the
    snapshot service).
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[Settings] = None,
        manifest_client: Optional[VersionManifestClient] = None,
        fetcher: Optional[PackageFetcher] = None,
        snapshot_manager: Optional[SnapshotManager] = None,
        snapshot_service: Optional[SnapshotService] = None,
        migration_runner: Optional[MigrationRunner] = None,
        process_runner: Optional[ProcessRunner] = None,
        state: Optional[PipelineState] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.process_runner = process_runner or AsyncProcessRunner()
        self.manifest_client = manifest_client or get_manifest_client()
        self.fetcher = fetcher or PackageFetcher(timeout=self.settings.download_timeout_seconds)
        self.snapshot_manager = snapshot_manager or SnapshotManager(self.settings)
        self.snapshot_service = snapshot_service or ArchiveSnapshotService(
            self.settings, self.process_runner
        )
        self.migration_runner = migration_runner or MigrationRunner(
            self.settings, self.process_runner
        )
        self.state = state or get_pipeline_state()
        self.app_root = Path(self.settings.app_root)
        self.staging_root = self.settings.resolve(self.settings.staging_dir)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(self) -> Dict[str, Any]:
        """Current version, availability, pending migrations and live progress"""
        current_version = self.manifest_client.current_version()
        try:
            availability = await self.manifest_client.is_update_available()
        except ManifestError as e:
            logger.warning("manifest_unavailable", error=str(e))
            availability = {"available": False, "latest_version": None, "version_info": None}

        return {
            "current_version": current_version,
            "latest_version": availability["latest_version"],
            "update_available": availability["available"],
            "version_info": availability["version_info"],
            "pending_migrations": await self.migration_runner.pending_migrations(),
            "update_in_progress": self.state.in_progress,
            "progress": self.state.progress.to_dict(),
        }

    async def check_for_updates(self) -> Dict[str, Any]:
        """Refresh the manifest and report what can be installed"""
        await self.manifest_client.fetch_manifest(force=True)
        availability = await self.manifest_client.is_update_available()
        candidates = await self.manifest_client.available_updates()

        logger.info(
            "update_check_complete",
            current=availability["current_version"],
            latest=availability["latest_version"],
            available=availability["available"],
        )
        return {
            **availability,
            "available_updates": [info.to_dict() for info in candidates],
            "checked_at": _now().isoformat(),
        }

    async def get_history(self, limit: int = 20) -> List[UpdateAttempt]:
        result = await self.session.execute(
            select(UpdateAttempt)
            .order_by(UpdateAttempt.started_at.desc(), UpdateAttempt.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_attempt(self, attempt_id: int) -> UpdateAttempt:
        attempt = await self.session.get(UpdateAttempt, attempt_id)
        if attempt is None:
            raise AttemptNotFoundError(f"Update attempt {attempt_id} not found")
        return attempt

    # ------------------------------------------------------------------
    # Attempt bookkeeping
    # ------------------------------------------------------------------

    async def _resolve_release(self, version: str) -> VersionInfo:
        info = await self.manifest_client.find_version(version)
        if info is None:
            raise ReleaseNotFoundError(f"Version {version} not found")
        if not info.download_url:
            raise ValidationError(f"No download URL available for version {version}")
        return info

    async def _create_attempt(
        self, info: VersionInfo, from_version: str, initiated_by: Optional[str]
    ) -> UpdateAttempt:
        now = _now()
        attempt = UpdateAttempt(
            from_version=from_version,
            to_version=info.version,
            status=UpdateAttemptStatus.PENDING.value,
            download_url=info.download_url,
            checksum=info.checksum or None,
            file_size=info.file_size or None,
            changelog=info.changelog,
            release_notes=info.release_notes,
            migrations_run=[],
            initiated_by=initiated_by,
            started_at=now,
            updated_at=now,
            rolled_back=False,
        )
        self.session.add(attempt)
        await self.session.commit()
        logger.info("update_attempt_created", attempt_id=attempt.id, to_version=info.version)
        return attempt

    async def _advance(self, attempt: UpdateAttempt, status: UpdateAttemptStatus, **values) -> None:
        """Move an attempt to a new status, refusing illegal transitions"""
        ensure_transition(attempt.status, status)
        attempt.status = status.value
        attempt.updated_at = _now()
        for key, value in values.items():
            setattr(attempt, key, value)
        await self.session.commit()

    async def _record(self, attempt: UpdateAttempt, **values) -> None:
        """Persist fields without changing status"""
        for key, value in values.items():
            setattr(attempt, key, value)
        attempt.updated_at = _now()
        await self.session.commit()

    async def _mark_failed(self, attempt_id: int, error: BaseException, message: Optional[str] = None) -> None:
        """
        Record a failure on an attempt

        The session is rolled back first because the failure may have left
        it unusable; the FAILED status is then written with a plain UPDATE.
        """
        try:
            await self.session.rollback()
            current = await self.session.scalar(
                select(UpdateAttempt.status).where(UpdateAttempt.id == attempt_id)
            )
            if current is None or not can_transition(current, UpdateAttemptStatus.FAILED):
                logger.warning("attempt_not_failable", attempt_id=attempt_id, status=current)
                return

            now = _now()
            await self.session.execute(
                sql_update(UpdateAttempt)
                .where(UpdateAttempt.id == attempt_id)
                .values(
                    status=UpdateAttemptStatus.FAILED.value,
                    error_message=message or str(error),
                    error_stack="".join(traceback.format_exception(error)),
                    completed_at=now,
                    updated_at=now,
                )
            )
            await self.session.commit()
        except Exception as e:
            logger.error("failed_to_record_failure", attempt_id=attempt_id, error=str(e))

    async def fail_interrupted_attempts(self) -> int:
        """
        Mark attempts left mid-pipeline by a previous process as FAILED

        Called at startup, before any pipeline can run. DOWNLOADED attempts
        are finished downloads and stay reusable.

        Returns:
            Number of attempts marked FAILED
        """
        in_flight = [
            UpdateAttemptStatus.PENDING.value,
            UpdateAttemptStatus.DOWNLOADING.value,
            UpdateAttemptStatus.BACKING_UP.value,
            UpdateAttemptStatus.APPLYING.value,
            UpdateAttemptStatus.MIGRATING.value,
            UpdateAttemptStatus.VERIFYING.value,
        ]
        now = _now()
        result = await self.session.execute(
            sql_update(UpdateAttempt)
            .where(UpdateAttempt.status.in_(in_flight))
            .values(
                status=UpdateAttemptStatus.FAILED.value,
                error_message="Interrupted by daemon restart",
                completed_at=now,
                updated_at=now,
            )
        )
        await self.session.commit()
        return result.rowcount or 0

    def artifact_path(self, info: VersionInfo) -> Path:
        return self.staging_root / f"release-{info.version}{artifact_suffix(info)}"

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def download(self, version: str, initiated_by: Optional[str] = None) -> Dict[str, Any]:
        """
        Download and verify a release without applying it

        Returns:
            Dict with success, file_path and attempt_id

        Raises:
            UpdateConflictError: If another pipeline is running
            ReleaseNotFoundError: If the version is not in the manifest
            ValidationError: If the release has no download URL
            DownloadError: If the download or checksum verification fails
        """
        async with self.state.hold("download", self.session, self.settings.advisory_lock_enabled):
            info = await self._resolve_release(version)
            from_version = self.manifest_client.current_version()
            attempt = await self._create_attempt(info, from_version, initiated_by)
            attempt_id = attempt.id

            try:
                artifact = await self._fetch(attempt, info)
            except Exception as e:
                logger.error("download_failed", attempt_id=attempt_id, version=version, error=str(e))
                await self._mark_failed(attempt_id, e)
                self.state.set_progress("failed", STAGE_PERCENT["failed"], str(e))
                raise

            return {"success": True, "file_path": str(artifact), "attempt_id": attempt_id}

    async def _fetch(self, attempt: UpdateAttempt, info: VersionInfo) -> Path:
        await self._advance(attempt, UpdateAttemptStatus.DOWNLOADING)
        destination = self.artifact_path(info)

        self.state.set_progress("downloading", 0, f"Downloading version {info.version}...")

        def on_progress(percent: int) -> None:
            self.state.progress.stage = "downloading"
            self.state.progress.percent = percent
            self.state.progress.message = f"Downloading: {percent}%"

        await self.fetcher.download(
            info.download_url,
            destination,
            expected_checksum=info.checksum or None,
            on_progress=on_progress,
        )

        await self._advance(
            attempt, UpdateAttemptStatus.DOWNLOADED, file_size=destination.stat().st_size
        )
        self.state.set_progress("downloaded", 100, "Download complete")
        return destination

    async def _reusable_download(self, info: VersionInfo) -> Tuple[Optional[UpdateAttempt], Path]:
        """
        Find the newest DOWNLOADED attempt for a version whose artifact still exists

        DOWNLOADED attempts whose artifact has gone are marked FAILED.
        """
        artifact = self.artifact_path(info)
        result = await self.session.execute(
            select(UpdateAttempt)
            .where(
                UpdateAttempt.to_version == info.version,
                UpdateAttempt.status == UpdateAttemptStatus.DOWNLOADED.value,
            )
            .order_by(UpdateAttempt.started_at.desc(), UpdateAttempt.id.desc())
        )
        candidates = list(result.scalars().all())
        if not candidates:
            return None, artifact

        if artifact.exists():
            logger.info("reusing_download", attempt_id=candidates[0].id, path=str(artifact))
            return candidates[0], artifact

        now = _now()
        for stale in candidates:
            logger.warning("download_artifact_missing", attempt_id=stale.id, path=str(artifact))
            await self._advance(
                stale,
                UpdateAttemptStatus.FAILED,
                error_message="artifact missing",
                completed_at=now,
            )
        return None, artifact

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply(self, version: str, initiated_by: Optional[str] = None) -> Dict[str, Any]:
        """
        Apply a release to the live tree

        Returns:
            Dict with success, message, attempt_id, from_version and to_version

        Raises:
            UpdateConflictError: If another pipeline is running (nothing is recorded)
            ReleaseNotFoundError / ValidationError: Before any record is created
            UpdateError: Any stage failure; the attempt is left FAILED
        """
        async with self.state.hold("apply", self.session, self.settings.advisory_lock_enabled):
            info = await self._resolve_release(version)
            from_version = self.manifest_client.current_version()
            to_version = info.version

            logger.info("starting_update", from_version=from_version, to_version=to_version)

            attempt, artifact = await self._reusable_download(info)
            attempt_id: Optional[int] = attempt.id if attempt is not None else None

            try:
                if attempt is None:
                    attempt = await self._create_attempt(info, from_version, initiated_by)
                    attempt_id = attempt.id
                    artifact = await self._fetch(attempt, info)

                # Snapshot
                self.state.set_progress("backing_up", STAGE_PERCENT["backing_up"], "Creating backup...")
                await self._advance(
                    attempt,
                    UpdateAttemptStatus.BACKING_UP,
                    from_version=from_version,
                    initiated_by=initiated_by or attempt.initiated_by,
                )
                backup_id = await self.snapshot_service.create(
                    f"pre-update-{from_version}-to-{to_version}", initiated_by
                )
                await self._record(attempt, backup_id=backup_id)

                self.state.set_progress("preparing", STAGE_PERCENT["preparing"], "Saving rollback point...")
                await self.snapshot_manager.create_file_rollback_point(from_version)

                # Extract and overlay
                self.state.set_progress("applying", STAGE_PERCENT["applying"], "Applying update files...")
                await self._advance(attempt, UpdateAttemptStatus.APPLYING)
                await self._apply_artifact(artifact, to_version)

                # Migrate
                self.state.set_progress("migrating", STAGE_PERCENT["migrating"], "Running database migrations...")
                await self._advance(attempt, UpdateAttemptStatus.MIGRATING)
                migration = await self.migration_runner.run()
                await self._record(
                    attempt,
                    migrations_run=list(migration.migrations_run),
                    migration_logs=migration.logs,
                )
                if not migration.success:
                    raise MigrationError(f"Migration failed: {migration.error}")

                # Rebuild
                self.state.set_progress("installing", STAGE_PERCENT["installing"], "Installing dependencies...")
                await run_step(
                    self.process_runner,
                    self.settings.install_command,
                    step="Dependency install",
                    cwd=self.app_root,
                    timeout=self.settings.install_timeout_seconds,
                )
                self.state.set_progress("building", STAGE_PERCENT["building"], "Building application...")
                await run_step(
                    self.process_runner,
                    self.settings.build_command,
                    step="Build",
                    cwd=self.app_root,
                    timeout=self.settings.build_timeout_seconds,
                )

                # Verify
                self.state.set_progress("verifying", STAGE_PERCENT["verifying"], "Verifying schema...")
                await self._advance(attempt, UpdateAttemptStatus.VERIFYING)
                validation = await self.migration_runner.validate_schema()
                if not validation.valid:
                    raise SchemaValidationError(
                        "Schema validation failed: " + "; ".join(validation.issues)
                    )

                self._write_version_marker(to_version)
                await self._advance(attempt, UpdateAttemptStatus.COMPLETED, completed_at=_now())

            except Exception as e:
                logger.error(
                    "update_failed",
                    attempt_id=attempt_id,
                    from_version=from_version,
                    to_version=to_version,
                    error=str(e),
                )
                if attempt_id is not None:
                    await self._mark_failed(attempt_id, e)
                self.state.set_progress("failed", STAGE_PERCENT["failed"], f"Update failed: {e}")
                artifact.unlink(missing_ok=True)
                raise

            self.state.set_progress(
                "completed",
                STAGE_PERCENT["completed"],
                f"Updated to {to_version}. Restart required.",
            )
            await self.snapshot_manager.prune_rollback_points(
                self.settings.max_rollback_points, protect=[from_version]
            )
            artifact.unlink(missing_ok=True)

            logger.info("update_complete", attempt_id=attempt_id, from_version=from_version, to_version=to_version)
            return {
                "success": True,
                "message": (
                    f"Successfully updated from {from_version} to {to_version}. "
                    "Restart the application to load the new version."
                ),
                "attempt_id": attempt_id,
                "from_version": from_version,
                "to_version": to_version,
            }

    async def _apply_artifact(self, artifact: Path, version: str) -> None:
        if not artifact.exists():
            raise ApplyError(f"Update package not found: {artifact}")

        self.staging_root.mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix=f"extract-{version}-", dir=self.staging_root))
        try:
            source = await asyncio.to_thread(self._extract, artifact, scratch)
            copied, failed = await asyncio.to_thread(self._overlay, source)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        logger.info("update_files_applied", copied=copied, failed=len(failed))

    @staticmethod
    def _extract(artifact: Path, scratch: Path) -> Path:
        """Extract into scratch and return the release root (a single top-level folder is unwrapped)"""
        try:
            if zipfile.is_zipfile(artifact):
                with zipfile.ZipFile(artifact) as archive:
                    archive.extractall(scratch)
            elif tarfile.is_tarfile(artifact):
                with tarfile.open(artifact) as archive:
                    archive.extractall(scratch, filter="data")
            else:
                raise ApplyError(f"Unsupported package format: {artifact.name}")
        except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
            raise ApplyError(f"Failed to extract {artifact.name}: {e}") from e

        entries = list(scratch.iterdir())
        if not entries:
            raise ApplyError("Update package contained no files")
        if len(entries) == 1 and entries[0].is_dir():
            return entries[0]
        return scratch

    def _is_essential(self, relative: str) -> bool:
        for essential in self.settings.rollback_point_files:
            essential = Path(essential).as_posix()
            if relative == essential or relative.startswith(essential + "/"):
                return True
        return False

    def _is_excluded(self, relative: str) -> bool:
        """Whether a path relative to the release root is under an overlay_exclude entry"""
        for entry in self.settings.overlay_exclude:
            entry = Path(entry).as_posix().strip("/")
            if relative == entry or relative.startswith(entry + "/"):
                return True
        return False

    def _overlay(self, source: Path) -> Tuple[int, List[Tuple[str, str]]]:
        """
        Copy every release file over the live tree, one atomic replace per file

        Returns:
            (copied count, [(relative path, error)])
        """
        copied = 0
        failed: List[Tuple[str, str]] = []

        for directory, dirnames, filenames in os.walk(source):
            base = Path(directory).relative_to(source)
            dirnames[:] = [
                d for d in dirnames
                if d not in ALWAYS_SKIPPED and not self._is_excluded((base / d).as_posix())
            ]
            for filename in filenames:
                item = Path(directory) / filename
                relative = item.relative_to(source).as_posix()
                if self._is_excluded(relative) or not item.exists():
                    continue

                try:
                    replace_file(item, self.app_root / relative)
                    copied += 1
                except OSError as e:
                    if self._is_essential(relative):
                        raise ApplyError(f"Failed to update essential file {relative}: {e}") from e
                    failed.append((relative, str(e)))
                    logger.warning("file_copy_failed", path=relative, error=str(e))

        if failed and len(failed) > (copied + len(failed)) * MAX_COPY_FAILURE_RATIO:
            raise ApplyError(
                f"Too many files failed to copy: {len(failed)}/{copied + len(failed)}"
            )
        return copied, failed

    def _write_version_marker(self, version: str) -> None:
        marker = self.settings.resolve(self.settings.version_file)
        marker.parent.mkdir(parents=True, exist_ok=True)
        tmp = marker.with_name(f".{marker.name}.tmp")
        tmp.write_text(f"{version}\n")
        os.replace(tmp, marker)
        logger.info("version_marker_written", version=version)
