"""
Rollback Executor - Operator-initiated restore of a past attempt

Restores the file rollback point saved for the attempt's from_version and
the full snapshot recorded in its backup_id, rebuilds, and marks the
attempt ROLLED_BACK. A failed rollback leaves the attempt untouched and
is reported for manual intervention; nothing is retried.
"""
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from upkeep.config import Settings, get_settings
from upkeep.models.update_attempt import UpdateAttempt, UpdateAttemptStatus, ensure_transition
from upkeep.services.errors import AttemptNotFoundError, RollbackError
from upkeep.services.pipeline_state import PipelineState, get_pipeline_state
from upkeep.services.process_runner import AsyncProcessRunner, ProcessRunner, run_step
from upkeep.services.snapshot_manager import SnapshotManager
from upkeep.services.snapshot_service import ArchiveSnapshotService, SnapshotService

logger = structlog.get_logger(__name__)


class RollbackExecutor:
    """Rolls a FAILED or COMPLETED attempt back to its pre-update state"""

    def __init__(
        self,
        session,
        settings: Optional[Settings] = None,
        snapshot_manager: Optional[SnapshotManager] = None,
        snapshot_service: Optional[SnapshotService] = None,
        process_runner: Optional[ProcessRunner] = None,
        state: Optional[PipelineState] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.process_runner = process_runner or AsyncProcessRunner()
        self.snapshot_manager = snapshot_manager or SnapshotManager(self.settings)
        self.snapshot_service = snapshot_service or ArchiveSnapshotService(
            self.settings, self.process_runner
        )
        self.state = state or get_pipeline_state()

    async def rollback(
        self,
        attempt_id: int,
        initiated_by: Optional[str] = None,
        restore_assets: bool = True,
    ) -> Dict[str, Any]:
        """
        Roll back an update attempt

        Args:
            attempt_id: Attempt to roll back
            initiated_by: Operator identity, for the log
            restore_assets: Also replace the managed asset trees from the snapshot

        Returns:
            Dict with success, message, attempt_id, restored_files and restored_backup

        Raises:
            UpdateConflictError: If another pipeline is running
            AttemptNotFoundError: If the attempt does not exist
            InvalidTransitionError: If the attempt is not FAILED or COMPLETED
            RollbackError: If any restore step fails
        """
        async with self.state.hold("rollback", self.session, self.settings.advisory_lock_enabled):
            attempt = await self.session.get(UpdateAttempt, attempt_id)
            if attempt is None:
                raise AttemptNotFoundError(f"Update attempt {attempt_id} not found")
            ensure_transition(attempt.status, UpdateAttemptStatus.ROLLED_BACK)

            from_version = attempt.from_version
            backup_id = attempt.backup_id
            logger.info(
                "starting_rollback",
                attempt_id=attempt_id,
                from_version=from_version,
                to_version=attempt.to_version,
                backup_id=backup_id,
                initiated_by=initiated_by,
            )

            try:
                self.state.set_progress("rolling_back", 10, "Restoring files...")
                restored_files = await self.snapshot_manager.restore_file_rollback_point(from_version)

                restored_backup = False
                if backup_id:
                    self.state.set_progress("rolling_back", 40, "Restoring data and assets...")
                    await self.snapshot_service.restore(
                        backup_id, restore_data=True, restore_assets=restore_assets
                    )
                    restored_backup = True

                self.state.set_progress("installing", 70, "Reinstalling dependencies...")
                await run_step(
                    self.process_runner,
                    self.settings.install_command,
                    step="Dependency install",
                    cwd=Path(self.settings.app_root),
                    timeout=self.settings.install_timeout_seconds,
                )
                self.state.set_progress("building", 85, "Rebuilding application...")
                await run_step(
                    self.process_runner,
                    self.settings.build_command,
                    step="Build",
                    cwd=Path(self.settings.app_root),
                    timeout=self.settings.build_timeout_seconds,
                )

                now = datetime.now(timezone.utc)
                attempt.status = UpdateAttemptStatus.ROLLED_BACK.value
                attempt.rolled_back = True
                attempt.rollback_at = now
                attempt.updated_at = now
                await self.session.commit()

            except Exception as e:
                logger.error(
                    "rollback_failed",
                    attempt_id=attempt_id,
                    error=str(e),
                    action="Manual intervention required",
                )
                await self.session.rollback()
                self.state.set_progress("failed", 0, f"Rollback failed: {e}")
                raise RollbackError(f"Rollback of attempt {attempt_id} failed: {e}") from e

            self.state.set_progress("rolled_back", 100, f"Rolled back to {from_version}. Restart required.")
            logger.info(
                "rollback_complete",
                attempt_id=attempt_id,
                restored_files=restored_files,
                restored_backup=restored_backup,
            )
            return {
                "success": True,
                "message": (
                    f"Rolled back to version {from_version}. "
                    "Restart the application to load the restored version."
                ),
                "attempt_id": attempt_id,
                "restored_files": restored_files,
                "restored_backup": restored_backup,
            }
