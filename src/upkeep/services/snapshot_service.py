"""
Snapshot Service - Full data and asset archives

A snapshot is a single tar.gz under backup_dir holding a database dump,
the managed asset trees and a manifest, with a SHA256 sidecar next to it.
The pipeline only sees the SnapshotService protocol: create returns an id,
restore takes one.
"""
import asyncio
import json
import re
import shutil
import tarfile
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Protocol

import structlog

from upkeep.config import Settings, get_settings
from upkeep.services.errors import (
    BackupNotFoundError,
    ProcessFailedError,
    SnapshotError,
)
from upkeep.services.package_fetcher import sha256_file
from upkeep.services.process_runner import AsyncProcessRunner, ProcessRunner, ensure_success

logger = structlog.get_logger(__name__)

ARCHIVE_SUFFIX = ".tar.gz"
CHECKSUM_SUFFIX = ".sha256"
DUMP_NAME = "database.dump"
ASSETS_DIR = "assets"
MANIFEST_NAME = "manifest.json"

_BACKUP_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class SnapshotService(Protocol):
    """Creates and restores full data+asset snapshots"""

    async def create(self, label: str, initiated_by: Optional[str] = None) -> str:
        ...

    async def restore(
        self, backup_id: str, restore_data: bool = True, restore_assets: bool = True
    ) -> None:
        ...


def _slug(label: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9.]+", "-", label).strip("-.").lower()
    return slug[:60] or "snapshot"


def libpq_url(database_url) -> str:
    """Strip any SQLAlchemy driver suffix so pg_dump/pg_restore accept the URL"""
    return re.sub(r"^postgres(?:ql)?\+\w+://", "postgresql://", str(database_url))


class ArchiveSnapshotService:
    """SnapshotService writing tar.gz archives under backup_dir"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        process_runner: Optional[ProcessRunner] = None,
    ):
        self.settings = settings or get_settings()
        self.process_runner = process_runner or AsyncProcessRunner()
        self.app_root = Path(self.settings.app_root)
        self.backup_root = self.settings.resolve(self.settings.backup_dir)

    def archive_path(self, backup_id: str) -> Path:
        return self.backup_root / f"{backup_id}{ARCHIVE_SUFFIX}"

    def _checksum_path(self, backup_id: str) -> Path:
        return self.backup_root / f"{backup_id}{CHECKSUM_SUFFIX}"

    def _format_command(self, template: List[str], **values) -> List[str]:
        values["database_url"] = libpq_url(self.settings.database_url)
        return [part.format(**values) for part in template]

    async def create(self, label: str, initiated_by: Optional[str] = None) -> str:
        """
        Create a full snapshot

        Args:
            label: Human readable label, folded into the backup id
            initiated_by: Operator identity recorded in the manifest

        Returns:
            The backup id

        Raises:
            SnapshotError: If the export or the archive fails
        """
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        backup_id = f"{timestamp}-{_slug(label)}"
        archive = self.archive_path(backup_id)

        logger.info("creating_snapshot", backup_id=backup_id, initiated_by=initiated_by)

        try:
            self.backup_root.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryDirectory(dir=self.backup_root, prefix=".staging-") as tmp:
                staging = Path(tmp)

                database_included = False
                if self.settings.data_export_command:
                    command = self._format_command(
                        self.settings.data_export_command, output=str(staging / DUMP_NAME)
                    )
                    result = await self.process_runner.run(
                        command,
                        cwd=self.app_root,
                        timeout=self.settings.snapshot_timeout_seconds,
                    )
                    ensure_success(result, "Data export")
                    database_included = (staging / DUMP_NAME).exists()

                assets = []
                for name in self.settings.asset_directories:
                    source = self.app_root / name
                    if source.is_dir():
                        shutil.copytree(source, staging / ASSETS_DIR / name, symlinks=True)
                        assets.append(name)

                manifest = {
                    "backup_id": backup_id,
                    "label": label,
                    "initiated_by": initiated_by,
                    "created_at": datetime.now(timezone.utc).isoformat(),
                    "database": database_included,
                    "assets": assets,
                }
                with open(staging / MANIFEST_NAME, "w") as f:
                    json.dump(manifest, f, indent=2)

                await asyncio.to_thread(self._write_archive, staging, archive)

            digest = sha256_file(archive)
            self._checksum_path(backup_id).write_text(f"{digest}  {archive.name}\n")

        except ProcessFailedError as e:
            archive.unlink(missing_ok=True)
            logger.error("snapshot_export_failed", backup_id=backup_id, error=str(e))
            raise SnapshotError(f"Snapshot export failed: {e}") from e
        except OSError as e:
            archive.unlink(missing_ok=True)
            logger.error("snapshot_failed", backup_id=backup_id, error=str(e))
            raise SnapshotError(f"Snapshot failed: {e}") from e

        logger.info(
            "snapshot_created",
            backup_id=backup_id,
            database=database_included,
            assets=assets,
            size=archive.stat().st_size,
        )
        return backup_id

    @staticmethod
    def _write_archive(staging: Path, archive: Path) -> None:
        with tarfile.open(archive, "w:gz") as tar:
            for item in sorted(staging.iterdir()):
                tar.add(item, arcname=item.name)

    async def verify(self, backup_id: str) -> bool:
        """Check the archive against its sidecar checksum"""
        archive = self.archive_path(backup_id)
        sidecar = self._checksum_path(backup_id)
        if not archive.exists() or not sidecar.exists():
            return False

        fields = sidecar.read_text().split()
        expected = fields[0].lower() if fields else ""
        actual = sha256_file(archive)
        if actual != expected:
            logger.warning("snapshot_checksum_mismatch", backup_id=backup_id, expected=expected, actual=actual)
            return False
        return True

    async def restore(
        self, backup_id: str, restore_data: bool = True, restore_assets: bool = True
    ) -> None:
        """
        Restore a snapshot

        Args:
            backup_id: Id returned by create
            restore_data: Run the data restore command when the snapshot has a dump
            restore_assets: Replace the managed asset trees

        Raises:
            BackupNotFoundError: If no archive exists for the id
            SnapshotError: If verification, extraction or the restore command fails
        """
        if not _BACKUP_ID.match(backup_id or "") or not self.archive_path(backup_id).exists():
            raise BackupNotFoundError(f"Backup not found: {backup_id}")

        if not await self.verify(backup_id):
            raise SnapshotError(f"Backup {backup_id} failed checksum verification")

        logger.info(
            "restoring_snapshot",
            backup_id=backup_id,
            restore_data=restore_data,
            restore_assets=restore_assets,
        )

        try:
            with tempfile.TemporaryDirectory(dir=self.backup_root, prefix=".restore-") as tmp:
                staging = Path(tmp)
                await asyncio.to_thread(self._extract_archive, self.archive_path(backup_id), staging)

                with open(staging / MANIFEST_NAME) as f:
                    manifest = json.load(f)

                if restore_assets:
                    for name in manifest.get("assets", []):
                        source = staging / ASSETS_DIR / name
                        target = self.app_root / name
                        if target.exists():
                            shutil.rmtree(target)
                        shutil.copytree(source, target, symlinks=True)
                        logger.info("asset_tree_restored", name=name)

                dump = staging / DUMP_NAME
                if restore_data and dump.exists() and self.settings.data_restore_command:
                    command = self._format_command(self.settings.data_restore_command, input=str(dump))
                    result = await self.process_runner.run(
                        command,
                        cwd=self.app_root,
                        timeout=self.settings.snapshot_timeout_seconds,
                    )
                    ensure_success(result, "Data restore")
                    logger.info("database_restored", backup_id=backup_id)

        except ProcessFailedError as e:
            logger.error("snapshot_restore_command_failed", backup_id=backup_id, error=str(e))
            raise SnapshotError(f"Data restore failed: {e}") from e
        except (OSError, ValueError, KeyError, tarfile.TarError) as e:
            logger.error("snapshot_restore_failed", backup_id=backup_id, error=str(e))
            raise SnapshotError(f"Restore of {backup_id} failed: {e}") from e

        logger.info("snapshot_restored", backup_id=backup_id)

    @staticmethod
    def _extract_archive(archive: Path, destination: Path) -> None:
        with tarfile.open(archive, "r:gz") as tar:
            tar.extractall(destination, filter="data")
