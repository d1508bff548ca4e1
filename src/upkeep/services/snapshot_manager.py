"""
Snapshot Manager - Lightweight file rollback points

Before an update touches the live tree, the version-identifying files
(VERSION, pyproject.toml, requirements.txt, alembic.ini by default) are
copied to rollback_dir/<version>/ together with a manifest of SHA256
checksums. Rollback lays them back over the tree after verifying them.
"""
import json
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import structlog

from upkeep.config import Settings, get_settings
from upkeep.services.errors import SnapshotError
from upkeep.services.package_fetcher import sha256_file

logger = structlog.get_logger(__name__)

MANIFEST_NAME = "manifest.json"


def replace_file(source: Path, target: Path) -> None:
    """
    Copy source over target atomically

    The content is written to a temp file beside the target and moved into
    place with os.replace, so readers see either the old or the new file.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
    os.close(fd)
    try:
        shutil.copy2(source, tmp_name)
        os.replace(tmp_name, target)
    except Exception:
        Path(tmp_name).unlink(missing_ok=True)
        raise


@dataclass
class RollbackPoint:
    """Information about a saved rollback point"""

    version: str
    path: str
    created_at: Optional[datetime]
    files: List[Dict[str, str]]

    def to_dict(self) -> Dict:
        return {
            "version": self.version,
            "path": self.path,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "file_count": len(self.files),
        }


class SnapshotManager:
    """Creates, restores and prunes file rollback points"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.app_root = Path(self.settings.app_root)
        self.rollback_root = self.settings.resolve(self.settings.rollback_dir)

    def _point_dir(self, version: str) -> Path:
        safe_version = version.replace("/", "_").replace("\\", "_")
        return self.rollback_root / safe_version

    async def create_file_rollback_point(self, version: str) -> Path:
        """
        Save the version-identifying files for a version

        Missing sources are skipped. Running it twice for the same version
        overwrites the previous copy.

        Returns:
            Path to the rollback point directory
        """
        point_dir = self._point_dir(version)
        logger.info("creating_rollback_point", version=version, path=str(point_dir))

        try:
            if point_dir.exists():
                shutil.rmtree(point_dir)
            point_dir.mkdir(parents=True)

            files: List[Dict[str, str]] = []
            for relative in self.settings.rollback_point_files:
                source = self.app_root / relative
                if not source.exists():
                    logger.debug("rollback_point_source_missing", path=relative)
                    continue

                if source.is_dir():
                    for item in sorted(source.rglob("*")):
                        if item.is_file():
                            rel = item.relative_to(self.app_root)
                            dest = point_dir / rel
                            dest.parent.mkdir(parents=True, exist_ok=True)
                            shutil.copy2(item, dest)
                            files.append({"path": rel.as_posix(), "checksum": sha256_file(dest)})
                else:
                    dest = point_dir / relative
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(source, dest)
                    files.append({"path": Path(relative).as_posix(), "checksum": sha256_file(dest)})

            manifest = {
                "version": version,
                "created_at": datetime.now(timezone.utc).isoformat(),
                "files": files,
            }
            with open(point_dir / MANIFEST_NAME, "w") as f:
                json.dump(manifest, f, indent=2)

        except OSError as e:
            logger.error("rollback_point_failed", version=version, error=str(e))
            raise SnapshotError(f"Failed to create rollback point for {version}: {e}") from e

        logger.info("rollback_point_created", version=version, files=len(files))
        return point_dir

    async def has_file_rollback_point(self, version: str) -> bool:
        return (self._point_dir(version) / MANIFEST_NAME).exists()

    def _read_point(self, point_dir: Path) -> Optional[RollbackPoint]:
        manifest_path = point_dir / MANIFEST_NAME
        try:
            with open(manifest_path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("rollback_point_unreadable", path=str(point_dir), error=str(e))
            return None

        created_at = None
        if data.get("created_at"):
            created_at = datetime.fromisoformat(data["created_at"])
        return RollbackPoint(
            version=data.get("version", point_dir.name),
            path=str(point_dir),
            created_at=created_at,
            files=data.get("files", []),
        )

    async def restore_file_rollback_point(self, version: str) -> bool:
        """
        Lay the saved files for a version back over the live tree

        Every saved file is verified before any file is written.

        Returns:
            False when no rollback point exists for the version

        Raises:
            SnapshotError: If a saved file is missing or fails its checksum
        """
        point_dir = self._point_dir(version)
        if not await self.has_file_rollback_point(version):
            logger.info("rollback_point_not_found", version=version)
            return False

        point = self._read_point(point_dir)
        if point is None:
            raise SnapshotError(f"Rollback point manifest for {version} is unreadable")

        for file_info in point.files:
            saved = point_dir / file_info["path"]
            if not saved.exists():
                raise SnapshotError(f"Rollback point file missing: {file_info['path']}")
            actual = sha256_file(saved)
            if actual != file_info["checksum"]:
                logger.error(
                    "rollback_point_checksum_mismatch",
                    path=file_info["path"],
                    expected=file_info["checksum"],
                    actual=actual,
                )
                raise SnapshotError(f"Checksum mismatch in rollback point: {file_info['path']}")

        try:
            for file_info in point.files:
                replace_file(point_dir / file_info["path"], self.app_root / file_info["path"])
        except OSError as e:
            raise SnapshotError(f"Failed to restore rollback point for {version}: {e}") from e

        logger.info("rollback_point_restored", version=version, files=len(point.files))
        return True

    async def list_rollback_points(self) -> List[RollbackPoint]:
        """List rollback points, newest first"""
        points: List[RollbackPoint] = []
        if not self.rollback_root.exists():
            return points

        for item in self.rollback_root.iterdir():
            if item.is_dir() and (item / MANIFEST_NAME).exists():
                point = self._read_point(item)
                if point is not None:
                    points.append(point)

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        points.sort(key=lambda p: p.created_at or epoch, reverse=True)
        return points

    async def prune_rollback_points(self, keep: int, protect: Iterable[str] = ()) -> int:
        """
        Remove old rollback points exceeding the retention limit

        Args:
            keep: Number of newest rollback points to keep
            protect: Versions that are never removed

        Returns:
            Number of rollback points removed
        """
        protected = set(protect)
        points = await self.list_rollback_points()
        removed_count = 0

        for point in points[max(keep, 0):]:
            if point.version in protected:
                continue
            try:
                shutil.rmtree(point.path)
                logger.info("rollback_point_pruned", version=point.version)
                removed_count += 1
            except OSError as e:
                logger.error("failed_to_prune_rollback_point", path=point.path, error=str(e))

        return removed_count
