"""
Update Attempt Model - Durable record of every download, apply and rollback

One row per pipeline run. Rows are never deleted; the history endpoint
reads them newest first.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    TIMESTAMP,
    Index,
    Integer,
    BigInteger,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from upkeep.database import Base
from upkeep.services.errors import InvalidTransitionError


class UpdateAttemptStatus(str, Enum):
    """Lifecycle stage of an update attempt."""
    PENDING = "pending"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    BACKING_UP = "backing_up"
    APPLYING = "applying"
    MIGRATING = "migrating"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


FORWARD_PATH = [
    UpdateAttemptStatus.PENDING,
    UpdateAttemptStatus.DOWNLOADING,
    UpdateAttemptStatus.DOWNLOADED,
    UpdateAttemptStatus.BACKING_UP,
    UpdateAttemptStatus.APPLYING,
    UpdateAttemptStatus.MIGRATING,
    UpdateAttemptStatus.VERIFYING,
    UpdateAttemptStatus.COMPLETED,
]

TERMINAL_STATUSES = {
    UpdateAttemptStatus.COMPLETED,
    UpdateAttemptStatus.FAILED,
    UpdateAttemptStatus.ROLLED_BACK,
}

ROLLBACK_SOURCES = {UpdateAttemptStatus.FAILED, UpdateAttemptStatus.COMPLETED}


def can_transition(current, new) -> bool:
    """
    Check whether an attempt may move from one status to another.

    Forward moves along the happy path are allowed, including skips
    (an apply that reuses a download jumps from DOWNLOADED onward).
    FAILED is reachable from any non-terminal status and ROLLED_BACK
    only from FAILED or COMPLETED.
    """
    current = UpdateAttemptStatus(current)
    new = UpdateAttemptStatus(new)

    if current in TERMINAL_STATUSES and new != UpdateAttemptStatus.ROLLED_BACK:
        return False
    if new == UpdateAttemptStatus.FAILED:
        return True
    if new == UpdateAttemptStatus.ROLLED_BACK:
        return current in ROLLBACK_SOURCES
    return FORWARD_PATH.index(new) > FORWARD_PATH.index(current)


def ensure_transition(current, new) -> None:
    """Raise InvalidTransitionError unless can_transition allows the move"""
    if not can_transition(current, new):
        raise InvalidTransitionError(UpdateAttemptStatus(current).value, UpdateAttemptStatus(new).value)


class UpdateAttempt(Base):
    """
    Update Attempt - One run of the update pipeline

    Tracks provenance of the release artifact, the snapshot taken before
    the live tree was touched, the migrations that ran, and the outcome.
    """

    __tablename__ = "update_attempts"

    # Primary Key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Version Information
    from_version: Mapped[str] = mapped_column(String(50), nullable=False)
    to_version: Mapped[str] = mapped_column(String(50), nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UpdateAttemptStatus.PENDING.value
    )

    # Artifact Provenance
    download_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    checksum: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    # Release Text
    changelog: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    release_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Snapshot and Migrations
    backup_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    migrations_run: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    migration_logs: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Failure Details
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_stack: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Operator
    initiated_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Timestamps
    started_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.current_timestamp(),
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.current_timestamp(),
    )

    # Rollback
    rolled_back: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rollback_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'downloading', 'downloaded', 'backing_up', 'applying', "
            "'migrating', 'verifying', 'completed', 'failed', 'rolled_back')",
            name="update_attempts_status_check",
        ),
        Index("idx_update_attempts_status", "status"),
        Index("idx_update_attempts_started_at", "started_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<UpdateAttempt(id={self.id}, {self.from_version} -> {self.to_version}, "
            f"status={self.status})>"
        )

    def to_dict(self) -> dict:
        """Serialize for the history endpoint"""
        return {
            "id": self.id,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "status": self.status,
            "download_url": self.download_url,
            "checksum": self.checksum,
            "file_size": self.file_size,
            "changelog": self.changelog,
            "release_notes": self.release_notes,
            "backup_id": self.backup_id,
            "migrations_run": list(self.migrations_run or []),
            "migration_logs": self.migration_logs,
            "error_message": self.error_message,
            "error_stack": self.error_stack,
            "initiated_by": self.initiated_by,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "rolled_back": self.rolled_back,
            "rollback_at": self.rollback_at.isoformat() if self.rollback_at else None,
        }
