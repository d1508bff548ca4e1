"""
Pipeline State - Exclusivity guard and live progress

One PipelineState exists per process. hold() is the only way to run a
download, apply or rollback: it refuses to start while another pipeline
holds the guard, and on PostgreSQL it also takes a session-level advisory
lock so two daemon processes sharing a database exclude each other.
"""
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from upkeep.services.errors import UpdateConflictError

logger = structlog.get_logger(__name__)

# Arbitrary constant shared by every daemon using the same database
ADVISORY_LOCK_KEY = 0x7570_6B65_6570

CONFLICT_MESSAGE = "An update is already in progress"


@dataclass
class UpdateProgress:
    """Snapshot of what the running pipeline is doing"""

    stage: str = "idle"
    percent: int = 0
    message: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class PipelineState:
    """In-process guard plus progress for the update pipeline"""

    def __init__(self):
        self._held = False
        self.operation: Optional[str] = None
        self.progress = UpdateProgress()

    @property
    def in_progress(self) -> bool:
        return self._held

    def set_progress(self, stage: str, percent: int, message: str = "") -> None:
        self.progress = UpdateProgress(stage=stage, percent=percent, message=message)
        logger.info("update_progress", stage=stage, percent=percent, message=message)

    @asynccontextmanager
    async def hold(
        self,
        operation: str,
        session: Optional[AsyncSession] = None,
        advisory_lock: bool = True,
    ) -> AsyncIterator["PipelineState"]:
        """
        Run a pipeline exclusively

        The in-process flag is claimed before the first await, so two
        requests on the same event loop can never both get past this point.

        Args:
            operation: Name of the pipeline ("download", "apply", "rollback")
            session: Session whose engine is used for the advisory lock
            advisory_lock: Also take the PostgreSQL advisory lock when possible

        Raises:
            UpdateConflictError: If another pipeline holds the guard
        """
        if self._held:
            logger.warning("update_conflict", requested=operation, running=self.operation)
            raise UpdateConflictError(CONFLICT_MESSAGE)

        self._held = True
        self.operation = operation
        connection: Optional[AsyncConnection] = None
        try:
            if session is not None and advisory_lock:
                connection = await self._acquire_advisory_lock(session)
            logger.info("pipeline_started", operation=operation)
            yield self
        finally:
            if connection is not None:
                await self._release_advisory_lock(connection)
            self._held = False
            self.operation = None
            logger.info("pipeline_released", operation=operation)

    async def _acquire_advisory_lock(self, session: AsyncSession) -> Optional[AsyncConnection]:
        engine = session.bind
        if engine is None or engine.dialect.name != "postgresql":
            return None

        # Dedicated connection: the lock must outlive the session's commits
        connection = await engine.connect()
        try:
            result = await connection.execute(
                text("SELECT pg_try_advisory_lock(:key)"), {"key": ADVISORY_LOCK_KEY}
            )
            acquired = bool(result.scalar())
            await connection.commit()
        except Exception:
            await connection.close()
            raise

        if not acquired:
            await connection.close()
            logger.warning("advisory_lock_busy", key=ADVISORY_LOCK_KEY)
            raise UpdateConflictError(CONFLICT_MESSAGE)

        logger.debug("advisory_lock_acquired", key=ADVISORY_LOCK_KEY)
        return connection

    async def _release_advisory_lock(self, connection: AsyncConnection) -> None:
        try:
            await connection.execute(
                text("SELECT pg_advisory_unlock(:key)"), {"key": ADVISORY_LOCK_KEY}
            )
            await connection.commit()
            await connection.close()
        except Exception as e:
            # A pooled connection still holding the lock must not be reused
            logger.error("advisory_unlock_failed", error=str(e))
            await connection.invalidate()
            await connection.close()


@lru_cache()
def get_pipeline_state() -> PipelineState:
    """Get the process-wide pipeline state"""
    return PipelineState()
