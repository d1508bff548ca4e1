"""
Migration Runner - Alembic against the deployed application

Runs the configured alembic commands through a ProcessRunner inside
app_root and turns their output into structured results.
"""
import re
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from upkeep.config import Settings, get_settings
from upkeep.services.errors import ProcessFailedError, ProcessTimeoutError
from upkeep.services.process_runner import AsyncProcessRunner, ProcessRunner

logger = structlog.get_logger(__name__)

# "Running upgrade 1a2b -> 3c4d, add table" (from is empty for the first revision)
_UPGRADE_LINE = re.compile(r"Running upgrade\s+(?:(\S+)\s+)?->\s+([^\s,]+)")
# "3c4d (head)" as printed by `alembic current`
_CURRENT_LINE = re.compile(r"^([0-9A-Za-z_]+)(?:\s+\(.*\))?\s*$")
# "1a2b -> 3c4d (head), add table" as printed by `alembic history`
_HISTORY_LINE = re.compile(r"->\s+([0-9A-Za-z_]+)")


@dataclass
class MigrationResult:
    """Outcome of a migration run"""

    success: bool
    migrations_run: List[str] = field(default_factory=list)
    logs: str = ""
    error: Optional[str] = None


@dataclass
class SchemaValidation:
    """Outcome of a schema check"""

    valid: bool
    issues: List[str] = field(default_factory=list)


def parse_applied_revisions(output: str) -> List[str]:
    """Extract the target revision of every "Running upgrade" line"""
    return [match.group(2) for match in _UPGRADE_LINE.finditer(output)]


class MigrationRunner:
    """Drives alembic for the managed application"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        process_runner: Optional[ProcessRunner] = None,
    ):
        self.settings = settings or get_settings()
        self.process_runner = process_runner or AsyncProcessRunner()

    async def run(self) -> MigrationResult:
        """
        Upgrade the schema to head

        Never raises: a non-zero exit, a timeout or any other failure is
        reported as success=False with the captured logs. A failed run
        reports no applied migrations; the upgrade runs in one transaction.
        """
        logs: List[str] = ["Starting database migrations..."]
        logger.info("running_migrations", command=self.settings.migrate_command)

        try:
            result = await self.process_runner.run(
                self.settings.migrate_command,
                cwd=self.settings.app_root,
                timeout=self.settings.migrate_timeout_seconds,
            )
            for stream in (result.stdout, result.stderr):
                if stream.strip():
                    logs.append(stream.strip())

            if not result.ok:
                error = f"Migration command exited with code {result.exit_code}"
                logs.append(f"Migration failed: {error}")
                logger.error("migration_failed", exit_code=result.exit_code, stderr=result.stderr[-2000:])
                return MigrationResult(False, [], "\n".join(logs), error)

            # alembic logs "Running upgrade" through logging, which goes to stderr
            migrations_run = parse_applied_revisions(result.stdout + "\n" + result.stderr)

        except ProcessTimeoutError as e:
            logs.append(f"Migration failed: {e}")
            logger.error("migration_timeout", error=str(e))
            return MigrationResult(False, [], "\n".join(logs), str(e))
        except Exception as e:
            logs.append(f"Migration failed: {e}")
            logger.error("migration_error", error=str(e))
            return MigrationResult(False, [], "\n".join(logs), str(e))

        logs.append(
            f"Migrations completed successfully. Applied {len(migrations_run)} migration(s)."
        )
        logger.info("migrations_complete", applied=migrations_run)
        return MigrationResult(True, migrations_run, "\n".join(logs))

    async def validate_schema(self) -> SchemaValidation:
        """Check that the models and the migrated schema agree"""
        if not self.settings.validate_command:
            return SchemaValidation(valid=True)

        try:
            result = await self.process_runner.run(
                self.settings.validate_command,
                cwd=self.settings.app_root,
                timeout=self.settings.validate_timeout_seconds,
            )
        except ProcessFailedError as e:
            logger.error("schema_validation_error", error=str(e))
            return SchemaValidation(valid=False, issues=[str(e)])

        if result.ok:
            return SchemaValidation(valid=True)

        output = (result.stderr or result.stdout).strip()
        issues = [line.strip() for line in output.splitlines() if line.strip()]
        logger.warning("schema_validation_failed", issues=issues[:20])
        return SchemaValidation(
            valid=False,
            issues=issues or [f"Schema validation exited with code {result.exit_code}"],
        )

    async def current_revision(self) -> Optional[str]:
        """Get the revision the database is currently at (None for an empty database)"""
        try:
            result = await self.process_runner.run(
                self.settings.migration_current_command,
                cwd=self.settings.app_root,
                timeout=self.settings.validate_timeout_seconds,
            )
        except ProcessFailedError as e:
            logger.warning("get_schema_revision_error", error=str(e))
            return None

        if not result.ok:
            logger.warning("get_schema_revision_failed", exit_code=result.exit_code)
            return None

        for line in result.stdout.splitlines():
            match = _CURRENT_LINE.match(line.strip())
            if match:
                return match.group(1)
        return None

    async def pending_migrations(self) -> List[str]:
        """Revisions between the current one and head, oldest first"""
        try:
            current = await self.current_revision()
            result = await self.process_runner.run(
                self.settings.migration_history_command,
                cwd=self.settings.app_root,
                timeout=self.settings.validate_timeout_seconds,
            )
            if not result.ok:
                logger.warning("pending_migrations_failed", exit_code=result.exit_code)
                return []
        except Exception as e:
            logger.warning("pending_migrations_error", error=str(e))
            return []

        revisions = []
        for line in result.stdout.splitlines():
            match = _HISTORY_LINE.search(line)
            if match and match.group(1) != current:
                revisions.append(match.group(1))

        # alembic history lists newest first
        revisions.reverse()
        return revisions
