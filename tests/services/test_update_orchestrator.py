"""
Tests for UpdateOrchestrator - the download and apply pipeline.

The release server, process runner and snapshot service are fakes; the
database, the application tree, extraction and rollback points are real.
"""
import asyncio
import io
import zipfile
from datetime import datetime, timedelta, timezone

import pytest

from upkeep.models.update_attempt import UpdateAttempt, UpdateAttemptStatus
from upkeep.services.errors import (
    ApplyError,
    AttemptNotFoundError,
    IntegrityError,
    MigrationError,
    ProcessFailedError,
    ReleaseNotFoundError,
    SchemaValidationError,
    SnapshotError,
    UpdateConflictError,
)
from upkeep.services.manifest_client import VersionInfo
from upkeep.services.update_orchestrator import UpdateOrchestrator, artifact_suffix

RELEASE_FILES = {
    "app/main.py": "VERSION = '1.1.0'\n",
    "app/themes.py": "THEMES = []\n",
    "requirements.txt": "fastapi==0.115.0\n",
    "uploads/photo.txt": "from the release",
    "node_modules/left-pad/index.js": "module.exports = 1\n",
}

UPGRADE_LOG = "INFO  [alembic.runtime.migration] Running upgrade 20260101_0900 -> 20260301_1200, add themes\n"


@pytest.fixture
def release(release_server):
    return release_server.publish("1.1.0", RELEASE_FILES, body="Adds themes")


def make_attempt(status, to_version="1.1.0", minutes_ago=0, **values):
    started = datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
    return UpdateAttempt(
        from_version="1.0.0",
        to_version=to_version,
        status=status.value,
        migrations_run=[],
        rolled_back=False,
        started_at=started,
        updated_at=started,
        **values,
    )


class TestApply:
    """Tests for the full apply pipeline"""

    @pytest.mark.asyncio
    async def test_successful_update(
        self, orchestrator, release, app_root, process_runner, snapshot_service, pipeline_state, load_attempts
    ):
        process_runner.respond(["alembic", "upgrade"], stderr=UPGRADE_LOG)

        result = await orchestrator.apply("1.1.0", initiated_by="ops")

        assert result["success"] is True
        assert result["from_version"] == "1.0.0"
        assert result["to_version"] == "1.1.0"
        assert "Restart" in result["message"]

        # Tree updated, excluded paths untouched
        assert (app_root / "VERSION").read_text() == "1.1.0\n"
        assert (app_root / "app" / "main.py").read_text() == "VERSION = '1.1.0'\n"
        assert (app_root / "app" / "themes.py").exists()
        assert (app_root / "uploads" / "photo.txt").read_text() == "original upload"
        assert not (app_root / "node_modules").exists()

        attempts = await load_attempts()
        assert len(attempts) == 1
        attempt = attempts[0]
        assert attempt.id == result["attempt_id"]
        assert attempt.status == UpdateAttemptStatus.COMPLETED.value
        assert attempt.backup_id == "backup-1"
        assert attempt.migrations_run == ["20260301_1200"]
        assert "Applied 1 migration(s)" in attempt.migration_logs
        assert attempt.initiated_by == "ops"
        assert attempt.file_size > 0
        assert attempt.completed_at is not None
        assert attempt.error_message is None

        assert snapshot_service.created == [("pre-update-1.0.0-to-1.1.0", "ops")]
        assert process_runner.ran(["pip", "install"])
        assert process_runner.ran(["npm", "run", "build"])
        assert process_runner.ran(["alembic", "check"])

        # Rollback point for the previous version, artifact cleaned up
        assert await orchestrator.snapshot_manager.has_file_rollback_point("1.0.0")
        assert not list((app_root / "updates").glob("release-*"))

        assert not pipeline_state.in_progress
        assert pipeline_state.progress.stage == "completed"
        assert pipeline_state.progress.percent == 100

    @pytest.mark.asyncio
    async def test_exclusions_only_match_from_release_root(self, orchestrator, release_server, app_root):
        """Nested directories that share a name with an excluded path are still updated"""
        release_server.publish(
            "1.1.0",
            {
                "VERSION": "1.1.0\n",
                "src/modules/updates/service.py": "SERVICE = 2\n",
                "app/data/schema.json": "{}\n",
                "app/__pycache__/main.cpython-312.pyc": "stale",
                "data/seed.sql": "-- release data\n",
            },
        )

        await orchestrator.apply("1.1.0")

        assert (app_root / "src" / "modules" / "updates" / "service.py").read_text() == "SERVICE = 2\n"
        assert (app_root / "app" / "data" / "schema.json").read_text() == "{}\n"
        assert not (app_root / "app" / "__pycache__").exists()
        assert not (app_root / "data").exists()

    @pytest.mark.asyncio
    async def test_commands_run_in_order(self, orchestrator, release, process_runner):
        await orchestrator.apply("1.1.0")

        programs = [call[:2] for call in process_runner.calls]
        assert programs == [
            ("alembic", "upgrade"),
            ("pip", "install"),
            ("npm", "run"),
            ("alembic", "check"),
        ]

    @pytest.mark.asyncio
    async def test_migration_failure_leaves_failed_attempt(
        self, orchestrator, release, app_root, process_runner, pipeline_state, load_attempts
    ):
        process_runner.respond(
            ["alembic", "upgrade"],
            exit_code=1,
            stderr=(
                "Running upgrade  -> 20260301_1200, add themes\n"
                "Running upgrade 20260301_1200 -> 20260401_0000, add plugins\nboom"
            ),
        )

        with pytest.raises(MigrationError):
            await orchestrator.apply("1.1.0")

        attempt = (await load_attempts())[0]
        assert attempt.status == UpdateAttemptStatus.FAILED.value
        assert attempt.backup_id == "backup-1"
        assert attempt.rolled_back is False
        assert "Migration failed" in attempt.error_message
        assert "MigrationError" in attempt.error_stack
        assert attempt.migrations_run == []
        assert "20260401_0000" in attempt.migration_logs

        # No automatic rollback and no version bump
        assert (app_root / "VERSION").read_text() == "1.0.0\n"
        assert (app_root / "app" / "main.py").read_text() == "VERSION = '1.1.0'\n"
        assert not process_runner.ran(["npm"])

        assert not pipeline_state.in_progress
        assert pipeline_state.progress.stage == "failed"
        assert not list((app_root / "updates").glob("release-*"))

    @pytest.mark.asyncio
    async def test_checksum_mismatch_fails_before_touching_tree(
        self, orchestrator, release_server, app_root, snapshot_service, load_attempts
    ):
        release_server.publish("1.1.0", RELEASE_FILES, checksum="0" * 64)

        with pytest.raises(IntegrityError):
            await orchestrator.apply("1.1.0")

        attempts = await load_attempts()
        assert [a.status for a in attempts] == [UpdateAttemptStatus.FAILED.value]
        assert "Checksum mismatch" in attempts[0].error_message
        assert snapshot_service.created == []
        assert (app_root / "app" / "main.py").read_text() == "VERSION = '1.0.0'\n"
        assert not list((app_root / "updates").glob("release-*"))

    @pytest.mark.asyncio
    async def test_snapshot_failure_stops_pipeline(
        self, orchestrator, release, app_root, snapshot_service, load_attempts
    ):
        snapshot_service.fail_create = SnapshotError("Snapshot export failed: pg_dump not found")

        with pytest.raises(SnapshotError):
            await orchestrator.apply("1.1.0")

        attempt = (await load_attempts())[0]
        assert attempt.status == UpdateAttemptStatus.FAILED.value
        assert attempt.backup_id is None
        assert (app_root / "app" / "main.py").read_text() == "VERSION = '1.0.0'\n"

    @pytest.mark.asyncio
    async def test_build_failure(self, orchestrator, release, process_runner, load_attempts):
        process_runner.respond(["npm"], exit_code=1, stderr="ERR! build failed")

        with pytest.raises(ProcessFailedError):
            await orchestrator.apply("1.1.0")

        attempt = (await load_attempts())[0]
        assert attempt.status == UpdateAttemptStatus.FAILED.value
        assert "ERR! build failed" in attempt.error_message

    @pytest.mark.asyncio
    async def test_schema_validation_failure(self, orchestrator, release, app_root, process_runner, load_attempts):
        process_runner.respond(["alembic", "check"], exit_code=1, stderr="New upgrade operations detected")

        with pytest.raises(SchemaValidationError):
            await orchestrator.apply("1.1.0")

        attempt = (await load_attempts())[0]
        assert attempt.status == UpdateAttemptStatus.FAILED.value
        assert (app_root / "VERSION").read_text() == "1.0.0\n"

    @pytest.mark.asyncio
    async def test_unknown_version_creates_no_record(self, orchestrator, release, load_attempts):
        with pytest.raises(ReleaseNotFoundError):
            await orchestrator.apply("9.9.9")

        assert await load_attempts() == []

    @pytest.mark.asyncio
    async def test_concurrent_apply_rejected_without_record(
        self, build_orchestrator, session_maker, release, process_runner, load_attempts
    ):
        gate = process_runner.block(["npm"])

        async with session_maker() as first_session, session_maker() as second_session:
            first = build_orchestrator(first_session)
            second = build_orchestrator(second_session)

            running = asyncio.create_task(first.apply("1.1.0"))
            await process_runner.started[("npm",)].wait()

            with pytest.raises(UpdateConflictError):
                await second.apply("1.1.0")
            with pytest.raises(UpdateConflictError):
                await second.download("1.1.0")

            gate.set()
            result = await running

        assert result["success"] is True
        attempts = await load_attempts()
        assert len(attempts) == 1
        assert attempts[0].status == UpdateAttemptStatus.COMPLETED.value


class TestDownload:
    """Tests for download-only and download reuse"""

    @pytest.mark.asyncio
    async def test_download_records_downloaded_attempt(self, orchestrator, release, app_root, load_attempts):
        result = await orchestrator.download("1.1.0", initiated_by="ops")

        assert result["success"] is True
        assert result["file_path"].endswith("release-1.1.0.tar.gz")
        assert (app_root / "updates" / "release-1.1.0.tar.gz").exists()

        attempt = (await load_attempts())[0]
        assert attempt.id == result["attempt_id"]
        assert attempt.status == UpdateAttemptStatus.DOWNLOADED.value
        assert attempt.checksum is not None
        # Tree untouched
        assert (app_root / "app" / "main.py").read_text() == "VERSION = '1.0.0'\n"

    @pytest.mark.asyncio
    async def test_download_mismatch_removes_artifact(self, orchestrator, release_server, app_root, load_attempts):
        release_server.publish("1.1.0", RELEASE_FILES, checksum="f" * 64)

        with pytest.raises(IntegrityError):
            await orchestrator.download("1.1.0")

        assert not (app_root / "updates" / "release-1.1.0.tar.gz").exists()
        statuses = [a.status for a in await load_attempts()]
        assert UpdateAttemptStatus.DOWNLOADED.value not in statuses

    @pytest.mark.asyncio
    async def test_apply_reuses_download(self, orchestrator, release_server, release, load_attempts):
        downloaded = await orchestrator.download("1.1.0")
        # Any further artifact request would 404
        release_server.artifacts.clear()

        result = await orchestrator.apply("1.1.0")

        assert result["attempt_id"] == downloaded["attempt_id"]
        attempts = await load_attempts()
        assert len(attempts) == 1
        assert attempts[0].status == UpdateAttemptStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_missing_artifact_fails_download_and_refetches(
        self, orchestrator, release, app_root, load_attempts
    ):
        downloaded = await orchestrator.download("1.1.0")
        (app_root / "updates" / "release-1.1.0.tar.gz").unlink()

        result = await orchestrator.apply("1.1.0")

        attempts = await load_attempts()
        assert len(attempts) == 2
        stale = next(a for a in attempts if a.id == downloaded["attempt_id"])
        assert stale.status == UpdateAttemptStatus.FAILED.value
        assert stale.error_message == "artifact missing"
        fresh = next(a for a in attempts if a.id == result["attempt_id"])
        assert fresh.status == UpdateAttemptStatus.COMPLETED.value


class TestQueries:
    """Tests for status, check, history and attempt lookup"""

    @pytest.mark.asyncio
    async def test_status(self, orchestrator, release):
        status = await orchestrator.get_status()

        assert status["current_version"] == "1.0.0"
        assert status["latest_version"] == "1.1.0"
        assert status["update_available"] is True
        assert status["version_info"]["version"] == "1.1.0"
        assert status["pending_migrations"] == []
        assert status["update_in_progress"] is False
        assert status["progress"]["stage"] == "idle"

    @pytest.mark.asyncio
    async def test_status_survives_manifest_outage(self, orchestrator, release_server):
        release_server.fail_manifest_with = 502

        status = await orchestrator.get_status()

        assert status["current_version"] == "1.0.0"
        assert status["update_available"] is False
        assert status["latest_version"] is None

    @pytest.mark.asyncio
    async def test_check_forces_refresh(self, orchestrator, release, release_server):
        await orchestrator.get_status()
        result = await orchestrator.check_for_updates()

        assert release_server.manifest_requests == 2
        assert result["available"] is True
        assert [u["version"] for u in result["available_updates"]] == ["1.1.0"]
        assert result["checked_at"]

    @pytest.mark.asyncio
    async def test_history_newest_first_with_limit(self, orchestrator, db_session):
        db_session.add_all(
            [
                make_attempt(UpdateAttemptStatus.COMPLETED, to_version="1.1.0", minutes_ago=30),
                make_attempt(UpdateAttemptStatus.FAILED, to_version="1.2.0", minutes_ago=20),
                make_attempt(UpdateAttemptStatus.DOWNLOADED, to_version="1.3.0", minutes_ago=10),
            ]
        )
        await db_session.commit()

        history = await orchestrator.get_history(limit=2)

        assert [a.to_version for a in history] == ["1.3.0", "1.2.0"]

    @pytest.mark.asyncio
    async def test_get_attempt_missing(self, orchestrator):
        with pytest.raises(AttemptNotFoundError):
            await orchestrator.get_attempt(404)


class TestStartupRecovery:
    @pytest.mark.asyncio
    async def test_interrupted_attempts_marked_failed(self, orchestrator, db_session, load_attempts):
        db_session.add_all(
            [
                make_attempt(UpdateAttemptStatus.APPLYING),
                make_attempt(UpdateAttemptStatus.DOWNLOADED),
                make_attempt(UpdateAttemptStatus.COMPLETED),
            ]
        )
        await db_session.commit()

        count = await orchestrator.fail_interrupted_attempts()

        assert count == 1
        statuses = [(a.status, a.error_message) for a in await load_attempts()]
        assert statuses == [
            ("failed", "Interrupted by daemon restart"),
            ("downloaded", None),
            ("completed", None),
        ]


class TestArtifacts:
    def test_suffix_from_asset_name(self):
        info = VersionInfo(version="1.1.0", asset_name="app-1.1.0.tgz", download_url="https://x/y")
        assert artifact_suffix(info) == ".tgz"

    def test_zipball_is_zip(self):
        info = VersionInfo(version="1.1.0", download_url="https://api.github.com/repos/acme/app/zipball/v1.1.0")
        assert artifact_suffix(info) == ".zip"

    def test_zip_without_root_folder(self, tmp_path):
        """A zip whose files sit at the top level is used as-is"""
        artifact = tmp_path / "release.zip"
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr("VERSION", "1.1.0\n")
            archive.writestr("app/main.py", "VERSION = '1.1.0'\n")
        artifact.write_bytes(buffer.getvalue())
        scratch = tmp_path / "scratch"
        scratch.mkdir()

        root = UpdateOrchestrator._extract(artifact, scratch)

        assert root == scratch
        assert (root / "app" / "main.py").exists()

    def test_unknown_format_rejected(self, tmp_path):
        artifact = tmp_path / "release.tar.gz"
        artifact.write_bytes(b"not an archive")
        scratch = tmp_path / "scratch"
        scratch.mkdir()

        with pytest.raises(ApplyError, match="Unsupported package format"):
            UpdateOrchestrator._extract(artifact, scratch)
