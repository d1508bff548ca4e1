"""
Process Runner - External command execution with timeouts

Every external tool the pipeline drives (dependency install, asset build,
alembic, pg_dump) goes through a ProcessRunner so tests can substitute a
fake and the daemon never blocks the event loop on a child process.
"""
import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Protocol, Sequence, Union

import structlog

from upkeep.services.errors import ProcessFailedError, ProcessTimeoutError

logger = structlog.get_logger(__name__)

# Captured output kept in error messages and logs
OUTPUT_TAIL_CHARS = 2000


@dataclass
class ProcessResult:
    """Outcome of one external command"""

    command: Sequence[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ProcessRunner(Protocol):
    """Runs an external command and reports its output"""

    async def run(
        self,
        command: Sequence[str],
        *,
        cwd: Optional[Union[str, Path]] = None,
        timeout: float = 300.0,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessResult:
        ...


class AsyncProcessRunner:
    """ProcessRunner backed by asyncio subprocesses"""

    async def run(
        self,
        command: Sequence[str],
        *,
        cwd: Optional[Union[str, Path]] = None,
        timeout: float = 300.0,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessResult:
        """
        Run a command to completion.

        Args:
            command: Program and arguments (no shell interpretation)
            cwd: Working directory
            timeout: Seconds before the process is killed
            env: Extra environment variables merged over os.environ

        Returns:
            ProcessResult, whatever the exit code

        Raises:
            ProcessTimeoutError: If the command exceeded its timeout
            ProcessFailedError: If the command could not be started
        """
        command = [str(part) for part in command]
        process_env = None
        if env:
            process_env = {**os.environ, **env}

        logger.debug("process_starting", command=command, cwd=str(cwd) if cwd else None)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                env=process_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("process_start_failed", command=command, error=str(e))
            raise ProcessFailedError(f"Could not start {command[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error("process_timeout", command=command, timeout=timeout)
            raise ProcessTimeoutError(
                f"{' '.join(command)} timed out after {timeout}s", exit_code=process.returncode
            )

        result = ProcessResult(
            command=command,
            exit_code=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        logger.debug("process_finished", command=command, exit_code=result.exit_code)
        return result


async def run_step(
    runner: ProcessRunner,
    command: Sequence[str],
    *,
    step: str,
    cwd: Union[str, Path],
    timeout: float,
) -> Optional[ProcessResult]:
    """Run a configured pipeline command; an empty command skips the step"""
    if not command:
        logger.info("step_skipped", step=step)
        return None
    logger.info("step_running", step=step, command=list(command))
    result = await runner.run(command, cwd=cwd, timeout=timeout)
    return ensure_success(result, step)


def ensure_success(result: ProcessResult, step: str) -> ProcessResult:
    """Raise ProcessFailedError for a non-zero exit"""
    if not result.ok:
        output = (result.stderr or result.stdout)[-OUTPUT_TAIL_CHARS:]
        raise ProcessFailedError(
            f"{step} failed with exit code {result.exit_code}: {output}",
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    return result
