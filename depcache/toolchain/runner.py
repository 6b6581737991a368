"""Toolchain command runner.

This module handles:
- Executing toolchain commands with subprocess
- Capturing stdout/stderr to log files
- Enforcing command timeouts
- Raising ToolchainFailure with the compiler diagnostics intact
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from depcache.errors import DepcacheError

logger = logging.getLogger(__name__)

# Number of trailing log lines kept as diagnostics on failure
DIAGNOSTIC_TAIL_LINES = 50


class ToolchainFailure(DepcacheError):
    """Raised when the toolchain fails to compile dependencies or the project.

    Attributes:
        stage: Compilation stage ("dependencies" or "project").
        exit_code: Process exit code, if the process ran.
        log_path: Path to the full command log.
        diagnostics: Trailing lines of the command output.
    """

    def __init__(
        self,
        message: str,
        stage: str = "",
        exit_code: int | None = None,
        log_path: Path | None = None,
        diagnostics: str = "",
        code: str = "toolchain_failure",
    ) -> None:
        super().__init__(message, code)
        self.stage = stage
        self.exit_code = exit_code
        self.log_path = log_path
        self.diagnostics = diagnostics

    def __str__(self) -> str:
        message = super().__str__()
        if self.diagnostics:
            return f"{message}\n{self.diagnostics}"
        return message


@dataclass
class CommandResult:
    """Result of a successful toolchain command.

    Attributes:
        exit_code: Process exit code.
        log_path: Path to the command log file.
        started_at: Start time.
        finished_at: Finish time.
        command: The command that was executed.
    """

    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str

    @property
    def duration(self) -> float:
        """Return the duration in seconds."""
        return (self.finished_at - self.started_at).total_seconds()


def read_log_tail(log_path: Path, lines: int = DIAGNOSTIC_TAIL_LINES) -> str:
    """Return the last lines of a log file, or an empty string."""
    try:
        content = log_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    return "\n".join(content.splitlines()[-lines:])


def run_command(
    cmd: list[str],
    cwd: Path,
    log_path: Path,
    stage: str,
    timeout: int | None = None,
    env_override: dict[str, str] | None = None,
) -> CommandResult:
    """Run a toolchain command, logging its output.

    Args:
        cmd: Command as a list of arguments.
        cwd: Working directory.
        log_path: Log file for stdout/stderr.
        stage: Compilation stage, reported on failure.
        timeout: Timeout in seconds (None = no timeout).
        env_override: Optional environment variable overrides.

    Returns:
        CommandResult for a command that exited with status 0.

    Raises:
        ToolchainFailure: If the command fails, times out or cannot start.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    cmd_str = shlex.join(cmd)
    logger.info("Executing %s build: %s", stage, cmd_str)
    logger.debug("Working directory: %s", cwd)

    started_at = datetime.now(timezone.utc)

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {cwd}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            env: dict[str, str] | None = None
            if env_override:
                env = dict(os.environ)
                env.update(env_override)

            result = subprocess.run(
                cmd,
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                check=False,
            )
            exit_code = result.returncode

    except subprocess.TimeoutExpired as e:
        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        message = f"{stage.capitalize()} build timed out after {timeout} seconds"
        logger.error("%s. See log: %s", message, log_path)
        raise ToolchainFailure(
            message,
            stage=stage,
            exit_code=-1,
            log_path=log_path,
            diagnostics=read_log_tail(log_path),
            code="toolchain_timeout",
        ) from e

    except OSError as e:
        message = f"Failed to execute {stage} build: {e}"
        logger.error(message)
        raise ToolchainFailure(
            message,
            stage=stage,
            log_path=log_path,
            code="toolchain_execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)
    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    if exit_code != 0:
        message = f"{stage.capitalize()} build failed with exit code {exit_code}"
        logger.error("%s. See log: %s", message, log_path)
        raise ToolchainFailure(
            message,
            stage=stage,
            exit_code=exit_code,
            log_path=log_path,
            diagnostics=read_log_tail(log_path),
        )

    return CommandResult(
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
    )


__all__ = [
    "DIAGNOSTIC_TAIL_LINES",
    "CommandResult",
    "ToolchainFailure",
    "read_log_tail",
    "run_command",
]
