"""Tests for toolchain/runner.py module.

Tests command execution, logging, timeouts and failure diagnostics.
"""

import sys
from unittest.mock import patch

import pytest

from depcache.toolchain.runner import (
    CommandResult,
    ToolchainFailure,
    read_log_tail,
    run_command,
)


class TestRunCommand:
    """Tests for run_command function."""

    def test_successful_command(self, tmp_path):
        """A zero exit should return a CommandResult and log output."""
        log_path = tmp_path / "logs" / "deps.log"
        result = run_command(
            [sys.executable, "-c", "print('compiling libA v1.2')"],
            cwd=tmp_path,
            log_path=log_path,
            stage="dependencies",
        )

        assert isinstance(result, CommandResult)
        assert result.exit_code == 0
        assert result.duration >= 0
        content = log_path.read_text()
        assert content.startswith("# Command: ")
        assert "compiling libA v1.2" in content
        assert "# Exit code: 0" in content

    def test_failure_carries_diagnostics(self, tmp_path):
        """A non-zero exit should raise with the compiler output intact."""
        script = (
            "import sys; "
            "sys.stderr.write('error[E0432]: unresolved import `liba::missing`\\n'); "
            "sys.exit(101)"
        )
        with pytest.raises(ToolchainFailure) as exc_info:
            run_command(
                [sys.executable, "-c", script],
                cwd=tmp_path,
                log_path=tmp_path / "project.log",
                stage="project",
            )

        failure = exc_info.value
        assert failure.code == "toolchain_failure"
        assert failure.stage == "project"
        assert failure.exit_code == 101
        assert failure.log_path == tmp_path / "project.log"
        assert "unresolved import `liba::missing`" in failure.diagnostics
        assert "unresolved import" in str(failure)

    def test_timeout(self, tmp_path):
        """A command exceeding its timeout should raise toolchain_timeout."""
        with pytest.raises(ToolchainFailure) as exc_info:
            run_command(
                [sys.executable, "-c", "import time; time.sleep(10)"],
                cwd=tmp_path,
                log_path=tmp_path / "slow.log",
                stage="dependencies",
                timeout=1,
            )
        assert exc_info.value.code == "toolchain_timeout"
        assert "TIMEOUT" in (tmp_path / "slow.log").read_text()

    def test_missing_executable(self, tmp_path):
        """A command that cannot start should raise an execution error."""
        with pytest.raises(ToolchainFailure) as exc_info:
            run_command(
                [str(tmp_path / "no-such-compiler")],
                cwd=tmp_path,
                log_path=tmp_path / "x.log",
                stage="project",
            )
        assert exc_info.value.code == "toolchain_execution_error"

    def test_env_override(self, tmp_path):
        """Environment overrides should reach the command."""
        run_command(
            [sys.executable, "-c", "import os; print(os.environ['DEPCACHE_TEST_FLAG'])"],
            cwd=tmp_path,
            log_path=tmp_path / "env.log",
            stage="project",
            env_override={"DEPCACHE_TEST_FLAG": "lto-enabled"},
        )
        assert "lto-enabled" in (tmp_path / "env.log").read_text()

    def test_passes_timeout_to_subprocess(self, tmp_path):
        """The timeout should be handed to subprocess.run."""
        with patch("depcache.toolchain.runner.subprocess.run") as mock_run:
            mock_run.return_value.returncode = 0
            run_command(
                ["cargo", "build"],
                cwd=tmp_path,
                log_path=tmp_path / "x.log",
                stage="project",
                timeout=42,
            )
        assert mock_run.call_args.kwargs["timeout"] == 42
        assert mock_run.call_args.kwargs["cwd"] == tmp_path


class TestReadLogTail:
    """Tests for read_log_tail function."""

    def test_tail(self, tmp_path):
        """Only the last lines should be returned."""
        path = tmp_path / "a.log"
        path.write_text("\n".join(str(i) for i in range(100)))
        assert read_log_tail(path, lines=3) == "97\n98\n99"

    def test_missing_file(self, tmp_path):
        """A missing log should read as empty."""
        assert read_log_tail(tmp_path / "missing.log") == ""
