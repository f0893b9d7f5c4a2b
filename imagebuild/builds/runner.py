"""Subprocess execution for external build tools.

Every invocation appends a framed section to its log file:

    # Command: <argv>
    # Started: <utc timestamp>
    <tool output>
    # Finished: <utc timestamp>
    # Exit code: <n>

Retries of the same step share one log, so a failed attempt stays visible
next to the one that finally succeeded. Tool-specific argument composition
lives in collaborators.py.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

LOG_RULE = "# " + "-" * 70


class CommandExecutionError(Exception):
    """Raised when a tool could not be run to completion."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "execution_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class CommandResult:
    """Result of one tool invocation.

    Attributes:
        exit_code: Process exit code.
        log_path: Log file the output was appended to.
        started_at: Start time (UTC).
        finished_at: Finish time (UTC).
        command: Shell-quoted command line.
    """

    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def error_message(self) -> str | None:
        if self.success:
            return None
        tool = shlex.split(self.command)[0] if self.command else "command"
        return f"{tool} failed with exit code {self.exit_code}"

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


def _append_log(log_path: Path, *lines: str) -> None:
    with log_path.open("a", encoding="utf-8") as log_file:
        for line in lines:
            log_file.write(f"{line}\n")


def run_command(
    cmd: list[str],
    log_path: Path,
    timeout: int | None = None,
) -> CommandResult:
    """Run a tool with stdout and stderr appended to ``log_path``.

    A non-zero exit is reported through the result, not raised; callers
    decide which stage failed.

    Args:
        cmd: Command as list of strings.
        log_path: Log file; parent directories are created.
        timeout: Timeout in seconds (None = no timeout).

    Returns:
        CommandResult with execution details.

    Raises:
        CommandExecutionError: If the tool times out or cannot be started.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    command = shlex.join(cmd)
    started_at = datetime.now(timezone.utc)
    logger.info("Executing: %s", command)
    _append_log(
        log_path,
        f"# Command: {command}",
        f"# Started: {started_at.isoformat()}",
        LOG_RULE,
    )

    try:
        with log_path.open("a", encoding="utf-8") as log_file:
            completed = subprocess.run(
                cmd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                check=False,
            )
    except subprocess.TimeoutExpired as e:
        message = f"{cmd[0]} timed out after {timeout} seconds"
        _append_log(log_path, LOG_RULE, f"# TIMEOUT after {timeout} seconds", "")
        logger.error("%s. See log: %s", message, log_path)
        raise CommandExecutionError(message, exit_code=-1, code="timeout") from e
    except OSError as e:
        message = f"Failed to execute {cmd[0]}: {e}"
        _append_log(log_path, LOG_RULE, f"# ERROR {message}", "")
        logger.error(message)
        raise CommandExecutionError(message) from e

    result = CommandResult(
        exit_code=completed.returncode,
        log_path=log_path,
        started_at=started_at,
        finished_at=datetime.now(timezone.utc),
        command=command,
    )
    _append_log(
        log_path,
        LOG_RULE,
        f"# Finished: {result.finished_at.isoformat()}",
        f"# Exit code: {result.exit_code}",
        f"# Duration: {result.duration:.1f}s",
        "",
    )
    if not result.success:
        logger.error("%s. See log: %s", result.error_message, log_path)
    return result


__all__ = ["CommandExecutionError", "CommandResult", "run_command"]
