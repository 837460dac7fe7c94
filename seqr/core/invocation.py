"""Process invocation setup shared by the once and keepAlive executors."""

from __future__ import annotations

import os
import subprocess
from typing import Any

from seqr.core.config import ExecutorConfig
from seqr.core.errors import categorize_error, create_error_detail
from seqr.core.models import Command, ErrorType, ExecutionResult
from seqr.process.platform import ProcessGroupController


def resolve_working_dir(command: Command, config: ExecutorConfig) -> str | None:
    """Command-level workDir beats the executor default."""
    return command.work_dir or config.working_dir or None


def build_environment(command: Command) -> dict[str, str] | None:
    """Full parent environment with the command's overrides applied key by key.

    Returns None (inherit unchanged) when the command has no overrides.
    """
    if not command.env:
        return None
    env = dict(os.environ)
    env.update(command.env)
    return env


def popen_kwargs(
    command: Command,
    config: ExecutorConfig,
    controller: ProcessGroupController,
) -> dict[str, Any]:
    """Keyword arguments for subprocess.Popen, minus the stdio wiring."""
    kwargs: dict[str, Any] = {
        "cwd": resolve_working_dir(command, config),
        "env": build_environment(command),
        "stdin": subprocess.DEVNULL,
    }
    kwargs.update(controller.popen_kwargs())
    return kwargs


def startup_failure_result(
    command: Command,
    config: ExecutorConfig,
    exc: OSError | ValueError,
    error_type: ErrorType | None = None,
) -> ExecutionResult:
    """Result for a process that never started."""
    error_type = error_type or categorize_error(exc)
    message = f"failed to start: {exc}"
    result = ExecutionResult(
        command=command,
        success=False,
        exit_code=-1,
        error=message,
        error_detail=create_error_detail(
            command,
            error_type,
            message,
            working_dir=resolve_working_dir(command, config),
            system_error=str(exc),
        ),
    )
    result.finish()
    return result
