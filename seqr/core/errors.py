"""Exception hierarchy and error categorisation for command execution."""

from __future__ import annotations

import shlex
import subprocess
from typing import TYPE_CHECKING

from seqr.core.models import Command, ErrorDetail, ErrorType

if TYPE_CHECKING:
    from seqr.core.models import ExecutionResult


class SeqrError(Exception):
    """Base error for seqr."""

    pass


class ConfigurationError(SeqrError):
    """Command list or command file is unusable."""

    pass


class MonitoringError(SeqrError):
    """Health monitoring was started or stopped in the wrong state."""

    pass


class CommandError(SeqrError):
    """A single command failed. Carries the populated result."""

    error_type: ErrorType = ErrorType.SYSTEM_ERROR

    def __init__(
        self,
        message: str,
        *,
        command_name: str,
        command_line: str,
        working_dir: str | None = None,
        error_type: ErrorType | None = None,
        result: ExecutionResult | None = None,
    ):
        super().__init__(message)
        self.command_name = command_name
        self.command_line = command_line
        self.working_dir = working_dir or "."
        if error_type is not None:
            self.error_type = error_type
        self.result = result


class CommandExecutionError(CommandError):
    """A once command did not complete successfully."""

    def __init__(self, message: str, *, exit_code: int = -1, **kwargs):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code

    def __str__(self) -> str:
        return (
            f"command '{self.command_name}' failed: {self.args[0]}\n"
            f"  Command: {self.command_line}\n"
            f"  Working Directory: {self.working_dir}\n"
            f"  Exit Code: {self.exit_code}"
        )


class KeepAliveStartupError(CommandError):
    """A keepAlive command could not be started."""

    error_type = ErrorType.STARTUP_FAILURE

    def __str__(self) -> str:
        return (
            f"failed to start keepAlive command '{self.command_name}': {self.args[0]}\n"
            f"  Command: {self.command_line}\n"
            f"  Working Directory: {self.working_dir}"
        )


class UnsupportedModeError(CommandError):
    """The command's mode is neither 'once' nor 'keepAlive'."""

    error_type = ErrorType.UNSUPPORTED_MODE


class ExecutionFailedError(SeqrError):
    """The sequence halted at a failed command.

    The underlying CommandError is chained as __cause__.
    """

    def __init__(
        self,
        index: int,
        total: int,
        command_name: str,
        error_type: ErrorType,
        reason: str,
    ):
        self.index = index
        self.total = total
        self.command_name = command_name
        self.error_type = error_type
        super().__init__(
            f"command {index + 1}/{total} '{command_name}' failed ({error_type.value}): {reason}"
        )


class ExecutionStoppedError(SeqrError):
    """stop() was called before the sequence finished."""

    pass


class ExecutionCancelledError(SeqrError):
    """The cancel event was set before the sequence finished."""

    pass


class ProcessNotFoundError(SeqrError):
    """No active process under the given name."""

    def __init__(self, process_name: str):
        super().__init__(f"process '{process_name}' not found")
        self.process_name = process_name


def build_command_line(command: Command) -> str:
    """Reconstruct a shell-quoted command line for error reports."""
    return shlex.join([command.command, *command.args])


def categorize_error(exc: BaseException) -> ErrorType:
    """Map a startup/runtime exception to an ErrorType."""
    if isinstance(exc, FileNotFoundError):
        return ErrorType.COMMAND_NOT_FOUND
    if isinstance(exc, PermissionError):
        return ErrorType.PERMISSION_DENIED
    if isinstance(exc, subprocess.TimeoutExpired | TimeoutError):
        return ErrorType.TIMEOUT
    if isinstance(exc, subprocess.CalledProcessError):
        return ErrorType.NON_ZERO_EXIT
    return ErrorType.SYSTEM_ERROR


def create_error_detail(
    command: Command,
    error_type: ErrorType,
    message: str,
    working_dir: str | None = None,
    stdout: str = "",
    stderr: str = "",
    system_error: str = "",
) -> ErrorDetail:
    """Build the ErrorDetail attached to a failed ExecutionResult."""
    return ErrorDetail(
        type=error_type,
        message=message,
        command_line=build_command_line(command),
        working_dir=working_dir or command.work_dir,
        environment=sorted(command.env),
        stdout=stdout,
        stderr=stderr,
        system_error=system_error or message,
    )
