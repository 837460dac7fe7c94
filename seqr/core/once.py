"""Once executor: run a command to completion."""

from __future__ import annotations

import logging
import subprocess
import threading
import time

from seqr.core.config import ExecutorConfig
from seqr.core.errors import CommandExecutionError, build_command_line, create_error_detail
from seqr.core.invocation import popen_kwargs, resolve_working_dir, startup_failure_result
from seqr.core.managed import ManagedProcess
from seqr.core.models import Command, ErrorType, ExecutionResult
from seqr.core.streaming import STDERR, STDOUT, OutputSink, OutputStreamer
from seqr.process.platform import ProcessGroupController, get_process_controller
from seqr.process.termination import GracefulTerminator

logger = logging.getLogger(__name__)


class OnceExecutor:
    """Runs one command synchronously and classifies its failure.

    Output is captured combined (stdout+stderr on one pipe) unless verbose,
    in which case the streams are read separately and forwarded to the sink
    as they arrive.
    """

    POLL_INTERVAL = 0.1
    # Upper bound on waiting for readers after the process exited
    DRAIN_TIMEOUT = 2.0

    def __init__(
        self,
        config: ExecutorConfig,
        controller: ProcessGroupController | None = None,
        terminator: GracefulTerminator | None = None,
        output_sink: OutputSink | None = None,
    ):
        self.config = config
        self.controller = controller or get_process_controller()
        self.terminator = terminator or GracefulTerminator(
            self.controller,
            grace_period=config.grace_period,
            force_kill_timeout=config.force_kill_timeout,
        )
        self.output_sink = output_sink

    def execute(
        self,
        command: Command,
        cancel_event: threading.Event | None = None,
    ) -> ExecutionResult:
        """Run the command and block until it exits.

        Setting cancel_event (or exceeding config.timeout) kills the process
        group.

        Returns:
            The successful result

        Raises:
            CommandExecutionError: On startup failure, non-zero exit, timeout or
                cancellation. The populated result is attached as `.result`.
        """
        verbose = self.config.verbose
        working_dir = resolve_working_dir(command, self.config)
        command_line = build_command_line(command)

        kwargs = popen_kwargs(command, self.config, self.controller)
        kwargs["stdout"] = subprocess.PIPE
        kwargs["stderr"] = subprocess.PIPE if verbose else subprocess.STDOUT

        result = ExecutionResult(command=command)
        logger.debug(f"[{command.name}] Running: {command_line} (cwd={working_dir or '.'})")
        try:
            popen = subprocess.Popen([command.command, *command.args], **kwargs)
        except (OSError, ValueError) as e:
            failed = startup_failure_result(command, self.config, e)
            raise CommandExecutionError(
                failed.error or str(e),
                exit_code=-1,
                command_name=command.name,
                command_line=command_line,
                working_dir=working_dir,
                error_type=failed.error_detail.type if failed.error_detail else None,
                result=failed,
            ) from e

        streamer = OutputStreamer(command.name, self.output_sink if verbose else None)
        streamer.attach(popen.stdout, STDOUT)
        streamer.attach(popen.stderr, STDERR)
        process = ManagedProcess(
            name=command.name,
            command=command,
            popen=popen,
            start_time=result.start_time,
            streamer=streamer,
        )

        interrupted = self._wait(process, cancel_event)
        streamer.join(self.DRAIN_TIMEOUT)
        streamer.stop()

        exit_code = popen.returncode if popen.returncode is not None else -1
        result.exit_code = exit_code
        result.output = streamer.output.strip()
        result.finish()

        if interrupted is None and exit_code == 0:
            result.success = True
            return result

        if interrupted is ErrorType.TIMEOUT:
            message = f"timed out after {self.config.timeout}s"
        elif interrupted is ErrorType.CONTEXT_CANCELLED:
            message = "cancelled"
        else:
            message = f"exit status {exit_code}"
        error_type = interrupted or ErrorType.NON_ZERO_EXIT

        if verbose:
            stdout, stderr = streamer.stream_output(STDOUT), streamer.stream_output(STDERR)
        else:
            stdout, stderr = result.output, ""

        result.error = message
        result.error_detail = create_error_detail(
            command,
            error_type,
            message,
            working_dir=working_dir,
            stdout=stdout,
            stderr=stderr,
        )
        raise CommandExecutionError(
            message,
            exit_code=exit_code,
            command_name=command.name,
            command_line=command_line,
            working_dir=working_dir,
            error_type=error_type,
            result=result,
        )

    def _wait(
        self,
        process: ManagedProcess,
        cancel_event: threading.Event | None,
    ) -> ErrorType | None:
        """Block until exit, cancellation or timeout. Returns the interruption kind."""
        deadline = None
        if self.config.timeout:
            deadline = time.monotonic() + self.config.timeout

        while not process.wait(self.POLL_INTERVAL):
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"[{process.name}] Cancelled, killing process group")
                self.terminator.force_kill(process, process.name)
                return ErrorType.CONTEXT_CANCELLED
            if deadline is not None and time.monotonic() >= deadline:
                logger.info(f"[{process.name}] Timed out, killing process group")
                self.terminator.force_kill(process, process.name)
                return ErrorType.TIMEOUT
        return None
