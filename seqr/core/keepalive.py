"""KeepAlive executor: start a command in the background and return at once."""

from __future__ import annotations

import logging
import subprocess

from seqr.core.config import ExecutorConfig
from seqr.core.errors import KeepAliveStartupError, build_command_line
from seqr.core.invocation import popen_kwargs, resolve_working_dir, startup_failure_result
from seqr.core.managed import ManagedProcess
from seqr.core.models import Command, ErrorType, ExecutionResult
from seqr.core.streaming import STDERR, STDOUT, OutputSink, OutputStreamer
from seqr.process.platform import ProcessGroupController, get_process_controller

logger = logging.getLogger(__name__)


class KeepAliveExecutor:
    """Starts keepAlive commands without waiting for them.

    Registration with the tracker and the exit watcher belong to the
    ProcessManager; this class only owns the spawn.
    """

    def __init__(
        self,
        config: ExecutorConfig,
        controller: ProcessGroupController | None = None,
        output_sink: OutputSink | None = None,
    ):
        self.config = config
        self.controller = controller or get_process_controller()
        self.output_sink = output_sink

    def start(self, command: Command) -> tuple[ExecutionResult, ManagedProcess]:
        """Spawn the command in its own process group.

        Output is streamed in verbose mode and discarded otherwise.

        Raises:
            KeepAliveStartupError: If the process could not be started
        """
        kwargs = popen_kwargs(command, self.config, self.controller)
        if self.config.verbose:
            kwargs["stdout"] = subprocess.PIPE
            kwargs["stderr"] = subprocess.PIPE
        else:
            kwargs["stdout"] = subprocess.DEVNULL
            kwargs["stderr"] = subprocess.DEVNULL

        result = ExecutionResult(command=command)
        try:
            popen = subprocess.Popen([command.command, *command.args], **kwargs)
        except (OSError, ValueError) as e:
            failed = startup_failure_result(command, self.config, e, ErrorType.STARTUP_FAILURE)
            raise KeepAliveStartupError(
                str(e),
                command_name=command.name,
                command_line=build_command_line(command),
                working_dir=resolve_working_dir(command, self.config),
                result=failed,
            ) from e

        streamer = None
        if self.config.verbose:
            streamer = OutputStreamer(command.name, self.output_sink)
            streamer.attach(popen.stdout, STDOUT)
            streamer.attach(popen.stderr, STDERR)

        process = ManagedProcess(
            name=command.name,
            command=command,
            popen=popen,
            start_time=result.start_time,
            streamer=streamer,
        )

        result.success = True
        result.output = f"keepAlive process started with PID {popen.pid}"
        result.finish()
        logger.info(f"[{command.name}] Started keepAlive process (PID {popen.pid})")
        return result, process
