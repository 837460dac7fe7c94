"""Process manager: routes commands by mode and supervises keepAlive processes.

Owns the in-memory name -> ManagedProcess map. Every keepAlive process is
registered in three places on start (map, tracker, health monitor) and
removed from the first two by its watcher thread when it exits.
"""

from __future__ import annotations

import logging
import queue
import threading

from seqr.cli_ui.reporter import Reporter
from seqr.core.config import ExecutorConfig
from seqr.core.errors import (
    CommandError,
    ProcessNotFoundError,
    UnsupportedModeError,
    build_command_line,
    create_error_detail,
)
from seqr.core.health import HealthMonitor
from seqr.core.invocation import resolve_working_dir
from seqr.core.keepalive import KeepAliveExecutor
from seqr.core.managed import ManagedProcess
from seqr.core.models import (
    Command,
    ErrorType,
    ExecutionResult,
    HealthSummary,
    ProcessHealth,
    ProcessInfo,
)
from seqr.core.once import OnceExecutor
from seqr.core.streaming import OutputLine
from seqr.core.tracker import ProcessTracker
from seqr.process.platform import ProcessGroupController, get_process_controller
from seqr.process.termination import GracefulTerminator

logger = logging.getLogger(__name__)


class ProcessManager:
    """Composes the once/keepAlive executors, tracker, terminator and health monitor.

    Thread safety: the process map has its own lock. Watchers, the health
    loop and stop() from a signal handler may all touch it concurrently.
    """

    EVENT_POLL_INTERVAL = 0.2

    def __init__(
        self,
        config: ExecutorConfig | None = None,
        reporter: Reporter | None = None,
        tracker: ProcessTracker | None = None,
        controller: ProcessGroupController | None = None,
    ):
        self.config = config or ExecutorConfig()
        self.reporter = reporter or Reporter()
        self.controller = controller or get_process_controller()
        self.tracker = tracker or ProcessTracker(
            self.config.resolved_tracker_path(), controller=self.controller
        )
        self.terminator = GracefulTerminator(
            self.controller,
            grace_period=self.config.grace_period,
            force_kill_timeout=self.config.force_kill_timeout,
        )
        self.once_executor = OnceExecutor(
            self.config, self.controller, self.terminator, output_sink=self._forward_output
        )
        self.keep_alive_executor = KeepAliveExecutor(
            self.config, self.controller, output_sink=self._forward_output
        )
        self.health = HealthMonitor(
            self.get_active_processes,
            controller=self.controller,
            interval=self.config.health_check_interval,
            buffer_size=self.config.event_buffer_size,
            enable_metrics=self.config.enable_metrics,
            memory_threshold=self.config.memory_threshold,
            cpu_threshold=self.config.cpu_threshold,
        )

        # RLock: stop() may run in a signal handler on the thread holding it
        self._lock = threading.RLock()
        self._processes: dict[str, ManagedProcess] = {}
        self._streaming_detached = False
        # Bumped by every terminate_all; a start that straddles one undoes itself
        self._stop_generation = 0

        self._lifecycle_stop = threading.Event()
        self._lifecycle_thread: threading.Thread | None = None

    # --- Dispatch ---

    def execute(
        self,
        command: Command,
        cancel_event: threading.Event | None = None,
    ) -> ExecutionResult:
        """Run one command according to its mode.

        Raises:
            CommandError: Any failure, with the populated result attached
        """
        if command.is_once:
            return self.once_executor.execute(command, cancel_event)
        if command.is_keep_alive:
            return self.start_keep_alive(command)
        raise self._unsupported_mode(command)

    def start_keep_alive(self, command: Command) -> ExecutionResult:
        """Start a keepAlive process and register it everywhere. Returns at once."""
        with self._lock:
            generation = self._stop_generation
            existing = self._processes.get(command.name)
            if existing is not None and existing.is_running():
                raise CommandError(
                    f"process '{command.name}' is already running (PID {existing.pid})",
                    command_name=command.name,
                    command_line=build_command_line(command),
                    working_dir=resolve_working_dir(command, self.config),
                    error_type=ErrorType.STARTUP_FAILURE,
                    result=self._failed_result(
                        command, ErrorType.STARTUP_FAILURE, "already running"
                    ),
                )

            result, process = self.keep_alive_executor.start(command)
            if self._streaming_detached and process.streamer is not None:
                process.streamer.detach_sink()
            self._processes[command.name] = process

        try:
            self.tracker.add_process(
                pid=process.pid,
                name=command.name,
                command=command.command,
                args=command.args,
                work_dir=resolve_working_dir(command, self.config),
                mode=command.mode,
                start_time=process.start_time,
            )
        except OSError as e:
            logger.warning(f"[{command.name}] Failed to persist tracker record: {e}")

        self.health.notify_started(command.name, process.pid, process.start_time)

        watcher = threading.Thread(
            target=self._watch,
            args=(process,),
            name=f"seqr-watch-{command.name}",
            daemon=True,
        )
        watcher.start()

        if self._stop_generation != generation:
            # Spawned while terminate_all was taking its snapshot
            logger.info(f"[{command.name}] Stop requested during startup, terminating")
            self._forget(process, self._terminate(process))
        return result

    def _watch(self, process: ManagedProcess) -> None:
        """Await exit, then clean up map and tracker.

        The exit is reported before draining output: a grandchild can hold
        the pipes open long after the process itself is gone.
        """
        try:
            process.wait()
            exit_code = process.returncode
            reason = "terminated" if process.expected_exit else f"exit code {exit_code}"
            self.health.notify_exited(
                process.name, exit_code, reason=reason, expected=process.expected_exit
            )
            if process.streamer is not None:
                process.streamer.join(timeout=2.0)

            with self._lock:
                if self._processes.get(process.name) is process:
                    del self._processes[process.name]
            try:
                self.tracker.remove_process(process.pid)
            except OSError as e:
                logger.warning(f"[{process.name}] Failed to update tracker: {e}")

            if process.expected_exit:
                logger.info(f"[{process.name}] keepAlive process stopped (PID {process.pid})")
            else:
                logger.info(
                    f"[{process.name}] keepAlive process exited "
                    f"(PID {process.pid}, exit code {exit_code})"
                )
        except Exception as e:
            logger.error(f"[{process.name}] Process watcher failed: {e}")
        finally:
            process.exited.set()

    # --- Termination ---

    def terminate_process(self, name: str) -> bool:
        """Gracefully terminate one active process by name.

        Raises:
            ProcessNotFoundError: If no active process has that name
        """
        with self._lock:
            process = self._processes.get(name)
        if process is None:
            raise ProcessNotFoundError(name)
        terminated = self._terminate(process)
        self._forget(process, terminated)
        return terminated

    def terminate_all(self) -> dict[str, bool]:
        """Gracefully terminate every active keepAlive process.

        Termination failures are logged, never raised. Processes are handled
        in parallel so the total time stays within one grace period. The
        worker threads never take the map lock: this may run from a signal
        handler on a thread that already holds it.
        """
        with self._lock:
            self._stop_generation += 1
            processes = list(self._processes.values())
        if not processes:
            return {}

        outcomes: dict[str, bool] = {}
        threads = []
        for process in processes:

            def run(p: ManagedProcess = process) -> None:
                outcomes[p.name] = self._terminate(p)

            thread = threading.Thread(target=run, name=f"seqr-stop-{process.name}", daemon=True)
            threads.append(thread)
            thread.start()
        for thread in threads:
            thread.join()

        for process in processes:
            self._forget(process, outcomes.get(process.name, False))
        return outcomes

    def _terminate(self, process: ManagedProcess) -> bool:
        process.expected_exit = True
        try:
            return self.terminator.terminate(process, process.name)
        except Exception as e:
            logger.warning(f"[{process.name}] Termination failed: {e}")
            return False

    def _forget(self, process: ManagedProcess, terminated: bool) -> None:
        """Drop a terminated process from the map and the tracker.

        The watcher does the same once it observes the exit; both paths are
        idempotent.
        """
        with self._lock:
            if self._processes.get(process.name) is process:
                del self._processes[process.name]
        if not terminated and process.is_running():
            # Survived SIGKILL: keep the tracker record so `seqr kill` can retry
            return
        try:
            self.tracker.remove_process(process.pid)
        except OSError as e:
            logger.warning(f"[{process.name}] Failed to update tracker: {e}")

    # --- Queries ---

    def get_active_processes(self) -> dict[str, ProcessInfo]:
        """Name -> ProcessInfo copy for every live keepAlive process."""
        with self._lock:
            return {
                name: ProcessInfo(
                    pid=process.pid,
                    name=name,
                    command=process.command.command,
                    args=list(process.command.args),
                    work_dir=resolve_working_dir(process.command, self.config),
                    start_time=process.start_time,
                    mode=process.command.mode,
                )
                for name, process in self._processes.items()
            }

    def has_active_processes(self) -> bool:
        with self._lock:
            return bool(self._processes)

    def has_active_streaming(self) -> bool:
        with self._lock:
            return any(
                p.streamer is not None and p.streamer.is_forwarding
                for p in self._processes.values()
            )

    def detach_streaming(self) -> None:
        """Stop echoing keepAlive output to the console. Processes keep running."""
        with self._lock:
            self._streaming_detached = True
            for process in self._processes.values():
                if process.streamer is not None:
                    process.streamer.detach_sink()

    # --- Health ---

    def start_health_monitoring(self) -> None:
        self.health.start()

    def stop_health_monitoring(self) -> None:
        self.health.stop()
        self.disable_lifecycle_reporting()

    def get_process_health(self) -> dict[str, ProcessHealth]:
        return self.health.get_all_health()

    def get_health_summary(self) -> HealthSummary:
        return self.health.get_summary()

    def enable_lifecycle_reporting(self) -> None:
        """Forward health events to the reporter on a background thread."""
        if self._lifecycle_thread is not None and self._lifecycle_thread.is_alive():
            return
        self._lifecycle_stop.clear()
        self._lifecycle_thread = threading.Thread(
            target=self._consume_events, name="seqr-lifecycle", daemon=True
        )
        self._lifecycle_thread.start()

    def disable_lifecycle_reporting(self) -> None:
        self._lifecycle_stop.set()
        if self._lifecycle_thread is not None:
            self._lifecycle_thread.join(timeout=1.0)
            self._lifecycle_thread = None

    def _consume_events(self) -> None:
        while not self._lifecycle_stop.is_set():
            try:
                event = self.health.events.get(timeout=self.EVENT_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self.reporter.report_lifecycle_event(event)
            except Exception as e:
                logger.error(f"Failed to report lifecycle event: {e}")

    def report_current_status(self) -> None:
        self.reporter.report_process_status(self.get_active_processes())

    def report_health_status(self) -> None:
        self.reporter.report_process_health(self.get_process_health())
        self.reporter.report_health_summary(self.get_health_summary())

    # --- Helpers ---

    def _forward_output(self, line: OutputLine) -> None:
        self.reporter.report_output_line(line)

    def _failed_result(self, command: Command, error_type: ErrorType, message: str) -> ExecutionResult:
        result = ExecutionResult(
            command=command,
            success=False,
            exit_code=-1,
            error=message,
            error_detail=create_error_detail(
                command,
                error_type,
                message,
                working_dir=resolve_working_dir(command, self.config),
            ),
        )
        result.finish()
        return result

    def _unsupported_mode(self, command: Command) -> UnsupportedModeError:
        message = f"unsupported execution mode '{command.mode}'"
        return UnsupportedModeError(
            message,
            command_name=command.name,
            command_line=build_command_line(command),
            working_dir=resolve_working_dir(command, self.config),
            result=self._failed_result(command, ErrorType.UNSUPPORTED_MODE, message),
        )
