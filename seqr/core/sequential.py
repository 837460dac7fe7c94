"""Sequential executor: drives a command list through the run state machine.

State transitions: READY -> RUNNING -> (SUCCESS | FAILED), each at most once
per run. stop() is an orthogonal intervention that terminates keepAlive
processes; it is not a state of its own.

Fail-fast: the first failing command halts the run. Processes already
started in keepAlive mode are left running (no rollback).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import NoReturn

from seqr.cli_ui.reporter import Reporter
from seqr.core.config import ExecutorConfig
from seqr.core.errors import (
    CommandError,
    ConfigurationError,
    ExecutionCancelledError,
    ExecutionFailedError,
    ExecutionStoppedError,
    SeqrError,
)
from seqr.core.manager import ProcessManager
from seqr.core.models import (
    Command,
    ExecutionResult,
    ExecutionState,
    ExecutionStatus,
    HealthSummary,
    ProcessHealth,
    ProcessInfo,
)
from seqr.core.tracker import ProcessTracker
from seqr.process.platform import ProcessGroupController

logger = logging.getLogger(__name__)

CommandGroup = list[tuple[int, Command]]


def group_commands(commands: Sequence[Command]) -> list[CommandGroup]:
    """Split the list into dispatch groups, keeping each command's index.

    Consecutive commands flagged concurrent form one group that runs in
    parallel; every other command is a group of its own.
    """
    groups: list[CommandGroup] = []
    pending: CommandGroup = []
    for index, command in enumerate(commands):
        if command.concurrent:
            pending.append((index, command))
            continue
        if pending:
            groups.append(pending)
            pending = []
        groups.append([(index, command)])
    if pending:
        groups.append(pending)
    return groups


class SequentialExecutor:
    """Runs commands in list order and aggregates their results.

    The status struct has its own lock, separate from the process manager's
    map and the tracker file. All readers get deep copies.
    """

    GROUP_POLL_INTERVAL = 0.1

    def __init__(
        self,
        config: ExecutorConfig | None = None,
        reporter: Reporter | None = None,
        tracker: ProcessTracker | None = None,
        controller: ProcessGroupController | None = None,
        manager: ProcessManager | None = None,
    ):
        self.config = config or ExecutorConfig()
        self.reporter = reporter or Reporter()
        self.manager = manager or ProcessManager(
            self.config, self.reporter, tracker=tracker, controller=controller
        )
        self._status_lock = threading.RLock()
        self._status = ExecutionStatus()
        self._stop_requested = threading.Event()

    # --- Run ---

    def execute(
        self,
        commands: Sequence[Command],
        cancel_event: threading.Event | None = None,
    ) -> list[ExecutionResult]:
        """Run every command in order, stopping at the first failure.

        Args:
            commands: Ordered command list
            cancel_event: Set to abort the in-flight once command and halt

        Returns:
            One result per command, in list order

        Raises:
            ConfigurationError: If the list is empty
            ExecutionFailedError: A command failed; the CommandError is chained
            ExecutionStoppedError: stop() was called mid-run
            ExecutionCancelledError: cancel_event was set mid-run
        """
        if not commands:
            raise ConfigurationError("no commands to execute")

        total = len(commands)
        with self._status_lock:
            self._status = ExecutionStatus(state=ExecutionState.RUNNING, total_count=total)
        self._stop_requested.clear()
        self.reporter.report_start(total)

        for group in group_commands(commands):
            self._check_interrupted(cancel_event)
            if len(group) == 1:
                index, command = group[0]
                self._run_single(index, command, total, cancel_event)
            else:
                self._run_group(group, total, cancel_event)
        # A stop that landed during the last dispatch
        self._check_interrupted(None)

        with self._status_lock:
            self._status.state = ExecutionState.SUCCESS
            self._status.current_command = None
            results = [r.model_copy(deep=True) for r in self._status.results]
        self.reporter.report_execution_complete(results)
        logger.info(f"All {total} command(s) completed successfully")
        return results

    def _run_single(
        self,
        index: int,
        command: Command,
        total: int,
        cancel_event: threading.Event | None,
    ) -> None:
        self._mark_started(index, command, total)
        try:
            result = self.manager.execute(command, cancel_event)
        except CommandError as e:
            result = e.result or ExecutionResult(command=command, error=str(e))
            self._append_result(result)
            self._fail(index, total, result, e)
        self._append_result(result)
        self._mark_succeeded(index, total, result)

    def _run_group(
        self,
        group: CommandGroup,
        total: int,
        cancel_event: threading.Event | None,
    ) -> None:
        """Run a concurrent group. The first failure cancels the rest.

        Results are appended in list order once every member has finished.
        """
        logger.info(f"Starting {len(group)} commands concurrently")
        group_cancel = threading.Event()
        results: dict[int, ExecutionResult] = {}
        first_failure: tuple[int, CommandError] | None = None

        executor = ThreadPoolExecutor(
            max_workers=len(group), thread_name_prefix="seqr-concurrent"
        )
        try:
            futures: dict[Future, tuple[int, Command]] = {}
            for index, command in group:
                self._mark_started(index, command, total)
                futures[executor.submit(self.manager.execute, command, group_cancel)] = (
                    index,
                    command,
                )

            pending = set(futures)
            while pending:
                done, pending = wait(
                    pending, timeout=self.GROUP_POLL_INTERVAL, return_when=FIRST_COMPLETED
                )
                if cancel_event is not None and cancel_event.is_set():
                    group_cancel.set()
                for future in done:
                    index, command = futures[future]
                    try:
                        results[index] = future.result()
                    except CommandError as e:
                        results[index] = e.result or ExecutionResult(command=command, error=str(e))
                        if first_failure is None:
                            first_failure = (index, e)
                            group_cancel.set()
        finally:
            group_cancel.set()
            executor.shutdown(wait=True)

        for index, _ in group:
            self._append_result(results[index])

        if first_failure is not None:
            index, error = first_failure
            self._fail(index, total, results[index], error)

        for index, _ in group:
            self._mark_succeeded(index, total, results[index])

    # --- State bookkeeping ---

    def _check_interrupted(self, cancel_event: threading.Event | None) -> None:
        if self._stop_requested.is_set():
            self._halt(ExecutionStoppedError("execution stopped"))
        if cancel_event is not None and cancel_event.is_set():
            self._halt(ExecutionCancelledError("execution cancelled"))

    def _halt(self, error: SeqrError) -> NoReturn:
        with self._status_lock:
            self._status.state = ExecutionState.FAILED
            self._status.last_error = str(error)
        logger.info(f"Run halted: {error}")
        raise error

    def _mark_started(self, index: int, command: Command, total: int) -> None:
        with self._status_lock:
            self._status.current_command = command
        self.reporter.report_command_start(command, index, total)

    def _append_result(self, result: ExecutionResult) -> None:
        with self._status_lock:
            self._status.results.append(result)

    def _mark_succeeded(self, index: int, total: int, result: ExecutionResult) -> None:
        with self._status_lock:
            self._status.completed_count += 1
        self.reporter.report_command_success(result, index, total)

    def _fail(
        self,
        index: int,
        total: int,
        result: ExecutionResult,
        error: CommandError,
    ) -> NoReturn:
        failure = ExecutionFailedError(
            index=index,
            total=total,
            command_name=result.command.name,
            error_type=error.error_type,
            reason=str(error.args[0]) if error.args else str(error),
        )
        with self._status_lock:
            self._status.state = ExecutionState.FAILED
            self._status.last_error = str(failure)
        self.reporter.report_command_failure(result, error, index, total)
        raise failure from error

    # --- Control ---

    def get_status(self) -> ExecutionStatus:
        """Deep copy of the current run status."""
        with self._status_lock:
            return self._status.model_copy(deep=True)

    def stop(self) -> None:
        """Halt dispatching and gracefully terminate every keepAlive process.

        Idempotent. Safe to call from a signal handler while execute() runs.
        Termination failures are logged as warnings; this always returns.
        """
        self._stop_requested.set()
        outcomes = self.manager.terminate_all()
        survivors = [name for name, ok in outcomes.items() if not ok]
        if survivors:
            logger.warning(f"Processes may still be running: {', '.join(survivors)}")

    # --- Process queries ---

    def get_tracked_processes(self) -> dict[int, ProcessInfo]:
        return self.manager.tracker.get_all_processes()

    def get_tracked_process(self, pid: int) -> ProcessInfo | None:
        return self.manager.tracker.get_process(pid)

    def get_tracked_process_count(self) -> int:
        return self.manager.tracker.get_running_process_count()

    def cleanup_dead_processes(self) -> list[int]:
        return self.manager.tracker.cleanup_dead_processes()

    def has_active_keep_alive_processes(self) -> bool:
        return self.manager.has_active_processes()

    def detach_streaming(self) -> None:
        self.manager.detach_streaming()

    def has_active_streaming(self) -> bool:
        return self.manager.has_active_streaming()

    # --- Health ---

    def start_health_monitoring(self, report_events: bool = True) -> None:
        """Start the health loop, optionally forwarding its events to the reporter."""
        self.manager.start_health_monitoring()
        if report_events:
            self.manager.enable_lifecycle_reporting()

    def stop_health_monitoring(self) -> None:
        self.manager.stop_health_monitoring()

    def get_process_health(self) -> dict[str, ProcessHealth]:
        return self.manager.get_process_health()

    def get_health_summary(self) -> HealthSummary:
        return self.manager.get_health_summary()
