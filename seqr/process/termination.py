"""Graceful termination protocol for supervised processes.

Sequence:
1. Signal the whole process group (SIGTERM / taskkill /T)
2. Wait up to the grace period (default 5s)
3. Escalate to a group-wide force kill (SIGKILL / taskkill /F /T)
4. If any group operation fails, fall back to the single process handle with
   the same graceful -> force escalation

Termination never blocks indefinitely: after the force kill there is a
secondary wait (default 3s). A process that survives it is reported as a
warning, never raised.
"""

from __future__ import annotations

import contextlib
import logging
import time
from typing import TYPE_CHECKING, Protocol

import psutil

from seqr.process.platform import ProcessGroupController, get_process_controller

if TYPE_CHECKING:
    from seqr.core.models import ProcessInfo
    from seqr.core.tracker import ProcessTracker

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 5.0
DEFAULT_FORCE_KILL_TIMEOUT = 3.0

# Tolerance when comparing a PID's creation time against its tracker record
PID_REUSE_SLACK_SECONDS = 1.0


class ProcessHandle(Protocol):
    """Anything the terminator can signal and wait on."""

    @property
    def pid(self) -> int: ...

    def wait(self, timeout: float) -> bool:
        """Wait up to timeout seconds. True if the process has exited."""
        ...

    def signal(self, graceful: bool) -> None:
        """Signal only this process. Raises OSError on failure."""
        ...


class PidHandle:
    """Handle for a process known only by PID (e.g. from the tracker file).

    We are not the parent, so exit is detected by polling liveness.
    """

    POLL_INTERVAL = 0.1

    def __init__(self, pid: int, controller: ProcessGroupController):
        self._pid = pid
        self._controller = controller

    @property
    def pid(self) -> int:
        return self._pid

    def wait(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not self._controller.is_running(self._pid):
                return True
            time.sleep(self.POLL_INTERVAL)
        return not self._controller.is_running(self._pid)

    def signal(self, graceful: bool) -> None:
        self._controller.signal_pid(self._pid, graceful)


class GracefulTerminator:
    """Runs the two-level (group -> single), two-phase (graceful -> force) protocol."""

    STRAGGLER_POLL_INTERVAL = 0.05

    def __init__(
        self,
        controller: ProcessGroupController | None = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        force_kill_timeout: float = DEFAULT_FORCE_KILL_TIMEOUT,
    ):
        self.controller = controller or get_process_controller()
        self.grace_period = grace_period
        self.force_kill_timeout = force_kill_timeout

    def terminate(self, handle: ProcessHandle, name: str) -> bool:
        """Terminate a process and its group. True if it is confirmed gone."""
        pid = handle.pid
        logger.info(f"[{name}] Terminating process group (PID {pid}) gracefully")

        try:
            self.controller.signal_group(pid, graceful=True)
        except OSError as e:
            logger.debug(
                f"[{name}] Failed to signal process group (PID {pid}): {e}, "
                "falling back to single process termination"
            )
            return self._terminate_single(handle, name)

        if handle.wait(self.grace_period):
            logger.info(f"[{name}] Process group exited gracefully (PID {pid})")
            self._kill_group_stragglers(pid, name)
            return True

        logger.info(
            f"[{name}] Graceful shutdown timeout after {self.grace_period}s (PID {pid}), "
            "force killing process group"
        )
        return self._force_kill_group(handle, name)

    def force_kill(self, handle: ProcessHandle, name: str) -> bool:
        """Skip the graceful phase. Used when a run is cancelled."""
        return self._force_kill_group(handle, name)

    def _force_kill_group(self, handle: ProcessHandle, name: str) -> bool:
        pid = handle.pid
        try:
            self.controller.signal_group(pid, graceful=False)
        except OSError as e:
            logger.debug(
                f"[{name}] Failed to force kill process group (PID {pid}): {e}, "
                "falling back to single process kill"
            )
            return self._force_kill_single(handle, name)
        return self._await_forced_exit(handle, name)

    def _terminate_single(self, handle: ProcessHandle, name: str) -> bool:
        pid = handle.pid
        try:
            handle.signal(graceful=True)
        except OSError as e:
            logger.debug(f"[{name}] Failed to send SIGTERM (PID {pid}): {e}, using force kill")
            return self._force_kill_single(handle, name)

        if handle.wait(self.grace_period):
            logger.info(f"[{name}] Process exited gracefully (PID {pid})")
            return True

        logger.info(f"[{name}] Graceful shutdown timeout (PID {pid}), using force kill")
        return self._force_kill_single(handle, name)

    def _force_kill_single(self, handle: ProcessHandle, name: str) -> bool:
        pid = handle.pid
        try:
            handle.signal(graceful=False)
        except OSError as e:
            # Most often the process is already gone
            if handle.wait(0):
                return True
            logger.warning(f"[{name}] Failed to force kill (PID {pid}): {e}")
            return False
        return self._await_forced_exit(handle, name)

    def _await_forced_exit(self, handle: ProcessHandle, name: str) -> bool:
        if handle.wait(self.force_kill_timeout):
            logger.info(f"[{name}] Process terminated after force kill (PID {handle.pid})")
            return True
        logger.warning(
            f"[{name}] Force kill timeout (PID {handle.pid}) - "
            "process may be in uninterruptible state"
        )
        return False

    def _kill_group_stragglers(self, pid: int, name: str) -> None:
        # Children that ignored SIGTERM outlive the leader in the same group
        if not self.controller.group_alive(pid):
            return
        logger.info(f"[{name}] Force killing remaining members of process group {pid}")
        with contextlib.suppress(OSError):
            self.controller.signal_group(pid, graceful=False)

        deadline = time.monotonic() + self.force_kill_timeout
        while self.controller.group_alive(pid):
            if time.monotonic() >= deadline:
                logger.warning(f"[{name}] Members of process group {pid} survived force kill")
                return
            time.sleep(self.STRAGGLER_POLL_INTERVAL)


def _is_reused_pid(info: ProcessInfo) -> bool:
    """True if the PID now belongs to a process created after the record."""
    try:
        created = psutil.Process(info.pid).create_time()
    except psutil.Error:
        return False
    return created > info.start_time.timestamp() + PID_REUSE_SLACK_SECONDS


def kill_tracked_processes(
    tracker: ProcessTracker,
    terminator: GracefulTerminator,
    graceful: bool = True,
) -> dict[int, bool]:
    """Terminate every process recorded in the tracker file.

    Used by a later, independent invocation. Records are removed once the
    process is confirmed gone; a process that survives keeps its record.

    Returns:
        PID -> whether the process is confirmed terminated
    """
    tracker.cleanup_dead_processes()
    outcomes: dict[int, bool] = {}

    for pid, info in tracker.get_all_processes().items():
        if _is_reused_pid(info):
            logger.warning(
                f"[{info.name}] PID {pid} now belongs to another process; dropping stale record"
            )
            tracker.remove_process(pid)
            outcomes[pid] = True
            continue

        handle = PidHandle(pid, terminator.controller)
        if graceful:
            terminated = terminator.terminate(handle, info.name)
        else:
            terminated = terminator.force_kill(handle, info.name)

        if terminated or not terminator.controller.is_running(pid):
            tracker.remove_process(pid)
            terminated = True
        outcomes[pid] = terminated

    return outcomes
