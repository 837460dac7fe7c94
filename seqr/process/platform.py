"""OS-specific process-group creation, signalling and liveness probing.

Every spawned process gets its own process group so the whole subtree can be
signalled as one unit. The termination protocol only talks to the
ProcessGroupController interface; nothing above this module branches on the
platform.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from abc import ABC, abstractmethod
from typing import Any

import psutil

logger = logging.getLogger(__name__)

# Windows PIDs above this are treated as stale tracker entries
WINDOWS_MAX_PLAUSIBLE_PID = 100_000

# subprocess only exposes this constant on Windows
CREATE_NEW_PROCESS_GROUP = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0x00000200)
PROCESS_QUERY_LIMITED_INFORMATION = 0x1000


class ProcessGroupController(ABC):
    """Platform seam for process-group control."""

    @abstractmethod
    def popen_kwargs(self) -> dict[str, Any]:
        """Extra Popen kwargs that start the child in a new process group."""

    @abstractmethod
    def signal_group(self, pid: int, graceful: bool) -> None:
        """Signal the group led by pid. Raises OSError on failure."""

    @abstractmethod
    def signal_pid(self, pid: int, graceful: bool) -> None:
        """Signal only the process itself. Raises OSError on failure."""

    @abstractmethod
    def is_running(self, pid: int) -> bool:
        """Best-effort liveness probe for a PID."""

    def group_alive(self, pid: int) -> bool:
        """Whether any member of the group led by pid is still around."""
        return False


class PosixProcessGroupController(ProcessGroupController):
    """setpgid at spawn, SIGTERM/SIGKILL to the negative PID."""

    def popen_kwargs(self) -> dict[str, Any]:
        # process_group=0 -> setpgid(0, 0) in the child: pgid == child pid
        return {"process_group": 0}

    def signal_group(self, pid: int, graceful: bool) -> None:
        os.killpg(pid, signal.SIGTERM if graceful else signal.SIGKILL)

    def signal_pid(self, pid: int, graceful: bool) -> None:
        os.kill(pid, signal.SIGTERM if graceful else signal.SIGKILL)

    def is_running(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            # Signal 0 checks existence and permission without delivering anything
            os.kill(pid, 0)
        except OSError:
            return False

        # A zombie still answers signal 0 until its parent reaps it
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.Error:
            return True

    def group_alive(self, pid: int) -> bool:
        try:
            os.killpg(pid, 0)
        except OSError:
            return False
        # Unreaped zombies keep the group signalable; only live members count
        for proc in psutil.process_iter(["status"]):
            try:
                if os.getpgid(proc.pid) == pid and proc.info["status"] != psutil.STATUS_ZOMBIE:
                    return True
            except (OSError, psutil.Error):
                continue
        return False


class WindowsProcessGroupController(ProcessGroupController):
    """CREATE_NEW_PROCESS_GROUP at spawn, taskkill for the process tree.

    KNOWN LIMITATION: liveness is approximate. A handle lookup cannot tell a
    live process from an unrelated one that reused the PID.
    """

    TASKKILL_TIMEOUT = 10

    def popen_kwargs(self) -> dict[str, Any]:
        return {"creationflags": CREATE_NEW_PROCESS_GROUP}

    def _taskkill(self, pid: int, graceful: bool, tree: bool) -> None:
        cmd = ["taskkill"]
        if not graceful:
            cmd.append("/F")
        if tree:
            cmd.append("/T")
        cmd.extend(["/PID", str(pid)])
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.TASKKILL_TIMEOUT,
            )
        except subprocess.TimeoutExpired as e:
            raise OSError(f"taskkill timed out for PID {pid}") from e
        if result.returncode != 0:
            raise OSError(f"taskkill exited {result.returncode}: {result.stderr.strip()}")

    def signal_group(self, pid: int, graceful: bool) -> None:
        self._taskkill(pid, graceful, tree=True)

    def signal_pid(self, pid: int, graceful: bool) -> None:
        self._taskkill(pid, graceful, tree=False)

    def is_running(self, pid: int) -> bool:
        if pid <= 0 or pid > WINDOWS_MAX_PLAUSIBLE_PID:
            return False

        import ctypes

        kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
        handle = kernel32.OpenProcess(PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
        if not handle:
            return False
        kernel32.CloseHandle(handle)
        return True


def get_process_controller() -> ProcessGroupController:
    """Controller for the current platform."""
    if os.name == "nt":
        return WindowsProcessGroupController()
    return PosixProcessGroupController()
