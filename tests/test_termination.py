"""Tests for platform process control and the graceful termination protocol.

Most protocol tests drive a fake handle and controller so every escalation
branch is covered without real signals. The POSIX integration tests spawn
real process trees, including a grandchild that ignores SIGTERM.
"""

from __future__ import annotations

import os
import subprocess
import sys
import time
from datetime import timedelta
from unittest.mock import Mock

import pytest

from seqr.core.models import ProcessInfo, utc_now
from seqr.process.platform import (
    WINDOWS_MAX_PLAUSIBLE_PID,
    PosixProcessGroupController,
    ProcessGroupController,
    WindowsProcessGroupController,
    get_process_controller,
)
from seqr.process.termination import GracefulTerminator, PidHandle, kill_tracked_processes

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX process groups")


class FakeHandle:
    """Handle whose exit is scripted by the number of wait() calls."""

    def __init__(self, pid: int = 4321, exits_after_waits: int | None = 1):
        self.pid = pid
        self.exits_after_waits = exits_after_waits
        self.waits: list[float] = []
        self.signals: list[bool] = []
        self.signal_error: OSError | None = None

    def wait(self, timeout: float) -> bool:
        self.waits.append(timeout)
        if self.exits_after_waits is None:
            return False
        return len(self.waits) >= self.exits_after_waits

    def signal(self, graceful: bool) -> None:
        self.signals.append(graceful)
        if self.signal_error is not None:
            raise self.signal_error


@pytest.fixture
def controller() -> Mock:
    ctrl = Mock(spec=ProcessGroupController)
    ctrl.group_alive.return_value = False
    return ctrl


@pytest.fixture
def terminator(controller) -> GracefulTerminator:
    return GracefulTerminator(controller, grace_period=5.0, force_kill_timeout=3.0)


# =============================================================================
# Protocol Tests (mocked)
# =============================================================================


class TestGracefulTermination:
    """Group -> single fallback and graceful -> force escalation."""

    def test_graceful_group_exit(self, terminator, controller):
        handle = FakeHandle(exits_after_waits=1)

        assert terminator.terminate(handle, "web") is True
        controller.signal_group.assert_called_once_with(4321, graceful=True)
        assert handle.waits == [5.0]
        assert handle.signals == []

    def test_escalates_to_group_kill_after_grace_period(self, terminator, controller):
        handle = FakeHandle(exits_after_waits=2)

        assert terminator.terminate(handle, "web") is True
        assert controller.signal_group.call_args_list == [
            ((4321,), {"graceful": True}),
            ((4321,), {"graceful": False}),
        ]
        assert handle.waits == [5.0, 3.0]

    def test_falls_back_to_single_process(self, terminator, controller):
        controller.signal_group.side_effect = ProcessLookupError("no group")
        handle = FakeHandle(exits_after_waits=1)

        assert terminator.terminate(handle, "web") is True
        assert handle.signals == [True]

    def test_single_process_escalation(self, terminator, controller):
        controller.signal_group.side_effect = PermissionError("denied")
        handle = FakeHandle(exits_after_waits=2)

        assert terminator.terminate(handle, "web") is True
        assert handle.signals == [True, False]
        assert handle.waits == [5.0, 3.0]

    def test_group_kill_failure_falls_back_to_single_kill(self, terminator, controller):
        controller.signal_group.side_effect = [None, OSError("gone")]
        handle = FakeHandle(exits_after_waits=2)

        assert terminator.terminate(handle, "web") is True
        assert handle.signals == [False]

    def test_unkillable_process_warns_and_returns(self, terminator, controller, caplog):
        handle = FakeHandle(exits_after_waits=None)

        assert terminator.terminate(handle, "stuck") is False
        assert "Force kill timeout" in caplog.text

    def test_signal_failure_on_exited_process_counts_as_terminated(self, terminator, controller):
        controller.signal_group.side_effect = ProcessLookupError("gone")
        handle = FakeHandle(exits_after_waits=1)
        handle.signal_error = ProcessLookupError("gone")

        assert terminator.terminate(handle, "web") is True

    def test_force_kill_skips_graceful_phase(self, terminator, controller):
        handle = FakeHandle(exits_after_waits=1)

        assert terminator.force_kill(handle, "web") is True
        controller.signal_group.assert_called_once_with(4321, graceful=False)
        assert handle.waits == [3.0]

    def test_kills_group_stragglers_after_leader_exits(self, terminator, controller):
        controller.group_alive.side_effect = [True, False]
        handle = FakeHandle(exits_after_waits=1)

        terminator.terminate(handle, "web")
        assert controller.signal_group.call_args_list[-1] == ((4321,), {"graceful": False})

    def test_waits_for_stragglers_to_die(self, terminator, controller):
        controller.group_alive.side_effect = [True, True, True, False]

        assert terminator.terminate(FakeHandle(exits_after_waits=1), "web") is True
        assert controller.group_alive.call_count == 4

    def test_surviving_stragglers_are_a_warning(self, controller, caplog):
        controller.group_alive.return_value = True
        terminator = GracefulTerminator(controller, grace_period=1.0, force_kill_timeout=0.2)

        assert terminator.terminate(FakeHandle(exits_after_waits=1), "web") is True
        assert "survived force kill" in caplog.text


class TestPidHandle:
    """PID-only handle used by a later invocation."""

    def test_wait_polls_liveness(self, controller):
        controller.is_running.side_effect = [True, True, False]
        handle = PidHandle(99, controller)
        assert handle.wait(5.0) is True
        assert controller.is_running.call_count == 3

    def test_wait_times_out(self, controller):
        controller.is_running.return_value = True
        handle = PidHandle(99, controller)
        assert handle.wait(0.2) is False

    def test_signal_targets_pid(self, controller):
        PidHandle(99, controller).signal(graceful=True)
        controller.signal_pid.assert_called_once_with(99, True)


class TestKillTrackedProcesses:
    """Cross-invocation kill of tracker records."""

    def test_terminates_and_removes_records(self, mocker):
        info = ProcessInfo(pid=10, name="api", command="node", start_time=utc_now())
        tracker = Mock()
        tracker.get_all_processes.return_value = {10: info}
        terminator = Mock()
        terminator.terminate.return_value = True
        mocker.patch("seqr.process.termination._is_reused_pid", return_value=False)

        outcomes = kill_tracked_processes(tracker, terminator)

        assert outcomes == {10: True}
        tracker.cleanup_dead_processes.assert_called_once()
        tracker.remove_process.assert_called_once_with(10)
        terminator.terminate.assert_called_once()
        terminator.force_kill.assert_not_called()

    def test_force_mode(self, mocker):
        info = ProcessInfo(pid=10, name="api", command="node")
        tracker = Mock()
        tracker.get_all_processes.return_value = {10: info}
        terminator = Mock()
        terminator.force_kill.return_value = True
        mocker.patch("seqr.process.termination._is_reused_pid", return_value=False)

        kill_tracked_processes(tracker, terminator, graceful=False)

        terminator.force_kill.assert_called_once()
        terminator.terminate.assert_not_called()

    def test_survivor_keeps_record(self, mocker):
        info = ProcessInfo(pid=10, name="api", command="node")
        tracker = Mock()
        tracker.get_all_processes.return_value = {10: info}
        terminator = Mock()
        terminator.terminate.return_value = False
        terminator.controller.is_running.return_value = True
        mocker.patch("seqr.process.termination._is_reused_pid", return_value=False)

        assert kill_tracked_processes(tracker, terminator) == {10: False}
        tracker.remove_process.assert_not_called()

    def test_reused_pid_is_not_signalled(self, mocker):
        info = ProcessInfo(pid=10, name="api", command="node")
        tracker = Mock()
        tracker.get_all_processes.return_value = {10: info}
        terminator = Mock()
        mocker.patch("seqr.process.termination._is_reused_pid", return_value=True)

        assert kill_tracked_processes(tracker, terminator) == {10: True}
        terminator.terminate.assert_not_called()
        tracker.remove_process.assert_called_once_with(10)


# =============================================================================
# Platform Tests
# =============================================================================


class TestPlatformControllers:
    """Controller selection and Windows heuristics."""

    def test_get_process_controller_matches_platform(self):
        ctrl = get_process_controller()
        expected = WindowsProcessGroupController if os.name == "nt" else PosixProcessGroupController
        assert isinstance(ctrl, expected)

    def test_posix_popen_kwargs_start_new_group(self):
        assert PosixProcessGroupController().popen_kwargs() == {"process_group": 0}

    def test_windows_rejects_implausible_pids(self):
        ctrl = WindowsProcessGroupController()
        assert ctrl.is_running(0) is False
        assert ctrl.is_running(WINDOWS_MAX_PLAUSIBLE_PID + 1) is False

    def test_windows_taskkill_flags(self, mocker):
        run = mocker.patch(
            "seqr.process.platform.subprocess.run",
            return_value=subprocess.CompletedProcess([], 0, "", ""),
        )
        ctrl = WindowsProcessGroupController()

        ctrl.signal_group(55, graceful=False)
        assert run.call_args[0][0] == ["taskkill", "/F", "/T", "/PID", "55"]

        ctrl.signal_pid(55, graceful=True)
        assert run.call_args[0][0] == ["taskkill", "/PID", "55"]

    def test_windows_taskkill_failure_raises_oserror(self, mocker):
        mocker.patch(
            "seqr.process.platform.subprocess.run",
            return_value=subprocess.CompletedProcess([], 128, "", "not found"),
        )
        with pytest.raises(OSError, match="taskkill exited 128"):
            WindowsProcessGroupController().signal_group(55, graceful=True)


@posix_only
class TestPosixController:
    """Real liveness probing on POSIX."""

    def test_is_running_for_self(self):
        assert PosixProcessGroupController().is_running(os.getpid()) is True

    def test_is_running_false_for_invalid_pid(self):
        assert PosixProcessGroupController().is_running(0) is False
        assert PosixProcessGroupController().is_running(-5) is False

    def test_zombie_is_not_running(self):
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        # Exited but not yet reaped
        deadline = time.monotonic() + 5
        ctrl = PosixProcessGroupController()
        while ctrl.is_running(proc.pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert ctrl.is_running(proc.pid) is False
        proc.wait()

    def test_group_alive_ignores_zombie_members(self):
        ctrl = PosixProcessGroupController()
        proc = subprocess.Popen([sys.executable, "-c", "pass"], **ctrl.popen_kwargs())
        deadline = time.monotonic() + 5
        while ctrl.is_running(proc.pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        try:
            assert ctrl.group_alive(proc.pid) is False
        finally:
            proc.wait()

    def test_group_alive_for_live_leader(self):
        ctrl = PosixProcessGroupController()
        proc = subprocess.Popen(
            [sys.executable, "-c", "import time; time.sleep(10)"], **ctrl.popen_kwargs()
        )
        try:
            assert ctrl.group_alive(proc.pid) is True
        finally:
            proc.kill()
            proc.wait()


# =============================================================================
# Integration Tests (real processes)
# =============================================================================


GRANDCHILD_SCRIPT = """
import signal, subprocess, sys, time
child = subprocess.Popen(
    [sys.executable, "-c",
     "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(60)"]
)
print(child.pid, flush=True)
time.sleep(60)
"""


@posix_only
@pytest.mark.slow
class TestRealTermination:
    """Process-group termination against real trees."""

    def _spawn_tree(self) -> tuple[subprocess.Popen, int]:
        proc = subprocess.Popen(
            [sys.executable, "-c", GRANDCHILD_SCRIPT],
            stdout=subprocess.PIPE,
            **PosixProcessGroupController().popen_kwargs(),
        )
        grandchild_pid = int(proc.stdout.readline())
        return proc, grandchild_pid

    def test_terminate_reaches_sigterm_ignoring_grandchild(self):
        from seqr.core.managed import ManagedProcess
        from seqr.core.models import Command

        proc, grandchild = self._spawn_tree()
        ctrl = PosixProcessGroupController()
        terminator = GracefulTerminator(ctrl, grace_period=2.0, force_kill_timeout=2.0)
        handle = ManagedProcess(
            name="tree", command=Command(name="tree", command=sys.executable), popen=proc
        )

        start = time.monotonic()
        assert terminator.terminate(handle, "tree") is True
        assert time.monotonic() - start < 8

        deadline = time.monotonic() + 3
        while ctrl.is_running(grandchild) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert ctrl.is_running(grandchild) is False
        proc.stdout.close()

    def test_kill_tracked_processes_with_pid_handle(self, tracker):
        proc, grandchild = self._spawn_tree()
        tracker.add_process(proc.pid, "tree", sys.executable)
        terminator = GracefulTerminator(
            PosixProcessGroupController(), grace_period=1.0, force_kill_timeout=2.0
        )

        # An unreaped zombie already counts as gone for the liveness probe
        outcomes = kill_tracked_processes(tracker, terminator)

        assert outcomes == {proc.pid: True}
        assert tracker.get_running_process_count() == 0
        proc.wait(timeout=5)
        proc.stdout.close()


class TestReusedPidDetection:
    """PID reuse check against the record's start time."""

    def test_current_process_predates_recent_record(self):
        from seqr.process.termination import _is_reused_pid

        # This process was created well before a record stamped now
        info = ProcessInfo(pid=os.getpid(), name="self", command="python", start_time=utc_now())
        assert _is_reused_pid(info) is False

    def test_process_created_after_record_is_reused(self):
        from seqr.process.termination import _is_reused_pid

        info = ProcessInfo(
            pid=os.getpid(),
            name="self",
            command="python",
            start_time=utc_now() - timedelta(days=3650),
        )
        assert _is_reused_pid(info) is True
