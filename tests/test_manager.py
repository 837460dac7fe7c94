"""Tests for keepAlive execution and the process manager.

Spawns real background processes; every test stops what it starts.
"""

from __future__ import annotations

import sys
import time
from collections.abc import Generator

import pytest

from seqr.core.errors import (
    CommandError,
    KeepAliveStartupError,
    ProcessNotFoundError,
    UnsupportedModeError,
)
from seqr.core.keepalive import KeepAliveExecutor
from seqr.core.manager import ProcessManager
from seqr.core.models import Command, ErrorType, HealthEventType, ProcessStatus
from seqr.core.tracker import ProcessTracker


def sleeper(name: str, seconds: float = 30, **kwargs) -> Command:
    return Command(
        name=name,
        command=sys.executable,
        args=["-c", f"import time; time.sleep({seconds})"],
        mode="keepAlive",
        **kwargs,
    )


def wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture
def manager(fast_config, recording_reporter) -> Generator[ProcessManager, None, None]:
    pm = ProcessManager(fast_config, recording_reporter)
    yield pm
    pm.terminate_all()


class TestKeepAliveExecutor:
    """Non-blocking start."""

    def test_start_returns_pid_message(self, fast_config):
        result, process = KeepAliveExecutor(fast_config).start(sleeper("bg"))
        try:
            assert result.success is True
            assert result.output == f"keepAlive process started with PID {process.pid}"
            assert process.is_running()
            assert process.streamer is None
        finally:
            process.popen.kill()
            process.popen.wait()

    def test_startup_failure(self, fast_config):
        cmd = Command(name="ghost", command="seqr-no-such-binary", mode="keepAlive")
        with pytest.raises(KeepAliveStartupError) as exc_info:
            KeepAliveExecutor(fast_config).start(cmd)
        assert exc_info.value.error_type == ErrorType.STARTUP_FAILURE
        assert exc_info.value.result.error_detail.type == ErrorType.STARTUP_FAILURE

    def test_verbose_attaches_streamer(self, fast_config):
        fast_config.verbose = True
        lines = []
        cmd = Command(
            name="talker",
            command=sys.executable,
            args=["-c", "print('up', flush=True)"],
            mode="keepAlive",
        )
        _, process = KeepAliveExecutor(fast_config, output_sink=lines.append).start(cmd)
        process.wait(5)
        process.streamer.join(timeout=5)
        assert [line.text for line in lines] == ["up"]


class TestProcessManagerDispatch:
    """Routing by mode."""

    def test_keep_alive_dispatch_is_fast(self, manager):
        start = time.monotonic()
        result = manager.execute(sleeper("bg", seconds=5))
        elapsed = time.monotonic() - start

        assert elapsed < 0.2
        assert result.success is True
        assert manager.has_active_processes()

    def test_registers_in_tracker(self, manager, isolated_tracker_file):
        manager.execute(sleeper("bg"))
        pid = manager.get_active_processes()["bg"].pid

        other = ProcessTracker(isolated_tracker_file)
        assert other.get_process(pid).name == "bg"
        assert other.get_running_process_count() == 1

    def test_unsupported_mode(self, manager):
        with pytest.raises(UnsupportedModeError) as exc_info:
            manager.execute(Command(name="odd", command="true", mode="daemon"))
        result = exc_info.value.result
        assert result.exit_code == -1
        assert result.error_detail.type == ErrorType.UNSUPPORTED_MODE

    def test_refuses_duplicate_active_name(self, manager):
        manager.execute(sleeper("bg"))
        with pytest.raises(CommandError, match="already running"):
            manager.execute(sleeper("bg"))

    def test_once_commands_are_not_tracked(self, manager):
        manager.execute(Command(name="q", command=sys.executable, args=["-c", "pass"]))
        assert not manager.has_active_processes()
        assert manager.tracker.get_running_process_count() == 0


class TestProcessManagerLifecycle:
    """Watcher cleanup and termination."""

    def test_exit_cleans_map_and_tracker(self, manager):
        manager.execute(sleeper("short", seconds=0.2))

        assert wait_until(lambda: not manager.has_active_processes())
        assert wait_until(lambda: manager.tracker.get_running_process_count() == 0)

    def test_unexpected_failure_reported_as_failed(self, manager):
        cmd = Command(
            name="crash",
            command=sys.executable,
            args=["-c", "import sys; sys.exit(4)"],
            mode="keepAlive",
        )
        manager.execute(cmd)

        assert wait_until(
            lambda: manager.get_process_health()["crash"].status == ProcessStatus.FAILED
        )
        health = manager.get_process_health()["crash"]
        assert health.exit_code == 4

    @pytest.mark.slow
    def test_crash_with_pipe_holding_grandchild_is_failed(self, fast_config, recording_reporter):
        """A child that still has stdout open must not delay the crash report."""
        fast_config.verbose = True
        pm = ProcessManager(fast_config, recording_reporter)
        code = (
            "import subprocess, sys\n"
            "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(3)'])\n"
            "sys.exit(3)\n"
        )
        pm.start_health_monitoring()
        try:
            pm.execute(
                Command(name="crash", command=sys.executable, args=["-c", code], mode="keepAlive")
            )
            assert wait_until(
                lambda: pm.get_process_health()["crash"].status == ProcessStatus.FAILED
            )
            # Outlast a couple of ticks so a stale exit report would show up
            time.sleep(0.5)
        finally:
            pm.stop_health_monitoring()
            pm.terminate_all()

        exits = [
            event.type
            for event in pm.health.drain_events()
            if event.type in (HealthEventType.PROCESS_EXITED, HealthEventType.PROCESS_FAILED)
        ]
        assert exits == [HealthEventType.PROCESS_FAILED]
        assert pm.get_process_health()["crash"].exit_code == 3

    def test_tracker_records_spawn_time(self, manager):
        manager.execute(sleeper("svc"))
        active = manager.get_active_processes()["svc"]

        record = manager.tracker.get_process(active.pid)
        assert record.start_time == active.start_time

    def test_terminate_all_clears_everything(self, manager):
        for name in ("a", "b", "c"):
            manager.execute(sleeper(name))
        assert manager.tracker.get_running_process_count() == 3

        start = time.monotonic()
        outcomes = manager.terminate_all()

        assert time.monotonic() - start < 8
        assert outcomes == {"a": True, "b": True, "c": True}
        assert not manager.has_active_processes()
        assert manager.tracker.get_running_process_count() == 0

    def test_terminated_process_is_expected_exit(self, manager):
        manager.execute(sleeper("svc"))
        manager.terminate_process("svc")

        assert wait_until(
            lambda: manager.get_process_health()["svc"].status == ProcessStatus.EXITED
        )

    def test_terminate_unknown_name(self, manager):
        with pytest.raises(ProcessNotFoundError):
            manager.terminate_process("nobody")

    def test_restart_after_exit_is_allowed(self, manager):
        manager.execute(sleeper("svc", seconds=0.1))
        assert wait_until(lambda: not manager.has_active_processes())

        manager.execute(sleeper("svc"))
        health = manager.get_process_health()["svc"]
        assert health.status == ProcessStatus.RESTARTED
        assert health.restart_count == 1


class TestProcessManagerReporting:
    """Reporter hooks driven by the manager."""

    def test_report_current_status(self, manager, recording_reporter):
        manager.execute(sleeper("bg"))
        manager.report_current_status()
        (processes,) = recording_reporter.calls_to("report_process_status")[0]
        assert set(processes) == {"bg"}

    def test_report_health_status(self, manager, recording_reporter):
        manager.execute(sleeper("bg"))
        manager.report_health_status()
        assert "report_process_health" in recording_reporter.names()
        (summary,) = recording_reporter.calls_to("report_health_summary")[0]
        assert summary.running_processes == 1

    def test_lifecycle_events_forwarded(self, manager, recording_reporter):
        manager.enable_lifecycle_reporting()
        try:
            manager.execute(sleeper("bg"))
            assert wait_until(lambda: recording_reporter.calls_to("report_lifecycle_event"))
        finally:
            manager.disable_lifecycle_reporting()
        (event,) = recording_reporter.calls_to("report_lifecycle_event")[0]
        assert event.type == HealthEventType.PROCESS_STARTED
        assert event.name == "bg"

    def test_has_active_streaming(self, fast_config, recording_reporter):
        fast_config.verbose = True
        pm = ProcessManager(fast_config, recording_reporter)
        try:
            pm.execute(
                Command(
                    name="talker",
                    command=sys.executable,
                    args=["-c", "import time; print('hi', flush=True); time.sleep(30)"],
                    mode="keepAlive",
                )
            )
            assert pm.has_active_streaming()

            pm.detach_streaming()

            assert not pm.has_active_streaming()
            assert pm.has_active_processes()
        finally:
            pm.terminate_all()

    def test_quiet_process_is_not_streaming(self, manager):
        manager.execute(sleeper("bg"))
        assert manager.has_active_processes()
        assert not manager.has_active_streaming()

    def test_detach_streaming_stops_forwarding(self, fast_config, recording_reporter):
        fast_config.verbose = True
        pm = ProcessManager(fast_config, recording_reporter)
        try:
            pm.detach_streaming()
            pm.execute(
                Command(
                    name="talker",
                    command=sys.executable,
                    args=["-c", "import time; print('hi', flush=True); time.sleep(30)"],
                    mode="keepAlive",
                )
            )
            time.sleep(0.5)
            assert recording_reporter.calls_to("report_output_line") == []
        finally:
            pm.terminate_all()
