# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the seqr test suite.

This module provides foundational fixtures used across all test modules:
- An isolated tracker file per test (never the real temp-dir tracker)
- Fast executor configuration (short grace periods and health ticks)
- A recording reporter that captures every hook call
- Command file factory

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from seqr.cli_ui.reporter import Reporter
from seqr.core.config import ExecutorConfig
from seqr.core.sequential import SequentialExecutor
from seqr.core.tracker import ProcessTracker


# =============================================================================
# Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_tracker_file(tmp_path: Path, monkeypatch) -> Path:
    """Point SEQR_TRACKER_FILE at a per-test file.

    Applied to every test so nothing ever touches the shared tracker in the
    system temp directory.
    """
    path = tmp_path / "seqr-processes.json"
    monkeypatch.setenv("SEQR_TRACKER_FILE", str(path))
    for key in ("SEQR_VERBOSE", "SEQR_WORKING_DIR", "SEQR_TIMEOUT", "SEQR_GRACE_PERIOD"):
        monkeypatch.delenv(key, raising=False)
    return path


@pytest.fixture(autouse=True)
def restore_seqr_logging() -> Generator[None, None, None]:
    """Undo the CLI's logging setup so caplog keeps working in later tests."""
    seqr_logger = logging.getLogger("seqr")
    saved = (list(seqr_logger.handlers), seqr_logger.level, seqr_logger.propagate)
    yield
    seqr_logger.handlers[:] = saved[0]
    seqr_logger.setLevel(saved[1])
    seqr_logger.propagate = saved[2]


@pytest.fixture
def tracker(isolated_tracker_file: Path) -> ProcessTracker:
    """A tracker backed by the isolated file."""
    return ProcessTracker(isolated_tracker_file)


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def fast_config(isolated_tracker_file: Path) -> ExecutorConfig:
    """Executor config with short timeouts so termination tests stay quick."""
    return ExecutorConfig(
        grace_period=2.0,
        force_kill_timeout=2.0,
        health_check_interval=0.1,
        tracker_path=isolated_tracker_file,
    )


# =============================================================================
# Reporter Fixtures
# =============================================================================


class RecordingReporter(Reporter):
    """Reporter that records (hook_name, args) for every call."""

    def __init__(self):
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self._lock = threading.Lock()

    def _record(self, name: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((name, args))

    def names(self) -> list[str]:
        with self._lock:
            return [name for name, _ in self.calls]

    def calls_to(self, name: str) -> list[tuple[Any, ...]]:
        with self._lock:
            return [args for hook, args in self.calls if hook == name]

    def report_start(self, total):
        self._record("report_start", total)

    def report_command_start(self, command, index, total):
        self._record("report_command_start", command, index, total)

    def report_command_success(self, result, index, total):
        self._record("report_command_success", result, index, total)

    def report_command_failure(self, result, error, index, total):
        self._record("report_command_failure", result, error, index, total)

    def report_execution_complete(self, results):
        self._record("report_execution_complete", results)

    def report_output_line(self, line):
        self._record("report_output_line", line)

    def report_process_status(self, processes):
        self._record("report_process_status", processes)

    def report_process_health(self, health):
        self._record("report_process_health", health)

    def report_lifecycle_event(self, event):
        self._record("report_lifecycle_event", event)

    def report_health_summary(self, summary):
        self._record("report_health_summary", summary)


@pytest.fixture
def recording_reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def executor(
    fast_config: ExecutorConfig, recording_reporter: RecordingReporter
) -> Generator[SequentialExecutor, None, None]:
    """A SequentialExecutor that stops its keepAlive processes on teardown."""
    seq = SequentialExecutor(fast_config, recording_reporter)
    yield seq
    seq.stop()


# =============================================================================
# Command Fixtures
# =============================================================================


@pytest.fixture
def command_file(tmp_path: Path):
    """Factory writing a JSON command file and returning its path.

    Example:
        def test_x(command_file):
            path = command_file([{"name": "a", "command": "true"}])
    """

    def _write(commands: list[dict[str, Any]], name: str = "queue.json") -> Path:
        path = tmp_path / name
        path.write_text(json.dumps({"version": "1.0", "commands": commands}))
        return path

    return _write
