"""Background health monitor for keepAlive processes.

Two sources feed the health map:
- immediate notifications (notify_started / notify_exited) from the process
  manager at the moment a process starts or its exit is observed
- a ticking loop that diffs the active-process set against the health map
  and reconfirms liveness of everything still listed

A per-name generation counter keeps the two from double-reporting: a tick
skips any name that was notified after the tick took its snapshot.

The notification is the source of truth for an exit. A tick that finds a
listed PID dead only suspects the exit; it reports it on the following tick
if no notification has arrived by then.

Events go to a bounded queue. When it is full the event is dropped; the
monitor is never backpressured by a slow consumer.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from datetime import datetime

import psutil

from seqr.core.errors import MonitoringError
from seqr.core.models import (
    HealthEventType,
    HealthMonitorEvent,
    HealthSummary,
    ProcessHealth,
    ProcessInfo,
    ProcessStatus,
    utc_now,
)
from seqr.process.platform import ProcessGroupController, get_process_controller

logger = logging.getLogger(__name__)

ActiveProcessSource = Callable[[], dict[str, ProcessInfo]]


class HealthMonitor:
    """Tracks ProcessHealth per command name and emits lifecycle events."""

    def __init__(
        self,
        source: ActiveProcessSource,
        controller: ProcessGroupController | None = None,
        interval: float = 1.0,
        buffer_size: int = 100,
        enable_metrics: bool = False,
        memory_threshold: int = 100 * 1024 * 1024,
        cpu_threshold: float = 80.0,
    ):
        self._source = source
        self._controller = controller or get_process_controller()
        self.interval = interval
        self.enable_metrics = enable_metrics
        self.memory_threshold = memory_threshold
        self.cpu_threshold = cpu_threshold

        self.events: queue.Queue[HealthMonitorEvent] = queue.Queue(maxsize=buffer_size)
        self.dropped_events = 0

        self._lock = threading.RLock()
        self._health: dict[str, ProcessHealth] = {}
        self._generation: dict[str, int] = {}
        self._probes: dict[str, psutil.Process] = {}
        self._over_memory: set[str] = set()
        self._over_cpu: set[str] = set()
        # Names whose PID was found dead by one tick, awaiting notify_exited
        self._suspected_exits: set[str] = set()

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # --- Loop control ---

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the ticking loop on a daemon thread.

        Raises:
            MonitoringError: If already running
        """
        if self.is_running:
            raise MonitoringError("health monitoring already started")
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="seqr-health-monitor", daemon=True
        )
        self._thread.start()
        logger.debug(f"Health monitoring started (interval {self.interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop and wait for the current tick to finish.

        Raises:
            MonitoringError: If not running
        """
        if not self.is_running:
            raise MonitoringError("health monitoring not started")
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        logger.debug("Health monitoring stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.check_once()
            except Exception as e:
                logger.error(f"Health check tick failed: {e}")

    # --- Immediate notifications ---

    def notify_started(self, name: str, pid: int, start_time: datetime | None = None) -> None:
        """Record a start synchronously, before the next tick can see it."""
        start_time = start_time or utc_now()
        with self._lock:
            self._bump(name)
            previous = self._health.get(name)
            health = ProcessHealth(
                name=name,
                pid=pid,
                start_time=start_time,
                last_check_time=utc_now(),
            )
            self._forget_probe(name)
            if previous is not None and previous.pid != pid:
                health.status = ProcessStatus.RESTARTED
                health.restart_count = previous.restart_count + 1
                self._health[name] = health
                self._emit(
                    HealthEventType.PROCESS_RESTARTED,
                    name,
                    f"Process restarted (PID {previous.pid} -> {pid})",
                )
            else:
                self._health[name] = health
                self._emit(HealthEventType.PROCESS_STARTED, name, f"Process started (PID {pid})")

    def notify_exited(
        self,
        name: str,
        exit_code: int | None,
        reason: str | None = None,
        expected: bool = False,
    ) -> None:
        """Record an exit synchronously.

        A zero exit code or an exit we asked for is EXITED, anything else FAILED.
        """
        now = utc_now()
        with self._lock:
            self._bump(name)
            self._forget_probe(name)
            health = self._health.get(name)
            if health is None:
                return

            previous_status = health.status
            failed = not expected and exit_code not in (0, None)
            health.status = ProcessStatus.FAILED if failed else ProcessStatus.EXITED
            health.exit_code = exit_code
            health.exit_reason = reason
            health.exit_time = health.exit_time or now
            health.last_check_time = now
            health.uptime = (health.exit_time - health.start_time).total_seconds()

            # After a tick reported a plain exit, only a failure is news
            upgraded = failed and previous_status is ProcessStatus.EXITED
            if not previous_status.is_alive and not upgraded:
                return
            if failed:
                self._emit(
                    HealthEventType.PROCESS_FAILED,
                    name,
                    f"Process failed (PID {health.pid}, exit code {exit_code})",
                )
            else:
                self._emit(
                    HealthEventType.PROCESS_EXITED,
                    name,
                    f"Process exited (PID {health.pid}, exit code {exit_code})",
                )

    # --- Tick ---

    def check_once(self) -> None:
        """One health-check pass over the active set."""
        with self._lock:
            snapshot = dict(self._generation)
        active = self._source()

        with self._lock:
            for name, info in active.items():
                if self._generation.get(name) != snapshot.get(name):
                    continue
                try:
                    self._check_active(name, info)
                except Exception as e:
                    logger.error(f"[{name}] Health check failed: {e}")
                    self._emit(HealthEventType.HEALTH_CHECK_FAILED, name, f"Health check failed: {e}")

            for name, health in self._health.items():
                if name in active or not health.status.is_alive:
                    continue
                if self._generation.get(name) != snapshot.get(name):
                    continue
                now = utc_now()
                health.status = ProcessStatus.EXITED
                health.exit_time = now
                health.last_check_time = now
                health.uptime = (now - health.start_time).total_seconds()
                self._forget_probe(name)
                self._emit(
                    HealthEventType.PROCESS_EXITED,
                    name,
                    f"Process no longer active (PID {health.pid})",
                )

    def _check_active(self, name: str, info: ProcessInfo) -> None:
        now = utc_now()
        health = self._health.get(name)

        if health is None or health.pid != info.pid:
            # First sighting without a notification
            self.notify_started(name, info.pid, info.start_time)
            return

        if not health.status.is_alive:
            # Exit already recorded; the manager has not dropped it from the map yet
            return

        health.last_check_time = now
        health.uptime = (now - health.start_time).total_seconds()

        if not self._controller.is_running(info.pid):
            if name not in self._suspected_exits:
                self._suspected_exits.add(name)
                return
            self._suspected_exits.discard(name)
            health.status = ProcessStatus.EXITED
            health.exit_time = now
            self._forget_probe(name)
            self._emit(HealthEventType.PROCESS_EXITED, name, f"Process exited (PID {info.pid})")
            return

        if self.enable_metrics:
            self._collect_metrics(name, health)

    def _collect_metrics(self, name: str, health: ProcessHealth) -> None:
        probe = self._probes.get(name)
        try:
            if probe is None:
                probe = psutil.Process(health.pid)
                self._probes[name] = probe
            health.memory_usage = probe.memory_info().rss
            # First call primes the counter and reports 0.0
            health.cpu_percent = probe.cpu_percent(interval=None)
        except psutil.NoSuchProcess:
            self._forget_probe(name)
            return
        except psutil.Error as e:
            self._emit(HealthEventType.HEALTH_CHECK_FAILED, name, f"Metrics unavailable: {e}")
            return

        self._check_threshold(
            name,
            over=health.memory_usage > self.memory_threshold,
            flagged=self._over_memory,
            event_type=HealthEventType.MEMORY_THRESHOLD,
            message=f"Memory usage {health.memory_usage} bytes exceeds {self.memory_threshold}",
        )
        self._check_threshold(
            name,
            over=health.cpu_percent > self.cpu_threshold,
            flagged=self._over_cpu,
            event_type=HealthEventType.CPU_THRESHOLD,
            message=f"CPU usage {health.cpu_percent:.1f}% exceeds {self.cpu_threshold}%",
        )

    def _check_threshold(
        self,
        name: str,
        over: bool,
        flagged: set[str],
        event_type: HealthEventType,
        message: str,
    ) -> None:
        # Fires once per crossing, re-arms when usage drops back
        if over and name not in flagged:
            flagged.add(name)
            self._emit(event_type, name, message)
        elif not over:
            flagged.discard(name)

    # --- Helpers ---

    def _bump(self, name: str) -> None:
        self._generation[name] = self._generation.get(name, 0) + 1
        self._suspected_exits.discard(name)

    def _forget_probe(self, name: str) -> None:
        self._probes.pop(name, None)
        self._over_memory.discard(name)
        self._over_cpu.discard(name)

    def _emit(self, event_type: HealthEventType, name: str, message: str) -> None:
        health = self._health.get(name)
        event = HealthMonitorEvent(
            type=event_type,
            name=name,
            message=message,
            health=health.model_copy() if health else None,
        )
        try:
            self.events.put_nowait(event)
        except queue.Full:
            self.dropped_events += 1
            logger.debug(f"[{name}] Health event queue full, dropping {event_type.value} event")

    # --- Queries ---

    def get_health(self, name: str) -> ProcessHealth | None:
        with self._lock:
            health = self._health.get(name)
            return health.model_copy() if health else None

    def get_all_health(self) -> dict[str, ProcessHealth]:
        with self._lock:
            return {name: health.model_copy() for name, health in self._health.items()}

    def remove(self, name: str) -> None:
        with self._lock:
            self._health.pop(name, None)
            self._forget_probe(name)

    def get_summary(self) -> HealthSummary:
        with self._lock:
            summary = HealthSummary(total_processes=len(self._health))
            for health in self._health.values():
                if health.status is ProcessStatus.RUNNING:
                    summary.running_processes += 1
                elif health.status is ProcessStatus.EXITED:
                    summary.exited_processes += 1
                elif health.status is ProcessStatus.FAILED:
                    summary.failed_processes += 1
                elif health.status is ProcessStatus.RESTARTED:
                    summary.restarted_processes += 1
            return summary

    def drain_events(self) -> list[HealthMonitorEvent]:
        """Pop every queued event without blocking."""
        drained: list[HealthMonitorEvent] = []
        while True:
            try:
                drained.append(self.events.get_nowait())
            except queue.Empty:
                return drained
