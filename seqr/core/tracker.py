"""Durable, file-backed registry of keepAlive processes.

The tracker file is the only state shared between independent seqr
invocations: a later `seqr status` or `seqr kill` discovers processes started
by an earlier run through it.

Consistency model: the file is a weakly-consistent store. Writes go to a temp
file in the same directory and are renamed into place, so readers never see a
torn document. Each mutation re-reads the file under an inter-process
FileLock and applies its single change on top, so concurrent invocations do
not clobber each other's records. If the lock cannot be acquired the write
proceeds anyway (logged), accepting a possible lost update.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from filelock import FileLock
from filelock import Timeout as FileLockTimeout
from pydantic import ValidationError

from seqr.core.config import default_tracker_path
from seqr.core.models import ExecutionMode, ProcessInfo, utc_now
from seqr.process.platform import ProcessGroupController, get_process_controller

logger = logging.getLogger(__name__)


class ProcessTracker:
    """PID-keyed registry persisted as one JSON document.

    The in-memory map and the file I/O share one lock, so the in-memory view
    always matches what this instance last wrote.
    """

    LOCK_TIMEOUT: float = 10.0

    def __init__(
        self,
        file_path: str | Path | None = None,
        controller: ProcessGroupController | None = None,
    ):
        self.file_path = Path(file_path) if file_path else default_tracker_path()
        self._controller = controller or get_process_controller()
        self._lock = threading.RLock()
        self._file_lock = FileLock(f"{self.file_path}.lock", timeout=self.LOCK_TIMEOUT)
        self._processes: dict[int, ProcessInfo] = {}
        self.reload()

    # --- Public API ---

    def add_process(
        self,
        pid: int,
        name: str,
        command: str,
        args: list[str] | None = None,
        work_dir: str | None = None,
        mode: str = ExecutionMode.KEEP_ALIVE.value,
        start_time: datetime | None = None,
    ) -> ProcessInfo:
        """Record a process and persist immediately.

        start_time defaults to now; pass the spawn time when it is known.

        Raises:
            OSError: If the tracker file could not be written. The in-memory
                record is kept.
        """
        info = ProcessInfo(
            pid=pid,
            name=name,
            command=command,
            args=list(args or []),
            work_dir=work_dir,
            start_time=start_time or utc_now(),
            mode=mode,
        )

        def apply(processes: dict[int, ProcessInfo]) -> bool:
            processes[pid] = info
            return True

        self._mutate(apply)
        return info.model_copy(deep=True)

    def remove_process(self, pid: int) -> bool:
        """Forget a process. Returns True if it was tracked."""

        def apply(processes: dict[int, ProcessInfo]) -> bool:
            return processes.pop(pid, None) is not None

        return self._mutate(apply)

    def get_process(self, pid: int) -> ProcessInfo | None:
        with self._lock:
            info = self._processes.get(pid)
            return info.model_copy(deep=True) if info else None

    def get_all_processes(self) -> dict[int, ProcessInfo]:
        """Defensive copy of every tracked record."""
        with self._lock:
            return {pid: info.model_copy(deep=True) for pid, info in self._processes.items()}

    def get_running_process_count(self) -> int:
        with self._lock:
            return len(self._processes)

    def cleanup_dead_processes(self) -> list[int]:
        """Drop records whose PID no longer answers the liveness probe.

        Persists only when something was removed.

        Returns:
            The removed PIDs
        """
        removed: list[int] = []

        def apply(processes: dict[int, ProcessInfo]) -> bool:
            for pid in list(processes):
                if not self._controller.is_running(pid):
                    del processes[pid]
                    removed.append(pid)
            return bool(removed)

        self._mutate(apply)
        if removed:
            logger.debug(f"Removed {len(removed)} dead process record(s): {removed}")
        return removed

    def reload(self) -> None:
        """Replace the in-memory view with the file contents."""
        with self._lock:
            loaded = self._read_file()
            self._processes = loaded if loaded is not None else {}

    # --- Persistence ---

    def _mutate(self, apply: Callable[[dict[int, ProcessInfo]], bool]) -> bool:
        with self._lock, self._file_guard():
            current = self._read_file()
            if current is None:
                current = dict(self._processes)
            changed = apply(current)
            self._processes = current
            if changed:
                self._write_file(current)
            return changed

    @contextmanager
    def _file_guard(self) -> Generator[None, None, None]:
        acquired = False
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            self._file_lock.acquire()
            acquired = True
        except FileLockTimeout:
            logger.warning(
                f"Tracker lock timeout after {self.LOCK_TIMEOUT}s; writing without lock"
            )
        except OSError as e:
            logger.warning(f"Failed to acquire tracker lock: {e}")
        try:
            yield
        finally:
            if acquired:
                self._file_lock.release()

    def _read_file(self) -> dict[int, ProcessInfo] | None:
        """Read the tracker file.

        Returns:
            {} if the file does not exist or is empty, None if it is
            unreadable or corrupt (caller keeps its in-memory view).
        """
        try:
            text = self.file_path.read_text()
        except FileNotFoundError:
            return {}
        except OSError as e:
            logger.warning(f"Failed to read tracker file {self.file_path}: {e}")
            return None

        if not text.strip():
            return {}

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring corrupt tracker file {self.file_path}: {e}")
            return None
        if not isinstance(raw, dict):
            logger.warning(f"Ignoring malformed tracker file {self.file_path}")
            return None

        processes: dict[int, ProcessInfo] = {}
        for key, record in raw.items():
            try:
                info = ProcessInfo.model_validate(record)
            except ValidationError as e:
                logger.warning(f"Skipping invalid tracker record '{key}': {e}")
                continue
            processes[info.pid] = info
        return processes

    def _write_file(self, processes: dict[int, ProcessInfo]) -> None:
        payload = {
            str(pid): info.model_dump(mode="json", by_alias=True)
            for pid, info in sorted(processes.items())
        }
        data = json.dumps(payload, indent=2)

        # Temp file in the same directory so the rename stays on one filesystem
        fd, tmp_path = tempfile.mkstemp(
            dir=self.file_path.parent,
            prefix=f".{self.file_path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w") as f:
                f.write(data)
            os.replace(tmp_path, self.file_path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise
