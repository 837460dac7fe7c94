"""Live supervised process handle."""

from __future__ import annotations

import subprocess
import threading
from dataclasses import dataclass, field
from datetime import datetime

from seqr.core.models import Command, utc_now
from seqr.core.streaming import OutputStreamer


@dataclass
class ManagedProcess:
    """A started process plus everything needed to supervise it.

    Satisfies the termination protocol's ProcessHandle interface.
    """

    name: str
    command: Command
    popen: subprocess.Popen
    start_time: datetime = field(default_factory=utc_now)
    streamer: OutputStreamer | None = None
    # Set once the watcher has observed the exit and cleaned up
    exited: threading.Event = field(default_factory=threading.Event)
    # True when we asked it to stop, so its exit is not a failure
    expected_exit: bool = False

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def returncode(self) -> int | None:
        return self.popen.returncode

    def is_running(self) -> bool:
        return self.popen.poll() is None

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for exit. True if the process has exited (and been reaped)."""
        try:
            self.popen.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        return True

    def signal(self, graceful: bool) -> None:
        # Popen ignores signals to an already-reaped child
        if graceful:
            self.popen.terminate()
        else:
            self.popen.kill()
