"""Concurrent stdout/stderr readers for supervised processes.

Each pipe gets its own reader thread so a slow consumer of one stream can
never block the other. Lines are timestamped, tagged with the command name
and stream kind, handed to a sink (usually the reporter) and appended to an
in-memory buffer that feeds the final result's output field.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import IO

from seqr.core.models import utc_now

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"


@dataclass(frozen=True)
class OutputLine:
    """One line read from a process pipe."""

    command_name: str
    stream: str  # "stdout" or "stderr"
    text: str
    timestamp: datetime = field(default_factory=utc_now)

    def format(self) -> str:
        # Millisecond resolution
        stamp = self.timestamp.strftime("%H:%M:%S.%f")[:-3]
        return f"[{stamp}] [{self.command_name}] [{self.stream}] {self.text}"


OutputSink = Callable[[OutputLine], None]


class OutputStreamer:
    """Reads a process's pipes on dedicated threads until EOF or stop().

    The buffer keeps raw line text in arrival order per stream. Across the two
    streams no ordering is guaranteed.
    """

    def __init__(self, command_name: str, sink: OutputSink | None = None):
        self.command_name = command_name
        self._sink = sink
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._lines: list[OutputLine] = []
        self._threads: list[threading.Thread] = []

    def attach(self, pipe: IO[bytes] | None, stream: str) -> None:
        """Start a reader thread for one pipe. A None pipe is ignored."""
        if pipe is None:
            return
        thread = threading.Thread(
            target=self._read_stream,
            args=(pipe, stream),
            name=f"seqr-stream-{self.command_name}-{stream}",
            daemon=True,
        )
        self._threads.append(thread)
        thread.start()

    def stop(self) -> None:
        """Stop forwarding lines. Readers exit at their next line, without error."""
        self._stop.set()

    def detach_sink(self) -> None:
        """Keep buffering but stop forwarding to the sink."""
        with self._lock:
            self._sink = None

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    @property
    def is_active(self) -> bool:
        return any(t.is_alive() for t in self._threads) and not self._stop.is_set()

    @property
    def is_forwarding(self) -> bool:
        """Readers are live and lines still reach the sink."""
        with self._lock:
            has_sink = self._sink is not None
        return has_sink and self.is_active

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout)

    @property
    def lines(self) -> list[OutputLine]:
        with self._lock:
            return list(self._lines)

    @property
    def output(self) -> str:
        """Buffered text joined with newlines."""
        with self._lock:
            return "\n".join(line.text for line in self._lines)

    def stream_output(self, stream: str) -> str:
        with self._lock:
            return "\n".join(line.text for line in self._lines if line.stream == stream)

    def _read_stream(self, pipe: IO[bytes], stream: str) -> None:
        try:
            for raw in iter(pipe.readline, b""):
                if self._stop.is_set():
                    break
                self._handle_line(raw, stream)
        except (OSError, ValueError) as e:
            # Pipe closed underneath us, typically after a kill
            logger.debug(f"[{self.command_name}] {stream} reader ended: {e}")
        finally:
            try:
                pipe.close()
            except OSError:
                pass

    def _handle_line(self, raw: bytes, stream: str) -> None:
        try:
            text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            line = OutputLine(command_name=self.command_name, stream=stream, text=text)
            with self._lock:
                self._lines.append(line)
                sink = self._sink
            if sink is not None:
                sink(line)
        except Exception as e:
            # One bad line or sink failure must not kill the reader
            logger.error(f"[{self.command_name}] Failed to handle {stream} line: {e}")
