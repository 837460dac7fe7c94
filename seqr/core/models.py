"""Data models for the seqr executor.

Uses Pydantic for every record that crosses a thread or process boundary.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class ExecutionMode(str, Enum):
    """How a command is run."""

    ONCE = "once"  # Run to completion before the queue advances
    KEEP_ALIVE = "keepAlive"  # Start in the background and move on


class ExecutionState(str, Enum):
    """State of a sequential run.

    Transitions only READY -> RUNNING -> (SUCCESS | FAILED).
    """

    READY = "ready"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class ErrorType(str, Enum):
    """Category of a command failure."""

    COMMAND_NOT_FOUND = "command_not_found"
    PERMISSION_DENIED = "permission_denied"
    NON_ZERO_EXIT = "non_zero_exit"
    TIMEOUT = "timeout"
    CONTEXT_CANCELLED = "context_cancelled"
    STARTUP_FAILURE = "startup_failure"  # keepAlive only
    SYSTEM_ERROR = "system_error"
    UNSUPPORTED_MODE = "unsupported_mode"


# --- Command Models ---


class Command(BaseModel):
    """A single entry of the command queue. Immutable once loaded.

    The mode is kept as a plain string: an unknown mode must still load so
    the executor can report it as unsupported when it reaches it.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    mode: str = ExecutionMode.ONCE.value
    work_dir: str | None = Field(default=None, alias="workDir")
    env: dict[str, str] = Field(default_factory=dict)
    concurrent: bool = False

    @property
    def is_once(self) -> bool:
        return self.mode == ExecutionMode.ONCE.value

    @property
    def is_keep_alive(self) -> bool:
        return self.mode == ExecutionMode.KEEP_ALIVE.value


class ErrorDetail(BaseModel):
    """Context captured for a failed command."""

    type: ErrorType
    message: str
    command_line: str
    working_dir: str | None = None
    environment: list[str] = Field(default_factory=list)  # Overridden keys only
    stdout: str = ""
    stderr: str = ""
    system_error: str = ""


class ExecutionResult(BaseModel):
    """Outcome of one command. Appended once per command to the run status."""

    command: Command
    success: bool = False
    exit_code: int = 0
    output: str = ""
    error: str | None = None
    error_detail: ErrorDetail | None = None
    start_time: datetime = Field(default_factory=utc_now)
    end_time: datetime | None = None
    duration: float = 0.0  # seconds

    def finish(self) -> None:
        """Stamp end time and duration."""
        self.end_time = utc_now()
        self.duration = (self.end_time - self.start_time).total_seconds()


class ExecutionStatus(BaseModel):
    """Aggregate state of a sequential run."""

    state: ExecutionState = ExecutionState.READY
    current_command: Command | None = None
    completed_count: int = 0
    total_count: int = 0
    results: list[ExecutionResult] = Field(default_factory=list)
    last_error: str | None = None


# --- Process Tracking Models ---


class ProcessInfo(BaseModel):
    """Persisted record of a keepAlive process.

    Serialized with camelCase aliases so the tracker file stays readable by
    any later invocation regardless of how it was written.
    """

    model_config = ConfigDict(populate_by_name=True)

    pid: int
    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    work_dir: str | None = Field(default=None, alias="workDir")
    start_time: datetime = Field(default_factory=utc_now, alias="startTime")
    mode: str = ExecutionMode.KEEP_ALIVE.value


# --- Health Monitoring Models ---


class ProcessStatus(str, Enum):
    """Health status of a monitored process."""

    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"
    RESTARTED = "restarted"

    @property
    def is_alive(self) -> bool:
        return self in (ProcessStatus.RUNNING, ProcessStatus.RESTARTED)


class ProcessHealth(BaseModel):
    """Health snapshot for one monitored process name."""

    name: str
    pid: int
    status: ProcessStatus = ProcessStatus.RUNNING
    start_time: datetime = Field(default_factory=utc_now)
    last_check_time: datetime = Field(default_factory=utc_now)
    uptime: float = 0.0  # seconds
    restart_count: int = 0
    exit_code: int | None = None
    exit_time: datetime | None = None
    exit_reason: str | None = None
    memory_usage: int | None = None  # bytes
    cpu_percent: float | None = None


class HealthEventType(str, Enum):
    """Types of health monitor events."""

    PROCESS_STARTED = "process_started"
    PROCESS_EXITED = "process_exited"
    PROCESS_FAILED = "process_failed"
    PROCESS_RESTARTED = "process_restarted"
    HEALTH_CHECK_FAILED = "health_check_failed"
    MEMORY_THRESHOLD = "memory_threshold"
    CPU_THRESHOLD = "cpu_threshold"


class HealthMonitorEvent(BaseModel):
    """Ephemeral lifecycle event pushed to the bounded event queue."""

    type: HealthEventType
    name: str
    timestamp: datetime = Field(default_factory=utc_now)
    message: str
    health: ProcessHealth | None = None


class HealthSummary(BaseModel):
    """Counts of monitored processes by status."""

    total_processes: int = 0
    running_processes: int = 0
    exited_processes: int = 0
    failed_processes: int = 0
    restarted_processes: int = 0
    timestamp: datetime = Field(default_factory=utc_now)
