"""Executor configuration and command file loading."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from seqr.core.errors import ConfigurationError
from seqr.core.models import Command

TRACKER_FILENAME = "seqr-processes.json"
DEFAULT_COMMAND_FILE = ".queue.json"


def default_tracker_path() -> Path:
    """Location of the shared process tracker file.

    Can be overridden via SEQR_TRACKER_FILE env var.
    """
    env_override = os.environ.get("SEQR_TRACKER_FILE")
    if env_override:
        return Path(env_override)
    return Path(tempfile.gettempdir()) / TRACKER_FILENAME


@dataclass
class ExecutorConfig:
    """Configuration for the executor and its supervision machinery."""

    verbose: bool = False
    # Default working directory; a command's own workDir takes precedence
    working_dir: str | None = None
    # Per-command timeout for once commands (seconds, None = unbounded)
    timeout: float | None = None

    # Termination protocol
    grace_period: float = 5.0  # SIGTERM -> SIGKILL escalation
    force_kill_timeout: float = 3.0  # Wait after SIGKILL before giving up

    # Health monitoring
    health_check_interval: float = 1.0
    event_buffer_size: int = 100
    enable_metrics: bool = False
    memory_threshold: int = 100 * 1024 * 1024  # 100MB
    cpu_threshold: float = 80.0  # percent

    tracker_path: Path | None = None

    @classmethod
    def from_env(cls, **overrides) -> ExecutorConfig:
        """Build a config from SEQR_* environment variables.

        Explicit keyword overrides win over the environment.
        """
        values: dict = {}
        if os.environ.get("SEQR_VERBOSE", "").lower() in ("1", "true", "yes"):
            values["verbose"] = True
        if os.environ.get("SEQR_WORKING_DIR"):
            values["working_dir"] = os.environ["SEQR_WORKING_DIR"]
        for env_key, field_name in (
            ("SEQR_TIMEOUT", "timeout"),
            ("SEQR_GRACE_PERIOD", "grace_period"),
            ("SEQR_HEALTH_INTERVAL", "health_check_interval"),
        ):
            raw = os.environ.get(env_key)
            if raw:
                try:
                    values[field_name] = float(raw)
                except ValueError as e:
                    raise ConfigurationError(f"{env_key} must be a number, got '{raw}'") from e
        if os.environ.get("SEQR_TRACKER_FILE"):
            values["tracker_path"] = Path(os.environ["SEQR_TRACKER_FILE"])
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def resolved_tracker_path(self) -> Path:
        return self.tracker_path or default_tracker_path()


class CommandFile(BaseModel):
    """Schema of a command file."""

    version: str = "1.0"
    commands: list[Command] = Field(default_factory=list)


def parse_commands(data: dict) -> list[Command]:
    """Validate an already-decoded command document."""
    try:
        document = CommandFile.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid command file: {e}") from e

    seen: set[str] = set()
    for command in document.commands:
        if command.name in seen:
            raise ConfigurationError(f"Duplicate command name '{command.name}'")
        seen.add(command.name)
    return document.commands


def load_commands(path: str | Path) -> list[Command]:
    """Load the command list from a JSON or YAML file."""
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigurationError(f"Cannot read command file '{path}': {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot parse command file '{path}': {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Command file '{path}' must contain a mapping")
    return parse_commands(data)
