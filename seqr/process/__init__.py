"""Platform process control and the graceful termination protocol."""

from seqr.process.platform import ProcessGroupController, get_process_controller
from seqr.process.termination import GracefulTerminator, PidHandle, kill_tracked_processes

__all__ = [
    "GracefulTerminator",
    "PidHandle",
    "ProcessGroupController",
    "get_process_controller",
    "kill_tracked_processes",
]
