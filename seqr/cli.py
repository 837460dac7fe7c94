"""CLI entry point for seqr.

Commands:
- seqr run [CONFIG]: Execute a command file (default .queue.json)
- seqr status: Show keepAlive processes recorded by earlier runs
- seqr kill: Terminate keepAlive processes recorded by earlier runs
"""

from __future__ import annotations

import logging
import signal
import sys
import threading

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from seqr import __version__
from seqr.cli_ui.reporter import ConsoleReporter
from seqr.core.config import DEFAULT_COMMAND_FILE, ExecutorConfig, load_commands
from seqr.core.errors import SeqrError
from seqr.core.sequential import SequentialExecutor
from seqr.core.tracker import ProcessTracker
from seqr.process.platform import get_process_controller
from seqr.process.termination import GracefulTerminator, kill_tracked_processes

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Route seqr's library logging through rich.

    Replaces any handler installed by a previous call.
    """
    seqr_logger = logging.getLogger("seqr")
    seqr_logger.handlers.clear()
    seqr_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    handler = RichHandler(console=Console(stderr=True), show_path=False, markup=False)
    seqr_logger.addHandler(handler)
    seqr_logger.propagate = False


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """seqr - sequential command executor and process supervisor.

    Runs a queue of commands once or keeps them alive in the background,
    and tracks background processes so a later invocation can stop them.
    """
    pass


@main.command()
@click.argument(
    "config_file", default=DEFAULT_COMMAND_FILE, type=click.Path(exists=True, dir_okay=False)
)
@click.option("--verbose", "-v", is_flag=True, help="Stream command output and debug logs")
@click.option("--workdir", "-w", type=click.Path(file_okay=False), help="Default working directory")
@click.option("--timeout", "-t", type=float, help="Per-command timeout for once commands (seconds)")
@click.option("--watch", is_flag=True, help="Stay attached to keepAlive processes until Ctrl+C")
def run(
    config_file: str,
    verbose: bool,
    workdir: str | None,
    timeout: float | None,
    watch: bool,
) -> None:
    """Execute the commands in CONFIG_FILE (JSON or YAML, default .queue.json)."""
    try:
        config = ExecutorConfig.from_env(
            verbose=verbose or None, working_dir=workdir, timeout=timeout
        )
        setup_logging(config.verbose)
        commands = load_commands(config_file)
    except SeqrError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    reporter = ConsoleReporter(console, verbose=config.verbose)
    executor = SequentialExecutor(config, reporter)
    cancel_event = threading.Event()

    def handle_signal(signum, frame) -> None:
        console.print("\n[yellow]Interrupted, stopping processes...[/yellow]")
        cancel_event.set()
        executor.stop()

    previous_handlers = {
        sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        executor.execute(commands, cancel_event)

        if executor.has_active_keep_alive_processes():
            if watch:
                _watch(executor, cancel_event)
            else:
                if executor.has_active_streaming():
                    executor.detach_streaming()
                console.print(
                    "[dim]keepAlive processes are running in the background. "
                    "Use 'seqr status' to list them and 'seqr kill' to stop them.[/dim]"
                )
    except SeqrError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)


def _watch(executor: SequentialExecutor, cancel_event: threading.Event) -> None:
    """Report health events until interrupted or every process has exited."""
    console.print("[dim]Watching keepAlive processes, press Ctrl+C to stop them.[/dim]")
    executor.start_health_monitoring()
    try:
        while executor.has_active_keep_alive_processes() and not cancel_event.wait(0.5):
            pass
    finally:
        executor.stop_health_monitoring()
        executor.manager.report_health_status()


@main.command()
def status() -> None:
    """Show keepAlive processes recorded by earlier runs."""
    config = ExecutorConfig.from_env()
    setup_logging(config.verbose)
    tracker = ProcessTracker(config.resolved_tracker_path())

    removed = tracker.cleanup_dead_processes()
    if removed:
        console.print(f"[dim]Cleaned up {len(removed)} stale record(s)[/dim]")

    processes = tracker.get_all_processes()
    ConsoleReporter(console).report_process_status(
        {str(pid): info for pid, info in processes.items()}
    )
    console.print(f"[dim]Tracker file: {tracker.file_path}[/dim]")


@main.command()
@click.option("--force", "-f", is_flag=True, help="Skip the graceful SIGTERM phase")
def kill(force: bool) -> None:
    """Terminate keepAlive processes recorded by earlier runs."""
    config = ExecutorConfig.from_env()
    setup_logging(config.verbose)
    controller = get_process_controller()
    tracker = ProcessTracker(config.resolved_tracker_path(), controller=controller)
    terminator = GracefulTerminator(
        controller,
        grace_period=config.grace_period,
        force_kill_timeout=config.force_kill_timeout,
    )

    processes = tracker.get_all_processes()
    outcomes = kill_tracked_processes(tracker, terminator, graceful=not force)
    if not outcomes:
        console.print("[dim]No running seqr processes[/dim]")
        return

    failed = 0
    for pid, terminated in sorted(outcomes.items()):
        info = processes.get(pid)
        name = escape(info.name) if info else "?"
        if terminated:
            console.print(f"[green]Stopped[/green] {name} (PID {pid})")
        else:
            failed += 1
            console.print(f"[red]Failed to stop[/red] {name} (PID {pid})")

    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
