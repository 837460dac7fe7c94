"""Progress reporting for command runs.

The executor only calls these hooks for their side effects and never reads
anything back. `Reporter` is a silent no-op base; `ConsoleReporter` renders
with rich.
"""

from __future__ import annotations

import threading

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from seqr.core.models import (
    Command,
    ExecutionResult,
    HealthEventType,
    HealthMonitorEvent,
    HealthSummary,
    ProcessHealth,
    ProcessInfo,
    ProcessStatus,
)
from seqr.core.streaming import STDERR, OutputLine


class Reporter:
    """No-op reporter. Subclass and override what you need."""

    def report_start(self, total: int) -> None:
        pass

    def report_command_start(self, command: Command, index: int, total: int) -> None:
        pass

    def report_command_success(self, result: ExecutionResult, index: int, total: int) -> None:
        pass

    def report_command_failure(
        self, result: ExecutionResult, error: Exception, index: int, total: int
    ) -> None:
        pass

    def report_execution_complete(self, results: list[ExecutionResult]) -> None:
        pass

    def report_output_line(self, line: OutputLine) -> None:
        pass

    def report_process_status(self, processes: dict[str, ProcessInfo]) -> None:
        pass

    def report_process_health(self, health: dict[str, ProcessHealth]) -> None:
        pass

    def report_lifecycle_event(self, event: HealthMonitorEvent) -> None:
        pass

    def report_health_summary(self, summary: HealthSummary) -> None:
        pass


STATUS_STYLES = {
    ProcessStatus.RUNNING: "green",
    ProcessStatus.RESTARTED: "yellow",
    ProcessStatus.EXITED: "dim",
    ProcessStatus.FAILED: "red",
}

EVENT_STYLES = {
    HealthEventType.PROCESS_STARTED: "green",
    HealthEventType.PROCESS_EXITED: "dim",
    HealthEventType.PROCESS_FAILED: "red",
    HealthEventType.PROCESS_RESTARTED: "yellow",
    HealthEventType.HEALTH_CHECK_FAILED: "red",
    HealthEventType.MEMORY_THRESHOLD: "yellow",
    HealthEventType.CPU_THRESHOLD: "yellow",
}


class ConsoleReporter(Reporter):
    """Renders progress, streamed output and health to the terminal.

    Output lines arrive from reader threads, so printing is serialized.
    """

    def __init__(self, console: Console | None = None, verbose: bool = False):
        self.console = console or Console()
        self.verbose = verbose
        self._lock = threading.Lock()

    def _print(self, *args, **kwargs) -> None:
        with self._lock:
            self.console.print(*args, **kwargs)

    def report_start(self, total: int) -> None:
        self._print(f"[bold]Executing {total} command(s)[/bold]")

    def report_command_start(self, command: Command, index: int, total: int) -> None:
        self._print(
            f"[cyan][{index + 1}/{total}][/cyan] {escape(command.name)} "
            f"[dim]({command.mode})[/dim]"
        )

    def report_command_success(self, result: ExecutionResult, index: int, total: int) -> None:
        line = f"  [green]OK[/green] {escape(result.command.name)} [dim]{result.duration:.2f}s[/dim]"
        if result.command.is_keep_alive:
            line += f" [dim]{escape(result.output)}[/dim]"
        self._print(line)
        if self.verbose and result.output and not result.command.is_keep_alive:
            self._print(f"[dim]{escape(result.output)}[/dim]")

    def report_command_failure(
        self, result: ExecutionResult, error: Exception, index: int, total: int
    ) -> None:
        self._print(
            f"  [red]FAILED[/red] {escape(result.command.name)} "
            f"[dim](command {index + 1}/{total})[/dim]"
        )
        self._print(f"  [red]Error:[/red] {escape(str(error))}")
        detail = result.error_detail
        if detail is None:
            return
        self._print(f"  [dim]Type: {detail.type.value}[/dim]")
        if detail.working_dir:
            self._print(f"  [dim]Working Directory: {escape(detail.working_dir)}[/dim]")
        captured = detail.stderr or detail.stdout
        if captured:
            self._print("  [yellow]Output:[/yellow]")
            for text in captured.splitlines():
                self._print(f"    {escape(text)}")

    def report_execution_complete(self, results: list[ExecutionResult]) -> None:
        total = sum(r.duration for r in results)
        self._print(
            f"[green]All {len(results)} command(s) completed[/green] [dim]in {total:.2f}s[/dim]"
        )

    def report_output_line(self, line: OutputLine) -> None:
        style = "red" if line.stream == STDERR else "white"
        self._print(f"[{style}]{escape(line.format())}[/{style}]", highlight=False)

    def report_process_status(self, processes: dict[str, ProcessInfo]) -> None:
        if not processes:
            self._print("[dim]No active processes[/dim]")
            return
        table = Table(title="Active Processes")
        table.add_column("Name", style="cyan")
        table.add_column("PID", style="green")
        table.add_column("Command")
        table.add_column("Started", style="dim")
        for info in sorted(processes.values(), key=lambda i: (i.name, i.pid)):
            table.add_row(
                escape(info.name),
                str(info.pid),
                escape(" ".join([info.command, *info.args])),
                info.start_time.strftime("%H:%M:%S"),
            )
        self._print(table)

    def report_process_health(self, health: dict[str, ProcessHealth]) -> None:
        if not health:
            self._print("[dim]No monitored processes[/dim]")
            return
        table = Table(title="Process Health")
        table.add_column("Name", style="cyan")
        table.add_column("PID")
        table.add_column("Status")
        table.add_column("Uptime", style="dim")
        table.add_column("Restarts", style="dim")
        for name, record in sorted(health.items()):
            style = STATUS_STYLES.get(record.status, "white")
            table.add_row(
                escape(name),
                str(record.pid),
                f"[{style}]{record.status.value}[/{style}]",
                f"{record.uptime:.1f}s",
                str(record.restart_count),
            )
        self._print(table)

    def report_lifecycle_event(self, event: HealthMonitorEvent) -> None:
        style = EVENT_STYLES.get(event.type, "white")
        stamp = event.timestamp.strftime("%H:%M:%S")
        self._print(
            f"[dim]{stamp}[/dim] [{style}]{event.type.value}[/{style}] "
            f"{escape(event.name)}: {escape(event.message)}"
        )

    def report_health_summary(self, summary: HealthSummary) -> None:
        self._print(
            f"[bold]Processes:[/bold] {summary.total_processes} total, "
            f"[green]{summary.running_processes} running[/green], "
            f"{summary.exited_processes} exited, "
            f"[red]{summary.failed_processes} failed[/red], "
            f"[yellow]{summary.restarted_processes} restarted[/yellow]"
        )
