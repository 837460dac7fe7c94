"""Console rendering for seqr."""

from seqr.cli_ui.reporter import ConsoleReporter, Reporter

__all__ = ["ConsoleReporter", "Reporter"]
