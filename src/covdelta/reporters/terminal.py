"""Terminal reporter with rich output formatting."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from covdelta.analyzers.delta import CoverageDelta
    from covdelta.models.coverage import CoverageSummary, FileSummary

console = Console()

_HIGH_COVERAGE = 80.0
_MEDIUM_COVERAGE = 50.0


def _coverage_color(percentage: float) -> str:
    """Return a Rich color name for a coverage percentage."""
    if percentage >= _HIGH_COVERAGE:
        return "green"
    if percentage >= _MEDIUM_COVERAGE:
        return "yellow"
    return "red"


def _colored_pct(percentage: float, *, bold: bool = False) -> str:
    style = f"bold {_coverage_color(percentage)}" if bold else _coverage_color(percentage)
    return f"[{style}]{percentage:.2f}%[/{style}]"


class CLIReporter:
    """Rich terminal output for coverage summaries and deltas."""

    def __init__(self) -> None:
        """Initialize the CLI reporter."""
        self.console = console

    def print_header(self, title: str) -> None:
        """Print a bold header."""
        self.console.print(f"\n[bold cyan]{title}[/bold cyan]\n")

    def print_success(self, message: str) -> None:
        """Print a success message."""
        self.console.print(f"[green]✓[/green] {message}")

    def print_error(self, message: str) -> None:
        """Print an error message."""
        self.console.print(f"[red]✗[/red] {message}")

    def print_warning(self, message: str) -> None:
        """Print a warning message."""
        self.console.print(f"[yellow]⚠[/yellow] {message}")

    def print_info(self, message: str) -> None:
        """Print an info message."""
        self.console.print(f"[dim]{message}[/dim]")

    def print_coverage_summary(self, summary: CoverageSummary) -> None:
        """Print a per-file coverage summary table."""
        table = Table(title="Coverage Summary", title_style="bold cyan")
        table.add_column("File", style="bold")
        table.add_column("Lines", justify="right")
        table.add_column("Statements", justify="right")
        table.add_column("Functions", justify="right")
        table.add_column("Branches", justify="right")

        for path in sorted(summary.files):
            table.add_row(self._strip_workdir(path), *self._metric_cells(summary.files[path]))

        table.add_section()
        table.add_row(
            "[bold]Overall[/bold]",
            *self._metric_cells(summary.total, bold=True),
        )

        self.console.print(table)

    def print_delta(self, delta: CoverageDelta) -> None:
        """Print a coverage delta table followed by the verdict."""
        table = Table(title=delta.title, title_style="bold cyan")
        table.add_column("", justify="center")
        table.add_column("File", style="bold")
        table.add_column("Coverage", justify="right")
        table.add_column("Delta", justify="right")

        for row in delta.rows:
            delta_color = "red" if row.regressed else ("green" if row.improved else "dim")
            table.add_row(
                row.marker,
                row.name,
                f"{row.bar} {_colored_pct(row.coverage_pct)}",
                f"[{delta_color}]{row.delta_text}[/{delta_color}]",
            )

        self.console.print(table)

        if delta.regressions:
            self.print_error(
                f"{len(delta.regressions)} file(s) lost coverage: {delta.conclusion}"
            )
        else:
            self.print_success(f"No file lost coverage: {delta.conclusion}")

    def _metric_cells(self, summary: FileSummary, *, bold: bool = False) -> list[str]:
        return [
            _colored_pct(summary.lines.pct, bold=bold),
            _colored_pct(summary.statements.pct, bold=bold),
            _colored_pct(summary.functions.pct, bold=bold),
            _colored_pct(summary.branches.pct, bold=bold),
        ]

    def _strip_workdir(self, file_path: str) -> str:
        """Strip the current working directory from file path for cleaner display.

        Args:
            file_path: Full or relative file path.

        Returns:
            Path relative to current working directory.
        """
        try:
            return str(Path(file_path).relative_to(Path.cwd()))
        except ValueError:
            return file_path


reporter = CLIReporter()
