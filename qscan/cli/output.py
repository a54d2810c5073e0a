"""
CLI output utilities.

Results go to stdout; progress and status messages go to stderr so that
`--json` output can be piped straight into other tools.
"""

import json
import os
from enum import Enum
from typing import List, Optional, Sequence

from rich.console import Console
from rich.table import Table
from rich.text import Text

from qscan.core.models import ContainerProcessInfo, ScanResult


class OutputLevel(Enum):
    """Output verbosity levels."""
    QUIET = 0
    NORMAL = 1
    VERBOSE = 2


class CliOutput:
    """CLI output manager with color and formatting support."""

    def __init__(
        self,
        verbose: int = OutputLevel.NORMAL.value,
        no_color: bool = False,
        console: Optional[Console] = None,
        err_console: Optional[Console] = None,
    ):
        """
        Initialize CLI output.

        Args:
            verbose: Verbosity level (0=quiet, 1=normal, 2=verbose)
            no_color: Disable colored output
            console: Console for results (default: stdout)
            err_console: Console for status messages (default: stderr)
        """
        self.verbose_level = OutputLevel(verbose)
        self.no_color = no_color
        self.console = console or Console(no_color=no_color, highlight=False)
        self.err_console = err_console or Console(stderr=True, no_color=no_color, highlight=False)

    @property
    def quiet(self) -> bool:
        return self.verbose_level == OutputLevel.QUIET

    def info(self, message: str):
        """Print a progress message."""
        if self.quiet:
            return
        self.err_console.print(Text(message), style="cyan")

    def success(self, message: str):
        if self.quiet:
            return
        self.err_console.print(Text(f"✓ {message}"), style="bold green")

    def warning(self, message: str):
        if self.quiet:
            return
        self.err_console.print(Text(f"! {message}"), style="bold yellow")

    def error(self, message: str):
        """Print an error message; shown even in quiet mode."""
        self.err_console.print(Text(f"✗ {message}"), style="bold red")

    def results_table(self, results: Sequence[ScanResult]):
        for result in results:
            self.result_table(result)

    def result_table(self, result: ScanResult):
        """Print one result as a header block plus a table of reports."""
        summary = Table(
            title="Qualys QScanner Results",
            title_justify="left",
            show_header=False,
            box=None,
        )
        summary.add_column("Field", style="cyan")
        summary.add_column("Value")
        summary.add_row("Target", result.target)
        summary.add_row("Type", result.type)
        if result.os_info:
            summary.add_row("OS", result.os_info)
        summary.add_row("Duration", f"{result.duration_seconds:.1f}s")
        exit_style = "green" if result.succeeded else "bold red"
        summary.add_row("Exit Code", Text(str(result.exit_code), style=exit_style))
        if result.error:
            summary.add_row("Error", Text(result.error, style="red"))
        for note in result.notes:
            summary.add_row("Note", Text(note, style="yellow"))

        self.console.print()
        self.console.print(summary)

        if result.reports:
            reports = Table(title="Reports", title_justify="left", show_header=True, header_style="bold magenta")
            reports.add_column("Format")
            reports.add_column("Path", overflow="fold")
            for report_format in sorted(result.reports):
                reports.add_row(report_format, relative_path(result.reports[report_format]))
            self.console.print()
            self.console.print(reports)

        self.console.print()

    def results_json(self, results: Sequence[ScanResult]):
        """One object for a single result, an array otherwise."""
        self.console.out(render_json(results), highlight=False)

    def containers(self, containers: List[ContainerProcessInfo]):
        """Print the running container listing."""
        if not containers:
            self.console.print("No running Apptainer/Singularity containers found")
            return

        table = Table(
            title="Running Apptainer/Singularity Containers",
            show_header=True,
            header_style="bold magenta",
        )
        table.add_column("PID", justify="right")
        table.add_column("User")
        table.add_column("Command", overflow="fold")
        table.add_column("RootFS")

        for container in containers:
            if container.accessible:
                rootfs = Text(f"{container.rootfs} (accessible)", style="green")
            else:
                rootfs = Text(f"{container.rootfs} (permission denied)", style="red")
            table.add_row(str(container.pid), container.user, container.display_command(80), rootfs)

        self.console.print(table)

    def containers_json(self, containers: List[ContainerProcessInfo]):
        self.console.out(json.dumps([c.to_dict() for c in containers], indent=2), highlight=False)


def render_json(results: Sequence[ScanResult]) -> str:
    """Serialize results without their raw engine output."""
    payload = [r.to_dict() for r in results]
    if len(payload) == 1:
        return json.dumps(payload[0], indent=2)
    return json.dumps(payload, indent=2)


def relative_path(path: str) -> str:
    """Path relative to the working directory when it lies below it."""
    try:
        rel = os.path.relpath(path)
    except ValueError:
        return path
    if rel.startswith(".."):
        return path
    return rel
