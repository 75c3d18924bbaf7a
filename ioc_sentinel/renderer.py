"""Rich-based terminal output renderer for ioc_sentinel scan results.

This module formats a ScanReport for interactive terminal use and for CI/CD
pipeline consumption:

- A header panel showing the scan roots and run metadata
- A findings table listing each issue with its kind, severity, package,
  version and location (SAFE_MATCH audit records hidden unless requested)
- A summary panel with counts per issue kind and the overall verdict
- A compact single-line summary and a JSON mode for machine consumption

Public API:
    Renderer: Main class implementing all rendering modes
    render_report: Convenience function to render a ScanReport to the console
"""

from __future__ import annotations

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ioc_sentinel.models import IssueType, ScanReport, Severity

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

OUTPUT_FORMATS: tuple[str, ...] = ("text", "json", "compact")

# Maximum details length shown in the findings table
_DETAILS_TRUNCATE = 120

# Severity badge styles (foreground colour / style for Rich markup)
_SEVERITY_BADGE: dict[Severity, tuple[str, str]] = {
    Severity.CRITICAL: ("bold white on red", "CRITICAL"),
    Severity.HIGH: ("bold red", "HIGH    "),
    Severity.WARNING: ("bold yellow", "WARNING "),
    Severity.INFO: ("dim", "INFO    "),
}


class Renderer:
    """Rich-based renderer for ioc_sentinel ScanReport output.

    Attributes:
        console: The Rich Console instance used for output
        show_safe: Whether SAFE_MATCH audit records are listed in the table

    Example::

        renderer = Renderer()
        renderer.render(report)
        # Or for JSON output:
        renderer.render_json(report)
    """

    def __init__(
        self,
        console: Console | None = None,
        show_safe: bool = False,
        no_color: bool = False,
    ) -> None:
        """Initialise the Renderer.

        Args:
            console: Optional Rich Console instance. When None, a new Console
                is created writing to stdout.
            show_safe: When True, list SAFE_MATCH records alongside threats.
            no_color: When True, disable Rich colour and styling.
        """
        self.console: Console = console or Console(
            highlight=False,
            no_color=no_color,
        )
        self.show_safe: bool = show_safe

    # ------------------------------------------------------------------
    # Primary rendering entry points
    # ------------------------------------------------------------------

    def render(self, report: ScanReport) -> None:
        """Render a full ScanReport: header, findings table and summary."""
        self._render_header(report)
        self._render_findings(report)
        self._render_summary(report)

    def render_json(self, report: ScanReport) -> None:
        """Render a ScanReport as pretty-printed JSON without Rich styling."""
        output = json.dumps(report.to_dict(), indent=2, default=str)
        self.console.print(output, highlight=False, markup=False, soft_wrap=True)

    def render_compact(self, report: ScanReport) -> None:
        """Render a one-line summary suitable for CI log output.

        Outputs a single line like:
            [CLEAN] ioc-sentinel: 0 threat(s) in 42 package(s)
        or:
            [FAIL] ioc-sentinel: 3 threat(s) (2 CRITICAL, 1 WARNING) in 42 package(s)
        """
        status, style = self._verdict(report)
        counts = report.severity_counts
        non_zero = [f"{v} {k}" for k, v in counts.items() if v > 0 and k != Severity.INFO.value]
        counts_str = f" ({', '.join(non_zero)})" if non_zero else ""
        partial = " [yellow](partial)[/yellow]" if report.interrupted else ""
        line = (
            f"[{style}][{status}][/{style}] ioc-sentinel: "
            f"{len(report.threats)} threat(s){counts_str} "
            f"in {report.stats.packages_scanned} package(s){partial}"
        )
        self.console.print(line)

    # ------------------------------------------------------------------
    # Header
    # ------------------------------------------------------------------

    def _render_header(self, report: ScanReport) -> None:
        from ioc_sentinel import __version__

        roots = escape(", ".join(str(r) for r in report.roots)) or "(none)"
        lines: list[str] = [
            f"[bold]ioc-sentinel[/bold] v{__version__}: npm supply chain forensic scan",
            "",
            f"[dim]Roots:[/dim]        [cyan]{roots}[/cyan]",
            f"[dim]Scanned:[/dim]      {report.scan_timestamp}",
            f"[dim]Depth:[/dim]        {report.max_depth}",
            f"[dim]Denylist:[/dim]     {report.denylist_size} targeted package(s)",
        ]
        panel = Panel(
            "\n".join(lines),
            title="[bold blue]ioc-sentinel scan[/bold blue]",
            border_style="blue",
            padding=(1, 2),
        )
        self.console.print()
        self.console.print(panel)
        self.console.print()

    # ------------------------------------------------------------------
    # Findings table
    # ------------------------------------------------------------------

    def _render_findings(self, report: ScanReport) -> None:
        issues = report.issues if self.show_safe else report.threats
        self.console.rule("[bold]Findings[/bold]", style="blue")
        self.console.print()

        if not issues:
            self.console.print(
                "  [bold green]No threats found.[/bold green]  "
                f"[dim]({report.stats.packages_scanned} package(s) scanned)[/dim]"
            )
            self.console.print()
            return

        self.console.print(self._build_findings_table(issues))
        self.console.print()

    def _build_findings_table(self, issues: list[Any]) -> Table:
        table = Table(
            box=box.ROUNDED,
            show_header=True,
            header_style="bold dim",
            border_style="dim",
            expand=True,
            padding=(0, 1),
        )
        table.add_column("Severity", width=10, no_wrap=True)
        table.add_column("Type", no_wrap=True)
        table.add_column("Package", min_width=16)
        table.add_column("Version", no_wrap=True)
        table.add_column("Location", min_width=20)
        table.add_column("Details", min_width=30)

        # Most severe first; ledger order within a severity
        for issue in sorted(issues, key=lambda i: i.severity, reverse=True):
            table.add_row(
                self._severity_badge(issue.severity),
                Text(issue.issue_type.value, style=issue.severity.rich_style),
                Text(issue.package, style="cyan"),
                Text(issue.version),
                Text(issue.location, style="dim"),
                Text(_truncate(issue.details, _DETAILS_TRUNCATE), style="dim"),
            )
        return table

    # ------------------------------------------------------------------
    # Summary panel
    # ------------------------------------------------------------------

    def _render_summary(self, report: ScanReport) -> None:
        self.console.rule("[bold]Scan Summary[/bold]", style="blue")
        self.console.print()

        type_lines: list[str] = []
        for issue_type, count in report.type_counts.items():
            if count == 0:
                continue
            style = IssueType(issue_type).severity.rich_style
            type_lines.append(f"  [{style}]● {issue_type:<18}[/{style}] {count}")
        type_block = "\n".join(type_lines) if type_lines else "  [dim]No issues recorded.[/dim]"

        status, style = self._verdict(report)
        stats = report.stats
        summary_content = (
            f"{type_block}\n\n"
            f"  [dim]Directories scanned:[/dim] {stats.directories_scanned}\n"
            f"  [dim]Packages scanned:[/dim]    {stats.packages_scanned}\n"
            f"  [dim]Lockfiles checked:[/dim]   {stats.lockfiles_checked}\n"
            f"  [dim]Symlinks skipped:[/dim]    {stats.symlinks_skipped}\n"
            f"  [dim]Errors:[/dim]              {stats.errors_encountered}\n"
            f"  [dim]Duration:[/dim]            {report.duration_seconds:.2f}s\n\n"
            f"  Status: [{style}]{status}[/{style}]"
        )
        if report.interrupted:
            summary_content += "\n\n  [yellow]Scan was interrupted; results are partial.[/yellow]"

        panel = Panel(
            summary_content,
            title="[bold]Results[/bold]",
            border_style=style.split()[-1],
            padding=(1, 2),
        )
        self.console.print(panel)
        self.console.print()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _verdict(report: ScanReport) -> tuple[str, str]:
        if report.critical_count > 0:
            return "FAIL", "bold red"
        if report.threats:
            return "WARN", "bold yellow"
        return "CLEAN", "bold green"

    @staticmethod
    def _severity_badge(severity: Severity) -> Text:
        style, label = _SEVERITY_BADGE.get(severity, ("white", severity.value))
        return Text(label.strip(), style=style, no_wrap=True)


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------


def _truncate(text: str, max_chars: int) -> str:
    """Truncate a string to a maximum length, appending '…' if truncated."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "…"


# ---------------------------------------------------------------------------
# Convenience function
# ---------------------------------------------------------------------------


def render_report(
    report: ScanReport,
    output_format: str = "text",
    show_safe: bool = False,
    console: Console | None = None,
    no_color: bool = False,
) -> None:
    """Convenience function to render a ScanReport to the terminal.

    Args:
        report: The ScanReport to render.
        output_format: One of 'text', 'json', or 'compact'. Defaults to 'text'.
        show_safe: When True and output_format is 'text', list SAFE_MATCH
            audit records in the findings table.
        console: Optional Rich Console instance to use.
        no_color: When True, disable Rich styling.

    Raises:
        ValueError: If output_format is not one of the accepted values.
    """
    if output_format not in OUTPUT_FORMATS:
        raise ValueError(
            f"Invalid output_format '{output_format}'. "
            f"Must be one of: {', '.join(OUTPUT_FORMATS)}"
        )

    renderer = Renderer(console=console, show_safe=show_safe, no_color=no_color)
    if output_format == "json":
        renderer.render_json(report)
    elif output_format == "compact":
        renderer.render_compact(report)
    else:
        renderer.render(report)
