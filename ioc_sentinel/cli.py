"""Command-line entry point for ioc-sentinel.

Run order: load the denylist (cache, network, fallback), walk the project
and (with ``--full-scan``) the machine's global package directories, render
the results, write the CSV report, optionally upload it, and exit with a
code suitable for CI gating.

Exit codes:
    0: Scan completed (or ``--fail-on`` threshold not met)
    1: ``--fail-on`` threshold met
    2: Invalid command-line usage or scan path
    130: Interrupted; a PARTIAL report was still produced
"""

from __future__ import annotations

import logging
import signal
from pathlib import Path
from types import FrameType
from typing import Any

import click
from click.core import ParameterSource
from rich.console import Console
from rich.logging import RichHandler

from ioc_sentinel import __version__
from ioc_sentinel.config import (
    DEFAULT_FAIL_ON,
    DEFAULT_REPORT_FILE,
    DEFAULT_SCAN_DEPTH,
    FAIL_ON_CHOICES,
    INTERRUPTED_EXIT_CODE,
    MAX_SCAN_DEPTH,
    ScanConfig,
)
from ioc_sentinel.discovery import get_search_paths
from ioc_sentinel.feeds import load_denylist
from ioc_sentinel.models import ScanContext, ScanReport
from ioc_sentinel.pathguard import validate_path
from ioc_sentinel.renderer import OUTPUT_FORMATS, render_report
from ioc_sentinel.report import build_csv, upload_report, write_csv
from ioc_sentinel.scanner import Scanner

logger = logging.getLogger("ioc_sentinel")


def configure_logging(verbose: bool = False, no_color: bool = False) -> None:
    """Route package logs through a Rich handler on stderr."""
    handler = RichHandler(
        console=Console(stderr=True, no_color=no_color),
        show_path=verbose,
        markup=False,
        rich_tracebacks=verbose,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


class _ShutdownHandlers:
    """Context manager mapping SIGINT/SIGTERM onto a ScanContext cancellation."""

    def __init__(self, context: ScanContext) -> None:
        self.context = context
        self._previous: dict[int, Any] = {}

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        if not self.context.is_shutting_down:
            logger.warning("Interrupt received, finishing with a partial report")
        self.context.request_shutdown()

    def __enter__(self) -> _ShutdownHandlers:
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                self._previous[signum] = signal.signal(signum, self._handle)
            except ValueError:
                # Not on the main thread; the scan stays uninterruptible
                logger.debug("Cannot install handler for signal %d", signum)
        return self

    def __exit__(self, *exc_info: object) -> None:
        for signum, previous in self._previous.items():
            signal.signal(signum, previous)


def _finish_report(report: ScanReport, config: ScanConfig) -> None:
    csv_text = build_csv(report, partial=report.interrupted)

    if config.write_report:
        try:
            write_csv(csv_text, config.report_file)
        except OSError as exc:
            logger.error("Could not write report %s: %s", config.report_file, exc)
    else:
        logger.info("Report file disabled (--no-report)")

    if report.interrupted:
        logger.info("Skipping upload of a partial report")
    elif not report.issues:
        logger.info("Report is empty, skipping upload")
    elif config.upload and config.api_url:
        upload_report(csv_text, report, config.api_url, config.api_key)


@click.command(name="ioc-sentinel")
@click.argument(
    "scan_path",
    required=False,
    type=click.Path(exists=True, file_okay=False, dir_okay=True, path_type=Path),
)
@click.option(
    "--depth",
    type=click.IntRange(0, MAX_SCAN_DEPTH),
    default=DEFAULT_SCAN_DEPTH,
    show_default=True,
    help="Maximum directory depth to traverse.",
)
@click.option("--full-scan", is_flag=True, help="Also scan global package directories and caches.")
@click.option("--no-cache", is_flag=True, help="Ignore cached threat feeds and re-download.")
@click.option("--no-report", is_flag=True, help="Do not write the CSV report file.")
@click.option(
    "--report-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_REPORT_FILE,
    show_default=True,
    help="Where to write the CSV report.",
)
@click.option("--no-upload", is_flag=True, help="Never upload the report, even if an API URL is set.")
@click.option(
    "--fail-on",
    type=click.Choice(FAIL_ON_CHOICES),
    default=DEFAULT_FAIL_ON,
    show_default=True,
    help="Exit 1 when issues of this class are found (enforced only when given).",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(OUTPUT_FORMATS),
    default="text",
    show_default=True,
    help="Output format.",
)
@click.option("--show-safe", is_flag=True, help="List SAFE_MATCH audit records in the output.")
@click.option("--no-color", is_flag=True, help="Disable coloured output.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.version_option(__version__, prog_name="ioc-sentinel")
@click.pass_context
def main(
    ctx: click.Context,
    scan_path: Path | None,
    depth: int,
    full_scan: bool,
    no_cache: bool,
    no_report: bool,
    report_file: Path,
    no_upload: bool,
    fail_on: str,
    output_format: str,
    show_safe: bool,
    no_color: bool,
    verbose: bool,
) -> None:
    """Scan PATH (default: current directory) for compromised npm packages."""
    configure_logging(verbose=verbose, no_color=no_color)

    validated = validate_path(scan_path if scan_path is not None else Path.cwd())
    if validated is None or not validated.is_dir():
        raise click.BadParameter("invalid scan path", param_hint="PATH")

    config = ScanConfig(
        scan_path=validated,
        max_depth=depth,
        full_scan=full_scan,
        use_cache=not no_cache,
        fail_on=fail_on,
        fail_on_explicit=ctx.get_parameter_source("fail_on") is not ParameterSource.DEFAULT,
        write_report=not no_report,
        report_file=report_file,
        upload=not no_upload,
    )

    try:
        denylist = load_denylist(config)
    except KeyboardInterrupt:
        logger.warning("Interrupted while loading threat feeds")
        ctx.exit(INTERRUPTED_EXIT_CODE)
    if not denylist:
        logger.warning("No threat feed could be loaded; running forensic and script checks only")

    roots = [config.scan_path]
    if config.full_scan:
        roots.extend(get_search_paths())

    context = ScanContext()
    scanner = Scanner(denylist, max_depth=config.max_depth, context=context)
    with _ShutdownHandlers(context):
        report = scanner.scan(roots)

    render_report(
        report,
        output_format=output_format,
        show_safe=show_safe,
        console=Console(highlight=False, no_color=no_color),
    )
    _finish_report(report, config)

    if report.interrupted:
        ctx.exit(INTERRUPTED_EXIT_CODE)
    ctx.exit(report.exit_code(config.fail_on, explicit=config.fail_on_explicit))


if __name__ == "__main__":
    main()
