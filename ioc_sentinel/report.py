"""CSV report generation, atomic report writing and optional report upload.

The CSV report carries one row per ledger entry (SAFE_MATCH audit records
included) with the run metadata repeated on each row, so it can be
concatenated across machines and loaded into a spreadsheet directly. Cells
that a spreadsheet would evaluate as a formula are prefixed with ``'``.

Upload is opt-in (an API URL must be configured), HTTPS only, and never
fails the scan: every error is logged and reported as a False return.
"""

from __future__ import annotations

import csv
import io
import logging
import os
import sys
import tempfile
from pathlib import Path
from urllib.parse import urlparse

import httpx

from ioc_sentinel import __version__
from ioc_sentinel.config import UPLOAD_TIMEOUT_SECONDS, USER_AGENT
from ioc_sentinel.models import ScanReport
from ioc_sentinel.pathguard import sha256_hex

logger = logging.getLogger(__name__)

CSV_HEADERS: tuple[str, ...] = (
    "Timestamp",
    "Report_Type",
    "Issue_Type",
    "Package",
    "Version",
    "Location",
    "Details",
    "Scan_Duration_MS",
    "Directories_Scanned",
    "Packages_Scanned",
)

_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")


def escape_cell(value: object) -> str:
    """Neutralise spreadsheet formula injection in a single cell."""
    text = "" if value is None else str(value)
    if text.startswith(_FORMULA_PREFIXES):
        return "'" + text
    return text


def build_csv(report: ScanReport, partial: bool = False) -> str:
    """Render the report ledger as CSV text.

    Args:
        report: The scan report.
        partial: Mark every row as ``PARTIAL`` (interrupted scan) instead of
            ``COMPLETE``.

    Returns:
        CSV text with a header row and one row per issue.
    """
    report_type = "PARTIAL" if partial or report.interrupted else "COMPLETE"
    duration_ms = str(int(report.duration_seconds * 1000))
    directories = str(report.stats.directories_scanned)
    packages = str(report.stats.packages_scanned)

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for issue in report.issues:
        writer.writerow([
            escape_cell(value)
            for value in (
                report.scan_timestamp,
                report_type,
                issue.issue_type.value,
                issue.package,
                issue.version,
                issue.location,
                issue.details,
                duration_ms,
                directories,
                packages,
            )
        ])
    return buffer.getvalue()


def write_csv(csv_text: str, path: Path) -> Path:
    """Write the CSV report atomically (temp file in the same directory + rename).

    Raises:
        OSError: If the report cannot be written.
    """
    target = path.resolve()
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=target.name + ".", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(csv_text)
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
    logger.info("Report saved to %s", target)
    return target


def build_upload_payload(csv_text: str, report: ScanReport) -> dict[str, object]:
    """Build the JSON body sent to the report collector.

    Operator identity (hostname, git and npm user) is never included.
    """
    return {
        "scannerVersion": __version__,
        "platform": sys.platform,
        "reportHash": sha256_hex(csv_text),
        "issueCount": len(report.issues),
        "criticalCount": report.critical_count,
        "report": csv_text,
    }


def upload_report(
    csv_text: str,
    report: ScanReport,
    api_url: str | None,
    api_key: str | None = None,
    client: httpx.Client | None = None,
) -> bool:
    """POST the report to the configured collector.

    Args:
        csv_text: The CSV report text.
        report: The scan report the CSV was built from.
        api_url: Collector endpoint. Upload is skipped when empty.
        api_key: Sent as ``x-api-key`` when set.
        client: Optional HTTP client (tests inject a mock transport).

    Returns:
        True if the collector accepted the report, False otherwise.
    """
    if not api_url:
        logger.info("No upload URL configured, skipping upload")
        return False
    if urlparse(api_url).scheme != "https":
        logger.warning("Refusing to upload over a non-HTTPS URL")
        return False
    if not api_key:
        logger.warning("No API key configured, uploading without authentication")

    headers = {"User-Agent": USER_AGENT}
    if api_key:
        headers["x-api-key"] = api_key

    owns_client = client is None
    http = client if client is not None else httpx.Client(timeout=UPLOAD_TIMEOUT_SECONDS)
    try:
        response = http.post(
            api_url,
            json=build_upload_payload(csv_text, report),
            headers=headers,
        )
    except httpx.HTTPError as exc:
        logger.error("Upload failed: %s", str(exc) or type(exc).__name__)
        return False
    finally:
        if owns_client:
            http.close()

    if not response.is_success:
        logger.error("Upload failed: HTTP %d", response.status_code)
        return False

    logger.info("Upload successful (HTTP %d)", response.status_code)
    return True
