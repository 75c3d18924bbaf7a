"""Static configuration, limits and environment overrides for ioc_sentinel.

All hard limits used by the walker, the verifier and the feed cache live here
so that the ceilings protecting against pathological trees are defined in one
place. Runtime options chosen on the command line are collected into a frozen
``ScanConfig``.

Environment variables:
    IOC_SENTINEL_API_URL: HTTPS endpoint receiving uploaded reports
    IOC_SENTINEL_API_KEY: API key sent as ``x-api-key`` with uploads
    IOC_SENTINEL_CACHE_DIR: Override for the feed cache directory
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from ioc_sentinel import __version__

# ---------------------------------------------------------------------------
# Threat feed sources
# ---------------------------------------------------------------------------

IOC_CSV_URL = (
    "https://raw.githubusercontent.com/wiz-sec-public/wiz-research-iocs/"
    "main/reports/shai-hulud-2-packages.csv"
)
IOC_JSON_URL = (
    "https://raw.githubusercontent.com/hemachandsai/shai-hulud-malicious-packages/"
    "main/malicious_npm_packages.json"
)

CSV_FEED_FILENAME = "wiz-iocs.csv"
JSON_FEED_FILENAME = "malicious-packages.json"

FALLBACK_DIR: Path = Path(__file__).parent / "fallback"
DEFAULT_CACHE_DIR: Path = Path.home() / ".cache" / "ioc-sentinel"

CACHE_TTL_SECONDS = 30 * 60
NETWORK_TIMEOUT_SECONDS = 15.0
UPLOAD_TIMEOUT_SECONDS = 30.0
MAX_DOWNLOAD_BYTES = 10 * 1024 * 1024

USER_AGENT = f"ioc-sentinel/{__version__}"

# ---------------------------------------------------------------------------
# Traversal and IO ceilings
# ---------------------------------------------------------------------------

MAX_FILE_SIZE_BYTES = 50 * 1024 * 1024
MAX_LOCKFILE_SIZE_BYTES = 100 * 1024 * 1024
MAX_PATH_LENGTH = 4096
MAX_SYMLINK_DEPTH = 3
MAX_SCAN_DEPTH = 10
DEFAULT_SCAN_DEPTH = 5
MAX_DIRECTORIES_SCANNED = 100_000
MAX_PACKAGES_SCANNED = 50_000

# Feed parsing
MAX_FEED_ENTRIES = 100_000
MAX_PACKAGE_NAME_LENGTH = 214
MAX_VERSION_LENGTH = 50

# ---------------------------------------------------------------------------
# CI/CD
# ---------------------------------------------------------------------------

FAIL_ON_CHOICES: tuple[str, ...] = ("off", "critical", "warning")
DEFAULT_FAIL_ON = "critical"
INTERRUPTED_EXIT_CODE = 130

DEFAULT_REPORT_FILE = "ioc-sentinel-report.csv"


@dataclass(frozen=True)
class ScanConfig:
    """Options for a single scanner run.

    Attributes:
        scan_path: The project root to scan
        max_depth: Maximum directory traversal depth (0-10)
        full_scan: Also scan package-manager global and cache directories
        use_cache: Reuse cached feeds younger than the TTL
        fail_on: CI threshold ('off', 'critical' or 'warning')
        fail_on_explicit: Whether the threshold was supplied by the operator
        write_report: Write the CSV report to ``report_file``
        report_file: Destination of the CSV report
        upload: Upload the report when an API URL is configured
        cache_dir: Directory holding cached feed payloads
        fallback_dir: Directory holding the bundled offline feeds
        api_url: Report upload endpoint (HTTPS only)
        api_key: Report upload API key
    """

    scan_path: Path = field(default_factory=Path.cwd)
    max_depth: int = DEFAULT_SCAN_DEPTH
    full_scan: bool = False
    use_cache: bool = True
    fail_on: str = DEFAULT_FAIL_ON
    fail_on_explicit: bool = False
    write_report: bool = True
    report_file: Path = Path(DEFAULT_REPORT_FILE)
    upload: bool = True
    cache_dir: Path = field(default_factory=lambda: cache_dir_from_env())
    fallback_dir: Path = FALLBACK_DIR
    api_url: str = field(default_factory=lambda: os.environ.get("IOC_SENTINEL_API_URL", ""))
    api_key: str = field(default_factory=lambda: os.environ.get("IOC_SENTINEL_API_KEY", ""))

    def __post_init__(self) -> None:
        if not (0 <= self.max_depth <= MAX_SCAN_DEPTH):
            raise ValueError(
                f"max_depth must be between 0 and {MAX_SCAN_DEPTH}, got {self.max_depth}"
            )
        if self.fail_on not in FAIL_ON_CHOICES:
            raise ValueError(
                f"fail_on must be one of {FAIL_ON_CHOICES}, got '{self.fail_on}'"
            )


def cache_dir_from_env() -> Path:
    """Return the feed cache directory, honouring ``IOC_SENTINEL_CACHE_DIR``."""
    override = os.environ.get("IOC_SENTINEL_CACHE_DIR")
    if override:
        return Path(override).expanduser()
    return DEFAULT_CACHE_DIR
