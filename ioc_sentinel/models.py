"""Data models for ioc_sentinel findings, scan statistics and reports.

This module defines the core dataclasses and enumerations used throughout
the ioc_sentinel package to represent findings, run-scoped scan state and the
aggregated report handed to the renderer and the CSV/upload collaborators.

Classes:
    Severity: Enumeration of severity levels (CRITICAL, HIGH, WARNING, INFO)
    IssueType: Enumeration of the finding taxonomy
    Issue: A single immutable finding
    ScanStats: Mutable run-scoped counters
    ScanContext: Explicit scan state passed into every traversal call
    ScanReport: Aggregated result of a complete scan
"""

from __future__ import annotations

import datetime
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ioc_sentinel.config import MAX_DIRECTORIES_SCANNED, MAX_PACKAGES_SCANNED

logger = logging.getLogger(__name__)

UNKNOWN_VERSION = "UNKNOWN"


class Severity(str, Enum):
    """Severity levels for findings.

    - CRITICAL: Confirmed compromise indicator, fails CI by default
    - HIGH: Content-verified artifact that needs investigation
    - WARNING: Suspicious but not conclusive
    - INFO: Audit record, no direct risk
    """

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    WARNING = "WARNING"
    INFO = "INFO"

    def _rank(self) -> int:
        order = [Severity.INFO, Severity.WARNING, Severity.HIGH, Severity.CRITICAL]
        return order.index(self)

    def __lt__(self, other: object) -> bool:
        """Enable ordering of severity levels from least to most severe."""
        if not isinstance(other, Severity):
            return NotImplemented
        return self._rank() < other._rank()

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self == other or self < other

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self._rank() > other._rank()

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self == other or self > other

    @property
    def rich_style(self) -> str:
        """Return a Rich markup style string for this severity level."""
        styles: dict[Severity, str] = {
            Severity.CRITICAL: "bold red",
            Severity.HIGH: "red",
            Severity.WARNING: "yellow",
            Severity.INFO: "dim",
        }
        return styles.get(self, "white")


class IssueType(str, Enum):
    """Taxonomy of findings produced by the scanner.

    - FORENSIC_MATCH: Known malware file found by name alone
    - FORENSIC_ARTIFACT: Suspicious file confirmed by content inspection
      (HIGH severity, counted by neither ``--fail-on`` threshold)
    - VERSION_MATCH / WILDCARD_MATCH: Installed package is denylisted
    - LOCKFILE_HIT / WILDCARD_LOCK_HIT: Lockfile pins a denylisted version
    - CRITICAL_SCRIPT / SCRIPT_WARNING: Dangerous lifecycle hook
    - GHOST_PACKAGE: Watched package directory without package.json
    - CORRUPT_PACKAGE: Watched package with an unreadable manifest
    - SAFE_MATCH: Checked and cleared (audit record)
    """

    FORENSIC_MATCH = "FORENSIC_MATCH"
    FORENSIC_ARTIFACT = "FORENSIC_ARTIFACT"
    VERSION_MATCH = "VERSION_MATCH"
    WILDCARD_MATCH = "WILDCARD_MATCH"
    LOCKFILE_HIT = "LOCKFILE_HIT"
    WILDCARD_LOCK_HIT = "WILDCARD_LOCK_HIT"
    CRITICAL_SCRIPT = "CRITICAL_SCRIPT"
    SCRIPT_WARNING = "SCRIPT_WARNING"
    GHOST_PACKAGE = "GHOST_PACKAGE"
    CORRUPT_PACKAGE = "CORRUPT_PACKAGE"
    SAFE_MATCH = "SAFE_MATCH"

    @property
    def severity(self) -> Severity:
        """Return the severity assigned to this kind of finding."""
        if self in CRITICAL_ISSUE_TYPES:
            return Severity.CRITICAL
        if self is IssueType.FORENSIC_ARTIFACT:
            return Severity.HIGH
        if self in WARNING_ISSUE_TYPES:
            return Severity.WARNING
        return Severity.INFO

    @property
    def is_threat(self) -> bool:
        """Return True for every kind except the SAFE_MATCH audit record."""
        return self is not IssueType.SAFE_MATCH


CRITICAL_ISSUE_TYPES: frozenset[IssueType] = frozenset([
    IssueType.FORENSIC_MATCH,
    IssueType.CRITICAL_SCRIPT,
    IssueType.VERSION_MATCH,
    IssueType.WILDCARD_MATCH,
    IssueType.LOCKFILE_HIT,
    IssueType.WILDCARD_LOCK_HIT,
])

WARNING_ISSUE_TYPES: frozenset[IssueType] = frozenset([
    IssueType.SCRIPT_WARNING,
    IssueType.GHOST_PACKAGE,
    IssueType.CORRUPT_PACKAGE,
])


@dataclass(frozen=True)
class Issue:
    """A single finding discovered during a scan.

    Attributes:
        issue_type: The kind of finding
        package: The npm package name the finding belongs to
        version: The package version, or ``"UNKNOWN"``
        location: Filesystem location (package directory or lockfile)
        details: Free-text detail
    """

    issue_type: IssueType
    package: str
    version: str = UNKNOWN_VERSION
    location: str = ""
    details: str = ""

    @property
    def severity(self) -> Severity:
        return self.issue_type.severity

    def to_dict(self) -> dict[str, Any]:
        """Serialize this issue to a JSON-serializable dictionary."""
        return {
            "type": self.issue_type.value,
            "severity": self.severity.value,
            "package": self.package,
            "version": self.version,
            "location": self.location,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Issue:
        """Deserialize an Issue from a dictionary produced by ``to_dict()``.

        Raises:
            KeyError: If required keys are missing from the dict.
            ValueError: If the issue type is invalid.
        """
        return cls(
            issue_type=IssueType(data["type"]),
            package=data["package"],
            version=data.get("version", UNKNOWN_VERSION),
            location=data.get("location", ""),
            details=data.get("details", ""),
        )


@dataclass
class ScanStats:
    """Run-scoped counters, also used as traversal ceilings."""

    directories_scanned: int = 0
    packages_scanned: int = 0
    files_checked: int = 0
    lockfiles_checked: int = 0
    errors_encountered: int = 0
    symlinks_skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "directories_scanned": self.directories_scanned,
            "packages_scanned": self.packages_scanned,
            "files_checked": self.files_checked,
            "lockfiles_checked": self.lockfiles_checked,
            "errors_encountered": self.errors_encountered,
            "symlinks_skipped": self.symlinks_skipped,
        }


@dataclass
class ScanContext:
    """Mutable state shared by every traversal call of one scan.

    The context is passed explicitly into the walker, the verifier and the
    lockfile matchers instead of living in module globals. It owns the issue
    ledger, the counters, the resolved scan roots used for containment
    checks, and the cancellation flag polled by every recursive step.

    Attributes:
        issues: Append-only ledger of findings in traversal order
        stats: Counters and ceilings for the run
        roots: Resolved real paths of all scan roots
        visited: Real paths of directories already walked
        max_directories: Directory ceiling
        max_packages: Package ceiling
    """

    issues: list[Issue] = field(default_factory=list)
    stats: ScanStats = field(default_factory=ScanStats)
    roots: list[Path] = field(default_factory=list)
    visited: set[Path] = field(default_factory=set)
    max_directories: int = MAX_DIRECTORIES_SCANNED
    max_packages: int = MAX_PACKAGES_SCANNED
    _shutdown: threading.Event = field(default_factory=threading.Event, repr=False)
    _limits_logged: set[str] = field(default_factory=set, repr=False)

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def add_issue(self, issue: Issue) -> None:
        self.issues.append(issue)

    def extend_issues(self, issues: list[Issue]) -> None:
        self.issues.extend(issues)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def request_shutdown(self) -> None:
        """Ask every in-flight traversal step to unwind."""
        self._shutdown.set()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown.is_set()

    # ------------------------------------------------------------------
    # Ceilings
    # ------------------------------------------------------------------

    def directory_limit_reached(self) -> bool:
        """Return True once the directory ceiling is hit, logging it once."""
        if self.stats.directories_scanned < self.max_directories:
            return False
        self._log_limit_once("directories", self.max_directories)
        return True

    def package_limit_reached(self) -> bool:
        """Return True once the package ceiling is hit, logging it once."""
        if self.stats.packages_scanned < self.max_packages:
            return False
        self._log_limit_once("packages", self.max_packages)
        return True

    def _log_limit_once(self, kind: str, limit: int) -> None:
        if kind in self._limits_logged:
            return
        self._limits_logged.add(kind)
        logger.warning("Scan limit reached: %d %s, skipping the rest", limit, kind)

    # ------------------------------------------------------------------
    # Containment
    # ------------------------------------------------------------------

    def add_root(self, root: Path) -> None:
        if root not in self.roots:
            self.roots.append(root)

    def is_within_roots(self, path: Path) -> bool:
        """Return True if ``path`` equals or lies under one of the scan roots."""
        if not self.roots:
            return True
        return any(path == root or root in path.parents for root in self.roots)


@dataclass
class ScanReport:
    """Aggregated result of a complete (or interrupted) scan.

    Attributes:
        roots: The roots that were scanned, in scan order
        issues: All findings in traversal order
        stats: Final counters
        duration_seconds: Wall-clock duration of the walker phase
        interrupted: True when the scan was cancelled before completion
        denylist_size: Number of packages in the merged denylist
        max_depth: Traversal depth used
        scan_timestamp: ISO 8601 timestamp when the scan was initiated
    """

    roots: list[Path] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    stats: ScanStats = field(default_factory=ScanStats)
    duration_seconds: float = 0.0
    interrupted: bool = False
    denylist_size: int = 0
    max_depth: int = 0
    scan_timestamp: str = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc).isoformat()
    )

    @property
    def threats(self) -> list[Issue]:
        """Return every issue except SAFE_MATCH audit records."""
        return [i for i in self.issues if i.issue_type.is_threat]

    @property
    def safe_matches(self) -> list[Issue]:
        return [i for i in self.issues if not i.issue_type.is_threat]

    @property
    def critical_count(self) -> int:
        return sum(1 for i in self.issues if i.issue_type in CRITICAL_ISSUE_TYPES)

    @property
    def warning_count(self) -> int:
        return sum(1 for i in self.issues if i.issue_type in WARNING_ISSUE_TYPES)

    @property
    def type_counts(self) -> dict[str, int]:
        """Return a mapping of issue type label to count, in taxonomy order."""
        counter = Counter(i.issue_type for i in self.issues)
        return {t.value: counter.get(t, 0) for t in IssueType}

    @property
    def severity_counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in (Severity.CRITICAL, Severity.HIGH, Severity.WARNING, Severity.INFO)}
        for issue in self.issues:
            counts[issue.severity.value] += 1
        return counts

    def exit_code(self, fail_on: str = "critical", explicit: bool = False) -> int:
        """Compute the process exit code for CI/CD integration.

        Args:
            fail_on: One of 'off', 'critical' or 'warning'.
            explicit: Whether the operator supplied the threshold. Without
                it the scan always exits 0.

        Returns:
            1 when the threshold's issue kinds are present, otherwise 0.
        """
        if not explicit or fail_on == "off":
            return 0
        if fail_on == "critical":
            return 1 if self.critical_count > 0 else 0
        if fail_on == "warning":
            return 1 if (self.critical_count > 0 or self.warning_count > 0) else 0
        raise ValueError(f"Unknown fail_on threshold: '{fail_on}'")

    def to_dict(self) -> dict[str, Any]:
        """Serialize this report to a JSON-serializable dictionary."""
        return {
            "scan_timestamp": self.scan_timestamp,
            "roots": [str(r) for r in self.roots],
            "max_depth": self.max_depth,
            "denylist_size": self.denylist_size,
            "interrupted": self.interrupted,
            "duration_seconds": round(self.duration_seconds, 3),
            "stats": self.stats.to_dict(),
            "critical_count": self.critical_count,
            "warning_count": self.warning_count,
            "type_counts": self.type_counts,
            "issues": [i.to_dict() for i in self.issues],
        }
