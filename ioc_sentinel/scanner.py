"""Filesystem walker that drives every per-package and per-lockfile check.

This module is the central orchestrator for ioc_sentinel. Starting from one
or more scan roots it walks the directory tree depth-first and, for every
package it meets, runs in order:

- Forensic checks for known malware files (``forensics``)
- Lifecycle script analysis on the parsed manifest (``hook_inspector``)
- Version matching against the merged denylist
- Lockfile matching for lockfiles in the tree or inside packages (``lockfiles``)

All findings go into the ``ScanContext`` ledger. The walk is bounded by a
depth limit, directory and package ceilings, a visited set of real paths,
bounded symlink resolution, and containment within the scan roots. It
polls the context's cancellation flag at every step so an interrupt unwinds
promptly and still yields a (partial) report.

Public API:
    Scanner: Main walker class
    scan_directory: Convenience function to scan a single directory
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from ioc_sentinel.config import DEFAULT_SCAN_DEPTH, MAX_FILE_SIZE_BYTES, MAX_SCAN_DEPTH
from ioc_sentinel.denylist import Denylist, MatchKind
from ioc_sentinel.forensics import ForensicVerifier
from ioc_sentinel.hook_inspector import HookInspector
from ioc_sentinel.lockfiles import LOCKFILE_NAMES, check_lockfile
from ioc_sentinel.models import Issue, IssueType, ScanContext, ScanReport, Severity
from ioc_sentinel.pathguard import read_text_capped, resolve_symlink, sanitize_for_log, validate_path

logger = logging.getLogger(__name__)

NODE_MODULES = "node_modules"
MANIFEST_NAME = "package.json"


class Scanner:
    """Walks scan roots and records every finding in a shared ScanContext.

    Attributes:
        denylist: Merged denylist the installed and pinned versions are matched against
        max_depth: Maximum recursion depth below each root (capped at 10)
        context: Run-scoped ledger, counters, roots and cancellation flag
        inspector: Lifecycle script analyzer
        verifier: Forensic file verifier

    Example::

        scanner = Scanner(denylist, max_depth=5)
        report = scanner.scan([Path("./my-project")])
        print(f"{report.critical_count} critical finding(s)")
    """

    def __init__(
        self,
        denylist: Denylist,
        max_depth: int = DEFAULT_SCAN_DEPTH,
        context: ScanContext | None = None,
        inspector: HookInspector | None = None,
        verifier: ForensicVerifier | None = None,
    ) -> None:
        """Initialise the Scanner.

        Args:
            denylist: The merged denylist.
            max_depth: Traversal depth limit. Values above 10 are clamped.
            context: Optional pre-built context, e.g. one whose cancellation
                flag is wired to a signal handler. A fresh one is created
                when omitted.
            inspector: Optional script analyzer override.
            verifier: Optional forensic verifier override.

        Raises:
            ValueError: If max_depth is negative.
        """
        if max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {max_depth}")
        self.denylist: Denylist = denylist
        self.max_depth: int = min(max_depth, MAX_SCAN_DEPTH)
        self.context: ScanContext = context if context is not None else ScanContext()
        self.inspector: HookInspector = inspector if inspector is not None else HookInspector()
        self.verifier: ForensicVerifier = verifier if verifier is not None else ForensicVerifier()

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def scan(self, roots: Iterable[Path]) -> ScanReport:
        """Scan every root and return the aggregated report.

        All roots are registered for containment before the walk starts, so
        a symlink from one root into another is followed. Roots that fail
        validation or cannot be resolved are skipped with a warning.

        Args:
            roots: Directories to scan, in order.

        Returns:
            A ScanReport; ``interrupted`` is set when cancellation was requested.
        """
        resolved: list[Path] = []
        for root in roots:
            validated = validate_path(root)
            if validated is None:
                logger.warning("Skipping invalid scan root: %s", sanitize_for_log(root))
                continue
            try:
                real = validated.resolve(strict=True)
            except (OSError, RuntimeError) as exc:
                logger.warning("Skipping unreachable scan root %s: %s", validated, exc)
                continue
            if real not in resolved:
                resolved.append(real)
                self.context.add_root(real)

        started = time.monotonic()
        for root in resolved:
            if self.context.is_shutting_down:
                break
            logger.info("Scanning %s", root)
            self.scan_dir(root, 0)
        duration = time.monotonic() - started

        return ScanReport(
            roots=resolved,
            issues=list(self.context.issues),
            stats=self.context.stats,
            duration_seconds=duration,
            interrupted=self.context.is_shutting_down,
            denylist_size=len(self.denylist),
            max_depth=self.max_depth,
        )

    def scan_dir(self, path: Path, depth: int = 0) -> None:
        """Walk one directory and recurse into its eligible subdirectories.

        A directory named ``node_modules`` is handed to the package loop.
        Any other directory is itself checked as a package (without ghost
        reporting), its lockfiles are matched, nested ``node_modules`` are
        scanned and subdirectories not starting with ``.`` or ``_`` are
        walked at ``depth + 1``.
        """
        if self.context.is_shutting_down:
            return
        if self.context.directory_limit_reached():
            return
        if depth > self.max_depth:
            return

        real = self._enter(path)
        if real is None:
            return
        self.context.stats.directories_scanned += 1

        if real.name == NODE_MODULES:
            self._scan_modules_dir(real)
            return

        entries = self._list_dir(real)
        if entries is None:
            return

        self.check_package(real, real.name, installed=False)

        for entry in entries:
            if self.context.is_shutting_down:
                break
            try:
                if entry.name in LOCKFILE_NAMES and entry.is_file(follow_symlinks=False):
                    check_lockfile(Path(entry.path), self.denylist, self.context)
                elif entry.is_dir():
                    if entry.name == NODE_MODULES:
                        self.scan_node_modules(Path(entry.path))
                    elif not entry.name.startswith((".", "_")):
                        self.scan_dir(Path(entry.path), depth + 1)
            except OSError as exc:
                logger.debug("Cannot inspect %s: %s", entry.path, exc)
                self.context.stats.errors_encountered += 1

    def scan_node_modules(self, path: Path) -> None:
        """Check every installed package directly under a ``node_modules`` directory."""
        if self.context.is_shutting_down:
            return
        real = self._enter(path)
        if real is None:
            return
        self._scan_modules_dir(real)

    def check_package(self, pkg_path: Path, pkg_name: str, installed: bool = True) -> None:
        """Run forensic, script and version checks for one package directory.

        Args:
            pkg_path: The package directory.
            pkg_name: The package name (``@scope/name`` for scoped packages).
            installed: True for packages found under ``node_modules``. Only
                installed packages are reported as ghosts when their
                manifest is missing.
        """
        if self.context.is_shutting_down:
            return
        self.context.stats.files_checked += 1

        validated = validate_path(pkg_path)
        if validated is None:
            return

        self._check_forensics(validated, pkg_name)
        self._check_manifest(validated, pkg_name, installed)

    # ------------------------------------------------------------------
    # Traversal helpers
    # ------------------------------------------------------------------

    def _enter(self, path: Path) -> Path | None:
        """Validate, resolve and claim a directory for traversal.

        Returns:
            The real path to walk, or None when the path is invalid, an
            unsafe symlink, outside every scan root, or already visited.
        """
        validated = validate_path(path)
        if validated is None:
            return None

        real = self._resolve(validated)
        if real is None:
            return None

        if real in self.context.visited:
            return None
        self.context.visited.add(real)
        return real

    def _resolve(self, path: Path) -> Path | None:
        check = resolve_symlink(path)
        if not check.safe or check.real_path is None:
            self.context.stats.symlinks_skipped += 1
            return None
        real = check.real_path
        if check.is_symlink and not self.context.is_within_roots(real):
            logger.debug("Skipping symlink leaving the scan roots: %s -> %s", path, real)
            self.context.stats.symlinks_skipped += 1
            return None
        return real

    def _list_dir(self, path: Path) -> list[os.DirEntry[str]] | None:
        try:
            with os.scandir(path) as it:
                return sorted(it, key=lambda e: e.name)
        except OSError as exc:
            logger.debug("Cannot list %s: %s", path, exc)
            self.context.stats.errors_encountered += 1
            return None

    def _scan_modules_dir(self, modules: Path) -> None:
        entries = self._list_dir(modules)
        if entries is None:
            return

        for entry in entries:
            if self.context.is_shutting_down:
                return
            if entry.name.startswith("."):
                continue
            if self.context.package_limit_reached():
                return

            if entry.name.startswith("@"):
                scope_path = self._resolve(Path(entry.path))
                if scope_path is None:
                    continue
                scoped = self._list_dir(scope_path)
                if scoped is None:
                    continue
                for child in scoped:
                    if self.context.is_shutting_down or self.context.package_limit_reached():
                        return
                    self._check_installed(child, f"{entry.name}/{child.name}")
            else:
                self._check_installed(entry, entry.name)

    def _check_installed(self, entry: os.DirEntry[str], pkg_name: str) -> None:
        try:
            if not entry.is_dir():
                return
        except OSError:
            return

        pkg_path = self._resolve(Path(entry.path))
        if pkg_path is None:
            return

        self.check_package(pkg_path, pkg_name, installed=True)
        self._check_colocated_lockfiles(pkg_path)
        self.context.stats.packages_scanned += 1

    def _check_colocated_lockfiles(self, pkg_path: Path) -> None:
        for name in LOCKFILE_NAMES:
            lock_path = pkg_path / name
            try:
                if not lock_path.is_file() or lock_path.is_symlink():
                    continue
            except OSError:
                continue
            check_lockfile(lock_path, self.denylist, self.context)

    # ------------------------------------------------------------------
    # Per-package checks
    # ------------------------------------------------------------------

    def _check_forensics(self, pkg_path: Path, pkg_name: str) -> None:
        for rel_path in self.verifier.candidate_paths():
            full_path = pkg_path / rel_path
            try:
                if not full_path.is_file() or full_path.is_symlink():
                    continue
            except OSError:
                continue

            if validate_path(full_path, base=pkg_path) is None:
                continue

            result = self.verifier.verify(full_path, rel_path)
            if result.read_error:
                self.context.stats.errors_encountered += 1
                continue

            reason = sanitize_for_log(result.reason, 150)
            if result.confirmed:
                critical = result.severity is Severity.CRITICAL
                issue_type = IssueType.FORENSIC_MATCH if critical else IssueType.FORENSIC_ARTIFACT
                logger.warning(
                    "%s: %s in %s (%s)",
                    "Malware file found" if critical else "Suspicious artifact found",
                    rel_path,
                    sanitize_for_log(pkg_name),
                    reason,
                )
                self.context.add_issue(Issue(
                    issue_type=issue_type,
                    package=pkg_name,
                    location=str(pkg_path),
                    details=f"{rel_path} ({reason})",
                ))
            else:
                self.context.add_issue(Issue(
                    issue_type=IssueType.SAFE_MATCH,
                    package=pkg_name,
                    location=str(pkg_path),
                    details=f"Benign {rel_path}: {sanitize_for_log(result.reason, 100)}",
                ))

    def _check_manifest(self, pkg_path: Path, pkg_name: str, installed: bool) -> None:
        watched = self.denylist.is_watched(pkg_name)
        location = str(pkg_path)

        manifest, error = self._read_manifest(pkg_path / MANIFEST_NAME)
        if manifest is None:
            if not watched or error is None:
                return
            if error == "missing":
                if installed:
                    logger.warning("Ghost folder for targeted package %s", sanitize_for_log(pkg_name))
                    self.context.add_issue(Issue(
                        issue_type=IssueType.GHOST_PACKAGE,
                        package=pkg_name,
                        location=location,
                        details="Targeted package folder exists but package.json is missing",
                    ))
                return
            self.context.add_issue(Issue(
                issue_type=IssueType.CORRUPT_PACKAGE,
                package=pkg_name,
                location=location,
                details=f"package.json {error}",
            ))
            return

        self.context.extend_issues(self.inspector.analyze(manifest, pkg_name, location))

        if not watched:
            return

        version = manifest.get("version")
        if not isinstance(version, str) or not version:
            self.context.add_issue(Issue(
                issue_type=IssueType.CORRUPT_PACKAGE,
                package=pkg_name,
                location=location,
                details="Missing or invalid version field",
            ))
            return

        kind = self.denylist.match(pkg_name, version)
        if kind is None:
            self.context.add_issue(Issue(IssueType.SAFE_MATCH, pkg_name, version, location))
            return

        issue_type = IssueType.WILDCARD_MATCH if kind is MatchKind.WILDCARD else IssueType.VERSION_MATCH
        logger.warning(
            "%s@%s matches denylist (%s)",
            sanitize_for_log(pkg_name),
            sanitize_for_log(version),
            issue_type.value,
        )
        self.context.add_issue(Issue(issue_type, pkg_name, version, location))

    def _read_manifest(self, manifest_path: Path) -> tuple[dict[str, Any] | None, str | None]:
        """Read and parse a package.json.

        Returns:
            ``(manifest, None)`` on success, ``(None, "missing")`` when the
            file does not exist, or ``(None, <reason>)`` for any other failure.
        """
        try:
            text = read_text_capped(manifest_path, MAX_FILE_SIZE_BYTES)
        except FileNotFoundError:
            return None, "missing"
        except OSError as exc:
            self.context.stats.errors_encountered += 1
            return None, f"read error: {exc.strerror or type(exc).__name__}"

        try:
            data: Any = json.loads(text)
        except (json.JSONDecodeError, RecursionError) as exc:
            return None, f"parse error: {getattr(exc, 'msg', type(exc).__name__)}"
        if not isinstance(data, dict):
            return None, "is not a JSON object"
        return data, None


# ---------------------------------------------------------------------------
# Convenience function
# ---------------------------------------------------------------------------


def scan_directory(
    project_root: Path,
    denylist: Denylist,
    max_depth: int = DEFAULT_SCAN_DEPTH,
) -> ScanReport:
    """Convenience function to scan a single directory.

    Equivalent to::

        Scanner(denylist, max_depth).scan([project_root])

    Raises:
        FileNotFoundError: If project_root does not exist.
        NotADirectoryError: If project_root is not a directory.
    """
    if not project_root.exists():
        raise FileNotFoundError(f"Scan path does not exist: {project_root}")
    if not project_root.is_dir():
        raise NotADirectoryError(f"Scan path is not a directory: {project_root}")
    return Scanner(denylist, max_depth=max_depth).scan([project_root])
