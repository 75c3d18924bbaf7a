"""Lockfile matchers for npm (v1-v3) and yarn (classic and berry) lockfiles.

A lockfile pins exact versions for the whole dependency graph, so it can
reveal a compromised version that is not installed yet (or was removed from
``node_modules`` after the fact). Each pinned version is matched against the
denylist, wildcard first:

- wildcard entry → ``WILDCARD_LOCK_HIT``
- exact version → ``LOCKFILE_HIT``

Parse failures are expected (partial writes, merge conflicts) and are logged
at debug level only.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from ioc_sentinel.config import MAX_LOCKFILE_SIZE_BYTES, MAX_VERSION_LENGTH
from ioc_sentinel.denylist import Denylist, MatchKind
from ioc_sentinel.models import Issue, IssueType, ScanContext
from ioc_sentinel.pathguard import FileTooLargeError, read_text_capped, sanitize_for_log

logger = logging.getLogger(__name__)

NPM_LOCKFILE_NAMES: frozenset[str] = frozenset(["package-lock.json", "npm-shrinkwrap.json"])
YARN_LOCKFILE_NAME = "yarn.lock"
LOCKFILE_NAMES: tuple[str, ...] = ("package-lock.json", YARN_LOCKFILE_NAME, "npm-shrinkwrap.json")

MAX_DEPENDENCY_DEPTH = 100

# `  version "1.2.3"` (classic) or `  version: 1.2.3` (berry)
_YARN_VERSION_RE = re.compile(r"^version:?\s+[\"']?([^\"'\s]+)[\"']?")


def _match_issue(
    denylist: Denylist,
    name: str,
    version: Any,
    location: str,
    source: str,
) -> Issue | None:
    if not name or not isinstance(version, str) or not version:
        return None
    version = version[:MAX_VERSION_LENGTH]
    kind = denylist.match(name, version)
    if kind is MatchKind.WILDCARD:
        return Issue(IssueType.WILDCARD_LOCK_HIT, name, version, location, f"Wildcard match in {source}")
    if kind is MatchKind.EXACT:
        return Issue(IssueType.LOCKFILE_HIT, name, version, location, f"Exact match in {source}")
    return None


# ---------------------------------------------------------------------------
# npm
# ---------------------------------------------------------------------------


def check_npm_lockfile(data: Any, denylist: Denylist, location: str) -> list[Issue]:
    """Match a parsed ``package-lock.json`` / ``npm-shrinkwrap.json``.

    Both the v2/v3 flat ``packages`` map and the v1 nested ``dependencies``
    tree are checked; a v2 lockfile carrying both is checked twice.

    Args:
        data: The parsed lockfile document.
        denylist: Merged denylist.
        location: Lockfile path reported with each finding.

    Returns:
        Findings in document order.
    """
    if not isinstance(data, dict):
        return []

    issues: list[Issue] = []
    packages = data.get("packages")
    if isinstance(packages, dict):
        for key, details in packages.items():
            if not key or not isinstance(key, str) or not isinstance(details, dict):
                continue
            name = key.rsplit("node_modules/", 1)[-1]
            if name not in denylist:
                continue
            issue = _match_issue(denylist, name, details.get("version"), location, "NPM_LOCK_V3")
            if issue is not None:
                issues.append(issue)

    dependencies = data.get("dependencies")
    if isinstance(dependencies, dict):
        for name, version in _walk_v1_dependencies(dependencies):
            if name not in denylist:
                continue
            issue = _match_issue(denylist, name, version, location, "NPM_LOCK_V1")
            if issue is not None:
                issues.append(issue)

    return issues


def _walk_v1_dependencies(deps: dict[str, Any], depth: int = 0) -> Iterator[tuple[str, Any]]:
    if depth > MAX_DEPENDENCY_DEPTH:
        return
    for name, details in deps.items():
        if not isinstance(details, dict):
            continue
        yield name, details.get("version")
        nested = details.get("dependencies")
        if isinstance(nested, dict):
            yield from _walk_v1_dependencies(nested, depth + 1)


# ---------------------------------------------------------------------------
# yarn
# ---------------------------------------------------------------------------


def _yarn_entry_name(header: str) -> str | None:
    """Extract the package name from a yarn entry header line.

    Handles ``pkg@^1.0.0:``, ``"@scope/pkg@^1.0.0", "@scope/pkg@^1.1.0":``
    and berry's ``"pkg@npm:^1.0.0":``.
    """
    key = header.rstrip()[:-1].strip()
    first = key.split(",")[0].strip().strip('"').strip("'")
    at = first.find("@", 1)
    if at <= 0:
        return None
    return first[:at]


def check_yarn_lock(text: str, denylist: Denylist, location: str) -> list[Issue]:
    """Match a ``yarn.lock`` in a single pass.

    Args:
        text: Raw lockfile content.
        denylist: Merged denylist.
        location: Lockfile path reported with each finding.

    Returns:
        Findings in document order.
    """
    issues: list[Issue] = []
    current: str | None = None

    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        if not line[0].isspace():
            current = None
            if "@" in line and stripped.endswith(":"):
                current = _yarn_entry_name(stripped)
            continue

        if current is None:
            continue

        version_match = _YARN_VERSION_RE.match(stripped)
        if version_match is None:
            continue

        if current in denylist:
            issue = _match_issue(denylist, current, version_match.group(1), location, "yarn.lock")
            if issue is not None:
                issues.append(issue)
        current = None

    return issues


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def check_lockfile(path: Path, denylist: Denylist, context: ScanContext) -> list[Issue]:
    """Read, parse and match one lockfile, appending findings to the ledger.

    Oversized lockfiles are skipped with a log line. Read and parse failures
    never propagate.

    Returns:
        The findings that were added to ``context``.
    """
    if context.is_shutting_down:
        return []

    context.stats.lockfiles_checked += 1
    location = str(path)

    try:
        content = read_text_capped(path, MAX_LOCKFILE_SIZE_BYTES)
    except FileTooLargeError as exc:
        logger.warning(
            "Skipping large lockfile (%.1fMB): %s",
            exc.size / 1024 / 1024,
            sanitize_for_log(location, 100),
        )
        return []
    except OSError as exc:
        logger.debug("Cannot read lockfile %s: %s", location, exc)
        return []

    issues: list[Issue] = []
    if path.name in NPM_LOCKFILE_NAMES:
        try:
            data = json.loads(content)
        except (json.JSONDecodeError, RecursionError) as exc:
            logger.debug("Ignoring unparseable lockfile %s: %s", location, exc)
            return []
        issues = check_npm_lockfile(data, denylist, location)
    elif path.name == YARN_LOCKFILE_NAME:
        issues = check_yarn_lock(content, denylist, location)

    for issue in issues:
        logger.warning(
            "Lockfile alert: %s@%s in %s",
            sanitize_for_log(issue.package),
            sanitize_for_log(issue.version),
            sanitize_for_log(location, 100),
        )
    context.extend_issues(issues)
    return issues
