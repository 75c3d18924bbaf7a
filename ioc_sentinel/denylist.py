"""Denylist parsing and the merged package → compromised-versions mapping.

Two threat feeds with different shapes are normalised into one ``Denylist``:

- A delimited-text feed (``Package,Version`` rows where the version column is
  a ``||``-joined list such as ``= 1.0.1 || = 1.0.2``)
- A structured JSON feed (``{"pkg": {"versions": [...]}, ...}``) where a
  package without an explicit version list is compromised in every version

Malformed rows are skipped, entry counts are capped and package names must
look like valid npm names.

Public API:
    Denylist: Merged mapping with wildcard-aware matching
    MatchKind: Outcome of matching a version against the denylist
    parse_csv_feed: Parse the delimited-text feed
    parse_json_feed: Parse the structured JSON feed
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Iterator, Mapping
from enum import Enum
from typing import Any

from ioc_sentinel.config import MAX_FEED_ENTRIES, MAX_PACKAGE_NAME_LENGTH, MAX_VERSION_LENGTH

logger = logging.getLogger(__name__)

WILDCARD = "*"

# Basic npm naming rules: lowercase, optional @scope/ prefix
_PACKAGE_NAME_RE = re.compile(r"^(?:@[a-z0-9\-~][a-z0-9\-._~]*/)?[a-z0-9\-~][a-z0-9\-._~]*$")

# Quotes, comparison operators and whitespace around a pinned version
_VERSION_NOISE_RE = re.compile(r"[\"'=<>\s]")


class MatchKind(str, Enum):
    """How a version matched a denylist entry."""

    WILDCARD = "wildcard"
    EXACT = "exact"


def is_valid_package_name(name: str) -> bool:
    """Return True if ``name`` follows the npm package naming rules."""
    return (
        bool(name)
        and len(name) <= MAX_PACKAGE_NAME_LENGTH
        and _PACKAGE_NAME_RE.match(name) is not None
    )


class Denylist:
    """Merged mapping of package name to the set of compromised versions.

    The sentinel version ``"*"`` marks every version of a package as
    compromised and always takes precedence over exact versions.

    Example::

        denylist = Denylist({"left-pad": {"*"}})
        denylist.match("left-pad", "9.9.9")  # MatchKind.WILDCARD
    """

    def __init__(self, entries: Mapping[str, Iterable[str]] | None = None) -> None:
        self._entries: dict[str, set[str]] = {}
        if entries:
            self.merge(entries)

    def merge(self, entries: Mapping[str, Iterable[str]]) -> None:
        """Union ``entries`` into this denylist, package by package."""
        for name, versions in entries.items():
            self._entries.setdefault(name, set()).update(versions)

    def is_watched(self, name: str) -> bool:
        return name in self._entries

    def versions_for(self, name: str) -> frozenset[str]:
        return frozenset(self._entries.get(name, ()))

    def match(self, name: str, version: str) -> MatchKind | None:
        """Match an installed or pinned version against the denylist.

        Wildcard entries are checked first, so a package listed with both
        ``"*"`` and explicit versions always reports a wildcard match.

        Returns:
            ``MatchKind.WILDCARD``, ``MatchKind.EXACT`` or None.
        """
        versions = self._entries.get(name)
        if not versions:
            return None
        if WILDCARD in versions:
            return MatchKind.WILDCARD
        if version in versions:
            return MatchKind.EXACT
        return None

    def to_dict(self) -> dict[str, list[str]]:
        return {name: sorted(versions) for name, versions in sorted(self._entries.items())}

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __repr__(self) -> str:
        return f"Denylist({len(self._entries)} packages)"


# ---------------------------------------------------------------------------
# Feed parsers
# ---------------------------------------------------------------------------


def parse_csv_feed(text: str) -> dict[str, set[str]]:
    """Parse the delimited-text feed.

    Args:
        text: Raw feed payload. The first line is treated as a header when it
            mentions "package".

    Returns:
        Mapping of valid package names to their compromised versions. Rows
        with an invalid name or no usable version are skipped.
    """
    if not text or not isinstance(text, str):
        return {}

    lines = [line for line in text.splitlines() if line.strip()]
    start = 1 if lines and "package" in lines[0].lower() else 0

    result: dict[str, set[str]] = {}
    for line in lines[start:start + MAX_FEED_ENTRIES]:
        name_field, sep, version_field = line.partition(",")
        if not sep:
            continue

        name = name_field.replace('"', "").replace("'", "").strip()
        if not is_valid_package_name(name):
            continue

        versions = {_clean_version(v) for v in version_field.split("||")}
        versions = {v for v in versions if v and len(v) <= MAX_VERSION_LENGTH}
        if versions:
            result.setdefault(name, set()).update(versions)

    return result


def parse_json_feed(text: str) -> dict[str, set[str]]:
    """Parse the structured JSON feed.

    The top-level value must be a non-array object. At most 100,000 entries
    are processed. A package whose details carry no usable ``versions`` list
    is treated as compromised in every version.

    Returns:
        Mapping of package names to version sets (``{"*"}`` for wildcards).
    """
    if not text or not isinstance(text, str):
        return {}

    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("Malformed JSON feed: %s", exc.msg)
        return {}
    except RecursionError:
        logger.warning("Malformed JSON feed: nesting too deep")
        return {}

    if not isinstance(data, dict):
        logger.warning("Unexpected JSON feed structure: %s", type(data).__name__)
        return {}

    result: dict[str, set[str]] = {}
    for count, (name, details) in enumerate(data.items()):
        if count >= MAX_FEED_ENTRIES:
            logger.warning("JSON feed truncated at %d entries", MAX_FEED_ENTRIES)
            break
        if not name or not isinstance(name, str) or len(name) > MAX_PACKAGE_NAME_LENGTH:
            continue

        versions: set[str] = set()
        if isinstance(details, dict) and isinstance(details.get("versions"), list):
            versions = {
                v for v in details["versions"]
                if isinstance(v, str) and v and len(v) <= MAX_VERSION_LENGTH
            }
        result[name] = versions or {WILDCARD}

    return result


def _clean_version(raw: str) -> str:
    cleaned = _VERSION_NOISE_RE.sub("", raw)
    if cleaned[:1] in ("v", "V") and cleaned[1:2].isdigit():
        cleaned = cleaned[1:]
    return cleaned
