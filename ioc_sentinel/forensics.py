"""Tiered forensic verification of suspicious files found inside packages.

Some file names are reliable indicators on their own (the loader and payload
scripts dropped by the worm, its stolen-secret dumps, its workflow backdoor).
Others collide with ordinary tooling output: ``bundle.js`` is produced by
every bundler and ``contents.json`` ships with every Xcode asset catalog. For
those the verifier inspects the content before confirming anything.

Rules are a closed set of variants:

- ``NameOnlyRule``: presence alone confirms the finding
- ``TextRule``: confirm when an indicator regex matches and no safe regex does
- ``JsonRule``: dismiss on any allowlisted key, confirm on any suspicious key

Every read or parse failure degrades to a non-confirmed result with a reason;
the verifier never raises into the walker.

Public API:
    ForensicVerifier: Applies the rule set to a file on disk
    VerificationResult: Outcome of a single verification
    FORENSIC_RULES: The built-in rule set keyed by relative file path
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

from ioc_sentinel.models import Severity
from ioc_sentinel.pathguard import FileTooLargeError, read_text_capped, validate_path

logger = logging.getLogger(__name__)

# Read cap for content verification; bundles bigger than this are not payloads
MAX_VERIFY_READ_BYTES = 5 * 1024 * 1024
# Cap on content handed to any regex, independent of the patterns' own safety
MAX_REGEX_CONTENT_CHARS = 10 * 1024 * 1024
MAX_JSON_KEYS = 10_000
MAX_SERIALIZED_JSON_CHARS = 1024 * 1024


# ---------------------------------------------------------------------------
# Rule variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NameOnlyRule:
    """The file name alone is a reliable indicator of compromise."""

    severity: Severity = Severity.CRITICAL


@dataclass(frozen=True)
class TextRule:
    """Script content must match an indicator and no safe pattern.

    Attributes:
        indicators: Regexes characteristic of the malicious payload
        safe_patterns: Regexes characteristic of legitimate bundler output
    """

    indicators: tuple[re.Pattern[str], ...]
    safe_patterns: tuple[re.Pattern[str], ...] = ()
    severity: Severity = Severity.HIGH


@dataclass(frozen=True)
class JsonRule:
    """JSON content must carry a suspicious key and no allowlisted key.

    Attributes:
        required_keys: Keys (or substrings) typical of stolen-secret dumps
        safe_keys: Top-level keys typical of legitimate tooling files
    """

    required_keys: tuple[str, ...]
    safe_keys: tuple[str, ...] = ()
    severity: Severity = Severity.HIGH


ForensicRule = Union[NameOnlyRule, TextRule, JsonRule]


FORENSIC_RULES: dict[str, ForensicRule] = {
    # Name alone is conclusive
    "setup_bun.js": NameOnlyRule(),
    "bun_environment.js": NameOnlyRule(),
    "truffleSecrets.json": NameOnlyRule(),
    "actionsSecrets.json": NameOnlyRule(),
    ".github/workflows/discussion.yaml": NameOnlyRule(),
    ".github/workflows/discussion.yml": NameOnlyRule(),
    # Common bundler output; the payload variant references the loader or
    # opens raw sockets
    "bundle.js": TextRule(
        indicators=(
            re.compile(r"setup_bun", re.IGNORECASE),
            re.compile(r"bun_environment", re.IGNORECASE),
            re.compile(r"child_process"),
            re.compile(r"socket\.connect"),
        ),
        safe_patterns=(
            re.compile(r"webpack", re.IGNORECASE),
            re.compile(r"react", re.IGNORECASE),
            re.compile(r"babel", re.IGNORECASE),
        ),
    ),
    # Xcode asset catalogs carry "images" and "info"; the dump carries secrets
    "contents.json": JsonRule(
        required_keys=("aws", "key", "token", "secret", "password", "env"),
        safe_keys=("images", "info", "properties"),
    ),
    "cloud.json": JsonRule(
        required_keys=("aws_access_key_id", "azure_client_id", "gcp_token"),
    ),
    # Environment dump signature
    "environment.json": JsonRule(
        required_keys=("PATH", "USER", "SHELL", "HOME", "npm_config_"),
    ),
}

@dataclass(frozen=True)
class VerificationResult:
    """Outcome of verifying one suspicious file.

    Attributes:
        confirmed: True when the file is judged malicious
        reason: Why the file was confirmed or dismissed
        severity: Tier of the rule that applied, when one did
        read_error: True when the file could not be read at all
    """

    confirmed: bool
    reason: str
    severity: Severity | None = None
    read_error: bool = False


@dataclass
class ForensicVerifier:
    """Confirms or dismisses suspicious files by name and content.

    Attributes:
        rules: Rule set keyed by path relative to the package directory
        regex_errors: Count of pattern evaluations that raised

    Example::

        verifier = ForensicVerifier()
        result = verifier.verify(Path("pkg/bundle.js"), "bundle.js")
        if result.confirmed:
            print(result.severity, result.reason)
    """

    rules: dict[str, ForensicRule] = field(default_factory=lambda: dict(FORENSIC_RULES))
    regex_errors: int = 0

    def candidate_paths(self) -> list[str]:
        """Return the rule paths to probe inside each package directory."""
        return list(self.rules)

    def verify(self, path: Path, filename: str) -> VerificationResult:
        """Verify a single file against the rule registered for ``filename``.

        Args:
            path: Location of the file on disk.
            filename: Rule key (relative path) the file was found under.

        Returns:
            A VerificationResult; never raises for IO or parse problems.
        """
        if not filename or not isinstance(filename, str):
            return VerificationResult(False, "Invalid parameters")

        validated = validate_path(path)
        if validated is None:
            return VerificationResult(False, "Invalid file path")

        rule = self._lookup(filename)
        if rule is None:
            return VerificationResult(False, "No rule found")

        if isinstance(rule, NameOnlyRule):
            return VerificationResult(True, "High confidence IOC", rule.severity)

        try:
            content = read_text_capped(validated, MAX_VERIFY_READ_BYTES)
        except FileTooLargeError:
            return VerificationResult(False, "File too large for content analysis", rule.severity)
        except OSError as exc:
            logger.debug("Cannot read %s for verification: %s", validated, exc)
            return VerificationResult(False, "Read error", read_error=True)

        if not content:
            return VerificationResult(False, "Empty file", rule.severity)
        if len(content) > MAX_REGEX_CONTENT_CHARS:
            content = content[:MAX_REGEX_CONTENT_CHARS]

        if isinstance(rule, JsonRule):
            return self._verify_json(content, rule)
        if isinstance(rule, TextRule):
            return self._verify_text(content, rule)
        raise TypeError(f"Unsupported forensic rule type: {type(rule).__name__}")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lookup(self, filename: str) -> ForensicRule | None:
        if filename in self.rules:
            return self.rules[filename]
        lowered = filename.lower()
        for name, rule in self.rules.items():
            if name.lower() == lowered:
                return rule
        return None

    def _verify_text(self, content: str, rule: TextRule) -> VerificationResult:
        if self._any_match(rule.safe_patterns, content):
            return VerificationResult(False, "Matched legitimate bundler signature", rule.severity)
        if self._any_match(rule.indicators, content):
            return VerificationResult(True, "Matched malicious content signatures", rule.severity)
        return VerificationResult(False, "Content did not match malware signatures", rule.severity)

    def _any_match(self, patterns: tuple[re.Pattern[str], ...], content: str) -> bool:
        for pattern in patterns:
            try:
                if pattern.search(content):
                    return True
            except (re.error, RecursionError):
                self.regex_errors += 1
        return False

    @staticmethod
    def _verify_json(content: str, rule: JsonRule) -> VerificationResult:
        try:
            data: Any = json.loads(content)
        except (json.JSONDecodeError, RecursionError):
            return VerificationResult(False, "Invalid JSON", rule.severity)

        if not isinstance(data, dict):
            return VerificationResult(False, "Invalid JSON structure", rule.severity)

        keys = [k for k in data.keys() if isinstance(k, str)]
        if len(keys) > MAX_JSON_KEYS:
            return VerificationResult(False, "JSON has too many keys", rule.severity)

        # A legitimate tool signature outranks any suspicious key
        if any(safe_key in keys for safe_key in rule.safe_keys):
            return VerificationResult(False, "Contains whitelisted JSON keys", rule.severity)

        lowered_keys = [k.lower() for k in keys]
        serialized: str | None = None
        try:
            dumped = json.dumps(data)
            if len(dumped) <= MAX_SERIALIZED_JSON_CHARS:
                serialized = dumped
        except (TypeError, ValueError, RecursionError):
            serialized = None

        for required in rule.required_keys:
            needle = required.lower()
            if any(needle in key for key in lowered_keys):
                return VerificationResult(True, "Contains suspicious JSON keys", rule.severity)
            if serialized is not None and required in serialized:
                return VerificationResult(True, "Contains suspicious JSON keys", rule.severity)

        return VerificationResult(False, "JSON structure benign", rule.severity)
