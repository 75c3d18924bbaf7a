"""Lifecycle script auditing for dangerous shell and JavaScript patterns.

npm runs a handful of lifecycle hooks automatically during install and
uninstall. A compromised package uses those hooks to fetch and execute its
payload, so every hook command of every scanned manifest is checked here:

1. Commands on the exact whitelist are skipped (``husky install``, ``tsc``...)
2. Simple commands matching a whitelist prefix are skipped (``rimraf dist``)
3. The first critical pattern that matches raises one ``CRITICAL_SCRIPT``
   and ends analysis of the whole package; later hooks are not inspected
4. Otherwise every matching warning pattern raises a ``SCRIPT_WARNING``

Whitelist prefixes never apply to compound commands (anything chaining,
piping, substituting or redirecting), so ``tsc && curl ... | bash`` is still
inspected. Every pattern uses bounded repetition and commands are truncated
before matching.

Public API:
    HookInspector: Analyses the ``scripts`` block of a parsed package.json
    PatternRule: One suspicious pattern with its indicator tag
    LIFECYCLE_HOOKS: Hooks npm executes without user interaction

Indicator tags:
    REMOTE_CODE_EXEC, OBFUSCATION, CODE_INJECTION, SHAI_HULUD, PERSISTENCE,
    PRIV_ESC, INSECURE_NETWORK, EXFIL_ATTEMPT, BACKDOOR_PRIMITIVE
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from ioc_sentinel.models import UNKNOWN_VERSION, Issue, IssueType
from ioc_sentinel.pathguard import sanitize_for_log

logger = logging.getLogger(__name__)

MAX_COMMAND_LENGTH = 2000

# ---------------------------------------------------------------------------
# Lifecycle hook names that npm executes automatically
# ---------------------------------------------------------------------------

LIFECYCLE_HOOKS: tuple[str, ...] = (
    "preinstall",
    "install",
    "postinstall",
    "prepublish",
    "prepare",
    "preuninstall",
    "postuninstall",
)

# ---------------------------------------------------------------------------
# Whitelist
# ---------------------------------------------------------------------------

SCRIPT_WHITELIST: frozenset[str] = frozenset([
    "husky install",
    "husky",
    "is-ci || husky install",
    "ngcc",
    "ngcc --properties es2015 browser module main",
    "ivy-ngcc",
    "tsc",
    "tsc -p tsconfig.json",
    "tsc --build",
    "rimraf",
    "rimraf dist",
    "shx",
    "prebuild-install",
    "node-gyp rebuild",
    "node-pre-gyp install --fallback-to-build",
    "patch-package",
    "esbuild",
    "node scripts/postinstall.js",
    "node scripts/postinstall",
    "lerna bootstrap",
    "nx",
    "electron-builder install-app-deps",
    "exit 0",
    "true",
    "echo",
])

SCRIPT_WHITELIST_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^echo\s"),
    re.compile(r"^rimraf\s"),
    re.compile(r"^shx\s"),
    re.compile(r"^tsc(?:\s|$)"),
    re.compile(r"^ngcc(?:\s|$)"),
    re.compile(r"^node-gyp\s"),
    re.compile(r"^prebuild-install"),
    re.compile(r"^husky(?:\s|$)"),
    re.compile(r"^is-ci\s"),
    re.compile(r"^opencollective(?:-postinstall)?"),
    re.compile(r"^patch-package"),
    re.compile(r"^node\s+scripts/postinstall(?:\.js)?$"),
    re.compile(r"^electron-builder\s+install-app-deps"),
    re.compile(r"^lerna\s+bootstrap"),
    re.compile(r"^(?:nx|turbo)\s+run"),
    re.compile(r"^esbuild(?:\s|$)"),
    re.compile(r"^node-pre-gyp\s+install(?:\s|$)"),
)

# Shell operators that chain, pipe, substitute or redirect
_COMPOUND_RE = re.compile(r"&&|\|\||[;|`<>\n]|\$\(")


# ---------------------------------------------------------------------------
# Suspicious pattern definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PatternRule:
    """A single suspicious pattern rule.

    Attributes:
        indicator: Category tag reported with the finding
        pattern: Compiled regular expression to match against the command
        description: Short human-readable label for the behaviour
    """

    indicator: str
    pattern: re.Pattern[str]
    description: str

    def details(self) -> str:
        return f"{self.indicator}: {self.description}"


def _rule(indicator: str, pattern: str, description: str, flags: int = 0) -> PatternRule:
    return PatternRule(indicator=indicator, pattern=re.compile(pattern, flags), description=description)


_I = re.IGNORECASE

CRITICAL_PATTERNS: tuple[PatternRule, ...] = (
    # Remote code execution
    _rule("REMOTE_CODE_EXEC", r"curl\s+[^\s|]{1,500}\s*\|\s*(?:sh|bash|zsh)", "Curl piped to shell", _I),
    _rule("REMOTE_CODE_EXEC", r"wget\s+[^\s|]{1,500}\s*\|\s*(?:sh|bash|zsh)", "Wget piped to shell", _I),
    _rule("REMOTE_CODE_EXEC", r"curl\s+[^\s]{1,500}>\s*[^|&\s]+\s*&&\s*(?:sh|bash|chmod)", "Curl download & exec", _I),
    _rule(
        "REMOTE_CODE_EXEC",
        r"curl\s+[^\s]{0,200}githubusercontent\.com/[^\s|]{1,300}\|\s*(?:sh|bash|zsh)",
        "Pipe raw GitHub content to shell",
        _I,
    ),
    _rule(
        "REMOTE_CODE_EXEC",
        r"wget\s+[^\s]{0,200}raw\.githubusercontent\.com/[^\s|]{1,300}\|\s*(?:sh|bash|zsh)",
        "Pipe raw GitHub content to shell",
        _I,
    ),
    _rule("REMOTE_CODE_EXEC", r"\b(?:b64|base64)\b[^|]{0,100}\|\s*(?:sh|bash)", "Decode then execute via shell", _I),
    _rule("OBFUSCATION", r"base64\s+(?:-d|--decode)", "Base64 decoding", _I),
    _rule("CODE_INJECTION", r"\beval\s*\(", "Eval statement"),
    # Known worm signatures
    _rule("SHAI_HULUD", r"setup_bun", "Shai-Hulud Loader", _I),
    _rule("SHAI_HULUD", r"bun_environment", "Shai-Hulud Payload", _I),
    _rule("SHAI_HULUD", r"SHA1HULUD", "Shai-Hulud Signature", _I),
    # Process spawning
    _rule(
        "CODE_INJECTION",
        r"node\s+-e\s+[\"']require\s*\(\s*[\"']child_process[\"']\s*\)",
        "Hidden child_process",
    ),
    _rule("CODE_INJECTION", r"child_process[^)]{0,50}exec[^)]{0,50}\$\(", "Shell command via child_process"),
    _rule("REMOTE_CODE_EXEC", r"\$\(curl", "Subshell curl", _I),
    _rule("REMOTE_CODE_EXEC", r"`curl", "Backtick curl", _I),
    _rule("REMOTE_CODE_EXEC", r"bash\s+-c\s+[\"'][^\"']{0,200}curl", "bash -c curl", _I),
    _rule("REMOTE_CODE_EXEC", r"curl\s+[^\s]{1,300}-o\s+\S+\s*&&\s*(?:sh|bash|chmod)", "curl save & exec", _I),
    _rule("REMOTE_CODE_EXEC", r"wget\s+[^\s]{1,300}-O\s+\S+\s*&&\s*(?:sh|bash|chmod)", "wget save & exec", _I),
    _rule(
        "CODE_INJECTION",
        r"require\s*\(\s*[\"']child_process[\"']\s*\)\.\s*(?:exec|execSync|spawn|spawnSync)",
        "Direct child_process call",
        _I,
    ),
    _rule("CODE_INJECTION", r"\b(?:execSync|spawnSync|execFileSync)\s*\(", "Sync process execution"),
    # Persistence and privilege escalation
    _rule("PERSISTENCE", r"\.github/workflows/discussion\.ya?ml", "GitHub workflow backdoor", _I),
    _rule("PRIV_ESC", r"docker\s+run\s+[^\n]{0,200}--privileged", "Privileged Docker run", _I),
    _rule("PRIV_ESC", r"-v\s+/:/host\b", "Host mount in container", _I),
)

WARNING_PATTERNS: tuple[PatternRule, ...] = (
    _rule("INSECURE_NETWORK", r"http://[^\s\"']{1,200}", "Unencrypted HTTP"),
    _rule("OBFUSCATION", r"\\x[0-9a-fA-F]{2}", "Hex-encoded string"),
    _rule("OBFUSCATION", r"String\.fromCharCode", "Char code obfuscation"),
    _rule("OBFUSCATION", r"atob\s*\(", "Base64 atob decode"),
    _rule("OBFUSCATION", r"Buffer\.from\s*\([^)]{1,100},\s*['\"]base64['\"]\)", "Buffer base64 decode"),
    _rule("OBFUSCATION", r"Buffer\.from\s*\([^)]{1,100},\s*['\"]hex['\"]\)", "Buffer hex decode"),
    _rule("OBFUSCATION", r"Function\s*\([^)]{0,200}\)", "Dynamic function creation"),
    _rule("EXFIL_ATTEMPT", r"actions/upload-artifact", "GitHub Actions artifact usage", _I),
    _rule("EXFIL_ATTEMPT", r"https?://api\.github\.com/(?:repos|gists|uploads)", "GitHub API interaction", _I),
    _rule(
        "CODE_INJECTION",
        r"child_process\.(?:exec|spawn|execSync|spawnSync)\([^)]{0,50}(?:curl|wget|nc|bash|sh)",
        "Shelling out to network tools",
        _I,
    ),
    _rule("BACKDOOR_PRIMITIVE", r"\bnc\b\s+(?:-[a-zA-Z]+\s+){0,5}\S+", "Netcat usage", _I),
    _rule("BACKDOOR_PRIMITIVE", r"\bsocat\b\s+", "socat usage", _I),
)


def is_compound_command(command: str) -> bool:
    """Return True if ``command`` chains, pipes, substitutes or redirects."""
    return _COMPOUND_RE.search(command) is not None


def is_whitelisted(command: str) -> bool:
    """Return True if ``command`` is a known-benign build or setup step."""
    if command in SCRIPT_WHITELIST:
        return True
    if is_compound_command(command):
        return False
    return any(pattern.search(command) for pattern in SCRIPT_WHITELIST_PATTERNS)


class HookInspector:
    """Lifecycle script auditor that detects suspicious shell patterns.

    Attributes:
        max_command_length: Maximum command length analysed (prevents ReDoS)
        pattern_errors: Count of pattern evaluations that raised

    Example::

        inspector = HookInspector()
        issues = inspector.analyze(manifest, "left-pad", "/app/node_modules/left-pad")
        for issue in issues:
            print(issue.issue_type, issue.details)
    """

    def __init__(self, max_command_length: int = MAX_COMMAND_LENGTH) -> None:
        self.max_command_length: int = max_command_length
        self.pattern_errors: int = 0

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def analyze(
        self,
        manifest: dict[str, Any],
        package_name: str,
        location: str = "",
    ) -> list[Issue]:
        """Inspect the lifecycle hooks of a parsed package.json.

        Args:
            manifest: Parsed contents of a package.json file.
            package_name: The package the manifest belongs to.
            location: Package directory reported with each finding.

        Returns:
            Issues in hook order: ``SCRIPT_WARNING`` entries from the hooks
            inspected, ending with at most one ``CRITICAL_SCRIPT`` per package.
        """
        if not isinstance(manifest, dict):
            return []
        scripts: Any = manifest.get("scripts")
        if not isinstance(scripts, dict):
            return []

        # Fast path for packages without lifecycle scripts
        if not any(scripts.get(hook) for hook in LIFECYCLE_HOOKS):
            return []

        version = manifest.get("version")
        if not isinstance(version, str) or not version:
            version = UNKNOWN_VERSION

        issues: list[Issue] = []
        for hook in LIFECYCLE_HOOKS:
            command = scripts.get(hook)
            if not command or not isinstance(command, str):
                continue
            found = self._inspect_command(hook, command, package_name, version, location)
            issues.extend(found)
            if any(i.issue_type is IssueType.CRITICAL_SCRIPT for i in found):
                break
        return issues

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _inspect_command(
        self,
        hook: str,
        command: str,
        package_name: str,
        version: str,
        location: str,
    ) -> list[Issue]:
        command = command[: self.max_command_length]
        if is_whitelisted(command):
            return []

        for rule in CRITICAL_PATTERNS:
            if self._matches(rule, command):
                logger.warning(
                    "Script alert: %s [%s] -> %s",
                    sanitize_for_log(package_name),
                    hook,
                    rule.description,
                )
                return [
                    Issue(
                        issue_type=IssueType.CRITICAL_SCRIPT,
                        package=package_name,
                        version=version,
                        location=location,
                        details=rule.details(),
                    )
                ]

        return [
            Issue(
                issue_type=IssueType.SCRIPT_WARNING,
                package=package_name,
                version=version,
                location=location,
                details=rule.details(),
            )
            for rule in WARNING_PATTERNS
            if self._matches(rule, command)
        ]

    def _matches(self, rule: PatternRule, command: str) -> bool:
        try:
            return rule.pattern.search(command) is not None
        except RecursionError:
            self.pattern_errors += 1
            return False
