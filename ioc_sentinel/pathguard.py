"""Path validation, bounded symlink resolution and capped file reads.

Every path that enters the walker or the forensic verifier goes through
``validate_path`` before any filesystem call touches it. Scanned package
trees are untrusted input, so this module enforces the length, NUL-byte and
containment rules and bounds how far a symlink chain is followed.
"""

from __future__ import annotations

import hashlib
import os
import re
from dataclasses import dataclass
from pathlib import Path

from ioc_sentinel.config import MAX_FILE_SIZE_BYTES, MAX_PATH_LENGTH, MAX_SYMLINK_DEPTH

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class FileTooLargeError(OSError):
    """Raised when a file exceeds the read cap for its purpose."""

    def __init__(self, path: Path, size: int, limit: int) -> None:
        super().__init__(f"{path} is {size} bytes, limit is {limit}")
        self.path = path
        self.size = size
        self.limit = limit


@dataclass(frozen=True)
class SymlinkCheck:
    """Outcome of resolving a possibly-symlinked path.

    Attributes:
        is_symlink: Whether the path itself was a symlink
        real_path: The fully resolved path, or None when unsafe
        safe: False for chains deeper than the limit, dangling or unreadable links
    """

    is_symlink: bool
    real_path: Path | None
    safe: bool


def validate_path(path: str | os.PathLike[str], base: str | os.PathLike[str] | None = None) -> Path | None:
    """Validate and normalise a path.

    Args:
        path: The path to validate.
        base: Optional directory the normalised path must equal or lie under.

    Returns:
        The absolute, normalised path, or None if it is empty, longer than
        the path limit, contains a NUL byte, or escapes ``base``.
    """
    try:
        raw = os.fspath(path)
    except TypeError:
        return None
    if not raw or not isinstance(raw, str):
        return None
    if len(raw) > MAX_PATH_LENGTH or "\0" in raw:
        return None

    try:
        normalized = Path(os.path.abspath(raw))
    except (OSError, ValueError):
        return None
    if len(str(normalized)) > MAX_PATH_LENGTH:
        return None

    if base is not None:
        normalized_base = Path(os.path.abspath(os.fspath(base)))
        if normalized != normalized_base and normalized_base not in normalized.parents:
            return None

    return normalized


def resolve_symlink(path: Path, max_depth: int = MAX_SYMLINK_DEPTH) -> SymlinkCheck:
    """Resolve ``path`` following at most ``max_depth`` symlink hops.

    Non-symlinks resolve to themselves. A chain with more hops than allowed,
    a dangling link or any OS error yields an unsafe result.
    """
    try:
        if not path.is_symlink():
            return SymlinkCheck(is_symlink=False, real_path=path, safe=True)

        current = path
        hops = 0
        while current.is_symlink():
            if hops >= max_depth:
                return SymlinkCheck(is_symlink=True, real_path=None, safe=False)
            target = Path(os.readlink(current))
            current = target if target.is_absolute() else current.parent / target
            hops += 1

        real_path = current.resolve(strict=True)
    except (OSError, RuntimeError):
        return SymlinkCheck(is_symlink=True, real_path=None, safe=False)

    return SymlinkCheck(is_symlink=True, real_path=real_path, safe=True)


def read_text_capped(path: Path, max_bytes: int = MAX_FILE_SIZE_BYTES) -> str:
    """Read a UTF-8 text file, refusing files larger than ``max_bytes``.

    Raises:
        FileTooLargeError: If the file is larger than ``max_bytes``.
        OSError: If the file cannot be stat'ed or read.
    """
    size = path.stat().st_size
    if size > max_bytes:
        raise FileTooLargeError(path, size, max_bytes)
    with path.open("rb") as handle:
        data = handle.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise FileTooLargeError(path, len(data), max_bytes)
    return data.decode("utf-8", errors="replace")


def sha256_hex(data: bytes | str) -> str:
    """Return the hex SHA-256 digest of ``data`` (strings are UTF-8 encoded)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def sanitize_for_log(text: object, max_length: int = 200) -> str:
    """Strip control characters from untrusted text and truncate it for logging."""
    if text is None:
        return ""
    return _CONTROL_CHARS_RE.sub("", str(text))[:max_length]
