"""Discovery of global package directories and package-manager caches.

A ``--full-scan`` covers not just the project but every place a
compromised tarball may have landed on the machine:

- The active npm global root (``npm root -g``)
- Bun global modules and install cache
- Every nvm-managed Node version (at most 100)
- Yarn global modules and caches (classic and berry)
- The npm cache and the pnpm store

Only existing directories are returned, de-duplicated in discovery order.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from collections.abc import Mapping
from pathlib import Path

from ioc_sentinel.pathguard import validate_path

logger = logging.getLogger(__name__)

NPM_ROOT_TIMEOUT_SECONDS = 10
MAX_NVM_VERSIONS = 100


def npm_global_root() -> str | None:
    """Return the output of ``npm root -g``, or None when npm is unavailable."""
    try:
        completed = subprocess.run(
            ["npm", "root", "-g"],
            capture_output=True,
            text=True,
            timeout=NPM_ROOT_TIMEOUT_SECONDS,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("npm root -g failed: %s", exc)
        return None
    return completed.stdout.strip() or None


def _nvm_root(home: Path, system: str, env: Mapping[str, str]) -> Path | None:
    if system == "win32":
        nvm_home = env.get("NVM_HOME")
        if nvm_home and Path(nvm_home).is_dir():
            return Path(nvm_home)
        candidate = Path(env.get("APPDATA", "")) / "nvm"
    else:
        candidate = home / ".nvm" / "versions" / "node"
    return candidate if candidate.is_dir() else None


def _nvm_version_paths(nvm_root: Path, system: str) -> list[Path]:
    try:
        versions = sorted(
            entry for entry in nvm_root.iterdir()
            if entry.is_dir() and entry.name.lower().startswith("v")
        )[:MAX_NVM_VERSIONS]
    except OSError as exc:
        logger.warning("Error reading nvm versions: %s", exc)
        return []

    logger.info("nvm: found %d installed version(s)", len(versions))
    if system == "win32":
        return [v / "node_modules" for v in versions]
    return [v / "lib" / "node_modules" for v in versions]


def get_search_paths(
    home: Path | None = None,
    system: str | None = None,
    npm_root: str | None = None,
    env: Mapping[str, str] | None = None,
) -> list[Path]:
    """Collect the global directories and caches to scan.

    Args:
        home: Home directory. Defaults to the current user's.
        system: Platform identifier as in ``sys.platform``.
        npm_root: Global npm root. When None, ``npm root -g`` is run; pass
            an empty string to skip it.
        env: Environment used for Windows nvm lookup. Defaults to ``os.environ``.

    Returns:
        Existing directories, de-duplicated in discovery order.
    """
    home = home if home is not None else Path.home()
    system = system if system is not None else sys.platform
    env = env if env is not None else os.environ
    windows = system == "win32"

    candidates: list[tuple[str, Path]] = []

    global_root = npm_global_root() if npm_root is None else npm_root
    if global_root:
        validated = validate_path(global_root)
        if validated is not None:
            candidates.append(("npm global", validated))

    bun_base = home / ".bun" / "install"
    candidates.append(("bun global", bun_base / "global" / "node_modules"))
    candidates.append(("bun cache", bun_base / "cache"))

    nvm_root = _nvm_root(home, system, env)
    if nvm_root is not None:
        logger.info("nvm: root found at %s", nvm_root)
        candidates.extend(("nvm", p) for p in _nvm_version_paths(nvm_root, system))

    if system == "darwin":
        candidates.append(("yarn", home / "Library" / "Caches" / "Yarn"))
        candidates.append(("yarn", home / ".yarn" / "berry" / "cache"))
    candidates.append(("yarn global", home / ".config" / "yarn" / "global" / "node_modules"))
    if windows:
        candidates.append(("yarn cache", home / "AppData" / "Local" / "Yarn" / "Cache"))
        candidates.append(("npm cache", home / "AppData" / "Roaming" / "npm-cache"))
        candidates.append(("pnpm store", home / "AppData" / "Local" / "pnpm" / "store"))
    else:
        candidates.append(("yarn cache", home / ".cache" / "yarn"))
        candidates.append(("npm cache", home / ".npm"))
        candidates.append(("pnpm store", home / ".local" / "share" / "pnpm" / "store"))

    paths: list[Path] = []
    for label, path in candidates:
        if path in paths or not path.is_dir():
            continue
        logger.info("%s: %s", label, path)
        paths.append(path)
    return paths
