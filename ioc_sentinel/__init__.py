"""ioc_sentinel - A forensic scanner for compromised npm packages.

This package detects supply chain compromises on developer machines and CI
runners by matching installed packages, lockfiles and known malware artifacts
against a denylist of indicators of compromise (IOCs):

- Version matching of installed package manifests against two threat feeds
- Forensic detection of known payload files (loaders, stolen-secret dumps)
- Heuristic analysis of npm lifecycle scripts (postinstall, preinstall, ...)
- Lockfile inspection for package-lock.json, npm-shrinkwrap.json and yarn.lock

Public API:
    __version__: Current package version string
    __all__: Exported public symbols

Example usage::

    from ioc_sentinel import __version__
    print(f"ioc_sentinel v{__version__}")
"""

__version__ = "2.1.0"
__author__ = "ioc-sentinel contributors"
__license__ = "MIT"

__all__ = ["__version__", "__author__", "__license__"]
