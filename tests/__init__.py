"""Test suite for ioc_sentinel.

This package contains unit and integration tests for all ioc_sentinel modules:
- test_denylist / test_feeds: Feed parsing, merging, caching and fallback
- test_forensics: Malware file rules and content verification
- test_hook_inspector: Lifecycle script heuristics using crafted package.json payloads
- test_lockfiles: npm and yarn lockfile matching
- test_scanner: Integration tests running the full walker against fixture trees
- test_report / test_renderer / test_cli: Output, CSV report and command line
"""
