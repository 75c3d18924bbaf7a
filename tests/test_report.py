"""Tests for ioc_sentinel.report module (CSV building, writing and upload)."""

from __future__ import annotations

import csv
import io
import json
import stat
import sys
from pathlib import Path

import httpx
import pytest

from ioc_sentinel.models import Issue, IssueType, ScanReport, ScanStats
from ioc_sentinel.pathguard import sha256_hex
from ioc_sentinel.report import (
    CSV_HEADERS,
    build_csv,
    build_upload_payload,
    escape_cell,
    upload_report,
    write_csv,
)

API_URL = "https://collector.example.com/reports"


@pytest.fixture
def report() -> ScanReport:
    return ScanReport(
        roots=[Path("/app")],
        issues=[
            Issue(IssueType.VERSION_MATCH, "@ctrl/tinycolor", "4.1.1", "/app/node_modules/@ctrl/tinycolor"),
            Issue(IssueType.SCRIPT_WARNING, "pkg", "1.0.0", "/app/node_modules/pkg", "=HYPERLINK(\"x\")"),
            Issue(IssueType.SAFE_MATCH, "left-pad", "1.0.0", "/app/node_modules/left-pad"),
        ],
        stats=ScanStats(directories_scanned=7, packages_scanned=3),
        duration_seconds=1.2345,
        scan_timestamp="2025-11-24T10:00:00+00:00",
    )


def _rows(csv_text: str) -> list[list[str]]:
    return list(csv.reader(io.StringIO(csv_text)))


class TestEscapeCell:
    """Tests for escape_cell()."""

    @pytest.mark.parametrize("value", ["=1+1", "+1", "-1", "@SUM(A1)", "\tx", "\rx"])
    def test_formula_prefixes_are_quoted(self, value: str) -> None:
        assert escape_cell(value) == "'" + value

    @pytest.mark.parametrize("value", ["left-pad", "4.1.1", "", "a=b"])
    def test_plain_values_untouched(self, value: str) -> None:
        assert escape_cell(value) == value

    def test_none_becomes_empty(self) -> None:
        assert escape_cell(None) == ""


class TestBuildCsv:
    """Tests for build_csv()."""

    def test_header_and_one_row_per_issue(self, report: ScanReport) -> None:
        rows = _rows(build_csv(report))
        assert tuple(rows[0]) == CSV_HEADERS
        assert len(rows) == 4

    def test_row_contents(self, report: ScanReport) -> None:
        row = _rows(build_csv(report))[1]
        assert row == [
            "2025-11-24T10:00:00+00:00",
            "COMPLETE",
            "VERSION_MATCH",
            "'@ctrl/tinycolor",
            "4.1.1",
            "/app/node_modules/@ctrl/tinycolor",
            "",
            "1234",
            "7",
            "3",
        ]

    def test_formula_details_are_escaped(self, report: ScanReport) -> None:
        row = _rows(build_csv(report))[2]
        assert row[6] == "'=HYPERLINK(\"x\")"

    def test_safe_matches_included(self, report: ScanReport) -> None:
        assert _rows(build_csv(report))[3][2] == "SAFE_MATCH"

    def test_partial_flag(self, report: ScanReport) -> None:
        assert {row[1] for row in _rows(build_csv(report, partial=True))[1:]} == {"PARTIAL"}

    def test_interrupted_report_is_partial(self, report: ScanReport) -> None:
        report.interrupted = True
        assert _rows(build_csv(report))[1][1] == "PARTIAL"

    def test_empty_report_has_header_only(self) -> None:
        assert _rows(build_csv(ScanReport())) == [list(CSV_HEADERS)]


class TestWriteCsv:
    """Tests for write_csv()."""

    def test_writes_file(self, tmp_path: Path, report: ScanReport) -> None:
        text = build_csv(report)
        target = write_csv(text, tmp_path / "out" / "report.csv")
        assert target.read_text(encoding="utf-8") == text
        assert list(target.parent.iterdir()) == [target]

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_permissions(self, tmp_path: Path) -> None:
        target = write_csv("a,b\n", tmp_path / "report.csv")
        assert stat.S_IMODE(target.stat().st_mode) == 0o644

    def test_overwrites_existing(self, tmp_path: Path) -> None:
        path = tmp_path / "report.csv"
        path.write_text("old", encoding="utf-8")
        write_csv("new\n", path)
        assert path.read_text(encoding="utf-8") == "new\n"


class TestUpload:
    """Tests for build_upload_payload() and upload_report()."""

    def test_payload(self, report: ScanReport) -> None:
        text = build_csv(report)
        payload = build_upload_payload(text, report)
        assert payload["reportHash"] == sha256_hex(text)
        assert payload["issueCount"] == 3
        assert payload["criticalCount"] == 1
        assert payload["report"] == text
        assert "hostname" not in payload

    def test_successful_upload(self, report: ScanReport) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        assert upload_report("a,b\n", report, API_URL, api_key="secret", client=client)
        assert seen[0].headers["x-api-key"] == "secret"
        assert seen[0].method == "POST"
        assert json.loads(seen[0].content)["report"] == "a,b\n"

    def test_no_key_no_header(self, report: ScanReport) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        assert upload_report("a,b\n", report, API_URL, client=client)
        assert "x-api-key" not in seen[0].headers

    def test_server_error_returns_false(self, report: ScanReport) -> None:
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        assert not upload_report("a,b\n", report, API_URL, client=client)

    def test_network_error_returns_false(self, report: ScanReport) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("down", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        assert not upload_report("a,b\n", report, API_URL, client=client)

    @pytest.mark.parametrize("url", ["", None, "http://collector.example.com/reports"])
    def test_missing_or_insecure_url_skips(self, report: ScanReport, url: str | None) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        client = httpx.Client(transport=httpx.MockTransport(handler))
        assert not upload_report("a,b\n", report, url, client=client)
