import csv
import io
import json
import xml.etree.ElementTree as ET

import pytest
from helpers import build_cva

from spmirror.engine.report import (
    REPORT_FIELDS,
    collect_report_rows,
    default_report_path,
    render_report,
    write_report,
)
from spmirror.exceptions import ConfigValidationError

pytestmark = [pytest.mark.unit, pytest.mark.repository]


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    for number, title in ((2, "Audio"), (1, "Network")):
        (root / f"sp{number}.exe").write_bytes(b"x" * number * 10)
        (root / f"sp{number}.cva").write_bytes(build_cva(number, title=title))
    # Metadata without a binary is not reported
    (root / "sp3.cva").write_bytes(build_cva(3))
    (root / "readme.txt").write_text("ignored")
    return root


def test_rows_pair_metadata_and_binary(repo):
    rows = collect_report_rows(repo)

    assert [row["id"] for row in rows] == ["sp1", "sp2"]
    assert rows[0]["title"] == "Network"
    assert rows[0]["vendor"] == "HP"
    assert rows[0]["type"] == "Driver - Network"
    assert rows[0]["version"] == "1.0"
    assert rows[1]["sizeBytes"] == 20
    assert set(rows[0]) == set(REPORT_FIELDS)


def test_csv(repo):
    payload = render_report(collect_report_rows(repo), "CSV")
    rows = list(csv.DictReader(io.StringIO(payload.decode("utf-8"))))
    assert [row["id"] for row in rows] == ["sp1", "sp2"]


def test_excel_csv_has_bom_and_separator_hint(repo):
    payload = render_report(collect_report_rows(repo), "ExcelCSV")
    assert payload.startswith(b"\xef\xbb\xbfsep=,\r\n")
    assert b"id,vendor,title" in payload


def test_json(repo):
    rows = json.loads(render_report(collect_report_rows(repo), "JSON"))
    assert rows[1]["title"] == "Audio"


def test_xml(repo):
    root = ET.fromstring(render_report(collect_report_rows(repo), "XML"))
    assert root.tag == "Repository"
    assert [p.findtext("id") for p in root.findall("Package")] == ["sp1", "sp2"]


def test_unknown_format():
    with pytest.raises(ConfigValidationError):
        render_report([], "PDF")


def test_write_report_default_location(repo):
    path = write_report(repo, "JSON")
    assert path == repo / ".repository" / "Contents.json"
    assert path == default_report_path(repo, "JSON")
    assert len(json.loads(path.read_text(encoding="utf-8"))) == 2


def test_write_report_to_explicit_path(repo, tmp_path):
    target = tmp_path / "out" / "report.xml"
    assert write_report(repo, "XML", target) == target
    assert target.is_file()


def test_empty_repository(tmp_path):
    assert collect_report_rows(tmp_path / "missing") == []
