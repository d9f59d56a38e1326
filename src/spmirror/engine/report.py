"""
Repository report generation.

A report row is produced for every package that has both its metadata file
and its binary in the repository root.
"""

import csv
import io
import json
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from spmirror.constants import (
    REPORT_FORMAT_CSV,
    REPORT_FORMAT_EXCEL_CSV,
    REPORT_FORMAT_JSON,
    REPORT_FORMAT_XML,
    REPORT_FORMATS,
    REPOSITORY_META_DIR,
    REPOSITORY_REPORT_BASENAME,
    SOFTPAQ_BINARY_EXTENSION,
    SOFTPAQ_METADATA_EXTENSION,
)
from spmirror.exceptions import ConfigValidationError
from spmirror.log_utils import logger

from .cva import read_cva
from .files import atomic_write_bytes
from .interfaces import Pathish, SoftPaqId
from .state import package_id_from_filename

REPORT_FIELDS = (
    "id",
    "vendor",
    "title",
    "type",
    "version",
    "downloadedTimestamp",
    "sizeBytes",
)

_EXTENSIONS = {
    REPORT_FORMAT_CSV: ".csv",
    REPORT_FORMAT_EXCEL_CSV: ".csv",
    REPORT_FORMAT_JSON: ".json",
    REPORT_FORMAT_XML: ".xml",
}


def collect_report_rows(repo_path: Pathish) -> List[Dict[str, Any]]:
    """Cross-reference local metadata and binaries into report rows, ordered by id."""
    root = Path(repo_path)
    ids = set()
    for entry in root.iterdir() if root.is_dir() else ():
        softpaq_id = package_id_from_filename(entry.name)
        if softpaq_id is not None:
            ids.add(softpaq_id)

    rows = []
    for softpaq_id in sorted(ids):
        cva_path = root / softpaq_id.file_name(SOFTPAQ_METADATA_EXTENSION)
        exe_path = root / softpaq_id.file_name(SOFTPAQ_BINARY_EXTENSION)
        if not (cva_path.is_file() and exe_path.is_file()):
            continue
        rows.append(_row_for(softpaq_id, cva_path, exe_path))
    return rows


def _row_for(softpaq_id: SoftPaqId, cva_path: Path, exe_path: Path) -> Dict[str, Any]:
    try:
        metadata = read_cva(cva_path)
        vendor, title = metadata.vendor, metadata.title
        category, version = metadata.category, metadata.version
    except OSError as e:
        logger.warning(f"Could not read {cva_path.name}: {e}")
        vendor = title = category = version = None

    stat = exe_path.stat()
    return {
        "id": str(softpaq_id),
        "vendor": vendor or "",
        "title": title or "",
        "type": category or "",
        "version": version or "",
        "downloadedTimestamp": datetime.fromtimestamp(
            stat.st_mtime, tz=timezone.utc
        ).isoformat(timespec="seconds"),
        "sizeBytes": stat.st_size,
    }


def render_report(rows: List[Dict[str, Any]], report_format: str) -> bytes:
    """
    Serialize report rows.

    `ExcelCSV` is plain CSV with a byte-order mark and a `sep=,` hint line so
    spreadsheet applications pick the right delimiter and encoding.

    Raises:
        ConfigValidationError: If the format is unknown.
    """
    if report_format in (REPORT_FORMAT_CSV, REPORT_FORMAT_EXCEL_CSV):
        buffer = io.StringIO()
        if report_format == REPORT_FORMAT_EXCEL_CSV:
            buffer.write("sep=,\r\n")
        writer = csv.DictWriter(buffer, fieldnames=REPORT_FIELDS)
        writer.writeheader()
        writer.writerows(rows)
        encoding = "utf-8-sig" if report_format == REPORT_FORMAT_EXCEL_CSV else "utf-8"
        return buffer.getvalue().encode(encoding)

    if report_format == REPORT_FORMAT_JSON:
        return json.dumps(rows, indent=2).encode("utf-8")

    if report_format == REPORT_FORMAT_XML:
        root = ET.Element("Repository")
        for row in rows:
            node = ET.SubElement(root, "Package")
            for key in REPORT_FIELDS:
                ET.SubElement(node, key).text = str(row.get(key, ""))
        return ET.tostring(root, encoding="utf-8", xml_declaration=True)

    raise ConfigValidationError(
        f"Unknown report format: {report_format}",
        details=f"Allowed values: {', '.join(REPORT_FORMATS)}",
    )


def default_report_path(repo_path: Pathish, report_format: str) -> Path:
    extension = _EXTENSIONS.get(report_format, ".txt")
    return Path(repo_path) / REPOSITORY_META_DIR / f"{REPOSITORY_REPORT_BASENAME}{extension}"


def write_report(
    repo_path: Pathish,
    report_format: str = REPORT_FORMAT_CSV,
    output_path: Optional[Pathish] = None,
) -> Path:
    """Generate the repository report and write it atomically; returns the path written."""
    rows = collect_report_rows(repo_path)
    payload = render_report(rows, report_format)
    target = Path(output_path) if output_path else default_report_path(repo_path, report_format)
    atomic_write_bytes(target, payload)
    logger.info(f"Repository report written: {target} ({len(rows)} packages)")
    return target
