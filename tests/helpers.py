"""Fakes and builders shared by the test suite."""

import io
import shutil
import zipfile
from pathlib import Path
from xml.sax.saxutils import escape

import requests

from spmirror.constants import DEFAULT_REFERENCE_URL
from spmirror.engine.interfaces import CabExpander, ImageCapturer, PackageExtractor
from spmirror.exceptions import ExtractionError


# =============================================================================
# HTTP fakes
# =============================================================================


class FakeResponse:
    """Minimal stand-in for `requests.Response` as used by the download manager."""

    def __init__(self, status_code=200, content=b"", headers=None, url=""):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}
        self.url = url
        self.closed = False

    def iter_content(self, chunk_size=8192):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(
                f"{self.status_code} Error for url: {self.url}", response=self
            )

    def close(self):
        self.closed = True


class FakeSession:
    """
    Serves registered URLs from memory.

    Unknown URLs answer 404; URLs registered in `errors` raise the given exception.
    """

    def __init__(self):
        self.files = {}
        self.last_modified = {}
        self.errors = {}
        self.get_calls = []
        self.head_calls = []
        self.closed = False

    def add(self, url, content, last_modified=None):
        self.files[url] = content if isinstance(content, bytes) else content.encode()
        if last_modified:
            self.last_modified[url] = last_modified

    def get(self, url, stream=False, timeout=None):
        self.get_calls.append(url)
        if url in self.errors:
            raise self.errors[url]
        if url not in self.files:
            return FakeResponse(404, url=url)
        return FakeResponse(200, self.files[url], url=url)

    def head(self, url, timeout=None, allow_redirects=True):
        self.head_calls.append(url)
        if url in self.errors:
            raise self.errors[url]
        if url not in self.files:
            return FakeResponse(404, url=url)
        headers = {}
        if url in self.last_modified:
            headers["Last-Modified"] = self.last_modified[url]
        return FakeResponse(200, headers=headers, url=url)

    def close(self):
        self.closed = True


# =============================================================================
# Archive tool fakes
# =============================================================================


class FakeCabExpander(CabExpander):
    """Treats the catalog archive as the XML document itself and copies it out."""

    def __init__(self):
        self.calls = []

    def expand(self, archive_path, dest_dir):
        self.calls.append(Path(archive_path).name)
        Path(dest_dir).mkdir(parents=True, exist_ok=True)
        shutil.copyfile(archive_path, Path(dest_dir) / f"{Path(archive_path).stem}.xml")


class ZipExtractor(PackageExtractor):
    """Packages in tests are ZIP archives named `.exe`."""

    def __init__(self):
        self.calls = []

    def extract(self, package_path, dest_dir):
        self.calls.append(Path(package_path).name)
        try:
            with zipfile.ZipFile(str(package_path)) as zf:
                zf.extractall(str(dest_dir))
        except zipfile.BadZipFile as e:
            raise ExtractionError(
                "Not a package archive", archive_path=str(package_path), details=str(e)
            ) from e


class RecordingCapturer(ImageCapturer):
    """Writes the list of captured files instead of a disk image."""

    def __init__(self):
        self.calls = []

    def capture(self, source_dir, image_path, name):
        self.calls.append(name)
        files = sorted(
            p.relative_to(source_dir).as_posix()
            for p in Path(source_dir).rglob("*")
            if p.is_file()
        )
        Path(image_path).write_text("\n".join(files), encoding="utf-8")


# =============================================================================
# Catalog and package builders
# =============================================================================


def catalog_url(platform="83b2", token="10.0.2009", ltsc=False, host=DEFAULT_REFERENCE_URL):
    suffix = ".e" if ltsc else ""
    return f"{host}/{platform}/{platform}_64_{token}{suffix}.cab"


def softpaq_url(number):
    return f"https://ftp.hp.com/pub/softpaq/sp{number}.exe"


def build_catalog(entries):
    """
    Render catalog XML from dicts with `id`, `name`, `category` and optional
    `release_type`, `ssm`, `dpb`, `uwp`, `url`, `cva_url`, `notes_url`, `version`.
    """
    parts = ['<?xml version="1.0" encoding="utf-8"?>', "<ImagePal><Solutions>"]
    for entry in entries:
        number = entry["id"]
        url = entry.get("url", f"ftp.hp.com/pub/softpaq/sp{number}.exe")
        fields = [
            ("Id", f"sp{number}"),
            ("Name", entry["name"]),
            ("Category", entry["category"]),
            ("Version", entry.get("version", "1.0")),
            ("Vendor", entry.get("vendor", "HP")),
            ("ReleaseType", entry.get("release_type", "Recommended")),
            ("SSMCompliant", str(entry.get("ssm", True)).lower()),
            ("DPBCompliant", str(entry.get("dpb", True)).lower()),
            ("UWP", str(entry.get("uwp", False)).lower()),
            ("Url", url),
            ("Size", str(entry.get("size", 1024))),
            ("DateReleased", entry.get("date", "2024-01-15")),
        ]
        if entry.get("cva_url"):
            fields.append(("CvaFileUrl", entry["cva_url"]))
        if entry.get("notes_url"):
            fields.append(("ReleaseNotesUrl", entry["notes_url"]))
        parts.append("<UpdateInfo>")
        parts.extend(f"<{tag}>{escape(value)}</{tag}>" for tag, value in fields)
        parts.append("</UpdateInfo>")
    parts.append("</Solutions></ImagePal>")
    return "\n".join(parts).encode("utf-8")


def build_cva(number, title="Test Package", category="Driver - Network", inf_paths=None):
    """Render CVA metadata; `inf_paths` maps INF path keys to values."""
    lines = [
        "[CVA File Information]",
        "CVATimeStamp=20240115",
        "",
        "[SoftPaq]",
        f"SoftpaqNumber=sp{number}",
        "",
        "[General]",
        "VendorName=HP",
        "Version=1.0",
        f"Category={category}",
        "",
        "[Software Title]",
        f"US={title}",
        "",
        "[Devices_INFPath]",
    ]
    for key, value in (inf_paths or {}).items():
        lines.append(f"{key}={value}")
    return "\r\n".join(lines).encode("cp1252")


def build_package(files):
    """ZIP payload disguised as a SoftPaq; `files` maps archive names to text."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, text in files.items():
            zf.writestr(name, text)
    return buffer.getvalue()


SAMPLE_ENTRIES = [
    {"id": 100001, "name": "Intel Network Driver", "category": "Driver - Network"},
    {
        "id": 100002,
        "name": "Realtek Audio Driver",
        "category": "Driver - Audio",
        "release_type": "Critical",
    },
    {
        "id": 100003,
        "name": "System BIOS",
        "category": "BIOS",
        "release_type": "Critical",
        "dpb": False,
    },
]


