"""
SoftPaq metadata (`.cva`) parsing.

CVA files are INI-style documents published next to every SoftPaq. Only the
fields the report and the driver pack assembler need are exposed; the raw
sections stay available for anything else.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from spmirror.constants import CVA_INF_PATH_SECTION, CVA_OS_TAGS
from spmirror.log_utils import logger

from .interfaces import OsSpec, Pathish

_PATH_SPLIT_RX = re.compile(r"[;,]")


@dataclass
class CvaMetadata:
    sections: Dict[str, Dict[str, str]] = field(default_factory=dict)

    def get(self, section: str, key: str) -> Optional[str]:
        for name, values in self.sections.items():
            if name.lower() == section.lower():
                for k, v in values.items():
                    if k.lower() == key.lower():
                        return v
        return None

    @property
    def softpaq_number(self) -> Optional[str]:
        return self.get("SoftPaq", "SoftpaqNumber")

    @property
    def title(self) -> Optional[str]:
        return self.get("Software Title", "US")

    @property
    def version(self) -> Optional[str]:
        return self.get("General", "Version")

    @property
    def vendor(self) -> Optional[str]:
        return self.get("General", "VendorName")

    @property
    def category(self) -> Optional[str]:
        return self.get("General", "Category")

    def inf_paths(self, os_spec: OsSpec) -> Optional[List[str]]:
        """
        Relative payload paths for the given OS and version.

        Looks up `<OsTag>_<OSVER>_INFPath` first, then the generic `<OsTag>_INFPath`.

        Returns:
            The listed paths, or None when neither key exists.
        """
        tag = CVA_OS_TAGS.get(os_spec.name)
        if tag is None:
            return None
        candidates = []
        if os_spec.has_concrete_version:
            candidates.append(f"{tag}_{(os_spec.version or '').upper()}_INFPath")
        candidates.append(f"{tag}_INFPath")

        for key in candidates:
            value = self.get(CVA_INF_PATH_SECTION, key)
            if value:
                paths = [p.strip() for p in _PATH_SPLIT_RX.split(value) if p.strip()]
                if paths:
                    logger.debug(f"Using {key} for {os_spec}: {paths}")
                    return paths
        return None


def parse_cva_text(text: str) -> CvaMetadata:
    """
    Parse CVA content.

    Lines are `key=value` pairs under `[section]` headers. Free-text lines without
    a delimiter (descriptions, install notes) are ignored, duplicate keys keep the
    last value and values are taken literally since they hold `%` and Windows paths.
    """
    sections: Dict[str, Dict[str, str]] = {}
    current: Optional[Dict[str, str]] = None
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith((";", "#")):
            continue
        if line.startswith("[") and line.endswith("]"):
            current = sections.setdefault(line[1:-1].strip(), {})
            continue
        if current is None:
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        current[key] = value.strip()
    return CvaMetadata(sections=sections)


def read_cva(path: Pathish) -> CvaMetadata:
    """
    Read and parse a CVA file.

    CVA files are usually cp1252; bytes that do not decode are replaced rather
    than failing the whole file.

    Raises:
        OSError: If the file cannot be read.
    """
    with open(str(path), "rb") as f:
        raw = f.read()
    for encoding in ("utf-8-sig", "cp1252"):
        try:
            text = raw.decode(encoding)
            break
        except UnicodeDecodeError:
            continue
    else:
        text = raw.decode("utf-8", errors="replace")
    return parse_cva_text(text)
