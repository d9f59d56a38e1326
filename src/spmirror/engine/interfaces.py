"""
Core Interfaces for the spmirror Engine

This module defines the value types shared by the catalog resolver, filter
engine, download manager, repository state store and driver pack assembler,
plus the abstract capabilities the engine consumes from its host
(signature verification, payload signing, archive tooling).
"""

import re
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from spmirror.constants import (
    CATEGORIES,
    CHARACTERISTICS,
    DEFAULT_EXCLUSIVE_LOCK_MAX_RETRIES,
    ERROR_KIND_LOCK_CONTENTION,
    ERROR_KIND_NETWORK,
    ERROR_KIND_NOT_FOUND,
    ERROR_KIND_SIGNATURE_INVALID,
    NOT_FOUND_FAIL,
    NOT_FOUND_POLICIES,
    OFFLINE_CACHE_DISABLE,
    OFFLINE_CACHE_MODES,
    RELEASE_TYPES,
    REPORT_FORMAT_CSV,
    REPORT_FORMATS,
    SOFTPAQ_PREFIX,
    SUPPORTED_OS_NAMES,
    WILDCARD,
)
from spmirror.exceptions import (
    ConfigValidationError,
    DownloadError,
    HTTPError,
    LockContentionError,
    NetworkError,
    RemoteNotFoundError,
    SignatureInvalidError,
)

Pathish = Union[str, Path]
Selection = Tuple[str, ...]

ALL: Selection = (WILDCARD,)

SignatureVerifier = Callable[[str], bool]
"""Returns True when the file at the given path carries a valid signature."""

PayloadSigner = Callable[[bytes], bytes]
"""Returns a detached signature for the given payload."""

_PLATFORM_RX = re.compile(r"^[0-9a-fA-F]{4}$")
_SOFTPAQ_RX = re.compile(r"^(?:sp)?(\d+)$", re.IGNORECASE)


def normalize_platform(value: str) -> str:
    """
    Validate a platform id and return it in lower case.

    Raises:
        ConfigValidationError: If the value is not exactly four hexadecimal digits.
    """
    candidate = (value or "").strip()
    if not _PLATFORM_RX.match(candidate):
        raise ConfigValidationError(
            "Platform must be a 4-digit hexadecimal value", details=repr(value)
        )
    return candidate.lower()


def is_wildcard(selection: Selection) -> bool:
    return WILDCARD in selection


def normalize_selection(
    values: Optional[Union[str, Iterable[str]]],
    allowed: Iterable[str],
    label: str,
) -> Selection:
    """
    Normalize a category/release-type/characteristic selection.

    None, an empty collection or any collection containing "*" collapse to the
    wildcard; everything else is validated case-insensitively against `allowed`
    and returned as a sorted, de-duplicated tuple in canonical spelling.
    """
    if values is None:
        return ALL
    if isinstance(values, str):
        items = [v.strip() for v in values.split(",") if v.strip()]
    else:
        items = [str(v).strip() for v in values if str(v).strip()]
    if not items or WILDCARD in items:
        return ALL

    canonical = {a.lower(): a for a in allowed}
    result = set()
    for item in items:
        match = canonical.get(item.lower())
        if match is None:
            raise ConfigValidationError(
                f"Invalid {label}: {item}",
                details=f"Allowed values: {', '.join(allowed)}",
            )
        result.add(match)
    return tuple(sorted(result))


@dataclass(frozen=True, order=True)
class SoftPaqId:
    """Numeric package id; the `sp` prefix exists only in presentation."""

    number: int

    @classmethod
    def parse(cls, value: Union[str, int, "SoftPaqId"]) -> "SoftPaqId":
        if isinstance(value, SoftPaqId):
            return value
        if isinstance(value, int):
            return cls(value)
        match = _SOFTPAQ_RX.match(str(value).strip())
        if not match:
            raise ConfigValidationError("Invalid SoftPaq id", details=repr(value))
        return cls(int(match.group(1)))

    def __str__(self) -> str:
        return f"{SOFTPAQ_PREFIX}{self.number}"

    def file_name(self, extension: str) -> str:
        return f"{self}{extension}"


@dataclass(frozen=True)
class OsSpec:
    """
    Operating system selector: a `{name, version}` pair.

    `name` is "*" or one of the supported OS names; `version` is None, "*" or a
    release token such as "2009" or "22H2".
    """

    name: str
    version: Optional[str] = None

    @classmethod
    def parse(cls, text: Optional[str]) -> "OsSpec":
        """
        Parse the persisted `"<os>[:<version>]"` form.

        Raises:
            ConfigValidationError: If the OS name is not supported.
        """
        raw = (text or WILDCARD).strip()
        if raw == WILDCARD:
            return cls(WILDCARD, None)
        name, _, version = raw.partition(":")
        name = name.strip().lower()
        if name not in SUPPORTED_OS_NAMES:
            raise ConfigValidationError(
                f"Unsupported operating system: {name}",
                details=f"Expected one of: {', '.join(SUPPORTED_OS_NAMES)} or *",
            )
        version = version.strip()
        if not version:
            return cls(name, None)
        return cls(name, WILDCARD if version == WILDCARD else version.upper())

    @property
    def is_wildcard(self) -> bool:
        return self.name == WILDCARD

    @property
    def has_concrete_version(self) -> bool:
        return self.version not in (None, WILDCARD)

    def catalog_token(self) -> str:
        """Version token used in catalog file names, e.g. `10.0.2009`."""
        major = self.name.replace("win", "")
        return f"{major}.0.{(self.version or '').lower()}"

    def __str__(self) -> str:
        if self.is_wildcard:
            return WILDCARD
        if self.version is None:
            return self.name
        return f"{self.name}:{self.version}"


@dataclass(frozen=True)
class Filter:
    """A declarative repository filter; exact duplicates are never stored twice."""

    platform: str
    os: OsSpec = field(default_factory=lambda: OsSpec(WILDCARD))
    categories: Selection = ALL
    release_types: Selection = ALL
    characteristics: Selection = ALL
    prefer_ltsc: bool = False

    @classmethod
    def create(
        cls,
        platform: str,
        os: Union[str, OsSpec, None] = WILDCARD,
        categories: Optional[Union[str, Iterable[str]]] = None,
        release_types: Optional[Union[str, Iterable[str]]] = None,
        characteristics: Optional[Union[str, Iterable[str]]] = None,
        prefer_ltsc: bool = False,
    ) -> "Filter":
        os_spec = os if isinstance(os, OsSpec) else OsSpec.parse(os)
        return cls(
            platform=normalize_platform(platform),
            os=os_spec,
            categories=normalize_selection(categories, CATEGORIES, "category"),
            release_types=normalize_selection(
                release_types, RELEASE_TYPES, "release type"
            ),
            characteristics=normalize_selection(
                characteristics, CHARACTERISTICS, "characteristic"
            ),
            prefer_ltsc=bool(prefer_ltsc),
        )

    def replace(self, **changes: Any) -> "Filter":
        values = {
            "platform": self.platform,
            "os": self.os,
            "categories": self.categories,
            "release_types": self.release_types,
            "characteristics": self.characteristics,
            "prefer_ltsc": self.prefer_ltsc,
        }
        values.update(changes)
        return Filter(**values)

    def to_json(self) -> Dict[str, Any]:
        def _dump(selection: Selection) -> Union[str, List[str]]:
            return WILDCARD if is_wildcard(selection) else list(selection)

        return {
            "platform": self.platform,
            "OperatingSystem": str(self.os),
            "Category": _dump(self.categories),
            "ReleaseType": _dump(self.release_types),
            "characteristic": _dump(self.characteristics),
            "preferLTSC": self.prefer_ltsc,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Filter":
        return cls.create(
            platform=data.get("platform", ""),
            os=data.get("OperatingSystem", WILDCARD),
            categories=data.get("Category"),
            release_types=data.get("ReleaseType"),
            characteristics=data.get("characteristic"),
            prefer_ltsc=bool(data.get("preferLTSC", False)),
        )

    def describe(self) -> str:
        return (
            f"platform={self.platform} os={self.os} "
            f"category={','.join(self.categories)} "
            f"releaseType={','.join(self.release_types)} "
            f"characteristic={','.join(self.characteristics)} "
            f"preferLTSC={self.prefer_ltsc}"
        )


@dataclass(frozen=True)
class CatalogRecord:
    """One package entry from a reference catalog."""

    id: SoftPaqId
    name: str
    category: str
    version: str
    vendor: str
    release_type: str
    ssm_compliant: bool
    dpb_compliant: bool
    is_uwp: bool
    url: str
    release_notes_url: Optional[str] = None
    metadata_url: Optional[str] = None
    size_bytes: Optional[int] = None
    release_date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "name": self.name,
            "category": self.category,
            "version": self.version,
            "vendor": self.vendor,
            "releaseType": self.release_type,
            "ssmCompliant": self.ssm_compliant,
            "dpbCompliant": self.dpb_compliant,
            "isUWP": self.is_uwp,
            "url": self.url,
            "releaseNotesUrl": self.release_notes_url,
            "metadataUrl": self.metadata_url,
            "sizeBytes": self.size_bytes,
            "releaseDate": self.release_date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CatalogRecord":
        size = data.get("sizeBytes")
        return cls(
            id=SoftPaqId.parse(data["id"]),
            name=data.get("name", ""),
            category=data.get("category", ""),
            version=data.get("version", ""),
            vendor=data.get("vendor", ""),
            release_type=data.get("releaseType", ""),
            ssm_compliant=bool(data.get("ssmCompliant", False)),
            dpb_compliant=bool(data.get("dpbCompliant", False)),
            is_uwp=bool(data.get("isUWP", False)),
            url=data.get("url", ""),
            release_notes_url=data.get("releaseNotesUrl"),
            metadata_url=data.get("metadataUrl"),
            size_bytes=int(size) if size is not None else None,
            release_date=data.get("releaseDate"),
        )


@dataclass
class RepositorySettings:
    """Persisted repository settings with defaults for keys older files lack."""

    on_remote_file_not_found: str = NOT_FOUND_FAIL
    offline_cache_mode: str = OFFLINE_CACHE_DISABLE
    report_format: str = REPORT_FORMAT_CSV
    exclusive_lock_max_retries: int = DEFAULT_EXCLUSIVE_LOCK_MAX_RETRIES

    def validate(self) -> None:
        """
        Raises:
            ConfigValidationError: If any setting holds a value outside its allowed set.
        """
        _require_choice(
            "OnRemoteFileNotFound", self.on_remote_file_not_found, NOT_FOUND_POLICIES
        )
        _require_choice("OfflineCacheMode", self.offline_cache_mode, OFFLINE_CACHE_MODES)
        _require_choice("RepositoryReport", self.report_format, REPORT_FORMATS)
        if (
            isinstance(self.exclusive_lock_max_retries, bool)
            or not isinstance(self.exclusive_lock_max_retries, int)
            or self.exclusive_lock_max_retries < 0
        ):
            raise ConfigValidationError(
                "ExclusiveLockMaxRetries must be a non-negative integer",
                details=repr(self.exclusive_lock_max_retries),
            )

    def to_json(self) -> Dict[str, Any]:
        return {
            "OnRemoteFileNotFound": self.on_remote_file_not_found,
            "ExclusiveLockMaxRetries": self.exclusive_lock_max_retries,
            "OfflineCacheMode": self.offline_cache_mode,
            "RepositoryReport": self.report_format,
        }

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> "RepositorySettings":
        data = data or {}
        defaults = cls()
        retries = data.get("ExclusiveLockMaxRetries", defaults.exclusive_lock_max_retries)
        try:
            retries = int(retries)
        except (TypeError, ValueError) as e:
            raise ConfigValidationError(
                "ExclusiveLockMaxRetries must be an integer", details=repr(retries)
            ) from e
        settings = cls(
            on_remote_file_not_found=data.get(
                "OnRemoteFileNotFound", defaults.on_remote_file_not_found
            ),
            offline_cache_mode=data.get("OfflineCacheMode", defaults.offline_cache_mode),
            report_format=data.get("RepositoryReport", defaults.report_format),
            exclusive_lock_max_retries=retries,
        )
        settings.validate()
        return settings


def _require_choice(name: str, value: Any, allowed: Tuple[str, ...]) -> None:
    if value not in allowed:
        raise ConfigValidationError(
            f"Invalid value for {name}: {value}",
            details=f"Allowed values: {', '.join(allowed)}",
        )


@dataclass
class NotificationConfig:
    """E-mail notification settings; the password is stored as an opaque protected blob."""

    server: str
    port: int = 25
    tls: bool = False
    user_name: Optional[str] = None
    password: Optional[str] = None
    from_address: str = ""
    from_name: str = ""
    addresses: List[str] = field(default_factory=list)

    def to_json(self, include_password: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "server": self.server,
            "port": self.port,
            "tls": self.tls,
            "UserName": self.user_name,
            "from": self.from_address,
            "fromname": self.from_name,
            "addresses": list(self.addresses),
        }
        if include_password:
            data["Password"] = self.password
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "NotificationConfig":
        return cls(
            server=data.get("server", ""),
            port=int(data.get("port", 25)),
            tls=bool(data.get("tls", False)),
            user_name=data.get("UserName"),
            password=data.get("Password"),
            from_address=data.get("from", ""),
            from_name=data.get("fromname", ""),
            addresses=list(data.get("addresses") or []),
        )


@dataclass
class RepositoryState:
    """The declarative state of one repository directory."""

    filters: List[Filter] = field(default_factory=list)
    settings: RepositorySettings = field(default_factory=RepositorySettings)
    notifications: Optional[NotificationConfig] = None
    created_at: Optional[str] = None
    created_by: Optional[str] = None
    last_modified_at: Optional[str] = None
    last_modified_by: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "Filters": [f.to_json() for f in self.filters],
            "settings": self.settings.to_json(),
            "Notifications": self.notifications.to_json()
            if self.notifications
            else None,
            "DateCreated": self.created_at,
            "CreatedBy": self.created_by,
            "DateLastModified": self.last_modified_at,
            "ModifiedBy": self.last_modified_by,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "RepositoryState":
        notifications = data.get("Notifications")
        return cls(
            filters=[Filter.from_json(f) for f in data.get("Filters") or []],
            settings=RepositorySettings.from_json(data.get("settings")),
            notifications=NotificationConfig.from_json(notifications)
            if notifications
            else None,
            created_at=data.get("DateCreated"),
            created_by=data.get("CreatedBy"),
            last_modified_at=data.get("DateLastModified"),
            last_modified_by=data.get("ModifiedBy"),
        )


@dataclass(frozen=True)
class Manifest:
    """Audit record of the packages chosen for one driver pack build."""

    date: str
    name: str
    os: str
    os_version: str
    packages: Tuple[CatalogRecord, ...] = ()

    def to_json(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "name": self.name,
            "os": self.os,
            "osVersion": self.os_version,
            "packages": [p.to_dict() for p in self.packages],
        }

    def to_xml(self) -> bytes:
        root = ET.Element("Manifest")
        for tag, value in (
            ("Date", self.date),
            ("Name", self.name),
            ("OS", self.os),
            ("OSVersion", self.os_version),
        ):
            ET.SubElement(root, tag).text = value
        packages = ET.SubElement(root, "Packages")
        for record in self.packages:
            node = ET.SubElement(packages, "Package")
            for key, value in record.to_dict().items():
                ET.SubElement(node, key).text = "" if value is None else str(value)
        return ET.tostring(root, encoding="utf-8", xml_declaration=True)


@dataclass
class BuildTarget:
    """The physical output of one driver pack build."""

    path: Path
    format: str
    manifest: Manifest
    included: List[SoftPaqId] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    unselected: List[SoftPaqId] = field(default_factory=list)
    superseded: List[SoftPaqId] = field(default_factory=list)


@dataclass
class FetchResult:
    """Outcome of a single Download Manager fetch."""

    success: bool
    """Whether the target file is present and acceptable after the call"""

    url: str
    file_path: Optional[Pathish] = None

    error_kind: Optional[str] = None
    """One of the ERROR_KIND_* constants when the fetch failed or was refused"""

    error_message: Optional[str] = None
    http_status_code: Optional[int] = None
    retry_count: int = 0

    was_skipped: bool = False
    """Whether an existing file was kept instead of downloading"""

    signature_valid: Optional[bool] = None
    """None when no signature check ran"""

    warnings: List[str] = field(default_factory=list)
    file_size: Optional[int] = None

    def raise_for_error(self) -> None:
        """Raise the typed exception matching `error_kind`; no-op on success."""
        if self.success:
            return
        message = self.error_message or f"Failed to fetch {self.url}"
        if self.error_kind == ERROR_KIND_NOT_FOUND:
            raise RemoteNotFoundError(message, url=self.url)
        if self.error_kind == ERROR_KIND_LOCK_CONTENTION:
            raise LockContentionError(
                message,
                path=str(self.file_path) if self.file_path else None,
                url=self.url,
                retry_count=self.retry_count,
            )
        if self.error_kind == ERROR_KIND_SIGNATURE_INVALID:
            raise SignatureInvalidError(
                message,
                path=str(self.file_path) if self.file_path else None,
                url=self.url,
            )
        if self.http_status_code is not None:
            raise HTTPError(
                message,
                status_code=self.http_status_code,
                url=self.url,
                retry_count=self.retry_count,
                is_retryable=self.http_status_code >= 500,
            )
        if self.error_kind == ERROR_KIND_NETWORK:
            raise NetworkError(
                message, url=self.url, retry_count=self.retry_count, is_retryable=True
            )
        raise DownloadError(message, url=self.url, retry_count=self.retry_count)


@dataclass
class SyncResult:
    """Summary of one repository sync."""

    selected: List[CatalogRecord] = field(default_factory=list)
    downloaded: List[SoftPaqId] = field(default_factory=list)
    skipped: List[SoftPaqId] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    report_path: Optional[Path] = None


class CabExpander(ABC):
    """Expands a compressed reference catalog archive."""

    @abstractmethod
    def expand(self, archive_path: Pathish, dest_dir: Pathish) -> None:
        """
        Expand every member of `archive_path` into `dest_dir`.

        Raises:
            ExtractionError: If the archive cannot be expanded.
        """


class PackageExtractor(ABC):
    """Extracts the payload of a downloaded SoftPaq binary."""

    @abstractmethod
    def extract(self, package_path: Pathish, dest_dir: Pathish) -> None:
        """
        Extract the package payload into `dest_dir`.

        Raises:
            ExtractionError: If the package cannot be extracted.
        """


class ImageCapturer(ABC):
    """Captures a directory into a single-file disk image."""

    @abstractmethod
    def capture(self, source_dir: Pathish, image_path: Pathish, name: str) -> None:
        """
        Capture `source_dir` into `image_path` with the given image name.

        Raises:
            PackagingError: If the image cannot be captured.
        """
