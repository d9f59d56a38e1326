"""
Catalog Resolver

Builds reference-catalog URLs for a platform/OS/version/bitness combination,
downloads the compressed catalog into a local cache, expands it to XML and
parses it into CatalogRecord entries.
"""

import os
import shutil
import tempfile
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from spmirror.config import EngineConfig
from spmirror.constants import (
    CATALOG_EXTENSION,
    CATALOG_XML_EXTENSION,
    DEFAULT_REFERENCE_URL,
    ERROR_KIND_NOT_FOUND,
    LATEST_OS_PROBE_ORDER,
    LTSC_CATALOG_SUFFIX,
    SUPPORTED_BITNESS,
    SUPPORTED_OS_VERSIONS,
)
from spmirror.exceptions import (
    ConfigValidationError,
    ExtractionError,
    MalformedCatalogError,
    RemoteNotFoundError,
    UnsupportedCombinationError,
    UsageError,
)
from spmirror.log_utils import logger

from .downloader import DownloadManager
from .files import SubprocessCabExpander, remove_if_exists
from .filters import merge_records, select_records
from .interfaces import (
    CabExpander,
    CatalogRecord,
    FetchResult,
    Filter,
    OsSpec,
    Pathish,
    SoftPaqId,
    normalize_platform,
)

CATALOG_RECORD_TAG = "UpdateInfo"


def catalog_name(platform: str, bitness: int, os_spec: OsSpec, ltsc: bool = False) -> str:
    """File name of a reference catalog, e.g. `83b2_64_10.0.2009.cab`."""
    suffix = LTSC_CATALOG_SUFFIX if ltsc else ""
    return f"{platform}_{bitness}_{os_spec.catalog_token()}{suffix}{CATALOG_EXTENSION}"


def validate_combination(os_spec: OsSpec, bitness: int) -> None:
    """
    Raises:
        UnsupportedCombinationError: If the OS, version or bitness is not supported.
    """
    versions = SUPPORTED_OS_VERSIONS.get(os_spec.name)
    if (
        versions is None
        or not os_spec.has_concrete_version
        or os_spec.version not in versions
        or bitness not in SUPPORTED_BITNESS.get(os_spec.name, ())
    ):
        raise UnsupportedCombinationError(os_spec.name, os_spec.version, bitness)


def _text(node: ET.Element, *tags: str) -> Optional[str]:
    for tag in tags:
        child = node.find(tag)
        if child is not None and child.text and child.text.strip():
            return child.text.strip()
    return None


def _flag(node: ET.Element, tag: str) -> bool:
    return (_text(node, tag) or "").lower() in ("true", "1", "yes")


def _absolute_url(value: Optional[str]) -> Optional[str]:
    # Catalog URLs are usually published without a scheme
    if not value:
        return None
    if "://" in value:
        return value
    return f"https://{value.lstrip('/')}"


def _record_from_node(node: ET.Element) -> Optional[CatalogRecord]:
    raw_id = _text(node, "Id", "SoftPaqId")
    try:
        softpaq_id = SoftPaqId.parse(raw_id or "")
    except ConfigValidationError:
        logger.debug(f"Skipping catalog entry with invalid id: {raw_id!r}")
        return None

    size = _text(node, "Size")
    try:
        size_bytes = int(size) if size else None
    except ValueError:
        size_bytes = None

    return CatalogRecord(
        id=softpaq_id,
        name=_text(node, "Name") or "",
        category=_text(node, "Category") or "",
        version=_text(node, "Version") or "",
        vendor=_text(node, "Vendor") or "",
        release_type=_text(node, "ReleaseType") or "",
        ssm_compliant=_flag(node, "SSMCompliant"),
        dpb_compliant=_flag(node, "DPBCompliant"),
        is_uwp=_flag(node, "UWP"),
        url=_absolute_url(_text(node, "Url")) or "",
        release_notes_url=_absolute_url(_text(node, "ReleaseNotesUrl")),
        metadata_url=_absolute_url(_text(node, "CvaFileUrl", "CvaUrl")),
        size_bytes=size_bytes,
        release_date=_text(node, "DateReleased"),
    )


def parse_catalog(xml_path: Pathish) -> List[CatalogRecord]:
    """
    Parse an expanded catalog document into records, de-duplicated by id.

    Raises:
        ET.ParseError: If the document is not well-formed XML.
    """
    root = ET.parse(str(xml_path)).getroot()
    records = []
    for node in root.iter(CATALOG_RECORD_TAG):
        record = _record_from_node(node)
        if record is not None:
            records.append(record)
    return merge_records(records)


class CatalogResolver:
    """
    Resolves reference catalogs into CatalogRecord lists.

    Catalog archives are cached by file name under `cache_dir`. An existing
    archive is reused when the server reports a modification time no newer
    than the cached copy; otherwise it is fetched again and replaced, together
    with its expanded XML, once the download succeeds.

    Fallbacks to the LTSC-less catalog, the fallback host or a cached copy are
    logged and collected in `warnings` until `pop_warnings` is called.
    """

    def __init__(
        self,
        config: EngineConfig,
        download_manager: DownloadManager,
        cab_expander: Optional[CabExpander] = None,
        cache_dir: Optional[Pathish] = None,
    ):
        self.config = config
        self.download_manager = download_manager
        self.cab_expander = cab_expander or SubprocessCabExpander()
        self.cache_dir = Path(cache_dir or config.cache_dir or ".")
        self.warnings: List[str] = []

    def pop_warnings(self) -> List[str]:
        """Return and clear the warnings collected since the last call."""
        warnings, self.warnings = self.warnings, []
        return warnings

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def catalog_url(
        self,
        platform: str,
        os_spec: OsSpec,
        bitness: int,
        ltsc: bool = False,
        reference_url: Optional[str] = None,
    ) -> str:
        base = (reference_url or self.config.reference_url).rstrip("/")
        return f"{base}/{platform}/{catalog_name(platform, bitness, os_spec, ltsc)}"

    def resolve(
        self,
        platform: str,
        os_spec: Optional[OsSpec] = None,
        bitness: Optional[int] = None,
        prefer_ltsc: bool = False,
        flt: Optional[Filter] = None,
        reference_url: Optional[str] = None,
        latest: bool = False,
        max_retries: Optional[int] = None,
    ) -> List[CatalogRecord]:
        """
        Fetch, expand and parse the catalog for one combination.

        Parameters:
            platform: Four-hex-digit platform id.
            os_spec: Concrete OS and version; must be omitted in latest mode.
            bitness: OS bitness; defaults to the configured bitness.
            prefer_ltsc: Request the long-term-servicing catalog, falling back to
                the regular catalog when it is not published.
            flt: Filter applied inline; records are only de-duplicated when None.
            reference_url: Overrides the configured reference host. A custom host
                disables the fallback host.
            latest: Probe the newest supported OS that has a catalog.
            max_retries: Lock-contention retries for the catalog download;
                defaults to the download manager policy.

        Returns:
            Matching records in catalog order, unique by id.

        Raises:
            UsageError: On conflicting or missing OS parameters.
            UnsupportedCombinationError: If the combination is not supported.
            RemoteNotFoundError: If no catalog exists on any permitted host.
            MalformedCatalogError: If the catalog stays malformed after re-expansion.
            ExtractionError: If the catalog archive cannot be expanded.
        """
        platform = normalize_platform(platform)
        if latest:
            if os_spec is not None or bitness is not None:
                raise UsageError(
                    "Latest supported OS mode cannot be combined with an explicit "
                    "OS, version or bitness"
                )
            os_spec, bitness = self.find_latest_supported(platform, reference_url)
        elif os_spec is None or not os_spec.has_concrete_version:
            raise UsageError(
                f"A concrete OS and version are required to resolve a catalog for {platform}",
                details=f"Got {os_spec}" if os_spec is not None else None,
            )

        if bitness is None:
            bitness = self.config.bitness
        validate_combination(os_spec, bitness)

        cab_path, refreshed = self._obtain(
            platform, os_spec, bitness, prefer_ltsc, reference_url, max_retries
        )
        records = self._load(cab_path, force_expand=refreshed)
        logger.debug(
            f"Catalog {cab_path.name} lists {len(records)} packages for {platform}"
        )
        if flt is None:
            return records
        return select_records(records, flt)

    def query(
        self,
        platform: str,
        os_spec: Optional[Union[str, OsSpec]] = None,
        bitness: Optional[int] = None,
        categories: Optional[Iterable[str]] = None,
        release_types: Optional[Iterable[str]] = None,
        characteristics: Optional[Iterable[str]] = None,
        prefer_ltsc: bool = False,
        reference_url: Optional[str] = None,
        latest: bool = False,
    ) -> List[CatalogRecord]:
        """Return catalog records matching the given filter dimensions without downloading packages."""
        if isinstance(os_spec, str):
            os_spec = OsSpec.parse(os_spec)
        flt = Filter.create(
            platform,
            os=os_spec,
            categories=categories,
            release_types=release_types,
            characteristics=characteristics,
            prefer_ltsc=prefer_ltsc,
        )
        return self.resolve(
            flt.platform,
            os_spec=os_spec,
            bitness=bitness,
            prefer_ltsc=prefer_ltsc,
            flt=flt,
            reference_url=reference_url,
            latest=latest,
        )

    def find_latest_supported(
        self, platform: str, reference_url: Optional[str] = None
    ) -> Tuple[OsSpec, int]:
        """
        Probe supported combinations newest first and return the first with a catalog.

        Raises:
            RemoteNotFoundError: If no combination has a published catalog.
        """
        for os_name, version, bitness in LATEST_OS_PROBE_ORDER:
            os_spec = OsSpec(os_name, version)
            for url in self._candidate_urls(platform, os_spec, bitness, False, reference_url):
                if self.download_manager.remote_exists(url):
                    logger.info(f"Latest supported OS for {platform}: {os_spec} ({bitness}-bit)")
                    return os_spec, bitness
        raise RemoteNotFoundError(
            f"No reference catalog found for platform {platform} on any supported OS"
        )

    def _allows_fallback(self, reference_url: Optional[str]) -> bool:
        if reference_url is None:
            return self.config.uses_default_reference
        return reference_url.rstrip("/") == DEFAULT_REFERENCE_URL

    def _candidate_urls(
        self,
        platform: str,
        os_spec: OsSpec,
        bitness: int,
        ltsc: bool,
        reference_url: Optional[str],
    ) -> List[str]:
        urls = [self.catalog_url(platform, os_spec, bitness, ltsc, reference_url)]
        if self._allows_fallback(reference_url):
            urls.append(
                self.catalog_url(
                    platform, os_spec, bitness, ltsc, self.config.fallback_reference_url
                )
            )
        return urls

    def _obtain(
        self,
        platform: str,
        os_spec: OsSpec,
        bitness: int,
        prefer_ltsc: bool,
        reference_url: Optional[str],
        max_retries: Optional[int],
    ) -> Tuple[Path, bool]:
        """Return the local archive path and whether it was freshly downloaded."""
        if prefer_ltsc:
            cab_path = self.cache_dir / catalog_name(platform, bitness, os_spec, True)
            result = self._fetch_from_hosts(
                platform, os_spec, bitness, True, reference_url, cab_path, max_retries
            )
            if result.success:
                return cab_path, not result.was_skipped
            self._warn(
                f"No LTSC catalog for {platform} {os_spec}; using the regular catalog"
            )

        cab_path = self.cache_dir / catalog_name(platform, bitness, os_spec, False)
        result = self._fetch_from_hosts(
            platform, os_spec, bitness, False, reference_url, cab_path, max_retries
        )
        result.raise_for_error()
        return cab_path, not result.was_skipped

    def _fetch_from_hosts(
        self,
        platform: str,
        os_spec: OsSpec,
        bitness: int,
        ltsc: bool,
        reference_url: Optional[str],
        cab_path: Path,
        max_retries: Optional[int],
    ) -> FetchResult:
        """
        Fetch `cab_path` from the reference host, then from the fallback host.

        When every host fails for a reason other than a missing catalog, an
        existing cached archive is used as is.
        """
        urls = self._candidate_urls(platform, os_spec, bitness, ltsc, reference_url)
        results = [self._fetch_cached(urls[0], cab_path, max_retries)]
        if not results[0].success and len(urls) > 1:
            logger.warning(
                f"Reference host failed for {cab_path.name} ({results[0].error_message}); "
                f"trying fallback host"
            )
            results.append(self._fetch_cached(urls[1], cab_path, max_retries))
            if results[-1].success:
                self._warn(
                    f"Catalog {cab_path.name} was served by the fallback host "
                    f"{self.config.fallback_reference_url}"
                )

        result = results[-1]
        if result.success or not cab_path.exists():
            return result
        if all(r.error_kind == ERROR_KIND_NOT_FOUND for r in results):
            return result
        self._warn(
            f"Could not refresh catalog {cab_path.name} ({result.error_message}); "
            f"using the cached copy"
        )
        return FetchResult(success=True, url=result.url, file_path=cab_path, was_skipped=True)

    def _fetch_cached(
        self, url: str, cab_path: Path, max_retries: Optional[int]
    ) -> FetchResult:
        if cab_path.exists():
            remote_mtime = self.download_manager.remote_last_modified(url)
            if remote_mtime is not None and remote_mtime <= cab_path.stat().st_mtime:
                logger.debug(f"Cached catalog {cab_path.name} is current")
                return FetchResult(
                    success=True, url=url, file_path=cab_path, was_skipped=True
                )
            logger.debug(f"Cached catalog {cab_path.name} may be stale; fetching {url}")

        # The cached archive is only replaced once the download has completed
        result = self.download_manager.fetch_metadata(url, cab_path, max_retries=max_retries)
        if result.success:
            remove_if_exists(self._xml_path(cab_path))
        return result

    @staticmethod
    def _xml_path(cab_path: Path) -> Path:
        return cab_path.with_suffix(CATALOG_XML_EXTENSION)

    def _load(self, cab_path: Path, force_expand: bool) -> List[CatalogRecord]:
        """
        Expand and parse a cached archive.

        An archive that cannot be expanded or stays malformed is removed from the
        cache with its XML so that the next resolve downloads it again.

        Raises:
            ExtractionError: If the archive cannot be expanded.
            MalformedCatalogError: If the XML is malformed after re-expansion.
        """
        xml_path = self._xml_path(cab_path)
        try:
            return self._expand_and_parse(cab_path, xml_path, force_expand)
        except (ExtractionError, MalformedCatalogError):
            logger.warning(f"Discarding cached catalog {cab_path.name}")
            remove_if_exists(cab_path)
            remove_if_exists(xml_path)
            raise

    def _expand_and_parse(
        self, cab_path: Path, xml_path: Path, force_expand: bool
    ) -> List[CatalogRecord]:
        if force_expand or not xml_path.exists():
            self._expand(cab_path, xml_path)

        try:
            return parse_catalog(xml_path)
        except (ET.ParseError, OSError) as e:
            logger.warning(f"Catalog {xml_path.name} is malformed ({e}); expanding again")

        remove_if_exists(xml_path)
        self._expand(cab_path, xml_path)
        try:
            return parse_catalog(xml_path)
        except (ET.ParseError, OSError) as e:
            raise MalformedCatalogError(
                f"Catalog {xml_path.name} is not well-formed",
                path=str(xml_path),
                details=str(e),
            ) from e

    def _expand(self, cab_path: Path, xml_path: Path) -> None:
        """
        Expand `cab_path` into a scratch directory and move its XML member to `xml_path`.

        A missing XML member leaves `xml_path` absent, which the caller reports
        as a malformed catalog.
        """
        xml_path.parent.mkdir(parents=True, exist_ok=True)
        scratch = tempfile.mkdtemp(prefix="expand-", dir=str(xml_path.parent))
        try:
            self.cab_expander.expand(cab_path, scratch)
            member = self._find_xml_member(Path(scratch), xml_path.name)
            if member is None:
                logger.warning(f"{cab_path.name} contains no XML catalog")
                return
            os.replace(member, xml_path)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    @staticmethod
    def _find_xml_member(scratch: Path, expected_name: str) -> Optional[Path]:
        candidates = sorted(scratch.rglob(f"*{CATALOG_XML_EXTENSION}"))
        for candidate in candidates:
            if candidate.name.lower() == expected_name.lower():
                return candidate
        return candidates[0] if candidates else None
