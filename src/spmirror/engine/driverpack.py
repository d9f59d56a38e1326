"""
Driver Pack Assembler

Turns a resolved package list into a driver pack: each package is downloaded,
extracted and routed through the INF paths its metadata lists for the target
OS, then the assembled tree is emitted as a folder, a ZIP archive or a WIM
image next to a JSON/XML manifest.

All assembly happens in a temporary working directory inside the output
directory; the finished artifact is moved to its final name only on success.
"""

import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from spmirror.config import EngineConfig
from spmirror.constants import (
    MANIFEST_JSON_FILE,
    MANIFEST_XML_FILE,
    OVERWRITE_SKIP,
    PACK_DOWNLOAD_DIR,
    PACK_EXTENSIONS,
    PACK_EXTRACT_DIR,
    PACK_FORMAT_FOLDER,
    PACK_FORMAT_WIM,
    PACK_FORMAT_ZIP,
    PACK_FORMATS,
    SIGNATURE_SUFFIX,
    SOFTPAQ_BINARY_EXTENSION,
    SOFTPAQ_METADATA_EXTENSION,
    UWP_APP_DIR_NAME,
    UWP_INSTALL_ALL_SCRIPT,
    UWP_INSTALL_SCRIPTS,
)
from spmirror.exceptions import (
    ConfigValidationError,
    ExtractionError,
    PackagingError,
    UsageError,
)
from spmirror.log_utils import logger
from spmirror.utils import utc_timestamp

from .cva import CvaMetadata, read_cva
from .downloader import DownloadManager, sibling_url
from .files import (
    SoftPaqExtractor,
    WimCapturer,
    atomic_write_bytes,
    atomic_write_json,
    copy_tree,
    create_zip,
    safe_join,
)
from .filters import merge_records
from .interfaces import (
    BuildTarget,
    CatalogRecord,
    ImageCapturer,
    Manifest,
    OsSpec,
    PackageExtractor,
    Pathish,
    PayloadSigner,
    SoftPaqId,
)

INSTALL_ALL_APPS_SCRIPT = """@echo off
rem Installs every app package contained in this driver pack
for /d %%D in ("%~dp0*") do (
    if exist "%%D\\InstallApp.cmd" (
        call "%%D\\InstallApp.cmd"
    ) else if exist "%%D\\Install.cmd" (
        call "%%D\\Install.cmd"
    )
)
"""


def apply_unselect(
    records: Sequence[CatalogRecord], unselect: Iterable[str]
) -> Tuple[List[CatalogRecord], List[CatalogRecord]]:
    """
    Split out records the caller asked to leave out.

    An entry matches a record when it names the record's id exactly (`sp123`
    or `123`) or appears anywhere in the record's name, case-insensitively.

    Returns:
        (kept, removed)
    """
    ids = set()
    fragments = []
    for entry in unselect:
        entry = str(entry).strip()
        if not entry:
            continue
        try:
            ids.add(SoftPaqId.parse(entry))
        except ConfigValidationError:
            pass
        fragments.append(entry.lower())

    kept: List[CatalogRecord] = []
    removed: List[CatalogRecord] = []
    for record in records:
        name = record.name.lower()
        if record.id in ids or any(fragment in name for fragment in fragments):
            removed.append(record)
        else:
            kept.append(record)
    return kept, removed


def remove_superseded(
    records: Sequence[CatalogRecord],
) -> Tuple[List[CatalogRecord], List[CatalogRecord]]:
    """
    Keep only the highest package id among records sharing a name.

    Ids are issued sequentially upstream, so the highest id stands in for the
    most recent release.

    Returns:
        (kept, superseded), both in input order.
    """
    newest = {}
    for record in records:
        key = record.name.strip().lower()
        current = newest.get(key)
        if current is None or record.id > current.id:
            newest[key] = record

    kept: List[CatalogRecord] = []
    superseded: List[CatalogRecord] = []
    for record in records:
        if newest[record.name.strip().lower()] is record:
            kept.append(record)
        else:
            superseded.append(record)
    return kept, superseded


def unique_output_path(
    output_dir: Pathish, base_name: str, extension: str = "", overwrite: bool = False
) -> Path:
    """
    Pick the output path for a build named `base_name`.

    When `<base_name><extension>` exists and `overwrite` is off, the name gets a
    `_<n>` suffix one greater than the highest suffix already present among its
    siblings.
    """
    directory = Path(output_dir)
    candidate = directory / f"{base_name}{extension}"
    if overwrite or not candidate.exists():
        return candidate

    pattern = re.compile(
        rf"^{re.escape(base_name)}_(\d+){re.escape(extension)}$", re.IGNORECASE
    )
    highest = 0
    for sibling in directory.iterdir():
        match = pattern.match(sibling.name)
        if match:
            highest = max(highest, int(match.group(1)))
    return directory / f"{base_name}_{highest + 1}{extension}"


class DriverPackBuilder:
    """
    Builds driver packs from catalog records.

    A package that cannot be fetched, extracted or routed is skipped with a
    warning and reported in `BuildTarget.skipped`; it never aborts the build.
    """

    def __init__(
        self,
        config: EngineConfig,
        download_manager: Optional[DownloadManager] = None,
        extractor: Optional[PackageExtractor] = None,
        capturer: Optional[ImageCapturer] = None,
        payload_signer: Optional[PayloadSigner] = None,
    ):
        self.config = config
        self.download_manager = download_manager or DownloadManager(config)
        self.extractor = extractor or SoftPaqExtractor()
        self.capturer = capturer or WimCapturer()
        self.payload_signer = payload_signer

    def build(
        self,
        packages: Sequence[CatalogRecord],
        os_spec: OsSpec,
        output_dir: Pathish,
        name: str,
        pack_format: str = PACK_FORMAT_FOLDER,
        unselect: Iterable[str] = (),
        remove_older: bool = False,
        overwrite: bool = False,
        uwp: bool = False,
        source_dir: Optional[Pathish] = None,
    ) -> BuildTarget:
        """
        Assemble a driver pack.

        Parameters:
            packages: Records to consider, e.g. from a catalog query.
            os_spec: Concrete OS and version used to pick INF paths.
            output_dir: Directory receiving the artifact.
            name: Base name of the artifact.
            pack_format: `NoCompressedFile`, `ZIP` or `WIM`.
            unselect: Ids or name fragments to leave out.
            remove_older: Keep only the newest package of every name.
            overwrite: Replace an existing artifact instead of picking a new name.
            uwp: Build an app pack; packages must ship an `App` folder and an
                install script, and an install-all script is added.
            source_dir: Local mirror consulted for `sp<id>.exe`/`.cva` before
                downloading.

        Returns:
            BuildTarget describing the artifact.

        Raises:
            ConfigValidationError: On an unknown format.
            UsageError: If the OS has no concrete version.
            PackagingError: If the artifact cannot be written.
        """
        if pack_format not in PACK_FORMATS:
            raise ConfigValidationError(
                f"Invalid driver pack format: {pack_format}",
                details=f"Allowed values: {', '.join(PACK_FORMATS)}",
            )
        if not os_spec.has_concrete_version:
            raise UsageError(
                "A driver pack needs a concrete OS and version", details=str(os_spec)
            )

        working = merge_records(packages)
        working, unselected = apply_unselect(working, unselect)
        for record in unselected:
            logger.info(f"Unselected: {record.id} {record.name}")
        superseded: List[CatalogRecord] = []
        if remove_older:
            working, superseded = remove_superseded(working)
            for record in superseded:
                logger.info(f"Superseded: {record.id} {record.name}")

        output = Path(output_dir)
        output.mkdir(parents=True, exist_ok=True)
        extension = PACK_EXTENSIONS[pack_format]
        final_path = unique_output_path(output, name, extension, overwrite)
        pack_name = final_path.name[: len(final_path.name) - len(extension)]

        manifest = Manifest(
            date=utc_timestamp(),
            name=pack_name,
            os=os_spec.name,
            os_version=os_spec.version or "",
            packages=tuple(working),
        )
        target = BuildTarget(
            path=final_path,
            format=pack_format,
            manifest=manifest,
            unselected=[r.id for r in unselected],
            superseded=[r.id for r in superseded],
        )

        work_dir = Path(tempfile.mkdtemp(prefix=f".{pack_name}-", dir=str(output)))
        try:
            pack_root = work_dir / pack_name
            pack_root.mkdir()
            self._write_manifest(pack_root, manifest)

            for record in working:
                reason = self._add_package(
                    record, pack_root, work_dir, os_spec, uwp, source_dir
                )
                if reason is None:
                    target.included.append(record.id)
                else:
                    logger.warning(f"Skipping {record.id} ({record.name}): {reason}")
                    target.skipped[str(record.id)] = reason

            if uwp:
                (pack_root / UWP_INSTALL_ALL_SCRIPT).write_text(
                    INSTALL_ALL_APPS_SCRIPT, encoding="utf-8", newline="\r\n"
                )
            if not target.included:
                logger.warning(f"Driver pack {pack_name} contains no packages")

            self._package(pack_root, work_dir, final_path, pack_format, pack_name)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.info(
            f"Driver pack created: {final_path} ({len(target.included)} packages, "
            f"{len(target.skipped)} skipped)"
        )
        return target

    def _write_manifest(self, pack_root: Path, manifest: Manifest) -> None:
        json_path = pack_root / MANIFEST_JSON_FILE
        atomic_write_json(json_path, manifest.to_json())
        atomic_write_bytes(pack_root / MANIFEST_XML_FILE, manifest.to_xml())
        if self.payload_signer is not None:
            signature = self.payload_signer(json_path.read_bytes())
            atomic_write_bytes(f"{json_path}{SIGNATURE_SUFFIX}", signature)

    def _local_or_fetch(
        self, url: str, target: Path, source_dir: Optional[Pathish], metadata: bool
    ) -> Optional[str]:
        """Place `target` from the local mirror or download it; returns a skip reason on failure."""
        if source_dir is not None:
            candidate = Path(source_dir) / target.name
            if candidate.is_file():
                try:
                    shutil.copy2(candidate, target)
                except OSError as e:
                    return f"could not copy {candidate}: {e}"
                return None
        if metadata:
            result = self.download_manager.fetch_metadata(url, target)
        else:
            result = self.download_manager.fetch(url, target, overwrite=OVERWRITE_SKIP)
        if not result.success:
            return result.error_message or f"download failed ({result.error_kind})"
        return None

    def _add_package(
        self,
        record: CatalogRecord,
        pack_root: Path,
        work_dir: Path,
        os_spec: OsSpec,
        uwp: bool,
        source_dir: Optional[Pathish],
    ) -> Optional[str]:
        """Download, extract and route one package; returns the reason it was skipped, if any."""
        downloads = work_dir / PACK_DOWNLOAD_DIR
        downloads.mkdir(exist_ok=True)
        cva_path = downloads / record.id.file_name(SOFTPAQ_METADATA_EXTENSION)
        exe_path = downloads / record.id.file_name(SOFTPAQ_BINARY_EXTENSION)

        metadata_url = record.metadata_url or sibling_url(
            record.url, SOFTPAQ_METADATA_EXTENSION
        )
        reason = self._local_or_fetch(metadata_url, cva_path, source_dir, metadata=True)
        if reason:
            return f"metadata unavailable: {reason}"
        try:
            metadata = read_cva(cva_path)
        except OSError as e:
            return f"metadata unreadable: {e}"

        inf_paths: Optional[List[str]] = None
        if not uwp:
            inf_paths = metadata.inf_paths(os_spec)
            if not inf_paths:
                return f"no INF path for {os_spec}"

        reason = self._local_or_fetch(record.url, exe_path, source_dir, metadata=False)
        if reason:
            return f"download failed: {reason}"

        extract_dir = work_dir / PACK_EXTRACT_DIR / str(record.id)
        destination = pack_root / str(record.id)
        try:
            self.extractor.extract(exe_path, extract_dir)
            if uwp:
                return self._route_app(extract_dir, destination)
            return self._route_inf(extract_dir, destination, inf_paths or [], metadata)
        except ExtractionError as e:
            return f"extraction failed: {e}"
        except OSError as e:
            # shutil.Error is an OSError; drop the partial copy
            shutil.rmtree(destination, ignore_errors=True)
            return f"copy failed: {e}"
        finally:
            shutil.rmtree(extract_dir, ignore_errors=True)
            exe_path.unlink(missing_ok=True)

    @staticmethod
    def _route_inf(
        extract_dir: Path, destination: Path, inf_paths: List[str], metadata: CvaMetadata
    ) -> Optional[str]:
        copied = 0
        for relative in inf_paths:
            try:
                source = safe_join(extract_dir, relative)
            except ValueError as e:
                logger.warning(f"Ignoring INF path of {metadata.softpaq_number}: {e}")
                continue
            if not source.exists():
                logger.debug(f"INF path {relative} not found in payload")
                continue
            relative_dest = source.relative_to(os.path.realpath(extract_dir))
            if source.is_dir():
                copy_tree(source, destination / relative_dest)
            else:
                copy_tree(source, destination / relative_dest.parent)
            copied += 1
        if copied == 0:
            return "none of the listed INF paths exist in the payload"
        return None

    @staticmethod
    def _route_app(extract_dir: Path, destination: Path) -> Optional[str]:
        app_dir = extract_dir / UWP_APP_DIR_NAME
        script = next(
            (extract_dir / s for s in UWP_INSTALL_SCRIPTS if (extract_dir / s).is_file()),
            None,
        )
        if not app_dir.is_dir():
            return f"no {UWP_APP_DIR_NAME} folder in payload"
        if script is None:
            return f"no install script ({' or '.join(UWP_INSTALL_SCRIPTS)}) in payload"
        copy_tree(app_dir, destination / UWP_APP_DIR_NAME)
        copy_tree(script, destination)
        return None

    def _package(
        self,
        pack_root: Path,
        work_dir: Path,
        final_path: Path,
        pack_format: str,
        pack_name: str,
    ) -> None:
        """
        Produce the artifact from `pack_root` and move it to `final_path`.

        Raises:
            PackagingError: If compression, capture or the final move fails.
        """
        if pack_format == PACK_FORMAT_FOLDER:
            artifact = pack_root
        else:
            artifact = work_dir / f"{pack_name}{PACK_EXTENSIONS[pack_format]}"
            if pack_format == PACK_FORMAT_ZIP:
                create_zip(pack_root, artifact)
            elif pack_format == PACK_FORMAT_WIM:
                self.capturer.capture(pack_root, artifact, pack_name)
            shutil.rmtree(pack_root, ignore_errors=True)

        try:
            if final_path.is_dir():
                shutil.rmtree(final_path)
            elif final_path.exists():
                final_path.unlink()
            os.replace(artifact, final_path)
        except OSError as e:
            raise PackagingError(
                f"Could not move driver pack into place at {final_path}",
                archive_path=str(final_path),
                details=str(e),
            ) from e
