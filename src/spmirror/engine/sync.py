"""
Repository Sync Orchestrator

Coordinates one repository sync: load state, normalize filters, resolve
catalogs, select records, download packages, write marks and regenerate the
repository report.
"""

import time
from pathlib import Path
from typing import List, Optional, Union

from spmirror.config import EngineConfig
from spmirror.constants import (
    NOT_FOUND_FAIL,
    OFFLINE_CACHE_ENABLE,
    OVERWRITE_SKIP,
    SOFTPAQ_BINARY_EXTENSION,
    SOFTPAQ_METADATA_EXTENSION,
    SOFTPAQ_RELEASE_NOTES_EXTENSION,
)
from spmirror.exceptions import DownloadError, SpMirrorError
from spmirror.log_utils import logger
from spmirror.notifications import NotificationDispatcher, Notifier
from spmirror.utils import detect_running_os

from .catalog import CatalogResolver
from .downloader import DownloadManager, sibling_url
from .filters import (
    CurrentOsProvider,
    merge_records,
    normalize_filter_set,
    resolve_os_for_request,
)
from .interfaces import (
    CabExpander,
    CatalogRecord,
    FetchResult,
    Filter,
    OsSpec,
    RepositorySettings,
    SyncResult,
)
from .report import write_report
from .state import RepositoryStore


def running_os_provider(config: EngineConfig) -> Optional[CurrentOsProvider]:
    """
    Build the provider of the running OS.

    A `CURRENT_OS` configuration value wins over detection, which only works on
    Windows hosts with a known build number.
    """
    if config.current_os:
        configured = OsSpec.parse(config.current_os)
        return lambda: configured
    detected = detect_running_os()
    if detected is None:
        return None
    running = OsSpec(*detected)
    return lambda: running


class RepositorySync:
    """
    Runs a sync for one repository.

    Package-level failures follow the repository's `OnRemoteFileNotFound`
    setting: `Fail` aborts the sync with the typed error, `LogAndContinue`
    records the failure, notifies and moves on. Configuration and usage errors
    always abort.
    """

    def __init__(
        self,
        store: RepositoryStore,
        config: EngineConfig,
        download_manager: Optional[DownloadManager] = None,
        catalog_resolver: Optional[CatalogResolver] = None,
        cab_expander: Optional[CabExpander] = None,
        notifier: Optional[Notifier] = None,
        current_os: Optional[CurrentOsProvider] = None,
        keep_invalid: bool = False,
    ):
        self.store = store
        self.config = config
        self.download_manager = download_manager or DownloadManager(config)
        self.catalog_resolver = catalog_resolver or CatalogResolver(
            config, self.download_manager, cab_expander=cab_expander
        )
        self.notifier = notifier
        self.current_os = (
            current_os if current_os is not None else running_os_provider(config)
        )
        self.keep_invalid = keep_invalid

    def run(self, reference_url: Optional[str] = None) -> SyncResult:
        """
        Sync the repository against the reference catalogs.

        Parameters:
            reference_url: Overrides the configured reference host for this run.

        Returns:
            SyncResult: Selected records, downloads, skips, recorded failures and
            the path of the regenerated report.

        Raises:
            SpMirrorError: The first package-level error under the `Fail` policy,
                or any configuration, usage or catalog error.
        """
        start_time = time.time()
        state = self.store.load()
        settings = state.settings
        dispatcher = NotificationDispatcher(
            state.notifications, self.notifier, repo_name=self.store.repo_path.name
        )
        if settings.offline_cache_mode == OFFLINE_CACHE_ENABLE:
            self.catalog_resolver.cache_dir = self.store.cache_dir
            logger.debug(f"Offline cache mode: catalogs kept in {self.store.cache_dir}")

        logger.info(f"Starting sync of {self.store.repo_path}")
        result = SyncResult()
        self.store.flush_marks()

        try:
            result.selected = self._select(
                state.filters, settings, reference_url, result, dispatcher
            )
            for record in result.selected:
                self.store.write_mark(record.id)
                failure = self._sync_package(record, settings, result)
                if failure is not None:
                    self._apply_policy(
                        str(record.id), failure, settings, result, dispatcher
                    )
        except SpMirrorError as e:
            dispatcher.sync_failed(e)
            raise

        result.report_path = write_report(self.store.repo_path, settings.report_format)
        dispatcher.sync_completed(result)
        logger.info(
            f"Sync finished in {time.time() - start_time:.1f}s: "
            f"{len(result.selected)} selected, {len(result.downloaded)} downloaded, "
            f"{len(result.skipped)} already present, {len(result.failures)} failed"
        )
        return result

    def _select(
        self,
        filters: List[Filter],
        settings: RepositorySettings,
        reference_url: Optional[str],
        result: SyncResult,
        dispatcher: NotificationDispatcher,
    ) -> List[CatalogRecord]:
        groups = []
        for flt in normalize_filter_set(filters):
            os_spec = resolve_os_for_request(flt.os, self.current_os)
            logger.info(f"Resolving catalog for {flt.platform} {os_spec}")
            try:
                records = self.catalog_resolver.resolve(
                    flt.platform,
                    os_spec=os_spec,
                    bitness=self.config.bitness,
                    prefer_ltsc=flt.prefer_ltsc,
                    flt=flt,
                    reference_url=reference_url,
                    max_retries=settings.exclusive_lock_max_retries,
                )
            except DownloadError as e:
                self._apply_policy(
                    f"{flt.platform} {os_spec}", e, settings, result, dispatcher
                )
                continue
            finally:
                result.warnings.extend(self.catalog_resolver.pop_warnings())
            logger.info(f"{len(records)} packages selected for {flt.platform} {os_spec}")
            groups.append(records)
        return merge_records(*groups)

    def _sync_package(
        self, record: CatalogRecord, settings: RepositorySettings, result: SyncResult
    ) -> Optional[FetchResult]:
        """Fetch metadata, binary and release notes of one package; returns the failed fetch, if any."""
        repo = self.store.repo_path
        retries = settings.exclusive_lock_max_retries
        cva_path = repo / record.id.file_name(SOFTPAQ_METADATA_EXTENSION)
        exe_path = repo / record.id.file_name(SOFTPAQ_BINARY_EXTENSION)

        metadata_url = record.metadata_url or sibling_url(
            record.url, SOFTPAQ_METADATA_EXTENSION
        )
        cva_result = self.download_manager.fetch_metadata(
            metadata_url, cva_path, max_retries=retries
        )
        if not cva_result.success:
            return cva_result

        exe_result = self.download_manager.fetch(
            record.url,
            exe_path,
            overwrite=OVERWRITE_SKIP,
            max_retries=retries,
            keep_invalid=self.keep_invalid,
            metadata_path=cva_path,
        )
        if not exe_result.success:
            return exe_result
        result.warnings.extend(exe_result.warnings)
        if exe_result.was_skipped:
            result.skipped.append(record.id)
        else:
            result.downloaded.append(record.id)

        if record.release_notes_url:
            self._fetch_release_notes(record, repo, retries, result)
        return None

    def _fetch_release_notes(
        self, record: CatalogRecord, repo: Path, retries: int, result: SyncResult
    ) -> None:
        notes_path = repo / record.id.file_name(SOFTPAQ_RELEASE_NOTES_EXTENSION)
        notes = self.download_manager.fetch_metadata(
            record.release_notes_url or "", notes_path, max_retries=retries
        )
        if not notes.success:
            message = f"Release notes for {record.id} unavailable: {notes.error_message}"
            logger.warning(message)
            result.warnings.append(message)

    def _apply_policy(
        self,
        subject: str,
        failure: Union[FetchResult, DownloadError],
        settings: RepositorySettings,
        result: SyncResult,
        dispatcher: NotificationDispatcher,
    ) -> None:
        """
        Apply the not-found policy to a failed fetch or a download error.

        Raises:
            DownloadError: Under the `Fail` policy.
        """
        if isinstance(failure, FetchResult):
            message = failure.error_message or f"Failed to fetch {failure.url}"
        else:
            message = str(failure)

        if settings.on_remote_file_not_found == NOT_FOUND_FAIL:
            logger.error(f"{subject}: {message}")
            if isinstance(failure, FetchResult):
                failure.raise_for_error()
            raise failure

        logger.warning(f"Skipping {subject}: {message}")
        result.failures[subject] = message
        dispatcher.package_failure(subject, message)
