"""
Repository State Store

Persists the declarative state of a repository directory (filters, settings,
notification configuration and audit stamps) and manages the mark directory
used to find orphaned package files after a sync.

Layout of a repository:

    <repo>/sp<id>.exe|.cva|.html      mirrored packages
    <repo>/.repository/repository.json
    <repo>/.repository/mark/sp<id>.mark
    <repo>/.repository/cache/          catalogs, when offline cache mode is on
    <repo>/.repository/activity.log
"""

import json
import re
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from spmirror.constants import (
    MARK_EXTENSION,
    NOT_FOUND_POLICIES,
    OFFLINE_CACHE_MODES,
    REPORT_FORMATS,
    REPOSITORY_ACTIVITY_LOG,
    REPOSITORY_CACHE_DIR,
    REPOSITORY_MARK_DIR,
    REPOSITORY_META_DIR,
    REPOSITORY_STATE_FILE,
    SETTING_EXCLUSIVE_LOCK_MAX_RETRIES,
    SETTING_OFFLINE_CACHE_MODE,
    SETTING_ON_REMOTE_FILE_NOT_FOUND,
    SETTING_REPOSITORY_REPORT,
    SOFTPAQ_FILE_PATTERN,
)
from spmirror.exceptions import (
    ConfigValidationError,
    RepositoryStateError,
    UsageError,
)
from spmirror.log_utils import logger
from spmirror.utils import current_user, utc_timestamp

from .files import atomic_write_json, remove_if_exists, safe_remove
from .filters import CurrentOsProvider, filter_matches_query
from .interfaces import (
    ALL,
    Filter,
    NotificationConfig,
    OsSpec,
    Pathish,
    RepositorySettings,
    RepositoryState,
    Selection,
    SoftPaqId,
    normalize_platform,
)

_PACKAGE_FILE_RX = re.compile(SOFTPAQ_FILE_PATTERN, re.IGNORECASE)
_EMAIL_RX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ConfirmCallback = Callable[[List[Filter]], bool]


def package_id_from_filename(name: str) -> Optional[SoftPaqId]:
    """Derive the package id from `sp<id>.exe|cva|html`; None for any other file."""
    match = _PACKAGE_FILE_RX.match(name)
    if not match:
        return None
    return SoftPaqId(int(match.group(1)))


class RepositoryStore:
    """File-backed state of one repository directory."""

    def __init__(self, repo_path: Pathish, current_os: Optional[CurrentOsProvider] = None):
        """
        Parameters:
            repo_path: Root of the repository.
            current_os: Provider of the running OS, used to complete filters that
                name an OS without a version.
        """
        self.repo_path = Path(repo_path)
        self.meta_dir = self.repo_path / REPOSITORY_META_DIR
        self.state_file = self.meta_dir / REPOSITORY_STATE_FILE
        self.mark_dir = self.meta_dir / REPOSITORY_MARK_DIR
        self.cache_dir = self.meta_dir / REPOSITORY_CACHE_DIR
        self.activity_log = self.meta_dir / REPOSITORY_ACTIVITY_LOG
        self.current_os = current_os

    @property
    def is_initialized(self) -> bool:
        return self.state_file.is_file()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def initialize(self) -> RepositoryState:
        """
        Create the repository layout and an empty state document.

        Initializing an existing repository leaves its state untouched and
        returns it.
        """
        if self.is_initialized:
            logger.info(f"Repository already initialized at {self.repo_path}")
            return self.load()

        self.repo_path.mkdir(parents=True, exist_ok=True)
        self.mark_dir.mkdir(parents=True, exist_ok=True)
        now = utc_timestamp()
        user = current_user()
        state = RepositoryState(created_at=now, created_by=user)
        self.save(state)
        logger.info(f"Repository initialized at {self.repo_path}")
        return state

    def load(self) -> RepositoryState:
        """
        Read the state document, defaulting settings that older files lack.

        Raises:
            RepositoryStateError: If the repository is not initialized or the
                document cannot be read or understood.
        """
        if not self.is_initialized:
            raise RepositoryStateError(
                f"Not a repository: {self.repo_path}",
                details="Run 'init' in this directory first",
            )
        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RepositoryStateError(
                f"Could not read repository state {self.state_file}", details=str(e)
            ) from e

        if not isinstance(data, dict):
            raise RepositoryStateError(
                f"Repository state {self.state_file} must be a JSON object"
            )
        try:
            return RepositoryState.from_json(data)
        except (ConfigValidationError, TypeError, ValueError) as e:
            raise RepositoryStateError(
                f"Repository state {self.state_file} is invalid", details=str(e)
            ) from e

    def save(self, state: RepositoryState) -> None:
        """
        Stamp and atomically write the state document.

        Raises:
            RepositoryStateError: If the document cannot be written; the previous
                document is left intact.
        """
        state.last_modified_at = utc_timestamp()
        state.last_modified_by = current_user()
        if state.created_at is None:
            state.created_at = state.last_modified_at
            state.created_by = state.last_modified_by
        try:
            atomic_write_json(self.state_file, state.to_json())
        except OSError as e:
            raise RepositoryStateError(
                f"Could not write repository state {self.state_file}", details=str(e)
            ) from e

    # ------------------------------------------------------------------
    # Marks and orphan cleanup
    # ------------------------------------------------------------------

    def _mark_path(self, softpaq_id: SoftPaqId) -> Path:
        return self.mark_dir / f"{softpaq_id}{MARK_EXTENSION}"

    def flush_marks(self) -> int:
        """Delete every mark file; returns how many were removed."""
        if not self.mark_dir.is_dir():
            self.mark_dir.mkdir(parents=True, exist_ok=True)
            return 0
        removed = 0
        for entry in self.mark_dir.iterdir():
            if entry.is_file() and entry.suffix == MARK_EXTENSION:
                if remove_if_exists(entry):
                    removed += 1
        logger.debug(f"Flushed {removed} mark files")
        return removed

    def write_mark(self, softpaq_id: SoftPaqId) -> None:
        self.mark_dir.mkdir(parents=True, exist_ok=True)
        self._mark_path(softpaq_id).touch(exist_ok=True)

    def marked_ids(self) -> Set[SoftPaqId]:
        if not self.mark_dir.is_dir():
            return set()
        ids = set()
        for entry in self.mark_dir.iterdir():
            if entry.suffix != MARK_EXTENSION:
                continue
            try:
                ids.add(SoftPaqId.parse(entry.stem))
            except ConfigValidationError:
                logger.debug(f"Ignoring unexpected mark file {entry.name}")
        return ids

    def local_package_files(self) -> List[Path]:
        """Package files directly under the repository root, sorted by name."""
        if not self.repo_path.is_dir():
            return []
        return sorted(
            entry
            for entry in self.repo_path.iterdir()
            if entry.is_file() and package_id_from_filename(entry.name) is not None
        )

    def cleanup(self, local_files: Optional[Iterable[Pathish]] = None) -> int:
        """
        Delete package files whose id has no mark file.

        Parameters:
            local_files: Files to consider; defaults to every package file in the
                repository root. Files that do not follow the package naming
                convention are never touched.

        Returns:
            int: Number of files deleted.
        """
        files = (
            [Path(p) for p in local_files]
            if local_files is not None
            else self.local_package_files()
        )
        marked = self.marked_ids()
        deleted = 0
        for path in files:
            softpaq_id = package_id_from_filename(path.name)
            if softpaq_id is None or softpaq_id in marked:
                continue
            if safe_remove(path, self.repo_path):
                logger.info(f"Removed orphaned file: {path.name}")
                deleted += 1
        logger.info(f"Cleanup removed {deleted} orphaned files")
        return deleted

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def _complete_os(self, os_spec: OsSpec) -> OsSpec:
        # A bare OS name is stored with the running OS's version
        if os_spec.is_wildcard or os_spec.version is not None:
            return os_spec
        running = self.current_os() if self.current_os is not None else None
        if running is None or running.name != os_spec.name:
            raise UsageError(
                f"An OS version is required for '{os_spec.name}'",
                details="Use '<os>:<version>' or '<os>:*'",
            )
        return OsSpec(os_spec.name, running.version)

    def add_filter(self, flt: Filter) -> bool:
        """
        Add a filter unless an identical one is already stored.

        Returns:
            bool: False when the filter was a duplicate and nothing changed.
        """
        flt = flt.replace(os=self._complete_os(flt.os))
        state = self.load()
        if flt in state.filters:
            logger.info(f"Filter already exists: {flt.describe()}")
            return False
        state.filters.append(flt)
        self.save(state)
        logger.info(f"Added filter: {flt.describe()}")
        return True

    def find_filters(
        self,
        platform: str,
        os_query: OsSpec = OsSpec("*"),
        categories: Selection = ALL,
        release_types: Selection = ALL,
        characteristics: Selection = ALL,
        prefer_ltsc: Optional[bool] = None,
    ) -> List[Filter]:
        """Stored filters matching a permissive search; "*" matches anything on file."""
        platform = normalize_platform(platform)
        return [
            flt
            for flt in self.load().filters
            if filter_matches_query(
                flt,
                platform,
                os_query,
                categories,
                release_types,
                characteristics,
                prefer_ltsc,
            )
        ]

    def remove_filters(
        self,
        platform: str,
        os_query: OsSpec = OsSpec("*"),
        categories: Selection = ALL,
        release_types: Selection = ALL,
        characteristics: Selection = ALL,
        prefer_ltsc: Optional[bool] = None,
        confirm: Optional[ConfirmCallback] = None,
    ) -> List[Filter]:
        """
        Remove stored filters with a match-then-confirm-then-delete protocol.

        Parameters:
            confirm: Called with the matching filters; deletion proceeds only when
                it returns True. None deletes without asking.

        Returns:
            The filters that were removed; empty when nothing matched or the
            removal was declined.
        """
        matches = self.find_filters(
            platform, os_query, categories, release_types, characteristics, prefer_ltsc
        )
        if not matches:
            logger.info("No filters matched; nothing removed")
            return []
        if confirm is not None and not confirm(matches):
            logger.info("Filter removal cancelled")
            return []

        state = self.load()
        state.filters = [f for f in state.filters if f not in matches]
        self.save(state)
        for flt in matches:
            logger.info(f"Removed filter: {flt.describe()}")
        return matches

    # ------------------------------------------------------------------
    # Settings and notifications
    # ------------------------------------------------------------------

    def set_setting(self, name: str, value: Any) -> RepositorySettings:
        """
        Change one repository setting.

        Raises:
            ConfigValidationError: On an unknown setting name or an invalid value.
        """
        state = self.load()
        settings = state.settings
        key = name.strip().lower()
        if key == SETTING_ON_REMOTE_FILE_NOT_FOUND.lower():
            settings.on_remote_file_not_found = _canonical(
                SETTING_ON_REMOTE_FILE_NOT_FOUND, value, NOT_FOUND_POLICIES
            )
        elif key == SETTING_OFFLINE_CACHE_MODE.lower():
            settings.offline_cache_mode = _canonical(
                SETTING_OFFLINE_CACHE_MODE, value, OFFLINE_CACHE_MODES
            )
        elif key == SETTING_REPOSITORY_REPORT.lower():
            settings.report_format = _canonical(
                SETTING_REPOSITORY_REPORT, value, REPORT_FORMATS
            )
        elif key == SETTING_EXCLUSIVE_LOCK_MAX_RETRIES.lower():
            try:
                settings.exclusive_lock_max_retries = int(value)
            except (TypeError, ValueError) as e:
                raise ConfigValidationError(
                    f"{SETTING_EXCLUSIVE_LOCK_MAX_RETRIES} must be an integer",
                    details=repr(value),
                ) from e
        else:
            raise ConfigValidationError(
                f"Unknown repository setting: {name}",
                details=", ".join(
                    (
                        SETTING_ON_REMOTE_FILE_NOT_FOUND,
                        SETTING_OFFLINE_CACHE_MODE,
                        SETTING_REPOSITORY_REPORT,
                        SETTING_EXCLUSIVE_LOCK_MAX_RETRIES,
                    )
                ),
            )
        settings.validate()
        self.save(state)
        logger.info(f"Setting {name} updated to {value}")
        return settings

    def set_notification_server(
        self,
        server: str,
        port: int = 25,
        tls: bool = False,
        user_name: Optional[str] = None,
        password: Optional[str] = None,
        from_address: Optional[str] = None,
        from_name: Optional[str] = None,
    ) -> NotificationConfig:
        """
        Configure the mail server, keeping any recipients already on file.

        The password is stored as given; protecting it at rest is the caller's job.
        """
        if not server:
            raise ConfigValidationError("A notification server is required")
        if not 0 < int(port) < 65536:
            raise ConfigValidationError("Invalid notification port", details=str(port))
        if from_address and not _EMAIL_RX.match(from_address):
            raise ConfigValidationError("Invalid sender address", details=from_address)

        state = self.load()
        existing = state.notifications
        state.notifications = NotificationConfig(
            server=server,
            port=int(port),
            tls=bool(tls),
            user_name=user_name,
            password=password,
            from_address=from_address or "",
            from_name=from_name or "",
            addresses=list(existing.addresses) if existing else [],
        )
        self.save(state)
        logger.info(f"Notification server set to {server}:{port}")
        return state.notifications

    def clear_notifications(self) -> None:
        state = self.load()
        state.notifications = None
        self.save(state)
        logger.info("Notification configuration cleared")

    def add_recipients(self, addresses: Iterable[str]) -> List[str]:
        """
        Add e-mail recipients; duplicates are ignored.

        Raises:
            UsageError: If no notification server is configured yet.
            ConfigValidationError: If an address is malformed.
        """
        state = self.load()
        config = self._require_notifications(state)
        for address in addresses:
            address = address.strip()
            if not _EMAIL_RX.match(address):
                raise ConfigValidationError("Invalid e-mail address", details=address)
            if address.lower() not in (a.lower() for a in config.addresses):
                config.addresses.append(address)
        self.save(state)
        return list(config.addresses)

    def remove_recipients(self, addresses: Iterable[str]) -> List[str]:
        state = self.load()
        config = self._require_notifications(state)
        unwanted = {a.strip().lower() for a in addresses}
        config.addresses = [a for a in config.addresses if a.lower() not in unwanted]
        self.save(state)
        return list(config.addresses)

    def recipients(self) -> List[str]:
        notifications = self.load().notifications
        return list(notifications.addresses) if notifications else []

    @staticmethod
    def _require_notifications(state: RepositoryState) -> NotificationConfig:
        if state.notifications is None:
            raise UsageError(
                "Notifications are not configured",
                details="Configure a notification server first",
            )
        return state.notifications

    def info(self) -> Dict[str, Any]:
        """Summary of the repository state with the notification password omitted."""
        state = self.load()
        return {
            "Path": str(self.repo_path),
            "Filters": [f.to_json() for f in state.filters],
            "settings": state.settings.to_json(),
            "Notifications": state.notifications.to_json(include_password=False)
            if state.notifications
            else None,
            "DateCreated": state.created_at,
            "CreatedBy": state.created_by,
            "DateLastModified": state.last_modified_at,
            "ModifiedBy": state.last_modified_by,
            "Packages": len(self.local_package_files()),
        }


def _canonical(name: str, value: Any, allowed: Tuple[str, ...]) -> str:
    """Match `value` case-insensitively against the allowed values of a setting."""
    for candidate in allowed:
        if candidate.lower() == str(value).strip().lower():
            return candidate
    raise ConfigValidationError(
        f"Invalid value for {name}: {value}",
        details=f"Allowed values: {', '.join(allowed)}",
    )
