"""
Notification utilities for spmirror.

Recoverable-but-abnormal conditions during a sync (skipped packages, invalid
signatures, fallback host usage) are reported to the recipients configured in
the repository. Message transport is pluggable; the default notifier only logs.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from spmirror.log_utils import logger

if TYPE_CHECKING:
    from spmirror.engine.interfaces import NotificationConfig, SyncResult


class Notifier(ABC):
    """Delivers a formatted message to the recipients of a notification config."""

    @abstractmethod
    def send(self, subject: str, body: str, config: "NotificationConfig") -> None:
        """
        Send one message.

        Raises:
            Exception: Any transport failure; the dispatcher logs it.
        """


class LoggingNotifier(Notifier):
    def send(self, subject: str, body: str, config: "NotificationConfig") -> None:
        logger.info(
            f"Notification for {', '.join(config.addresses)} via {config.server}: {subject}"
        )
        logger.debug(body)


class NotificationDispatcher:
    """
    Formats sync notifications and hands them to a notifier.

    Nothing is sent unless a configuration with at least one recipient exists.
    Transport failures are logged and never interrupt the sync.
    """

    def __init__(
        self,
        config: Optional["NotificationConfig"],
        notifier: Optional[Notifier] = None,
        repo_name: str = "",
    ):
        self.config = config
        self.notifier = notifier or LoggingNotifier()
        self.repo_name = repo_name

    @property
    def enabled(self) -> bool:
        return bool(self.config and self.config.server and self.config.addresses)

    def notify(self, subject: str, lines: List[str]) -> bool:
        """
        Send a message if notifications are enabled.

        Returns:
            bool: True if the notifier accepted the message.
        """
        if not self.enabled or self.config is None:
            return False
        timestamp = datetime.now().astimezone().isoformat(timespec="seconds")
        body = "\n".join(lines + [timestamp])
        prefix = f"[{self.repo_name}] " if self.repo_name else ""
        try:
            self.notifier.send(f"{prefix}{subject}", body, self.config)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Error sending notification '{subject}': {e}")
            return False
        return True

    def package_failure(self, package: str, reason: str) -> bool:
        return self.notify(f"Package {package} skipped", [f"{package}: {reason}"])

    def sync_failed(self, error: Exception) -> bool:
        return self.notify("Repository sync failed", [str(error)])

    def sync_completed(self, result: "SyncResult") -> bool:
        """Report a completed sync that recorded failures or warnings; clean syncs send nothing."""
        if not result.failures and not result.warnings:
            return False
        lines = [
            f"Selected packages: {len(result.selected)}",
            f"Downloaded: {len(result.downloaded)}",
            f"Already present: {len(result.skipped)}",
        ]
        lines.extend(f"Failed {pkg}: {reason}" for pkg, reason in result.failures.items())
        lines.extend(f"Warning: {warning}" for warning in result.warnings)
        return self.notify("Repository sync completed with warnings", lines)
