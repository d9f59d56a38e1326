"""
Custom exceptions for spmirror.

This module defines domain-specific exceptions that provide better error
categorization and more informative error messages for users and developers.
"""


class SpMirrorError(Exception):
    """
    Base exception for all spmirror errors.

    All custom exceptions in spmirror should inherit from this class
    to allow for easy catching of all application-specific errors.
    """

    def __init__(self, message: str, details: str | None = None) -> None:
        """
        Initialize the exception.

        Args:
            message: The primary error message.
            details: Optional additional context about the error.
        """
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(SpMirrorError):
    """
    Exception raised when configuration is invalid or missing.

    This includes:
    - Missing required configuration keys
    - Invalid configuration values
    - Configuration file parsing errors

    Configuration errors are always fatal and never policy-controlled.
    """

    pass


class ConfigFileError(ConfigurationError):
    """Exception raised when configuration file cannot be read or written."""

    pass


class ConfigValidationError(ConfigurationError):
    """Exception raised when configuration validation fails."""

    pass


class RepositoryStateError(ConfigurationError):
    """Exception raised when the repository state file is missing or malformed."""

    pass


class UsageError(ConfigurationError):
    """Exception raised for conflicting or incomplete parameter combinations."""

    pass


# =============================================================================
# Download Errors
# =============================================================================


class DownloadError(SpMirrorError):
    """
    Base exception for download-related errors.

    Attributes:
        url: The URL that was being downloaded when the error occurred.
        retry_count: Number of retry attempts made before failure.
        is_retryable: Whether the error could be retried.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        retry_count: int = 0,
        is_retryable: bool = False,
        details: str | None = None,
    ) -> None:
        """
        Initialize the download exception.

        Args:
            message: The primary error message.
            url: The URL that was being downloaded.
            retry_count: Number of retry attempts made.
            is_retryable: Whether this error could be retried.
            details: Optional additional context.
        """
        super().__init__(message, details)
        self.url = url
        self.retry_count = retry_count
        self.is_retryable = is_retryable


class NetworkError(DownloadError):
    """
    Exception raised for network-related download failures.

    This includes:
    - Connection timeouts
    - DNS resolution failures
    - Connection refused errors
    - SSL/TLS errors
    """

    pass


class HTTPError(DownloadError):
    """
    Exception raised for HTTP-related download failures.

    Attributes:
        status_code: The HTTP status code returned by the server.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        url: str | None = None,
        retry_count: int = 0,
        is_retryable: bool = False,
        details: str | None = None,
    ) -> None:
        super().__init__(message, url, retry_count, is_retryable, details)
        self.status_code = status_code


class RemoteNotFoundError(HTTPError):
    """
    Exception raised when a remote catalog, package, or metadata file is absent.

    Whether this aborts a sync is decided by the repository's
    OnRemoteFileNotFound setting.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, status_code=404, url=url, details=details)


class LockContentionError(DownloadError):
    """Exception raised when the exclusive lock on a target could not be acquired."""

    def __init__(
        self,
        message: str,
        path: str | None = None,
        url: str | None = None,
        retry_count: int = 0,
    ) -> None:
        super().__init__(
            message,
            url=url,
            retry_count=retry_count,
            is_retryable=True,
            details=f"Target: {path}" if path else None,
        )
        self.path = path


class SignatureInvalidError(DownloadError):
    """Exception raised when a downloaded binary fails signature verification."""

    def __init__(
        self,
        message: str,
        path: str | None = None,
        url: str | None = None,
    ) -> None:
        super().__init__(message, url=url, details=f"File: {path}" if path else None)
        self.path = path


# =============================================================================
# Catalog Errors
# =============================================================================


class CatalogError(SpMirrorError):
    """Base exception for reference catalog resolution failures."""

    pass


class MalformedCatalogError(CatalogError):
    """Exception raised when an expanded catalog is not well-formed XML."""

    def __init__(
        self,
        message: str,
        path: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.path = path


class UnsupportedCombinationError(CatalogError):
    """
    Exception raised when an OS/version/bitness combination is not supported.

    Attributes:
        os_name: The requested operating system.
        os_version: The requested operating system version.
        bitness: The requested bitness.
    """

    def __init__(
        self,
        os_name: str | None,
        os_version: str | None,
        bitness: int | None,
    ) -> None:
        super().__init__(
            "Unsupported OS combination",
            details=f"os={os_name}, version={os_version}, bitness={bitness}",
        )
        self.os_name = os_name
        self.os_version = os_version
        self.bitness = bitness


# =============================================================================
# Archive Errors
# =============================================================================


class ArchiveError(SpMirrorError):
    """
    Exception raised for archive-related errors.

    This includes:
    - CAB expansion failures
    - SoftPaq extraction failures
    - ZIP or WIM packaging failures
    """

    def __init__(
        self,
        message: str,
        archive_path: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.archive_path = archive_path


class ExtractionError(ArchiveError):
    """Exception raised when archive extraction fails."""

    pass


class PackagingError(ArchiveError):
    """Exception raised when a driver pack cannot be compressed or captured."""

    pass
