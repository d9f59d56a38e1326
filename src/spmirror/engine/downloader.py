"""
Download Manager

Downloads SoftPaq binaries, metadata and catalog archives into a directory
that several independent processes may share. Each fetch takes an exclusive
lock on its target, retrying on contention according to an injected
RetryPolicy, and verifies executable signatures through an external
capability.
"""

import os
import time
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Optional

import requests

from spmirror.config import EngineConfig
from spmirror.constants import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_EXCLUSIVE_LOCK_MAX_RETRIES,
    ERROR_KIND_EXISTS,
    ERROR_KIND_LOCK_CONTENTION,
    ERROR_KIND_NETWORK,
    ERROR_KIND_NOT_FOUND,
    ERROR_KIND_SIGNATURE_INVALID,
    OVERWRITE_NO,
    OVERWRITE_POLICIES,
    OVERWRITE_SKIP,
    OVERWRITE_YES,
    SOFTPAQ_BINARY_EXTENSION,
)
from spmirror.exceptions import ConfigValidationError
from spmirror.log_utils import logger
from spmirror.utils import build_session, format_size

from .files import ExclusiveLock, remove_if_exists
from .interfaces import FetchResult, Pathish, SignatureVerifier
from .retry import RetryPolicy


def sibling_url(url: str, extension: str) -> str:
    """Replace the extension of a package URL, e.g. `.../sp123.exe` -> `.../sp123.cva`."""
    head, dot, tail = url.rpartition(".")
    if not dot or "/" in tail:
        return f"{url}{extension}"
    return f"{head}{extension}"


class DownloadManager:
    """
    Fetches remote files into a shared repository directory.

    Overwrite policies apply to package binaries only:
    - `No` (default) refuses when the target already exists.
    - `Yes` always downloads and replaces the target.
    - `Skip` keeps an existing target, unless signature checking is enabled
      and the existing file no longer verifies.

    Metadata files go through `fetch_metadata`, which always overwrites and
    never checks signatures.
    """

    def __init__(
        self,
        config: EngineConfig,
        session: Optional[requests.Session] = None,
        signature_verifier: Optional[SignatureVerifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.config = config
        self.session = session or build_session(
            config.connect_retries, config.backoff_factor
        )
        self.signature_verifier = signature_verifier
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=DEFAULT_EXCLUSIVE_LOCK_MAX_RETRIES,
            delay=config.lock_retry_delay,
        )

    def close(self) -> None:
        self.session.close()

    def fetch(
        self,
        url: str,
        target_path: Pathish,
        overwrite: str = OVERWRITE_NO,
        max_retries: Optional[int] = None,
        skip_signature_check: bool = False,
        keep_invalid: bool = False,
        metadata_path: Optional[Pathish] = None,
    ) -> FetchResult:
        """
        Download `url` to `target_path` under an exclusive lock.

        Parameters:
            url: Remote location of the file.
            target_path: Final path of the file.
            overwrite: One of `No`, `Yes`, `Skip`.
            max_retries: Lock-contention retries; defaults to the injected policy.
            skip_signature_check: Do not verify the signature of executables.
            keep_invalid: Keep an executable that fails verification and report a
                warning instead of an error.
            metadata_path: Metadata file paired with the binary; deleted together
                with the binary when the signature is invalid.

        Returns:
            FetchResult: `error_kind` is set on refusal or failure; nothing is raised
            for expected conditions.
        """
        if overwrite not in OVERWRITE_POLICIES:
            raise ConfigValidationError(
                f"Invalid overwrite policy: {overwrite}",
                details=f"Allowed values: {', '.join(OVERWRITE_POLICIES)}",
            )

        target = Path(target_path)
        check_signature = not skip_signature_check and self._is_executable(target)

        if target.exists():
            if overwrite == OVERWRITE_NO:
                return FetchResult(
                    success=False,
                    url=url,
                    file_path=target,
                    error_kind=ERROR_KIND_EXISTS,
                    error_message=f"{target.name} already exists",
                )
            if overwrite == OVERWRITE_SKIP:
                if not check_signature or self.verify_signature(target) is not False:
                    logger.debug(f"Skipped: {target.name} (already present)")
                    return FetchResult(
                        success=True,
                        url=url,
                        file_path=target,
                        was_skipped=True,
                        file_size=target.stat().st_size,
                    )
                logger.warning(
                    f"Existing {target.name} failed signature verification; downloading again"
                )

        return self._fetch_locked(
            url,
            target,
            max_retries=max_retries,
            check_signature=check_signature,
            keep_invalid=keep_invalid,
            metadata_path=metadata_path,
        )

    def fetch_metadata(
        self, url: str, target_path: Pathish, max_retries: Optional[int] = None
    ) -> FetchResult:
        """Download a metadata file, always replacing any local copy, without signature checks."""
        return self._fetch_locked(
            url,
            Path(target_path),
            max_retries=max_retries,
            check_signature=False,
            keep_invalid=False,
            metadata_path=None,
        )

    def verify_signature(self, path: Pathish) -> Optional[bool]:
        """
        Ask the signature capability about `path`.

        Returns:
            True or False from the verifier, or None when no verifier is configured.
        """
        if self.signature_verifier is None:
            logger.debug(f"No signature verifier configured; not checking {path}")
            return None
        return bool(self.signature_verifier(str(path)))

    def remote_exists(self, url: str) -> bool:
        """Cheap existence probe used by the latest-supported-OS search."""
        try:
            response = self.session.head(
                url, timeout=self.config.request_timeout, allow_redirects=True
            )
        except requests.exceptions.RequestException as e:
            logger.debug(f"HEAD {url} failed: {e}")
            return False
        try:
            return response.status_code < 400
        finally:
            response.close()

    def remote_last_modified(self, url: str) -> Optional[float]:
        """
        Return the remote Last-Modified time as a POSIX timestamp.

        Returns None when the server does not report it or the request fails; the
        caller then treats the remote file as changed.
        """
        try:
            response = self.session.head(
                url, timeout=self.config.request_timeout, allow_redirects=True
            )
        except requests.exceptions.RequestException as e:
            logger.debug(f"HEAD {url} failed: {e}")
            return None
        try:
            if response.status_code >= 400:
                return None
            header = response.headers.get("Last-Modified")
            if not header:
                return None
            try:
                return parsedate_to_datetime(header).timestamp()
            except (TypeError, ValueError):
                logger.debug(f"Unparsable Last-Modified header for {url}: {header}")
                return None
        finally:
            response.close()

    def _policy(self, max_retries: Optional[int]) -> RetryPolicy:
        if max_retries is None:
            return self.retry_policy
        return self.retry_policy.with_max_retries(max_retries)

    def _fetch_locked(
        self,
        url: str,
        target: Path,
        max_retries: Optional[int],
        check_signature: bool,
        keep_invalid: bool,
        metadata_path: Optional[Pathish],
    ) -> FetchResult:
        policy = self._policy(max_retries)
        lock = ExclusiveLock(target)
        retries_used = 0

        for attempt in policy.attempts():
            retries_used = attempt
            if not lock.acquire():
                self._log_contention(target, attempt, policy)
                continue
            try:
                result = self._download(url, target)
            except PermissionError as e:
                # The target is held open by another process
                logger.debug(f"Could not replace {target}: {e}")
                self._log_contention(target, attempt, policy)
                continue
            finally:
                lock.release()

            result.retry_count = attempt
            if result.success and check_signature:
                result = self._check_downloaded_signature(
                    result, target, keep_invalid, metadata_path
                )
            return result

        return FetchResult(
            success=False,
            url=url,
            file_path=target,
            error_kind=ERROR_KIND_LOCK_CONTENTION,
            error_message=(
                f"Could not obtain exclusive access to {target.name} after "
                f"{retries_used} retries"
            ),
            retry_count=retries_used,
        )

    def _log_contention(self, target: Path, attempt: int, policy: RetryPolicy) -> None:
        if attempt < policy.max_retries:
            logger.warning(
                f"{target.name} is in use by another process; retrying in "
                f"{policy.delay_for(attempt + 1):.0f}s ({attempt + 1}/{policy.max_retries})"
            )
        else:
            logger.error(f"{target.name} is still in use; giving up")

    def _download(self, url: str, target: Path) -> FetchResult:
        """
        Stream `url` into a temporary sibling of `target` and move it into place.

        Raises:
            PermissionError: If the final replace is refused because the target is in use.
        """
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_path = f"{target}.tmp.{os.getpid()}.{int(time.time() * 1000)}"
        response = None
        try:
            logger.debug(f"Downloading {url} to temp path: {temp_path}")
            start_time = time.time()
            response = self.session.get(
                url, stream=True, timeout=self.config.request_timeout
            )
            if response.status_code == 404:
                return FetchResult(
                    success=False,
                    url=url,
                    file_path=target,
                    error_kind=ERROR_KIND_NOT_FOUND,
                    error_message=f"Remote file not found: {url}",
                    http_status_code=404,
                )
            response.raise_for_status()

            downloaded_bytes = 0
            with open(temp_path, "wb") as file:
                for chunk in response.iter_content(chunk_size=DEFAULT_CHUNK_SIZE):
                    if chunk:
                        file.write(chunk)
                        downloaded_bytes += len(chunk)

            os.replace(temp_path, target)
            logger.debug(
                "Download elapsed time: %.2fs for %s", time.time() - start_time, url
            )
            logger.info(f"Downloaded: {target.name} ({format_size(downloaded_bytes)})")
            return FetchResult(
                success=True, url=url, file_path=target, file_size=downloaded_bytes
            )
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            logger.error(f"HTTP error downloading {url}: {e}")
            return FetchResult(
                success=False,
                url=url,
                file_path=target,
                error_kind=ERROR_KIND_NETWORK,
                error_message=str(e),
                http_status_code=status,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Network error downloading {url}: {e}")
            return FetchResult(
                success=False,
                url=url,
                file_path=target,
                error_kind=ERROR_KIND_NETWORK,
                error_message=str(e),
            )
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError as e_rm:
                    logger.warning(f"Error removing temporary file {temp_path}: {e_rm}")
            if response is not None:
                response.close()

    def _check_downloaded_signature(
        self,
        result: FetchResult,
        target: Path,
        keep_invalid: bool,
        metadata_path: Optional[Pathish],
    ) -> FetchResult:
        valid = self.verify_signature(target)
        result.signature_valid = valid
        if valid is not False:
            return result

        if keep_invalid:
            message = f"Signature of {target.name} is not valid; keeping file as requested"
            logger.warning(message)
            result.warnings.append(message)
            return result

        logger.error(f"Signature of {target.name} is not valid; deleting it")
        remove_if_exists(target)
        if metadata_path is not None:
            remove_if_exists(metadata_path)
        return FetchResult(
            success=False,
            url=result.url,
            file_path=target,
            error_kind=ERROR_KIND_SIGNATURE_INVALID,
            error_message=f"Signature verification failed for {target.name}",
            retry_count=result.retry_count,
            signature_valid=False,
        )

    @staticmethod
    def _is_executable(target: Path) -> bool:
        return target.suffix.lower() == SOFTPAQ_BINARY_EXTENSION
