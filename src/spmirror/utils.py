# src/spmirror/utils.py
import getpass
import importlib.metadata
import platform
import sys
from datetime import datetime, timezone
from typing import Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry  # type: ignore

from spmirror.constants import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_CONNECT_RETRIES,
    RETRY_STATUS_FORCELIST,
    WINDOWS_BUILD_MAP,
)
from spmirror.log_utils import logger

# Cache for the User-Agent string to avoid repeated metadata lookups
_USER_AGENT_CACHE = None


def get_user_agent() -> str:
    """
    Get the User-Agent string used for HTTP requests.

    Returns:
        The string `spmirror/{version}`, where `{version}` is the installed package version or `unknown` if the version cannot be determined.
    """
    global _USER_AGENT_CACHE

    if _USER_AGENT_CACHE is None:
        try:
            app_version = importlib.metadata.version("spmirror")
        except importlib.metadata.PackageNotFoundError:
            app_version = "unknown"

        _USER_AGENT_CACHE = f"spmirror/{app_version}"

    return _USER_AGENT_CACHE


def build_session(
    connect_retries: int = DEFAULT_CONNECT_RETRIES,
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
) -> requests.Session:
    """
    Create a requests Session with transport-level retries mounted for HTTP(S).

    Status-based retries are applied by urllib3 for transient server errors; a 404
    is never retried so that not-found surfaces immediately to the caller.
    """
    session = requests.Session()
    retry_strategy: Retry = Retry(
        total=connect_retries,
        connect=connect_retries,
        read=connect_retries,
        status=connect_retries,
        backoff_factor=backoff_factor,
        status_forcelist=list(RETRY_STATUS_FORCELIST),
        allowed_methods=frozenset({"GET", "HEAD"}),
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers.update({"User-Agent": get_user_agent()})
    return session


def current_user() -> str:
    """Return the login name used for audit stamps, or `unknown`."""
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def utc_timestamp() -> str:
    """ISO 8601 timestamp in UTC with second precision."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def detect_running_os() -> Optional[Tuple[str, str]]:
    """
    Detect the running Windows release as an `(os, version)` pair.

    Returns None on non-Windows hosts or on Windows builds that are not in the
    known build table.
    """
    if platform.system() != "Windows":
        return None
    try:
        build = sys.getwindowsversion().build  # type: ignore[attr-defined]
    except AttributeError:
        return None
    detected = WINDOWS_BUILD_MAP.get(build)
    if detected is None:
        logger.debug(f"Unrecognized Windows build number: {build}")
    return detected


def format_size(num_bytes: int) -> str:
    size_mb = num_bytes / (1024 * 1024)
    if size_mb >= 1.0:
        return f"{size_mb:.1f} MB"
    return f"{num_bytes} bytes"
