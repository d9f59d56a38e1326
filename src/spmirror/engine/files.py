"""
File Operations for the spmirror Engine

This module provides file utilities shared by the engine: atomic writes,
path-safety checks, exclusive lock files for shared repositories, ZIP creation
and the subprocess-backed archive tools (CAB expansion, SoftPaq extraction,
disk-image capture).
"""

import json
import os
import platform
import shutil
import subprocess
import tempfile
import time
import zipfile
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from spmirror.constants import LOCK_SUFFIX, STALE_LOCK_SECONDS
from spmirror.exceptions import ExtractionError, PackagingError
from spmirror.log_utils import logger

from .interfaces import CabExpander, ImageCapturer, PackageExtractor, Pathish


def _is_within_base(real_base_dir: str, candidate: str) -> bool:
    """
    Determine whether the candidate path resides within the given base directory.

    Returns:
        True if the candidate path is inside `real_base_dir`, False otherwise.
    """
    try:
        return os.path.commonpath([real_base_dir, candidate]) == real_base_dir
    except ValueError:
        return False


def safe_join(base_dir: Pathish, relative: str) -> Path:
    """
    Resolve `relative` under `base_dir`, refusing paths that escape it.

    Backslash separators from Windows-authored metadata are accepted.

    Raises:
        ValueError: If the resolved path is outside `base_dir`.
    """
    real_base = os.path.realpath(str(base_dir))
    cleaned = relative.replace("\\", "/").strip().lstrip("/")
    candidate = os.path.realpath(os.path.join(real_base, cleaned))
    if not _is_within_base(real_base, candidate):
        raise ValueError(f"Unsafe path '{relative}' is outside base '{base_dir}'")
    return Path(candidate)


def safe_remove(path_to_remove: Pathish, base_dir: Pathish) -> bool:
    """
    Remove a file or directory tree, refusing anything that resolves outside `base_dir`.

    Returns:
        bool: `True` if the item was removed, `False` if skipped for safety or on OS errors.
    """
    path_str = str(path_to_remove)
    try:
        real_base_dir = os.path.realpath(str(base_dir))
        if os.path.islink(path_str):
            os.unlink(path_str)
            return True
        real_target = os.path.realpath(path_str)
        if not _is_within_base(real_base_dir, real_target):
            logger.warning(
                "Skipping removal of %s because it resolves outside the base directory",
                path_str,
            )
            return False
        if os.path.isdir(path_str):
            shutil.rmtree(path_str)
        elif os.path.exists(path_str):
            os.remove(path_str)
    except OSError as e:
        logger.error("Error removing %s: %s", path_str, e)
        return False
    return True


def remove_if_exists(path: Pathish) -> bool:
    """Delete a single file if present; returns False only on OS errors."""
    try:
        os.remove(str(path))
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.error(f"Error removing {path}: {e}")
        return False
    return True


def atomic_write(
    file_path: Pathish, writer_func: Callable[[Any], None], binary: bool = False
) -> None:
    """
    Write a file atomically by writing a sibling temporary file and replacing the target.

    Parameters:
        file_path: Destination path.
        writer_func: Callable receiving the open temporary file object.
        binary: Open the temporary file in binary mode.

    Raises:
        OSError: If the temporary file cannot be written or moved into place; the
            previous content of `file_path` is left untouched.
    """
    target = str(file_path)
    directory = os.path.dirname(target) or "."
    os.makedirs(directory, exist_ok=True)
    temp_fd, temp_path = tempfile.mkstemp(dir=directory, prefix="tmp-", suffix=".part")
    try:
        if binary:
            with os.fdopen(temp_fd, "wb") as temp_f:
                writer_func(temp_f)
        else:
            with os.fdopen(temp_fd, "w", encoding="utf-8", newline="") as temp_f:
                writer_func(temp_f)
        os.replace(temp_path, target)
    finally:
        if os.path.exists(temp_path):
            try:
                os.remove(temp_path)
            except OSError:
                pass


def atomic_write_json(file_path: Pathish, data: Any) -> None:
    """Atomically write `data` as pretty-printed JSON."""
    atomic_write(file_path, lambda f: json.dump(data, f, indent=2))


def atomic_write_bytes(file_path: Pathish, payload: bytes) -> None:
    atomic_write(file_path, lambda f: f.write(payload), binary=True)


class ExclusiveLock:
    """
    Cross-process lock on a target path, implemented as an `O_EXCL` sidecar file.

    Several independent invocations may share one repository directory; whoever
    creates `<target>.lock` first owns the target until `release()`. A lock file
    older than `stale_after` seconds is treated as abandoned by a killed process
    and broken.
    """

    def __init__(self, target_path: Pathish, stale_after: float = STALE_LOCK_SECONDS):
        self.lock_path = f"{target_path}{LOCK_SUFFIX}"
        self.stale_after = stale_after
        self._fd: Optional[int] = None

    def acquire(self) -> bool:
        """Try once to take the lock; returns False on contention."""
        self._break_if_stale()
        os.makedirs(os.path.dirname(self.lock_path) or ".", exist_ok=True)
        try:
            self._fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        except PermissionError:
            # Windows reports a lock file that is being deleted as access denied
            return False
        os.write(self._fd, str(os.getpid()).encode("ascii"))
        return True

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            os.close(self._fd)
        finally:
            self._fd = None
            remove_if_exists(self.lock_path)

    @property
    def held(self) -> bool:
        return self._fd is not None

    def _break_if_stale(self) -> None:
        try:
            age = time.time() - os.path.getmtime(self.lock_path)
        except OSError:
            return
        if age > self.stale_after:
            logger.warning(
                f"Breaking stale lock {self.lock_path} (age {int(age)}s)"
            )
            remove_if_exists(self.lock_path)

    def __enter__(self) -> "ExclusiveLock":
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


def create_zip(source_dir: Pathish, zip_path: Pathish) -> None:
    """
    Compress the contents of `source_dir` into `zip_path` (paths relative to the directory).

    Raises:
        PackagingError: If the archive cannot be written.
    """
    source = Path(source_dir)
    try:
        with zipfile.ZipFile(str(zip_path), "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for item in sorted(source.rglob("*")):
                if item.is_file():
                    zf.write(item, item.relative_to(source).as_posix())
    except (OSError, zipfile.BadZipFile) as e:
        raise PackagingError(
            f"Could not create ZIP archive {zip_path}",
            archive_path=str(zip_path),
            details=str(e),
        ) from e


def copy_tree(source: Pathish, destination: Pathish) -> None:
    """Copy a file or directory into `destination`, merging into existing directories."""
    src = Path(source)
    dst = Path(destination)
    if src.is_dir():
        shutil.copytree(src, dst, dirs_exist_ok=True)
    else:
        dst.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst / src.name)


def is_windows() -> bool:
    return platform.system() == "Windows"


def _run_tool(command: Sequence[str], error_cls: type, subject: str) -> None:
    executable = command[0]
    if shutil.which(executable) is None and not os.path.isfile(executable):
        raise error_cls(
            f"Required tool not found: {executable}", archive_path=subject
        )
    logger.debug(f"Running: {' '.join(command)}")
    try:
        result = subprocess.run(
            list(command), capture_output=True, text=True, check=False
        )
    except OSError as e:
        raise error_cls(
            f"Could not run {executable}", archive_path=subject, details=str(e)
        ) from e
    if result.returncode != 0:
        raise error_cls(
            f"{os.path.basename(executable)} exited with code {result.returncode}",
            archive_path=subject,
            details=(result.stderr or result.stdout or "").strip()[:500] or None,
        )


class SubprocessCabExpander(CabExpander):
    """Expands CAB archives with `expand.exe` on Windows and `cabextract` elsewhere."""

    def expand(self, archive_path: Pathish, dest_dir: Pathish) -> None:
        os.makedirs(str(dest_dir), exist_ok=True)
        if is_windows():
            command: List[str] = ["expand.exe", str(archive_path), "-F:*", str(dest_dir)]
        else:
            command = ["cabextract", "-q", "-d", str(dest_dir), str(archive_path)]
        _run_tool(command, ExtractionError, str(archive_path))


class SoftPaqExtractor(PackageExtractor):
    """
    Extracts SoftPaq payloads.

    On Windows the SoftPaq itself is run with `/s /e /f <dir>`; elsewhere `7z`
    unpacks the self-extracting archive.
    """

    def extract(self, package_path: Pathish, dest_dir: Pathish) -> None:
        os.makedirs(str(dest_dir), exist_ok=True)
        if is_windows():
            command: List[str] = [str(package_path), "/s", "/e", "/f", str(dest_dir)]
        else:
            command = ["7z", "x", "-y", f"-o{dest_dir}", str(package_path)]
        _run_tool(command, ExtractionError, str(package_path))


class WimCapturer(ImageCapturer):
    """Captures WIM images with DISM on Windows and `wimlib-imagex` elsewhere."""

    def capture(self, source_dir: Pathish, image_path: Pathish, name: str) -> None:
        if is_windows():
            command = [
                "dism.exe",
                "/Capture-Image",
                f"/ImageFile:{image_path}",
                f"/CaptureDir:{source_dir}",
                f"/Name:{name}",
                "/Compress:max",
            ]
        else:
            command = [
                "wimlib-imagex",
                "capture",
                str(source_dir),
                str(image_path),
                name,
                "--compress=LZX",
            ]
        _run_tool(command, PackagingError, str(image_path))
