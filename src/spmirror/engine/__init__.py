"""
spmirror Engine - SoftPaq Mirroring and Driver Pack Assembly

This package resolves HP reference catalogs, selects packages with declarative
filters, mirrors them into a repository and assembles driver packs.

Core Components:
- interfaces: Value types and host capabilities
- catalog: Reference catalog resolution
- filters: Filter normalization and record selection
- downloader: Locked, retried package downloads
- state: Repository state store
- sync: Repository sync coordination
- report: Repository report generation
- driverpack: Driver pack assembly
- cva: Package metadata parsing
- files: File operations and external archive tools
- retry: Retry policies
"""

from .catalog import CatalogResolver, parse_catalog
from .cva import CvaMetadata, read_cva
from .downloader import DownloadManager
from .driverpack import DriverPackBuilder
from .files import SoftPaqExtractor, SubprocessCabExpander, WimCapturer
from .filters import select_records
from .interfaces import (
    BuildTarget,
    CabExpander,
    CatalogRecord,
    FetchResult,
    Filter,
    ImageCapturer,
    Manifest,
    OsSpec,
    PackageExtractor,
    RepositorySettings,
    RepositoryState,
    SoftPaqId,
    SyncResult,
)
from .report import write_report
from .retry import RetryPolicy
from .state import RepositoryStore
from .sync import RepositorySync

__all__ = [
    # Interfaces
    "SoftPaqId",
    "OsSpec",
    "Filter",
    "CatalogRecord",
    "RepositorySettings",
    "RepositoryState",
    "FetchResult",
    "SyncResult",
    "Manifest",
    "BuildTarget",
    # Host capabilities
    "CabExpander",
    "PackageExtractor",
    "ImageCapturer",
    "SubprocessCabExpander",
    "SoftPaqExtractor",
    "WimCapturer",
    # Core components
    "CatalogResolver",
    "DownloadManager",
    "RetryPolicy",
    "RepositoryStore",
    "DriverPackBuilder",
    "CvaMetadata",
    # Orchestration
    "RepositorySync",
    # Helpers
    "parse_catalog",
    "read_cva",
    "select_records",
    "write_report",
]
