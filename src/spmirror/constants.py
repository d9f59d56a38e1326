"""
Constants and configuration values for spmirror.

This module contains all hardcoded values, URLs, timeouts, and other constants
used throughout the application.
"""

# Reference catalog hosts
DEFAULT_REFERENCE_URL = "https://hpia.hpcloud.hp.com/ref"
FALLBACK_REFERENCE_URL = "https://ftp.hp.com/pub/caps-softpaq/cmit/imagepal/ref"
CATALOG_EXTENSION = ".cab"
CATALOG_XML_EXTENSION = ".xml"
LTSC_CATALOG_SUFFIX = ".e"

# Network timeouts and delays (in seconds)
DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_CONNECT_RETRIES = 5
DEFAULT_BACKOFF_FACTOR = 0.3
DEFAULT_CHUNK_SIZE = 8192
RETRY_STATUS_FORCELIST = (408, 429, 500, 502, 503, 504)

# Exclusive-lock retry settings
DEFAULT_LOCK_RETRY_DELAY = 30.0
DEFAULT_EXCLUSIVE_LOCK_MAX_RETRIES = 10
MAX_RETRY_DELAY = 300.0
STALE_LOCK_SECONDS = 3600
LOCK_SUFFIX = ".lock"

# Repository layout
REPOSITORY_META_DIR = ".repository"
REPOSITORY_STATE_FILE = "repository.json"
REPOSITORY_MARK_DIR = "mark"
REPOSITORY_CACHE_DIR = "cache"
REPOSITORY_ACTIVITY_LOG = "activity.log"
REPOSITORY_REPORT_BASENAME = "Contents"
MARK_EXTENSION = ".mark"

# SoftPaq file naming
SOFTPAQ_PREFIX = "sp"
SOFTPAQ_BINARY_EXTENSION = ".exe"
SOFTPAQ_METADATA_EXTENSION = ".cva"
SOFTPAQ_RELEASE_NOTES_EXTENSION = ".html"
SOFTPAQ_FILE_PATTERN = r"^sp(\d+)\.(exe|cva|html)$"

# Repository settings and their allowed values
SETTING_ON_REMOTE_FILE_NOT_FOUND = "OnRemoteFileNotFound"
SETTING_OFFLINE_CACHE_MODE = "OfflineCacheMode"
SETTING_REPOSITORY_REPORT = "RepositoryReport"
SETTING_EXCLUSIVE_LOCK_MAX_RETRIES = "ExclusiveLockMaxRetries"

NOT_FOUND_FAIL = "Fail"
NOT_FOUND_LOG_AND_CONTINUE = "LogAndContinue"
NOT_FOUND_POLICIES = (NOT_FOUND_FAIL, NOT_FOUND_LOG_AND_CONTINUE)

OFFLINE_CACHE_ENABLE = "Enable"
OFFLINE_CACHE_DISABLE = "Disable"
OFFLINE_CACHE_MODES = (OFFLINE_CACHE_ENABLE, OFFLINE_CACHE_DISABLE)

REPORT_FORMAT_CSV = "CSV"
REPORT_FORMAT_EXCEL_CSV = "ExcelCSV"
REPORT_FORMAT_JSON = "JSON"
REPORT_FORMAT_XML = "XML"
REPORT_FORMATS = (
    REPORT_FORMAT_CSV,
    REPORT_FORMAT_EXCEL_CSV,
    REPORT_FORMAT_JSON,
    REPORT_FORMAT_XML,
)

# Filter values
WILDCARD = "*"

CATEGORY_BIOS = "BIOS"
CATEGORY_FIRMWARE = "Firmware"
CATEGORY_DRIVER = "Driver"
CATEGORY_DRIVER_AUDIO = "Driver - Audio"
CATEGORY_DRIVER_CHIPSET = "Driver - Chipset"
CATEGORY_DRIVER_CONTROLLER = "Driver - Controller"
CATEGORY_DRIVER_ENABLING = "Driver - Enabling"
CATEGORY_DRIVER_GRAPHICS = "Driver - Graphics"
CATEGORY_DRIVER_INPUT = "Driver - Keyboard, Mouse and Input Devices"
CATEGORY_DRIVER_NETWORK = "Driver - Network"
CATEGORY_DRIVER_STORAGE = "Driver - Storage"
CATEGORY_DRIVERPACK = "Driverpack"
CATEGORY_UWPPACK = "UWPPack"
CATEGORY_MANAGEABILITY = "Manageability"
CATEGORY_DIAGNOSTIC = "Diagnostic"
CATEGORY_UTILITY = "Utility"
CATEGORY_DOCK = "Dock"
CATEGORY_SOFTWARE = "Software"
CATEGORY_OS = "OS"

CATEGORIES = (
    CATEGORY_BIOS,
    CATEGORY_FIRMWARE,
    CATEGORY_DRIVER,
    CATEGORY_DRIVER_AUDIO,
    CATEGORY_DRIVER_CHIPSET,
    CATEGORY_DRIVER_CONTROLLER,
    CATEGORY_DRIVER_ENABLING,
    CATEGORY_DRIVER_GRAPHICS,
    CATEGORY_DRIVER_INPUT,
    CATEGORY_DRIVER_NETWORK,
    CATEGORY_DRIVER_STORAGE,
    CATEGORY_DRIVERPACK,
    CATEGORY_UWPPACK,
    CATEGORY_MANAGEABILITY,
    CATEGORY_DIAGNOSTIC,
    CATEGORY_UTILITY,
    CATEGORY_DOCK,
    CATEGORY_SOFTWARE,
    CATEGORY_OS,
)

# Catalog categories that map to a filter value other than their own prefix
CATALOG_DRIVER_PREFIX = "Driver - "
CATALOG_DISPLAY_CATEGORY = "Driver - Display"
CATALOG_DRIVER_PACK_CATEGORY = "Manageability - Driver Pack"
CATALOG_UWP_PACK_CATEGORY = "Manageability - UWP Pack"

RELEASE_TYPE_CRITICAL = "Critical"
RELEASE_TYPE_RECOMMENDED = "Recommended"
RELEASE_TYPE_ROUTINE = "Routine"
RELEASE_TYPES = (RELEASE_TYPE_CRITICAL, RELEASE_TYPE_RECOMMENDED, RELEASE_TYPE_ROUTINE)

CHARACTERISTIC_SSM = "SSM"
CHARACTERISTIC_DPB = "DPB"
CHARACTERISTIC_UWP = "UWP"
CHARACTERISTICS = (CHARACTERISTIC_SSM, CHARACTERISTIC_DPB, CHARACTERISTIC_UWP)

# Operating systems
OS_WIN10 = "win10"
OS_WIN11 = "win11"
SUPPORTED_OS_NAMES = (OS_WIN10, OS_WIN11)
DEFAULT_BITNESS = 64

SUPPORTED_OS_VERSIONS = {
    OS_WIN10: ("1809", "1903", "1909", "2004", "2009", "21H1", "21H2", "22H2"),
    OS_WIN11: ("21H2", "22H2", "23H2", "24H2"),
}
SUPPORTED_BITNESS = {
    OS_WIN10: (32, 64),
    OS_WIN11: (64,),
}

# Newest first; probed in order by the latest-supported-OS mode
LATEST_OS_PROBE_ORDER = (
    (OS_WIN11, "24H2", 64),
    (OS_WIN11, "23H2", 64),
    (OS_WIN11, "22H2", 64),
    (OS_WIN11, "21H2", 64),
    (OS_WIN10, "22H2", 64),
    (OS_WIN10, "21H2", 64),
    (OS_WIN10, "21H1", 64),
    (OS_WIN10, "2009", 64),
    (OS_WIN10, "2004", 64),
    (OS_WIN10, "1909", 64),
    (OS_WIN10, "1903", 64),
    (OS_WIN10, "1809", 64),
)

# Windows build number -> (os, version)
WINDOWS_BUILD_MAP = {
    17763: (OS_WIN10, "1809"),
    18362: (OS_WIN10, "1903"),
    18363: (OS_WIN10, "1909"),
    19041: (OS_WIN10, "2004"),
    19042: (OS_WIN10, "2009"),
    19043: (OS_WIN10, "21H1"),
    19044: (OS_WIN10, "21H2"),
    19045: (OS_WIN10, "22H2"),
    22000: (OS_WIN11, "21H2"),
    22621: (OS_WIN11, "22H2"),
    22631: (OS_WIN11, "23H2"),
    26100: (OS_WIN11, "24H2"),
}

# CVA INF path key tags per OS
CVA_OS_TAGS = {
    OS_WIN10: "WT64",
    OS_WIN11: "W11",
}
CVA_INF_PATH_SECTION = "Devices_INFPath"

# Driver pack output
PACK_FORMAT_FOLDER = "NoCompressedFile"
PACK_FORMAT_ZIP = "ZIP"
PACK_FORMAT_WIM = "WIM"
PACK_FORMATS = (PACK_FORMAT_FOLDER, PACK_FORMAT_ZIP, PACK_FORMAT_WIM)
PACK_EXTENSIONS = {
    PACK_FORMAT_FOLDER: "",
    PACK_FORMAT_ZIP: ".zip",
    PACK_FORMAT_WIM: ".wim",
}
PACK_DOWNLOAD_DIR = "_downloads"
PACK_EXTRACT_DIR = "_extract"
MANIFEST_JSON_FILE = "manifest.json"
MANIFEST_XML_FILE = "manifest.xml"
SIGNATURE_SUFFIX = ".sig"
UWP_APP_DIR_NAME = "App"
UWP_INSTALL_SCRIPTS = ("InstallApp.cmd", "Install.cmd")
UWP_INSTALL_ALL_SCRIPT = "InstallAllApps.cmd"

# Error kinds carried on FetchResult
ERROR_KIND_NOT_FOUND = "not_found"
ERROR_KIND_NETWORK = "network"
ERROR_KIND_LOCK_CONTENTION = "lock_contention"
ERROR_KIND_SIGNATURE_INVALID = "signature_invalid"
ERROR_KIND_EXISTS = "exists"

# Logging configuration
LOGGER_NAME = "spmirror"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
INFO_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
DEBUG_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s: %(message)s"
LOG_FILE_NAME = "spmirror.log"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_FILE_BACKUP_COUNT = 5

# Configuration file names
APP_NAME = "spmirror"
CONFIG_FILE_NAME = "spmirror.yaml"

# Environment variable names
LOG_LEVEL_ENV_VAR = "SPMIRROR_LOG_LEVEL"

# Overwrite policies for package binaries
OVERWRITE_NO = "No"
OVERWRITE_YES = "Yes"
OVERWRITE_SKIP = "Skip"
OVERWRITE_POLICIES = (OVERWRITE_NO, OVERWRITE_YES, OVERWRITE_SKIP)
