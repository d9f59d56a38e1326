"""
Engine configuration for spmirror.

The configuration is an explicit object handed to every engine component at
construction time. It is persisted as YAML in the platform user config
directory, using upper-case keys named after the fields.
"""

import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional

import platformdirs
import yaml

from spmirror.constants import (
    APP_NAME,
    CONFIG_FILE_NAME,
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_BITNESS,
    DEFAULT_CONNECT_RETRIES,
    DEFAULT_LOCK_RETRY_DELAY,
    DEFAULT_REFERENCE_URL,
    DEFAULT_REQUEST_TIMEOUT,
    FALLBACK_REFERENCE_URL,
)
from spmirror.exceptions import ConfigFileError, ConfigValidationError
from spmirror.log_utils import logger


def get_config_file_path() -> str:
    """Return the default location of `spmirror.yaml`."""
    return os.path.join(platformdirs.user_config_dir(APP_NAME), CONFIG_FILE_NAME)


@dataclass
class EngineConfig:
    """Settings shared by the catalog resolver, download manager and assembler."""

    reference_url: str = DEFAULT_REFERENCE_URL
    fallback_reference_url: str = FALLBACK_REFERENCE_URL
    cache_dir: Optional[str] = None
    log_level: str = "INFO"
    log_dir: Optional[str] = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    connect_retries: int = DEFAULT_CONNECT_RETRIES
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    lock_retry_delay: float = DEFAULT_LOCK_RETRY_DELAY
    current_os: Optional[str] = None
    bitness: int = DEFAULT_BITNESS

    def __post_init__(self) -> None:
        if self.cache_dir is None:
            self.cache_dir = platformdirs.user_cache_dir(APP_NAME)
        self.reference_url = self.reference_url.rstrip("/")
        self.fallback_reference_url = self.fallback_reference_url.rstrip("/")

    @property
    def uses_default_reference(self) -> bool:
        """Whether the reference host is the built-in one (and may fall back)."""
        return self.reference_url == DEFAULT_REFERENCE_URL

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "EngineConfig":
        """
        Build a config from a mapping of upper-case keys.

        Unknown keys are ignored with a debug message so that newer config files
        stay loadable by older releases.

        Raises:
            ConfigValidationError: If a value cannot be coerced to the field's type.
        """
        kwargs: Dict[str, Any] = {}
        known = {f.name: f for f in fields(cls)}
        for key, value in data.items():
            name = str(key).lower()
            if name not in known:
                logger.debug(f"Ignoring unknown configuration key: {key}")
                continue
            if value is None:
                continue
            kwargs[name] = _coerce(name, value)
        return cls(**kwargs)

    def to_mapping(self) -> Dict[str, Any]:
        return {key.upper(): value for key, value in asdict(self).items()}

    @classmethod
    def load(cls, path: Optional[str] = None) -> "EngineConfig":
        """
        Load configuration from YAML, returning defaults when the file is absent.

        Raises:
            ConfigFileError: If the file exists but cannot be read or parsed.
            ConfigValidationError: If the document is not a mapping or holds bad values.
        """
        config_path = path or get_config_file_path()
        if not os.path.exists(config_path):
            logger.debug(f"No configuration at {config_path}; using defaults")
            return cls()

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigFileError(
                f"Could not read configuration file {config_path}", details=str(e)
            ) from e

        if not isinstance(data, dict):
            raise ConfigValidationError(
                f"Configuration file {config_path} must contain a mapping"
            )
        return cls.from_mapping(data)

    def save(self, path: Optional[str] = None) -> str:
        """Write the configuration as YAML and return the path written."""
        config_path = path or get_config_file_path()
        os.makedirs(os.path.dirname(config_path) or ".", exist_ok=True)
        try:
            with open(config_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(self.to_mapping(), f, sort_keys=False)
        except OSError as e:
            raise ConfigFileError(
                f"Could not write configuration file {config_path}", details=str(e)
            ) from e
        return config_path


_INT_FIELDS = frozenset({"connect_retries", "bitness"})
_FLOAT_FIELDS = frozenset({"request_timeout", "backoff_factor", "lock_retry_delay"})


def _coerce(name: str, value: Any) -> Any:
    try:
        if isinstance(value, (dict, list, bool)):
            raise TypeError(f"unexpected {type(value).__name__}")
        if name in _INT_FIELDS:
            return int(value)
        if name in _FLOAT_FIELDS:
            return float(value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(
            f"Invalid value for {name.upper()}", details=str(e)
        ) from e
