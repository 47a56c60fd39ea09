"""
Configuration Dataclasses

Type-safe configuration structures for the gateway.
Gateway settings come from a YAML file plus environment overrides;
slave and source definitions live in the key/value stores.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import yaml

from .exceptions import ConfigError

# Packaged SI units vocabulary
DEFAULT_UNITS_FILE = Path(__file__).parent.parent / "data" / "units.yaml"

DEFAULT_STORAGE_DIR = "/var/lib/modgate"

# Fixed delay before re-attempting a failed or lost connection
RETRY_BACKOFF_S = 5.0

DEFAULT_POLLING_INTERVAL_MS = 1000
MAX_POLLING_INTERVAL_MS = 0xFFFF

# Address value meaning "not provided"
UNSET_ADDRESS = 0xFFFF

MAX_DEVICE_ID = 255


class SignatureType(str, Enum):
    """Source value encodings (single character type codes)"""
    BOOL = "b"
    BYTE = "y"
    UINT16 = "q"
    UINT32 = "u"
    UINT64 = "t"


@dataclass
class SourceConfig:
    """Polled register definition"""
    address: int
    name: str
    signature: SignatureType
    unit: str
    interval_ms: int = DEFAULT_POLLING_INTERVAL_MS


@dataclass
class SlaveConfig:
    """Persisted slave definition"""
    key: str
    device_id: int
    name: str
    url: str


@dataclass
class ApiSettings:
    """Control-plane HTTP surface"""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8090


@dataclass
class LoggingSettings:
    """Log output configuration"""
    level: str = "INFO"
    format: str = "json"  # json, text

    @property
    def json_format(self) -> bool:
        return self.format.lower() == "json"


@dataclass
class GatewayConfig:
    """Complete gateway configuration"""
    storage_dir: Path = field(default_factory=lambda: Path(DEFAULT_STORAGE_DIR))
    units_file: Path = DEFAULT_UNITS_FILE
    retry_backoff_s: float = RETRY_BACKOFF_S
    request_timeout_s: float = 3.0
    api: ApiSettings = field(default_factory=ApiSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @property
    def slaves_file(self) -> Path:
        """Slave definitions store"""
        return self.storage_dir / "slaves.yaml"

    def sources_file(self, key: str) -> Path:
        """Per-slave source definitions store"""
        return sources_file_path(self.storage_dir, key)


def sources_file_path(storage_dir: Path, key: str) -> Path:
    return Path(storage_dir) / key / "sources.yaml"


def load_gateway_config(data: dict | None) -> GatewayConfig:
    """
    Load GatewayConfig from a dictionary (e.g., parsed YAML).

    Environment variables override file values:
    MODGATE_STORAGE_DIR, MODGATE_UNITS_FILE, MODGATE_LOG_LEVEL,
    MODGATE_LOG_FORMAT.
    """
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError("top level must be a mapping")

    api_data = data.get("api", {}) or {}
    logging_data = data.get("logging", {}) or {}

    try:
        api = ApiSettings(
            enabled=bool(api_data.get("enabled", True)),
            host=str(api_data.get("host", "127.0.0.1")),
            port=int(api_data.get("port", 8090)),
        )
        retry_backoff_s = float(data.get("retry_backoff_s", RETRY_BACKOFF_S))
        request_timeout_s = float(data.get("request_timeout_s", 3.0))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid value: {e}")

    if not 0 < api.port < 65536:
        raise ConfigError(f"api.port out of range: {api.port}")
    if retry_backoff_s <= 0:
        raise ConfigError("retry_backoff_s must be positive")
    if request_timeout_s <= 0:
        raise ConfigError("request_timeout_s must be positive")

    log_format = os.environ.get(
        "MODGATE_LOG_FORMAT", logging_data.get("format", "json")
    ).lower()
    if log_format not in ("json", "text"):
        raise ConfigError(f"logging.format must be json or text: {log_format}")

    logging_settings = LoggingSettings(
        level=os.environ.get("MODGATE_LOG_LEVEL", logging_data.get("level", "INFO")),
        format=log_format,
    )

    storage_dir = os.environ.get(
        "MODGATE_STORAGE_DIR", data.get("storage_dir", DEFAULT_STORAGE_DIR)
    )
    units_file = os.environ.get(
        "MODGATE_UNITS_FILE", data.get("units_file") or DEFAULT_UNITS_FILE
    )

    return GatewayConfig(
        storage_dir=Path(storage_dir),
        units_file=Path(units_file),
        retry_backoff_s=retry_backoff_s,
        request_timeout_s=request_timeout_s,
        api=api,
        logging=logging_settings,
    )


def load_config_file(config_path: str | Path | None) -> GatewayConfig:
    """
    Load configuration from a YAML file.

    A missing path yields the defaults (plus environment overrides).
    """
    if config_path is None:
        return load_gateway_config({})

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"configuration file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read {path}: {e}")

    return load_gateway_config(data)
