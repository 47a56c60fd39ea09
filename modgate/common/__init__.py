"""
Common Utilities

Shared modules used across all services:
- config.py - Configuration dataclasses and YAML loading
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Re-armable timers
"""

from .config import (
    GatewayConfig,
    ApiSettings,
    LoggingSettings,
    SlaveConfig,
    SourceConfig,
    SignatureType,
    load_gateway_config,
    load_config_file,
)
from .exceptions import (
    GatewayError,
    ConfigError,
    StorageError,
    BusError,
    InvalidArgumentsError,
    SourceNotFoundError,
    SlaveNotFoundError,
    DriverError,
    CommunicationError,
    ReadError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    configure_logging,
    log_device_read,
)
from .scheduler import Timeout

__all__ = [
    # Config
    "GatewayConfig",
    "ApiSettings",
    "LoggingSettings",
    "SlaveConfig",
    "SourceConfig",
    "SignatureType",
    "load_gateway_config",
    "load_config_file",
    # Exceptions
    "GatewayError",
    "ConfigError",
    "StorageError",
    "BusError",
    "InvalidArgumentsError",
    "SourceNotFoundError",
    "SlaveNotFoundError",
    "DriverError",
    "CommunicationError",
    "ReadError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "configure_logging",
    "log_device_read",
    # Timers
    "Timeout",
]
