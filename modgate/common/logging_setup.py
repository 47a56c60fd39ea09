"""
Structured Logging Setup

Consistent logging configuration across all gateway services.
Uses JSON format for structured logs in production.
"""

import logging
import sys
import os
from datetime import datetime, timezone
from typing import Any
import json

LOGGER_PREFIX = "modgate"

# Service names handed out so far, re-configured by configure_logging()
_service_names: set[str] = set()


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in (
                "name", "msg", "args", "levelname", "levelno", "pathname",
                "filename", "module", "exc_info", "exc_text", "stack_info",
                "lineno", "funcName", "created", "msecs", "relativeCreated",
                "thread", "threadName", "processName", "process", "service",
                "message", "taskName",
            ):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {})
        kwargs["extra"]["service"] = self.extra.get("service", "unknown")
        return msg, kwargs


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a service.

    Args:
        service_name: Name of the service (e.g., "slave", "bus")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"{LOGGER_PREFIX}.{service_name}")
    logger.setLevel(numeric_level)

    # Clear existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Don't propagate to root logger
    logger.propagate = False

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Args:
        service_name: Name of the service

    Returns:
        Logger adapter with service name in all logs
    """
    # Check for environment variable override
    log_level = os.environ.get("MODGATE_LOG_LEVEL", "INFO")
    json_format = os.environ.get("MODGATE_LOG_FORMAT", "json").lower() == "json"

    _service_names.add(service_name)
    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


def configure_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """
    Re-apply level and format to every service logger.

    Module level loggers are created at import time, before the settings
    file is read; the entry point calls this once settings are known.
    """
    os.environ["MODGATE_LOG_LEVEL"] = log_level.upper()
    os.environ["MODGATE_LOG_FORMAT"] = "json" if json_format else "text"

    for service_name in sorted(_service_names):
        setup_logging(service_name, log_level, json_format)


def log_device_read(
    logger: logging.Logger,
    slave_name: str,
    address: int,
    value: Any,
    success: bool = True,
) -> None:
    """Log a register read from a slave"""
    if success:
        logger.debug(
            f"Read {slave_name}[0x{address:04x}] = {value}",
            extra={"slave": slave_name, "address": address, "value": value},
        )
    else:
        logger.warning(
            f"Failed to read {slave_name}[0x{address:04x}]",
            extra={"slave": slave_name, "address": address},
        )
