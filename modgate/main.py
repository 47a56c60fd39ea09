#!/usr/bin/env python3
"""
modgate - Main Entry Point

Usage:
    modgate                           # Defaults (/var/lib/modgate, packaged units)
    modgate --config gateway.yaml     # Custom settings file
    modgate --storage-dir ./state     # Override the storage directory
    modgate --dry-run                 # Print configuration and exit

The gateway will:
1. Load settings from the YAML file (plus MODGATE_* environment overrides)
2. Recreate every persisted slave and start connecting
3. Poll each slave's sources at their own intervals
4. Serve the control API until SIGTERM/SIGINT
"""

import argparse
import asyncio
import sys
from pathlib import Path

from .common.config import GatewayConfig, load_config_file
from .common.exceptions import ConfigError, StorageError
from .common.logging_setup import configure_logging, get_service_logger
from .services.gateway import GatewayService
from .storage.kv_store import GroupStore

logger = get_service_logger("main")


def _count_sources(path: Path) -> int | str:
    try:
        return GroupStore.open(path).foreach_source(lambda address, entries: None)
    except StorageError:
        return "unreadable"


def print_config_summary(config: GatewayConfig) -> None:
    """Print a summary of the configuration and persisted slaves."""
    print("\n" + "=" * 60)
    print("  MODBUS SLAVE GATEWAY")
    print("=" * 60)

    print(f"\n  Storage: {config.storage_dir}")
    print(f"  Units: {config.units_file}")
    print(f"  Retry backoff: {config.retry_backoff_s}s")
    print(f"  Request timeout: {config.request_timeout_s}s")

    if config.api.enabled:
        print(f"\n  Control API: http://{config.api.host}:{config.api.port}")
    else:
        print("\n  Control API: Disabled")

    print(f"  Logging: {config.logging.level} ({config.logging.format})")

    try:
        store = GroupStore.open(config.slaves_file)
    except StorageError as e:
        print(f"\n  Slaves: unreadable ({e.message})")
    else:
        slaves = []
        store.foreach_slave(slaves.append)
        print(f"\n  Slaves: {len(slaves)}")
        for slave in slaves:
            count = _count_sources(config.sources_file(slave.key))
            print(f"    - {slave.name}: {slave.url} (id {slave.device_id}, {count} sources)")

    print("=" * 60 + "\n")


async def main_async(config: GatewayConfig, units_file: str | None) -> None:
    service = GatewayService(config, units_file=units_file)

    try:
        await service.run()
    except asyncio.CancelledError:
        logger.info("Gateway cancelled")
    except StorageError as e:
        logger.error(f"Can't start gateway: {e.message}")
        raise


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Modbus slave gateway"
    )
    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to settings file (default: built-in defaults)"
    )
    parser.add_argument(
        "--units", "-u",
        type=str,
        default=None,
        help="Path to units vocabulary (default: packaged SI units)"
    )
    parser.add_argument(
        "--storage-dir",
        type=str,
        default=None,
        help="Directory holding slaves.yaml and per-slave sources"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print configuration and exit without starting the gateway"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging"
    )

    args = parser.parse_args()

    try:
        config = load_config_file(args.config)
    except ConfigError as e:
        print(e.message, file=sys.stderr)
        sys.exit(1)

    if args.storage_dir:
        config.storage_dir = Path(args.storage_dir)
    if args.units:
        config.units_file = Path(args.units)
    if args.verbose:
        config.logging.level = "DEBUG"

    configure_logging(config.logging.level, config.logging.json_format)

    print_config_summary(config)

    if args.dry_run:
        print("Dry run mode - exiting without starting gateway")
        sys.exit(0)

    logger.info("Starting gateway...")

    try:
        asyncio.run(main_async(config, args.units))
    except KeyboardInterrupt:
        print("\nStopped by user")
    except StorageError:
        sys.exit(1)


if __name__ == "__main__":
    main()
