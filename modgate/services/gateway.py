"""
Gateway Service

Wires the object bus, the slave registry and the control API together
and runs them until SIGTERM/SIGINT.
"""

import asyncio
import signal
from pathlib import Path
from typing import Callable

from ..common.config import GatewayConfig
from ..common.logging_setup import get_service_logger
from .bus.http_api import ControlApi
from .bus.object_bus import ObjectBus
from .slave.driver import ModbusDriver, create_driver
from .slave.registry import SlaveRegistry

logger = get_service_logger("gateway")


class GatewayService:
    """
    Gateway process

    Start order: slave registry (stores, persisted slaves), control API.
    Stop order is the reverse.
    """

    def __init__(
        self,
        config: GatewayConfig,
        units_file: str | Path | None = None,
        driver_factory: Callable[[str, float], ModbusDriver] = create_driver,
    ):
        self.config = config
        self.units_file = units_file

        self.bus = ObjectBus()
        self.registry = SlaveRegistry(config, self.bus, driver_factory)
        self.api = ControlApi(self.bus, stats_provider=self.registry.get_stats)

        self._running = False
        self._api_started = False
        self._shutdown_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start all components (returns once they are up)."""
        logger.info("Starting gateway")

        # Unopenable stores are fatal here
        slaves = self.registry.start(self.units_file)

        if self.config.api.enabled:
            await self.api.start(self.config.api.host, self.config.api.port)
            self._api_started = True

        self._running = True
        logger.info(
            f"Gateway started ({len(slaves)} slaves, storage {self.config.storage_dir})",
            extra={"slave_count": len(slaves)},
        )

    async def run(self) -> None:
        """Start, then serve until a shutdown signal arrives."""
        try:
            await self.start()
            self._setup_signal_handlers()
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        if not self._running and not self.registry.started:
            return

        logger.info("Stopping gateway")
        self._running = False

        if self._api_started:
            await self.api.stop()
            self._api_started = False

        self.registry.stop()
        logger.info("Gateway stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()
