"""
Slave Manager

One Modbus slave: its connection state machine, its sources and their
poll timers, and its bus object.

Connection lifecycle:

    DISCONNECTED --retry timer--> CONNECTING --connect ok--> CONNECTED
         ^                            |                          |
         +-------- failure -----------+                          |
         +------------------------ link lost --------------------+

Retries use a fixed backoff. Polling runs only while CONNECTED; losing the
link disarms every poll timer before the driver is released.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ...common.config import (
    MAX_DEVICE_ID,
    RETRY_BACKOFF_S,
    SlaveConfig,
    sources_file_path,
)
from ...common.exceptions import (
    DriverError,
    InvalidArgumentsError,
    StorageError,
)
from ...common.logging_setup import get_service_logger
from ...common.scheduler import Timeout
from ...storage.kv_store import GroupStore, unit_to_hex
from ..bus.object_bus import SLAVE_IFACE, Interface, ObjectBus, Property
from .driver import (
    DEFAULT_TIMEOUT_S,
    LinkWatcher,
    ModbusDriver,
    create_driver,
    driver_kind_for_url,
)
from .poller import PollScheduler
from .source import (
    Source,
    SourceRegistry,
    parse_source_args,
    source_config_from_store,
)

logger = get_service_logger("slave")

UNITS_NAMESPACE = "SI"


class SlaveState(str, Enum):
    """Connection states"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class SlaveContext:
    """Collaborators shared by every slave of a registry"""
    bus: ObjectBus
    slaves_store: GroupStore
    units_store: GroupStore
    storage_dir: Path
    retry_backoff_s: float = RETRY_BACKOFF_S
    request_timeout_s: float = DEFAULT_TIMEOUT_S
    driver_factory: Callable[[str, float], ModbusDriver] = create_driver


class Slave:
    """
    A Modbus slave and everything it owns.

    Invariants:
    - driver and link are both set (CONNECTED) or both None
    - the poller only holds timers for sources in the registry
    - resources are released once, by destroy()
    """

    def __init__(
        self,
        key: str,
        device_id: int,
        name: str,
        url: str,
        context: SlaveContext,
    ):
        self.key = key
        self.device_id = device_id
        self.name = name or url
        self.url = url
        self.path = f"/slave_{key}"

        self.state = SlaveState.DISCONNECTED
        self.driver: ModbusDriver | None = None
        self.link: LinkWatcher | None = None
        self.sources = SourceRegistry()
        self.poller = PollScheduler(self.path)

        self._context = context
        self._source_store: GroupStore | None = None
        self._retry: Timeout | None = None
        self._registered = False
        self._released = False

        # Observability metrics
        self._connect_attempts = 0
        self._disconnects = 0

    @classmethod
    def create(
        cls,
        key: str,
        device_id: int,
        name: str | None,
        url: str,
        context: SlaveContext,
    ) -> "Slave":
        """
        Build a slave, restore or persist its definition and start connecting.

        Raises:
            DriverError: URL scheme not recognized
            StorageError: source store unreadable
            BusError: slave path already registered
            InvalidArgumentsError: device id out of range
        """
        driver_kind_for_url(url)
        if not 0 <= device_id <= MAX_DEVICE_ID:
            raise InvalidArgumentsError(f"device id {device_id} out of range for {url}")

        slave = cls(key, device_id, name or url, url, context)
        slave._source_store = GroupStore.open(sources_file_path(context.storage_dir, key))

        context.bus.register_object(slave.path, slave._build_interface())
        slave._registered = True

        if slave._source_store.exists:
            slave._load_sources()
        else:
            slave._save()

        # First attempt on the next loop pass
        slave._retry = Timeout(0, slave._enable, name=f"retry:{key}")

        logger.info(
            f"Slave {slave.name} ({url}, id={device_id}) at {slave.path}, "
            f"{len(slave.sources)} sources"
        )
        return slave

    @classmethod
    def from_config(cls, config: SlaveConfig, context: SlaveContext) -> "Slave":
        return cls.create(config.key, config.device_id, config.name, config.url, context)

    @property
    def online(self) -> bool:
        return self.driver is not None

    @property
    def released(self) -> bool:
        return self._released

    # --- connection state machine ---

    async def _enable(self, timeout: Timeout) -> None:
        if self.driver is not None:
            return

        self._connect_attempts += 1
        backoff = self._context.retry_backoff_s

        try:
            driver = self._context.driver_factory(
                self.url, self._context.request_timeout_s
            )
        except DriverError as e:
            logger.error(f"{self.name}: {e.message}, retrying in {backoff}s")
            timeout.modify(backoff)
            return

        try:
            driver.set_device_id(self.device_id)
        except DriverError as e:
            logger.error(f"{self.name}: {e.message}, retrying in {backoff}s")
            driver.close()
            timeout.modify(backoff)
            return

        self.state = SlaveState.CONNECTING
        try:
            await driver.connect()
        except DriverError as e:
            self.state = SlaveState.DISCONNECTED
            driver.close()
            logger.warning(f"{self.name}: {e.message}, retrying in {backoff}s")
            timeout.modify(backoff)
            return
        except asyncio.CancelledError:
            self.state = SlaveState.DISCONNECTED
            driver.close()
            raise

        self.driver = driver
        self.link = LinkWatcher(driver, self._on_disconnected, name=self.path)
        self.state = SlaveState.CONNECTED

        self.poller.bind(driver)
        for source in self.sources:
            self.poller.arm(source)

        logger.info(f"{self.name}: connected to {self.url} ({len(self.sources)} sources)")
        self._emit("Online")

    def _on_disconnected(self) -> None:
        self._disconnects += 1
        backoff = self._context.retry_backoff_s

        disarmed = self.poller.disarm_all()
        self.poller.bind(None)
        self._close_link()
        self.state = SlaveState.DISCONNECTED

        logger.warning(
            f"{self.name}: link lost ({disarmed} poll timers stopped), "
            f"retrying in {backoff}s"
        )
        self._emit("Online")

        if self._retry is not None:
            self._retry.modify(backoff)

    def _close_link(self) -> None:
        link, driver = self.link, self.driver
        self.link = None
        self.driver = None

        if link is not None:
            link.set_disconnect_handler(None)
            link.close()
        if driver is not None:
            driver.close()

    # --- sources ---

    def add_source(self, args: Any) -> str:
        """
        Create, persist and (when connected) start polling a source.

        Returns:
            Bus path of the new source

        Raises:
            InvalidArgumentsError: validation failed, unit unknown or
                address taken; nothing was changed
        """
        config = parse_source_args(args)

        if not self._context.units_store.has_unit(UNITS_NAMESPACE, unit_to_hex(config.unit)):
            logger.info(f"{self.name}: unit '{config.unit}' not found")
            raise InvalidArgumentsError(f"unknown unit: {config.unit}")

        if self.sources.find_by_address(config.address) is not None:
            logger.info(f"{self.name}: address 0x{config.address:04x} assigned already")
            raise InvalidArgumentsError(
                f"address 0x{config.address:04x} assigned already"
            )

        source = Source.create(
            self.path, config, self._context.bus, self._source_store
        )
        self._attach(source)
        return source.path

    def remove_source(self, path: Any) -> None:
        """
        Stop polling and delete a source, including its persisted group.

        Raises:
            SourceNotFoundError: no such source on this slave
        """
        source = self.sources.remove(str(path))
        self.poller.disarm(source.path)
        source.destroy(purge=True)
        logger.info(f"{self.name}: removed source {source.path}")

    def _attach(self, source: Source) -> None:
        self.sources.add(source)
        source.on_interval_changed = self._on_interval_changed
        if self.online:
            self.poller.arm(source)

    def _on_interval_changed(self, source: Source) -> None:
        if self.online and source.path in self.sources:
            self.poller.arm(source)

    def _load_sources(self) -> None:
        def load(address: int, entries: dict) -> None:
            try:
                config = source_config_from_store(address, entries)
            except InvalidArgumentsError as e:
                logger.warning(f"{self.name}: skipping source 0x{address:04x}: {e.message}")
                return

            if self.sources.find_by_address(address) is not None:
                logger.warning(f"{self.name}: duplicate source 0x{address:04x} skipped")
                return

            source = Source.create(
                self.path, config, self._context.bus, self._source_store,
                persist=False,
            )
            self._attach(source)

        self._source_store.foreach_source(load)

    # --- properties ---

    def set_name(self, name: Any) -> None:
        if not isinstance(name, str) or not name:
            raise InvalidArgumentsError("Name must be a non-empty string")

        self.name = name
        try:
            self._context.slaves_store.write_key_string(self.key, "Name", name)
        except StorageError as e:
            logger.error(f"Can't persist name of {self.path}: {e.message}")
        self._emit("Name")

    def _save(self) -> None:
        try:
            self._context.slaves_store.write_group(self.key, {
                "Id": self.device_id,
                "Name": self.name,
                "URL": self.url,
            })
        except StorageError as e:
            logger.error(f"Can't persist slave {self.path}: {e.message}")

    def _emit(self, name: str) -> None:
        if self._registered:
            self._context.bus.property_changed(self.path, SLAVE_IFACE, name)

    def _build_interface(self) -> Interface:
        return Interface(
            name=SLAVE_IFACE,
            methods={
                "AddSource": self.add_source,
                "RemoveSource": self.remove_source,
            },
            properties={
                "Id": Property(lambda: self.device_id),
                "Name": Property(lambda: self.name, self.set_name),
                "URL": Property(lambda: self.url),
                "Online": Property(lambda: self.online),
            },
        )

    # --- teardown ---

    def destroy(self, purge: bool = False) -> None:
        """
        Tear the slave down.

        With purge the source store (file and directory) and the slave's
        group in the slaves store are deleted as well. Safe to call twice.
        """
        if self._released:
            return

        if self.link is not None:
            self.link.set_disconnect_handler(None)

        if self._registered:
            self._context.bus.unregister_object(self.path)
            self._registered = False

        if purge:
            self._purge()

        self._release()
        logger.info(f"Slave {self.name} ({self.path}) destroyed" + (" and purged" if purge else ""))

    def _purge(self) -> None:
        if self._source_store is not None and self._source_store.exists:
            self._source_store.unlink()

        if not self._context.slaves_store.remove_group(self.key):
            logger.info(f"storage: slave group {self.key} not removed")

    def _release(self) -> None:
        self._released = True

        if self._retry is not None:
            self._retry.remove()
            self._retry = None

        self.poller.disarm_all()
        self.poller.bind(None)

        self._close_link()
        self.state = SlaveState.DISCONNECTED

        # Persisted groups are already gone when purging
        for source in self.sources.clear():
            source.destroy(purge=False)

        if self._source_store is not None:
            self._source_store.close()
            self._source_store = None

    def get_stats(self) -> dict:
        return {
            "path": self.path,
            "name": self.name,
            "url": self.url,
            "state": self.state.value,
            "sources": len(self.sources),
            "connect_attempts": self._connect_attempts,
            "disconnects": self._disconnects,
            "poller": self.poller.get_stats(),
        }
