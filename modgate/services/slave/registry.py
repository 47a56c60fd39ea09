"""
Slave Registry

Owns every slave of the gateway. At startup it opens the slaves store and
the units vocabulary, exposes the manager object at "/" and recreates one
slave per persisted group.
"""

import uuid
from pathlib import Path
from typing import Any, Callable

from ...common.config import GatewayConfig, MAX_DEVICE_ID, SlaveConfig
from ...common.exceptions import (
    DriverError,
    GatewayError,
    InvalidArgumentsError,
    SlaveNotFoundError,
    StorageError,
)
from ...common.logging_setup import get_service_logger
from ...storage.kv_store import GroupStore
from ..bus.object_bus import MANAGER_IFACE, Interface, ObjectBus, Property
from .driver import ModbusDriver, create_driver, driver_kind_for_url
from .slave import Slave, SlaveContext

logger = get_service_logger("slave.registry")

MANAGER_PATH = "/"

SLAVE_ARG_KEYS = ("Id", "Name", "URL")


def parse_slave_args(args: Any) -> tuple[int, str | None, str]:
    """
    Validate an AddSlave request dictionary.

    Returns:
        (device_id, name or None, url)

    Raises:
        InvalidArgumentsError: unknown key, missing field, bad value
    """
    if not isinstance(args, dict):
        raise InvalidArgumentsError("expected a dictionary")

    for key in args:
        if key not in SLAVE_ARG_KEYS:
            raise InvalidArgumentsError(f"unknown key: {key}")

    device_id = args.get("Id")
    name = args.get("Name")
    url = args.get("URL")

    if (
        not isinstance(device_id, int)
        or isinstance(device_id, bool)
        or not 0 <= device_id <= MAX_DEVICE_ID
    ):
        raise InvalidArgumentsError(f"Id must be 0..{MAX_DEVICE_ID}: {device_id!r}")
    if name is not None and (not isinstance(name, str) or not name):
        raise InvalidArgumentsError("Name must be a non-empty string")
    if not isinstance(url, str) or not url:
        raise InvalidArgumentsError("URL is required")

    try:
        driver_kind_for_url(url)
    except DriverError as e:
        raise InvalidArgumentsError(e.message)

    return device_id, name, url


class SlaveRegistry:
    """
    Top-level container of slaves, keyed by bus path.

    Lifecycle: start() -> add_slave()/remove_slave() ... -> stop()
    """

    def __init__(
        self,
        config: GatewayConfig,
        bus: ObjectBus,
        driver_factory: Callable[[str, float], ModbusDriver] = create_driver,
    ):
        self.config = config
        self._bus = bus
        self._driver_factory = driver_factory

        self._slaves: dict[str, Slave] = {}
        self._slaves_store: GroupStore | None = None
        self._units_store: GroupStore | None = None
        self._context: SlaveContext | None = None
        self._started = False

    def __len__(self) -> int:
        return len(self._slaves)

    def __iter__(self):
        return iter(list(self._slaves.values()))

    @property
    def started(self) -> bool:
        return self._started

    def start(self, units_file: str | Path | None = None) -> list[Slave]:
        """
        Open the stores and recreate persisted slaves.

        Must run inside the event loop (slaves arm their retry timers).

        Raises:
            StorageError: slaves store or units vocabulary cannot be opened
        """
        units_path = Path(units_file or self.config.units_file)

        self._slaves_store = GroupStore.open(self.config.slaves_file)
        self._units_store = GroupStore.open(units_path)
        if not self._units_store.exists:
            raise StorageError(f"units file not found: {units_path}", path=str(units_path))

        self._context = SlaveContext(
            bus=self._bus,
            slaves_store=self._slaves_store,
            units_store=self._units_store,
            storage_dir=self.config.storage_dir,
            retry_backoff_s=self.config.retry_backoff_s,
            request_timeout_s=self.config.request_timeout_s,
            driver_factory=self._driver_factory,
        )

        self._bus.register_object(MANAGER_PATH, self._build_interface())
        self._started = True

        count = self._slaves_store.foreach_slave(self._restore)
        logger.info(
            f"Slave registry started: {len(self._slaves)}/{count} slaves "
            f"from {self.config.slaves_file}"
        )
        return list(self._slaves.values())

    def _restore(self, config: SlaveConfig) -> None:
        try:
            slave = Slave.from_config(config, self._context)
        except GatewayError as e:
            logger.error(f"Skipping slave {config.key} ({config.url}): {e.message}")
            return
        self._slaves[slave.path] = slave

    def add_slave(self, args: Any) -> str:
        """
        Create and persist a new slave.

        Returns:
            Bus path of the new slave

        Raises:
            InvalidArgumentsError: invalid request
        """
        device_id, name, url = parse_slave_args(args)
        key = self._new_key()

        try:
            slave = Slave.create(key, device_id, name, url, self._context)
        except StorageError as e:
            logger.error(f"Can't create slave for {url}: {e.message}")
            raise

        self._slaves[slave.path] = slave
        self._bus.property_changed(MANAGER_PATH, MANAGER_IFACE, "Slaves")
        return slave.path

    def remove_slave(self, path: Any) -> None:
        """
        Destroy a slave and delete its persisted state.

        Raises:
            SlaveNotFoundError: no slave at path
        """
        slave = self._slaves.pop(str(path), None)
        if slave is None:
            raise SlaveNotFoundError(str(path))

        slave.destroy(purge=True)
        self._bus.property_changed(MANAGER_PATH, MANAGER_IFACE, "Slaves")

    def get_slave(self, path: str) -> Slave | None:
        return self._slaves.get(path)

    def _new_key(self) -> str:
        while True:
            key = uuid.uuid4().hex[:16]
            if not self._slaves_store.has_group(key) and f"/slave_{key}" not in self._slaves:
                return key

    def stop(self) -> None:
        """Destroy every slave (keeping persisted state) and close the stores."""
        if not self._started:
            return

        slaves = list(self._slaves.values())
        self._slaves.clear()
        for slave in slaves:
            slave.destroy(purge=False)

        self._bus.unregister_object(MANAGER_PATH)

        if self._slaves_store is not None:
            self._slaves_store.close()
        if self._units_store is not None:
            self._units_store.close()

        self._started = False
        logger.info(f"Slave registry stopped ({len(slaves)} slaves released)")

    def _build_interface(self) -> Interface:
        return Interface(
            name=MANAGER_IFACE,
            methods={
                "AddSlave": self.add_slave,
                "RemoveSlave": self.remove_slave,
            },
            properties={
                "Slaves": Property(lambda: sorted(self._slaves.keys())),
            },
        )

    def get_stats(self) -> dict:
        slaves = list(self._slaves.values())
        return {
            "total": len(slaves),
            "online": sum(1 for s in slaves if s.online),
            "sources": sum(len(s.sources) for s in slaves),
            "slaves": {s.path: s.get_stats() for s in slaves},
        }
