"""
Sources

A source is one polled register of a slave. Sources are owned by their
slave's SourceRegistry; each one is also exposed on the bus at
<slave path>/source_<address> and persisted in the slave's source store.
"""

from typing import Any, Callable

from ...common.config import (
    DEFAULT_POLLING_INTERVAL_MS,
    MAX_POLLING_INTERVAL_MS,
    UNSET_ADDRESS,
    SignatureType,
    SourceConfig,
)
from ...common.exceptions import (
    InvalidArgumentsError,
    SourceNotFoundError,
    StorageError,
)
from ...common.logging_setup import get_service_logger
from ...storage.kv_store import GroupStore, format_address_group
from ..bus.object_bus import SOURCE_IFACE, Interface, ObjectBus, Property

logger = get_service_logger("slave.source")

SOURCE_ARG_KEYS = ("Name", "Type", "Unit", "Address", "PollingInterval")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_interval(interval: Any) -> int:
    if not _is_int(interval) or not 0 < interval <= MAX_POLLING_INTERVAL_MS:
        raise InvalidArgumentsError(
            f"PollingInterval must be 1..{MAX_POLLING_INTERVAL_MS} ms: {interval!r}"
        )
    return interval


def parse_source_args(args: Any) -> SourceConfig:
    """
    Validate an AddSource request dictionary.

    Raises:
        InvalidArgumentsError: unknown key, missing field, bad type/value
    """
    if not isinstance(args, dict):
        raise InvalidArgumentsError("expected a dictionary")

    for key in args:
        if key not in SOURCE_ARG_KEYS:
            raise InvalidArgumentsError(f"unknown key: {key}")

    name = args.get("Name")
    type_code = args.get("Type")
    unit = args.get("Unit")
    address = args.get("Address", UNSET_ADDRESS)
    interval = args.get("PollingInterval", DEFAULT_POLLING_INTERVAL_MS)

    if not isinstance(name, str) or not name:
        raise InvalidArgumentsError("Name is required")
    if not isinstance(unit, str) or not unit:
        raise InvalidArgumentsError("Unit is required")
    if not isinstance(type_code, str) or len(type_code) != 1:
        raise InvalidArgumentsError("Type must be a single character")

    # Restricted to basic types: bool, byte, u16, u32, u64
    try:
        signature = SignatureType(type_code)
    except ValueError:
        logger.info(f"Limited to basic types only, got '{type_code}'")
        raise InvalidArgumentsError(f"unsupported Type: {type_code}")

    if not _is_int(address) or not 0 <= address < UNSET_ADDRESS:
        raise InvalidArgumentsError(f"Address is required (0..0xfffe): {address!r}")

    return SourceConfig(
        address=address,
        name=name,
        signature=signature,
        unit=unit,
        interval_ms=validate_interval(interval),
    )


def source_config_from_store(address: int, entries: dict[str, Any]) -> SourceConfig:
    """
    Rebuild a source definition from its persisted group.

    Raises:
        InvalidArgumentsError: persisted entries are incomplete or invalid
    """
    return parse_source_args({
        "Name": entries.get("Name"),
        "Type": entries.get("Type"),
        "Unit": entries.get("Unit"),
        "Address": address,
        "PollingInterval": entries.get("PollingInterval", DEFAULT_POLLING_INTERVAL_MS),
    })


class Source:
    """
    One polled register.

    Holds the last value read and publishes changes of Value/Valid on the
    bus. on_interval_changed lets the owning slave reschedule polling.
    """

    def __init__(
        self,
        slave_path: str,
        config: SourceConfig,
        bus: ObjectBus,
        store: GroupStore | None = None,
    ):
        self.slave_path = slave_path
        self.address = config.address
        self.name = config.name
        self.signature = config.signature
        self.unit = config.unit
        self.interval_ms = config.interval_ms
        self.path = f"{slave_path}/source_{self.address:04x}"

        self.value: bool | int | None = None
        self.valid = False

        self.on_interval_changed: Callable[["Source"], None] | None = None

        self._bus = bus
        self._store = store
        self._registered = False

    @classmethod
    def create(
        cls,
        slave_path: str,
        config: SourceConfig,
        bus: ObjectBus,
        store: GroupStore | None = None,
        persist: bool = True,
    ) -> "Source":
        """Build a source, register its bus object and (optionally) persist it."""
        source = cls(slave_path, config, bus, store)
        bus.register_object(source.path, source._build_interface())
        source._registered = True

        if persist:
            source.save()

        logger.info(
            f"Source {source.path}: addr=0x{source.address:04x} "
            f"type={source.signature.value} interval={source.interval_ms}ms"
        )
        return source

    @property
    def group(self) -> str:
        return format_address_group(self.address)

    def save(self) -> None:
        """Write this source's group (errors are logged, not raised)."""
        if self._store is None:
            return

        try:
            self._store.write_group(self.group, {
                "Name": self.name,
                "Type": self.signature.value,
                "Unit": self.unit,
                "PollingInterval": self.interval_ms,
            })
        except StorageError as e:
            logger.error(f"Can't persist source {self.path}: {e.message}")

    def destroy(self, purge: bool) -> None:
        """Unregister from the bus; purge also deletes the persisted group."""
        if self._registered:
            self._bus.unregister_object(self.path)
            self._registered = False

        self.on_interval_changed = None

        if purge and self._store is not None:
            if not self._store.remove_group(self.group):
                logger.info(f"storage: source group {self.group} not removed")

    def set_value(self, value: bool | int) -> None:
        """Store a fresh reading, mark valid and publish changes."""
        value_changed = value != self.value or not self.valid
        valid_changed = not self.valid

        self.value = value
        self.valid = True

        if not self._registered:
            return
        if value_changed:
            self._bus.property_changed(self.path, SOURCE_IFACE, "Value")
        if valid_changed:
            self._bus.property_changed(self.path, SOURCE_IFACE, "Valid")

    def set_name(self, name: Any) -> None:
        if not isinstance(name, str) or not name:
            raise InvalidArgumentsError("Name must be a non-empty string")

        self.name = name
        self.save()
        self._bus.property_changed(self.path, SOURCE_IFACE, "Name")

    def set_interval(self, interval: Any) -> None:
        self.interval_ms = validate_interval(interval)
        self.save()
        self._bus.property_changed(self.path, SOURCE_IFACE, "PollingInterval")

        if self.on_interval_changed is not None:
            self.on_interval_changed(self)

    def _build_interface(self) -> Interface:
        return Interface(
            name=SOURCE_IFACE,
            properties={
                "Name": Property(lambda: self.name, self.set_name),
                "Type": Property(lambda: self.signature.value),
                "Unit": Property(lambda: self.unit),
                "Address": Property(lambda: self.address),
                "PollingInterval": Property(lambda: self.interval_ms, self.set_interval),
                "Value": Property(lambda: self.value),
                "Valid": Property(lambda: self.valid),
            },
        )


class SourceRegistry:
    """
    Sources of one slave, keyed by bus path.

    Iteration follows insertion order.
    """

    def __init__(self):
        self._sources: dict[str, Source] = {}

    def __len__(self) -> int:
        return len(self._sources)

    def __iter__(self):
        return iter(list(self._sources.values()))

    def __contains__(self, path: str) -> bool:
        return path in self._sources

    def add(self, source: Source) -> None:
        """
        Insert a source.

        Raises:
            InvalidArgumentsError: address already assigned
        """
        if self.find_by_address(source.address) is not None:
            raise InvalidArgumentsError(
                f"address 0x{source.address:04x} assigned already"
            )
        self._sources[source.path] = source

    def remove(self, path: str) -> Source:
        """
        Take a source out of the registry.

        The caller disarms its poll timer before destroying it.

        Raises:
            SourceNotFoundError: no source at path
        """
        source = self._sources.pop(path, None)
        if source is None:
            raise SourceNotFoundError(path)
        return source

    def find_by_path(self, path: str) -> Source | None:
        return self._sources.get(path)

    def find_by_address(self, address: int) -> Source | None:
        for source in self._sources.values():
            if source.address == address:
                return source
        return None

    def clear(self) -> list[Source]:
        """Empty the registry, returning what it held."""
        sources = list(self._sources.values())
        self._sources.clear()
        return sources
