"""
Shared pytest fixtures for gateway tests.

Provides fixtures for:
- Temporary storage directories and opened stores
- Fake drivers implementing the driver contract
- Object bus with recorded property changes
"""
import asyncio
import struct
from pathlib import Path

import pytest
import pytest_asyncio

from modgate.common.config import DEFAULT_UNITS_FILE, GatewayConfig
from modgate.common.exceptions import CommunicationError, DriverError, ReadError
from modgate.services.bus.object_bus import ObjectBus, PropertyChange
from modgate.services.slave.driver import DriverKind, ModbusDriver, driver_kind_for_url
from modgate.services.slave.slave import Slave, SlaveContext
from modgate.storage.kv_store import GroupStore

# Short timings keep the state machine tests fast
TEST_BACKOFF_S = 0.05
TEST_INTERVAL_MS = 10


# ============================================================================
# Fake driver
# ============================================================================

class FakeDriver(ModbusDriver):
    """In-memory slave: coils and holding registers keyed by address."""

    kind = DriverKind.TCP

    def __init__(self, url: str, timeout: float, factory: "FakeDriverFactory"):
        super().__init__(url)
        if driver_kind_for_url(url) == DriverKind.SERIAL:
            self.kind = DriverKind.SERIAL
            self.max_device_id = 247
        self.timeout = timeout
        self._factory = factory
        self._connected = False
        self.closed = False
        self.reads: list[int] = []

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self._factory.fail_connects > 0:
            self._factory.fail_connects -= 1
            raise CommunicationError("connection refused", url=self.url)
        self._connected = True
        self._lost.clear()

    def close(self) -> None:
        self._connected = False
        self.closed = True
        self._mark_lost()

    def drop_link(self) -> None:
        """Simulate the peer going away."""
        self._connected = False
        self._mark_lost()

    def _register(self, address: int) -> int:
        self.reads.append(address)
        if address in self._factory.failing:
            raise ReadError("Read timeout", url=self.url, register=address)
        return self._factory.registers.get(address, 0)

    async def read_bool(self, address: int) -> bool:
        self.reads.append(address)
        if address in self._factory.failing:
            raise ReadError("Read timeout", url=self.url, register=address)
        return self._factory.coils.get(address, False)

    async def read_byte(self, address: int) -> int:
        return self._register(address) & 0xFF

    async def read_u16(self, address: int) -> int:
        return self._register(address)

    async def read_u32(self, address: int) -> bytes:
        high = self._register(address)
        return struct.pack(">HH", high, self._factory.registers.get(address + 1, 0))

    async def read_u64(self, address: int) -> bytes:
        first = self._register(address)
        rest = [self._factory.registers.get(address + i, 0) for i in range(1, 4)]
        return struct.pack(">HHHH", first, *rest)


class FakeDriverFactory:
    """Driver factory recording every driver it builds."""

    def __init__(self):
        self.drivers: list[FakeDriver] = []
        self.registers: dict[int, int] = {}
        self.coils: dict[int, bool] = {}
        self.failing: set[int] = set()
        self.fail_connects = 0
        self.fail_builds = 0
        self.attempts: list[float] = []

    def __call__(self, url: str, timeout: float) -> FakeDriver:
        self.attempts.append(asyncio.get_running_loop().time())
        if self.fail_builds > 0:
            self.fail_builds -= 1
            raise DriverError("driver unavailable", url=url)
        driver_kind_for_url(url)
        driver = FakeDriver(url, timeout, self)
        self.drivers.append(driver)
        return driver

    @property
    def last(self) -> FakeDriver | None:
        return self.drivers[-1] if self.drivers else None


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def units_file() -> Path:
    return DEFAULT_UNITS_FILE


@pytest.fixture
def storage_dir(tmp_path) -> Path:
    path = tmp_path / "storage"
    path.mkdir()
    return path


@pytest.fixture
def gateway_config(storage_dir, units_file) -> GatewayConfig:
    return GatewayConfig(
        storage_dir=storage_dir,
        units_file=units_file,
        retry_backoff_s=TEST_BACKOFF_S,
        request_timeout_s=0.5,
    )


@pytest.fixture
def driver_factory() -> FakeDriverFactory:
    return FakeDriverFactory()


@pytest.fixture
def bus() -> ObjectBus:
    return ObjectBus()


@pytest.fixture
def changes(bus) -> list[PropertyChange]:
    """Every property change published on the bus."""
    recorded: list[PropertyChange] = []
    bus.subscribe(recorded.append)
    return recorded


@pytest.fixture
def context(bus, storage_dir, units_file, driver_factory) -> SlaveContext:
    return SlaveContext(
        bus=bus,
        slaves_store=GroupStore.open(storage_dir / "slaves.yaml"),
        units_store=GroupStore.open(units_file),
        storage_dir=storage_dir,
        retry_backoff_s=TEST_BACKOFF_S,
        request_timeout_s=0.5,
        driver_factory=driver_factory,
    )


@pytest_asyncio.fixture
async def slave(context, changes):
    """A TCP slave; its first connection attempt runs on the next loop pass."""
    slave = Slave.create("abc123", 1, "Meter", "tcp://127.0.0.1:1502", context)
    yield slave
    slave.destroy(purge=False)


def source_args(address: int, **overrides) -> dict:
    args = {
        "Name": f"Register {address}",
        "Type": "q",
        "Unit": "V",
        "Address": address,
        "PollingInterval": TEST_INTERVAL_MS,
    }
    args.update(overrides)
    return args
