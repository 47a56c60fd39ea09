"""
Modbus Drivers

Transport-agnostic register access for one slave. The URL prefix selects
the transport once, at slave creation:

    tcp://host:port
    serial://dev/ttyUSB0
    serial://dev/ttyUSB0:115200,'N',8,1

Byte-level framing is delegated to pymodbus. 32/64-bit reads return the
raw registers packed in big-endian register order; callers convert.
"""

import asyncio
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable
from urllib.parse import urlsplit

from pymodbus.client import AsyncModbusTcpClient, AsyncModbusSerialClient
from pymodbus.exceptions import ModbusException

from ...common.exceptions import CommunicationError, DriverError, ReadError
from ...common.logging_setup import get_service_logger

logger = get_service_logger("slave.driver")

TCP_PREFIX = "tcp://"
SERIAL_PREFIX = "serial://"

DEFAULT_TCP_PORT = 502
DEFAULT_BAUDRATE = 115200
DEFAULT_TIMEOUT_S = 3.0


class DriverKind(str, Enum):
    """Transport variants"""
    TCP = "tcp"
    SERIAL = "serial"


@dataclass
class TcpParams:
    host: str
    port: int = DEFAULT_TCP_PORT


@dataclass
class SerialParams:
    device: str
    baudrate: int = DEFAULT_BAUDRATE
    parity: str = "N"
    bytesize: int = 8
    stopbits: int = 1


def driver_kind_for_url(url: str | None) -> DriverKind:
    """
    Select the transport for a URL.

    Raises:
        DriverError: URL missing or prefix not recognized
    """
    if not url:
        raise DriverError("missing URL", url=url)
    if url.startswith(TCP_PREFIX):
        return DriverKind.TCP
    if url.startswith(SERIAL_PREFIX):
        return DriverKind.SERIAL
    raise DriverError(f"invalid URL scheme: {url}", url=url)


def parse_tcp_url(url: str) -> TcpParams:
    """Parse tcp://host[:port] (IPv6 hosts in brackets)."""
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as e:
        raise DriverError(f"invalid TCP URL {url}: {e}", url=url)

    if parts.scheme != DriverKind.TCP.value or not parts.hostname:
        raise DriverError(f"invalid TCP URL: {url}", url=url)
    if parts.path not in ("", "/"):
        raise DriverError(f"unexpected path in TCP URL: {url}", url=url)

    return TcpParams(host=parts.hostname, port=port or DEFAULT_TCP_PORT)


def parse_serial_url(url: str) -> SerialParams:
    """Parse serial://device[:baud,'parity',databits,stopbits]."""
    rest = url[len(SERIAL_PREFIX):]
    device, _, settings = rest.partition(":")

    if not device.startswith("/"):
        device = "/" + device
    if device == "/":
        raise DriverError(f"missing serial device: {url}", url=url)

    params = SerialParams(device=device)
    if not settings:
        return params

    fields = [f.strip() for f in settings.split(",")]
    if len(fields) != 4:
        raise DriverError(
            f"serial settings must be baud,parity,databits,stopbits: {url}",
            url=url,
        )

    try:
        params.baudrate = int(fields[0])
        params.bytesize = int(fields[2])
        params.stopbits = int(fields[3])
    except ValueError as e:
        raise DriverError(f"invalid serial settings {url}: {e}", url=url)

    params.parity = fields[1].strip("'\"").upper()

    if params.baudrate <= 0:
        raise DriverError(f"invalid baud rate: {params.baudrate}", url=url)
    if params.parity not in ("N", "E", "O"):
        raise DriverError(f"invalid parity: {fields[1]}", url=url)
    if params.bytesize not in (5, 6, 7, 8):
        raise DriverError(f"invalid data bits: {params.bytesize}", url=url)
    if params.stopbits not in (1, 2):
        raise DriverError(f"invalid stop bits: {params.stopbits}", url=url)

    return params


class ModbusDriver(ABC):
    """
    Register access contract for one slave link.

    Lifecycle: construct (parse only) -> set_device_id() -> connect() ->
    reads ... -> close(). A driver is never reconnected; the slave builds
    a fresh one for every attempt.
    """

    kind: DriverKind
    max_device_id = 255

    def __init__(self, url: str):
        self.url = url
        self.device_id = 1
        self._lost = asyncio.Event()

    def set_device_id(self, device_id: int) -> None:
        if not 0 <= device_id <= self.max_device_id:
            raise DriverError(
                f"device id {device_id} out of range for {self.kind.value}",
                url=self.url,
            )
        self.device_id = device_id

    async def wait_disconnected(self) -> None:
        """Resolve once the link is lost or closed."""
        await self._lost.wait()

    def _mark_lost(self) -> None:
        if not self._lost.is_set():
            logger.debug(f"Link lost: {self.url}")
            self._lost.set()

    @property
    @abstractmethod
    def connected(self) -> bool: ...

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    def close(self) -> None: ...

    @abstractmethod
    async def read_bool(self, address: int) -> bool: ...

    @abstractmethod
    async def read_byte(self, address: int) -> int: ...

    @abstractmethod
    async def read_u16(self, address: int) -> int: ...

    @abstractmethod
    async def read_u32(self, address: int) -> bytes: ...

    @abstractmethod
    async def read_u64(self, address: int) -> bytes: ...


class PymodbusDriver(ModbusDriver):
    """
    Shared pymodbus implementation.

    Handles:
    - Connect/close of the async pymodbus client
    - Link-loss detection (pymodbus connect trace + failed transactions)
    - Per-link transaction serialization
    - Coil and holding register reads
    """

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT_S):
        super().__init__(url)
        self.timeout = timeout

        self._client: Any = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._client is not None and bool(self._client.connected)

    @abstractmethod
    def _make_client(self) -> Any:
        """Build the pymodbus client (no I/O)."""

    @abstractmethod
    def describe(self) -> str: ...

    async def connect(self) -> None:
        """
        Establish the link.

        Raises:
            CommunicationError: handshake failed
        """
        if self.connected:
            return

        try:
            self._client = self._make_client()
            ok = await self._client.connect()
        except Exception as e:
            raise self._comm_error(f"connect error: {e}")

        if not ok or not self._client.connected:
            raise self._comm_error("connection refused or timed out")

        # Traces from the handshake itself are not link losses
        self._lost.clear()
        logger.debug(f"Connected to {self.describe()} (device_id={self.device_id})")

    def close(self) -> None:
        if self._client is not None:
            client = self._client
            self._client = None
            client.close()
            logger.debug(f"Disconnected from {self.describe()}")
        self._mark_lost()

    async def read_bool(self, address: int) -> bool:
        response = await self._transaction("coils", address, 1)
        return bool(response.bits[0])

    async def read_byte(self, address: int) -> int:
        registers = await self._read_registers(address, 1)
        return registers[0] & 0xFF

    async def read_u16(self, address: int) -> int:
        registers = await self._read_registers(address, 1)
        return registers[0]

    async def read_u32(self, address: int) -> bytes:
        registers = await self._read_registers(address, 2)
        return struct.pack(">HH", registers[0], registers[1])

    async def read_u64(self, address: int) -> bytes:
        registers = await self._read_registers(address, 4)
        return struct.pack(
            ">HHHH",
            registers[0],
            registers[1],
            registers[2],
            registers[3],
        )

    async def _read_registers(self, address: int, count: int) -> list[int]:
        response = await self._transaction("holding", address, count)
        registers = list(response.registers)
        if len(registers) < count:
            raise ReadError(
                f"short response: {len(registers)}/{count} registers",
                url=self.url,
                register=address,
            )
        return registers

    async def _transaction(self, table: str, address: int, count: int) -> Any:
        if not self.connected:
            raise ReadError("not connected", url=self.url, register=address)

        async with self._lock:
            try:
                if table == "coils":
                    response = await self._client.read_coils(
                        address,
                        count=count,
                        device_id=self.device_id,
                    )
                else:
                    response = await self._client.read_holding_registers(
                        address,
                        count=count,
                        device_id=self.device_id,
                    )
            except ModbusException as e:
                self._check_link()
                raise ReadError(f"Modbus exception: {e}", url=self.url, register=address)
            except asyncio.TimeoutError:
                self._check_link()
                raise ReadError("Read timeout", url=self.url, register=address)
            except OSError as e:
                self._check_link()
                raise ReadError(str(e), url=self.url, register=address)

        if response.isError():
            raise ReadError(f"Modbus error: {response}", url=self.url, register=address)

        return response

    def _check_link(self) -> None:
        if self._client is not None and not self._client.connected:
            self._mark_lost()

    def _trace_connect(self, connected: bool) -> None:
        if not connected:
            self._mark_lost()

    def _comm_error(self, message: str) -> CommunicationError:
        return CommunicationError(f"{self.describe()}: {message}", url=self.url)


class TcpDriver(PymodbusDriver):
    """Modbus TCP transport"""

    kind = DriverKind.TCP
    max_device_id = 255

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT_S):
        super().__init__(url, timeout)
        self.params = parse_tcp_url(url)

    def describe(self) -> str:
        return f"{self.params.host}:{self.params.port}"

    def _make_client(self) -> AsyncModbusTcpClient:
        return AsyncModbusTcpClient(
            host=self.params.host,
            port=self.params.port,
            timeout=self.timeout,
            retries=1,
            # Reconnects are driven by the slave's retry timer
            reconnect_delay=0,
            trace_connect=self._trace_connect,
        )

    def _comm_error(self, message: str) -> CommunicationError:
        return CommunicationError(
            f"{self.describe()}: {message}",
            url=self.url,
            host=self.params.host,
            port=self.params.port,
        )


class SerialDriver(PymodbusDriver):
    """Modbus RTU serial transport"""

    kind = DriverKind.SERIAL
    max_device_id = 247

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT_S):
        super().__init__(url, timeout)
        self.params = parse_serial_url(url)

    def describe(self) -> str:
        p = self.params
        return f"{p.device} ({p.baudrate},{p.parity},{p.bytesize},{p.stopbits})"

    def _make_client(self) -> AsyncModbusSerialClient:
        return AsyncModbusSerialClient(
            port=self.params.device,
            baudrate=self.params.baudrate,
            parity=self.params.parity,
            bytesize=self.params.bytesize,
            stopbits=self.params.stopbits,
            timeout=self.timeout,
            retries=1,
            reconnect_delay=0,
            trace_connect=self._trace_connect,
        )


DRIVERS: dict[DriverKind, type[PymodbusDriver]] = {
    DriverKind.TCP: TcpDriver,
    DriverKind.SERIAL: SerialDriver,
}


def create_driver(url: str, timeout: float = DEFAULT_TIMEOUT_S) -> ModbusDriver:
    """
    Build (but do not connect) the driver matching the URL scheme.

    Raises:
        DriverError: unknown scheme or malformed URL
    """
    kind = driver_kind_for_url(url)
    return DRIVERS[kind](url, timeout=timeout)


class LinkWatcher:
    """
    Watches a connected driver and reports link loss once.

    The handler can be detached before teardown so that closing the
    driver does not trigger a reconnect.
    """

    def __init__(
        self,
        driver: ModbusDriver,
        on_disconnect: Callable[[], None] | None,
        name: str = "link",
    ):
        self.name = name
        self._driver = driver
        self._on_disconnect = on_disconnect
        self._task: asyncio.Task | None = asyncio.get_running_loop().create_task(
            self._watch(), name=f"link:{name}"
        )

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def set_disconnect_handler(self, handler: Callable[[], None] | None) -> None:
        self._on_disconnect = handler

    def close(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _watch(self) -> None:
        await self._driver.wait_disconnected()

        handler = self._on_disconnect
        self._on_disconnect = None
        if handler is None:
            return

        try:
            handler()
        except Exception as e:
            logger.error(f"Disconnect handler error ({self.name}): {e}")
