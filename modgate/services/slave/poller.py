"""
Poll Scheduler

One re-armable timer per source of a connected slave. Each tick reads the
source's register with the read matching its type code, stores the value
and re-arms with the source's current interval.
"""

from typing import Awaitable, Callable

from ...common.config import SignatureType
from ...common.exceptions import DriverError, ReadError
from ...common.logging_setup import get_service_logger, log_device_read
from ...common.scheduler import Timeout
from .driver import ModbusDriver
from .source import Source

logger = get_service_logger("slave.poller")


async def _read_bool(driver: ModbusDriver, address: int) -> bool:
    return await driver.read_bool(address)


async def _read_byte(driver: ModbusDriver, address: int) -> int:
    return await driver.read_byte(address)


async def _read_u16(driver: ModbusDriver, address: int) -> int:
    return await driver.read_u16(address)


async def _read_u32(driver: ModbusDriver, address: int) -> int:
    raw = await driver.read_u32(address)
    return int.from_bytes(raw, "big")


async def _read_u64(driver: ModbusDriver, address: int) -> int:
    raw = await driver.read_u64(address)
    return int.from_bytes(raw, "big")


READERS: dict[SignatureType, Callable[[ModbusDriver, int], Awaitable[bool | int]]] = {
    SignatureType.BOOL: _read_bool,
    SignatureType.BYTE: _read_byte,
    SignatureType.UINT16: _read_u16,
    SignatureType.UINT32: _read_u32,
    SignatureType.UINT64: _read_u64,
}


async def read_source(driver: ModbusDriver, source: Source) -> bool | int:
    """
    Read one source's register.

    Raises:
        ReadError: transaction failed
    """
    return await READERS[source.signature](driver, source.address)


class PollScheduler:
    """
    Per-slave set of poll timers keyed by source path.

    The slave binds its driver when the link comes up and disarms every
    timer when it goes down; no timer ever outlives the connection.
    """

    def __init__(self, name: str):
        self.name = name
        self._driver: ModbusDriver | None = None
        self._timers: dict[str, Timeout] = {}
        self._failures: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._timers)

    def __contains__(self, path: str) -> bool:
        return path in self._timers

    def bind(self, driver: ModbusDriver | None) -> None:
        self._driver = driver

    def arm(self, source: Source) -> None:
        """Start polling a source, or reschedule it to its current interval."""
        timer = self._timers.get(source.path)
        if timer is not None:
            timer.modify_ms(source.interval_ms)
            return

        async def on_expired(timeout: Timeout) -> None:
            await self._poll(source, timeout)

        self._timers[source.path] = Timeout(
            source.interval_ms / 1000.0,
            on_expired,
            name=source.path,
        )

    def disarm(self, path: str) -> bool:
        timer = self._timers.pop(path, None)
        self._failures.pop(path, None)
        if timer is None:
            return False
        timer.remove()
        return True

    def disarm_all(self) -> int:
        """Remove every timer; returns how many were armed."""
        timers = list(self._timers.values())
        self._timers.clear()
        self._failures.clear()

        for timer in timers:
            timer.remove()

        if timers:
            logger.debug(f"{self.name}: disarmed {len(timers)} poll timers")
        return len(timers)

    async def _poll(self, source: Source, timeout: Timeout) -> None:
        driver = self._driver
        if driver is None:
            return

        try:
            value = await read_source(driver, source)
            if self._failures.pop(source.path, 0):
                logger.info(f"{self.name}: {source.path} readable again")
            source.set_value(value)
            log_device_read(logger, self.name, source.address, value)
        except ReadError as e:
            self._record_failure(source, e)
        except DriverError as e:
            logger.error(f"{self.name}: driver error on {source.path}: {e.message}")
        except Exception as e:
            logger.error(f"{self.name}: unexpected error polling {source.path}: {e}")
        finally:
            # Interval may have changed while the read was in flight
            timeout.modify_ms(source.interval_ms)

    def _record_failure(self, source: Source, error: ReadError) -> None:
        failures = self._failures.get(source.path, 0) + 1
        self._failures[source.path] = failures

        # Only log the first failure of a run
        if failures == 1:
            log_device_read(logger, self.name, source.address, None, success=False)
            logger.warning(f"{self.name}: {source.path}: {error.message}")

    def get_stats(self) -> dict:
        return {
            "armed": len(self._timers),
            "failing": sum(1 for n in self._failures.values() if n > 0),
            "timers": {
                path: timer.fire_count for path, timer in self._timers.items()
            },
        }
