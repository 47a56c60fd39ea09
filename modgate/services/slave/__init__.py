"""
Slave Service - Modbus Communication

Responsibilities:
- Select and build the transport driver from the slave URL
- Keep each slave connected, retrying with a fixed backoff
- Poll every source at its own interval while connected
- Persist slave and source definitions
"""

from .driver import ModbusDriver, TcpDriver, SerialDriver, LinkWatcher, create_driver
from .poller import PollScheduler
from .registry import SlaveRegistry
from .slave import Slave, SlaveContext, SlaveState
from .source import Source, SourceRegistry, parse_source_args

__all__ = [
    "ModbusDriver",
    "TcpDriver",
    "SerialDriver",
    "LinkWatcher",
    "create_driver",
    "PollScheduler",
    "SlaveRegistry",
    "Slave",
    "SlaveContext",
    "SlaveState",
    "Source",
    "SourceRegistry",
    "parse_source_args",
]
