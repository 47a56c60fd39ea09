"""
Control-Plane Bus

In-process object model (object_bus.py) and its HTTP/WebSocket
front end (http_api.py).
"""

from .object_bus import (
    MANAGER_IFACE,
    SLAVE_IFACE,
    SOURCE_IFACE,
    Interface,
    ObjectBus,
    Property,
    PropertyChange,
)
from .http_api import ControlApi

__all__ = [
    "MANAGER_IFACE",
    "SLAVE_IFACE",
    "SOURCE_IFACE",
    "Interface",
    "ObjectBus",
    "Property",
    "PropertyChange",
    "ControlApi",
]
