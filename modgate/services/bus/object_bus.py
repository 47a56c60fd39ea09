"""
Control-Plane Object Bus

In-process object model: objects registered at paths expose named
interfaces with methods and properties. Property changes are fanned out
to subscribers (the HTTP event stream, tests, ...).
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable

from ...common.exceptions import BusError, InvalidArgumentsError
from ...common.logging_setup import get_service_logger

logger = get_service_logger("bus")

SLAVE_IFACE = "modgate.Slave1"
SOURCE_IFACE = "modgate.Source1"
MANAGER_IFACE = "modgate.Manager1"


@dataclass
class Property:
    """Property accessor pair (setter None = read-only)"""
    getter: Callable[[], Any]
    setter: Callable[[Any], None] | None = None

    @property
    def writable(self) -> bool:
        return self.setter is not None


@dataclass
class Interface:
    """Named set of methods and properties bound to one object"""
    name: str
    methods: dict[str, Callable[..., Any]] = field(default_factory=dict)
    properties: dict[str, Property] = field(default_factory=dict)


@dataclass
class PropertyChange:
    """Property-changed notification"""
    path: str
    interface: str
    name: str
    value: Any

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "interface": self.interface,
            "name": self.name,
            "value": self.value,
        }


class ObjectBus:
    """
    Registry of control-plane objects.

    Dispatch errors (unknown object, interface or member) raise BusError;
    validation errors raised by method/property implementations, and
    writes to read-only properties, raise InvalidArgumentsError.
    """

    def __init__(self):
        self._objects: dict[str, dict[str, Interface]] = {}
        self._subscribers: list[Callable[[PropertyChange], None]] = []
        self._change_count = 0

    def register_object(self, path: str, *interfaces: Interface) -> None:
        """Register an object; the path must be free."""
        if path in self._objects:
            raise BusError(f"object already registered: {path}", path=path)
        if not interfaces:
            raise BusError(f"no interfaces for {path}", path=path)

        self._objects[path] = {iface.name: iface for iface in interfaces}
        logger.debug(f"Registered object {path}")

    def unregister_object(self, path: str) -> bool:
        if self._objects.pop(path, None) is None:
            return False
        logger.debug(f"Unregistered object {path}")
        return True

    def has_object(self, path: str) -> bool:
        return path in self._objects

    def objects(self) -> dict[str, list[str]]:
        """Registered paths and their interface names."""
        return {
            path: sorted(interfaces.keys())
            for path, interfaces in sorted(self._objects.items())
        }

    async def call_method(
        self,
        path: str,
        interface: str,
        method: str,
        *args: Any,
    ) -> Any:
        """Invoke a method (sync or async implementation)."""
        iface = self._get_interface(path, interface)
        handler = iface.methods.get(method)
        if handler is None:
            raise BusError(f"no method {interface}.{method} on {path}", path=path)

        try:
            inspect.signature(handler).bind(*args)
        except TypeError as e:
            raise InvalidArgumentsError(f"{interface}.{method}: {e}")

        result = handler(*args)
        if inspect.isawaitable(result):
            result = await result
        return result

    def get_property(self, path: str, interface: str, name: str) -> Any:
        prop = self._get_property(path, interface, name)
        return prop.getter()

    def get_properties(self, path: str) -> dict[str, dict[str, Any]]:
        """All property values of an object, grouped by interface."""
        interfaces = self._objects.get(path)
        if interfaces is None:
            raise BusError(f"no object at {path}", path=path)

        return {
            iface.name: {
                name: prop.getter() for name, prop in iface.properties.items()
            }
            for iface in interfaces.values()
        }

    def set_property(self, path: str, interface: str, name: str, value: Any) -> None:
        prop = self._get_property(path, interface, name)
        if prop.setter is None:
            raise InvalidArgumentsError(f"property {interface}.{name} is read-only")
        prop.setter(value)

    def property_changed(self, path: str, interface: str, name: str) -> None:
        """Publish the current value of a property to every subscriber."""
        try:
            value = self.get_property(path, interface, name)
        except BusError as e:
            logger.warning(f"property_changed ignored: {e.message}")
            return

        change = PropertyChange(path=path, interface=interface, name=name, value=value)
        self._change_count += 1

        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception as e:
                logger.error(f"Subscriber error on {path} {name}: {e}")

    def subscribe(self, callback: Callable[[PropertyChange], None]) -> Callable[[], None]:
        """
        Receive property changes.

        Returns:
            Function that cancels the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def get_stats(self) -> dict:
        return {
            "objects": len(self._objects),
            "subscribers": len(self._subscribers),
            "property_changes": self._change_count,
        }

    def _get_interface(self, path: str, interface: str) -> Interface:
        interfaces = self._objects.get(path)
        if interfaces is None:
            raise BusError(f"no object at {path}", path=path)

        iface = interfaces.get(interface)
        if iface is None:
            raise BusError(f"no interface {interface} on {path}", path=path)
        return iface

    def _get_property(self, path: str, interface: str, name: str) -> Property:
        iface = self._get_interface(path, interface)
        prop = iface.properties.get(name)
        if prop is None:
            raise BusError(f"no property {interface}.{name} on {path}", path=path)
        return prop
