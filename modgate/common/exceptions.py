"""
Custom Exception Classes for the Gateway

Hierarchical exception structure for error handling across services.
"""


class GatewayError(Exception):
    """Base exception for all gateway errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(GatewayError):
    """Configuration-related errors"""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(f"Config Error: {message}", recoverable)


class StorageError(GatewayError):
    """Persistent store could not be opened, read or written"""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(f"Storage Error: {message}", recoverable=False)


class BusError(GatewayError):
    """Object bus registration or dispatch errors"""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(f"Bus Error: {message}", recoverable=True)


class InvalidArgumentsError(GatewayError):
    """Control-plane request rejected by validation (no state was changed)"""

    def __init__(self, message: str):
        super().__init__(f"Invalid Arguments: {message}", recoverable=True)


class SourceNotFoundError(InvalidArgumentsError):
    """No source registered at the requested path"""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"source not found: {path}")


class SlaveNotFoundError(InvalidArgumentsError):
    """No slave registered at the requested path"""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"slave not found: {path}")


class DriverError(GatewayError):
    """Driver construction errors (bad URL, bad device id)"""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        recoverable: bool = True,
    ):
        self.url = url
        super().__init__(f"Driver Error: {message}", recoverable)


class CommunicationError(DriverError):
    """Modbus link errors: connect failures and link loss"""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        host: str | None = None,
        port: int | None = None,
    ):
        self.host = host
        self.port = port
        super().__init__(message, url, recoverable=True)


class ReadError(DriverError):
    """A single register read transaction failed"""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        register: int | None = None,
    ):
        self.register = register
        super().__init__(message, url, recoverable=True)
