"""
modgate - Modbus Slave Gateway

Bridges Modbus TCP and serial (RTU) devices to a control-plane object
model. Each slave is connected, monitored and polled independently;
register values are published as property changes.
"""

__version__ = "1.0.0"
