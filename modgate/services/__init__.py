"""
Gateway Services

- slave/ - Slave connections, sources and polling
- bus/ - Control-plane object bus and its HTTP surface
- gateway.py - Process wiring and shutdown handling
"""
