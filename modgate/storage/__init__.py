"""
Persistent Storage

Key/value group stores for slave definitions, source definitions and the
units vocabulary.
"""

from .kv_store import (
    GroupStore,
    format_address_group,
    parse_address_group,
    unit_to_hex,
)

__all__ = [
    "GroupStore",
    "format_address_group",
    "parse_address_group",
    "unit_to_hex",
]
