"""
Key/Value Group Store

File-backed store of named groups, each holding string or integer keys.
Used for the slave list (slaves.yaml), each slave's sources
(<key>/sources.yaml) and the units vocabulary (units.yaml).

Layout on disk (YAML):

    group_name:
      Key: value
      Other: 42

Writes go to a temp file that is then renamed over the store, so a crash
never leaves a half-written file behind.
"""

import os
from pathlib import Path
from typing import Any, Callable

import yaml

from ..common.config import SlaveConfig, UNSET_ADDRESS
from ..common.exceptions import StorageError
from ..common.logging_setup import get_service_logger

logger = get_service_logger("storage")


class GroupStore:
    """
    YAML group store with atomic writes.

    The whole file is held in memory; every write flushes it.
    """

    def __init__(self, path: str | Path, data: dict[str, dict[str, Any]] | None = None):
        self.path = Path(path)
        self._data: dict[str, dict[str, Any]] = data or {}
        self._closed = False

    @classmethod
    def open(cls, path: str | Path) -> "GroupStore":
        """
        Open (or prepare to create) a store.

        A missing file yields an empty store, created on first write.

        Raises:
            StorageError: file exists but cannot be read or parsed
        """
        path = Path(path)
        if not path.exists():
            return cls(path)

        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise StorageError(f"cannot open {path}: {e}", path=str(path))

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise StorageError(f"{path} is not a group mapping", path=str(path))

        data = {}
        for group, entries in raw.items():
            if not isinstance(entries, dict):
                logger.warning(f"Skipping malformed group '{group}' in {path}")
                continue
            data[str(group)] = {str(k): v for k, v in entries.items()}

        return cls(path, data)

    @property
    def exists(self) -> bool:
        """Backing file is present on disk."""
        return self.path.exists()

    def close(self) -> None:
        self._closed = True

    def groups(self) -> list[str]:
        return list(self._data.keys())

    def has_group(self, group: str) -> bool:
        return group in self._data

    def get_group(self, group: str) -> dict[str, Any]:
        return dict(self._data.get(group, {}))

    def read_key(self, group: str, key: str, default: Any = None) -> Any:
        return self._data.get(group, {}).get(key, default)

    def write_key_string(self, group: str, key: str, value: str) -> None:
        self._write_key(group, key, str(value))

    def write_key_int(self, group: str, key: str, value: int) -> None:
        self._write_key(group, key, int(value))

    def write_group(self, group: str, entries: dict[str, str | int]) -> None:
        """Set several keys of one group with a single flush."""
        self._data.setdefault(group, {}).update(entries)
        self._flush()

    def has_unit(self, namespace: str, hex_symbol: str) -> bool:
        """Check a unit symbol (upper-case hex of its UTF-8 bytes)."""
        return hex_symbol.upper() in self._data.get(namespace, {})

    def remove_group(self, group: str) -> bool:
        """
        Delete a group.

        Returns:
            True if the group existed and the store was flushed
        """
        if group not in self._data:
            return False

        del self._data[group]
        try:
            self._flush()
        except StorageError as e:
            logger.error(f"{e.message}")
            return False
        return True

    def unlink(self) -> bool:
        """Delete the backing file (and its directory if it is now empty)."""
        self._data.clear()
        try:
            self.path.unlink()
        except OSError as e:
            logger.error(f"unlink({self.path}): {e}")
            return False

        try:
            self.path.parent.rmdir()
        except OSError as e:
            logger.error(f"rmdir({self.path.parent}): {e}")
        return True

    def foreach_slave(self, callback: Callable[[SlaveConfig], None]) -> int:
        """
        Call back once per persisted slave group.

        Groups missing Id or URL are skipped.

        Returns:
            Number of slaves handed to the callback
        """
        count = 0
        for key, entries in list(self._data.items()):
            url = entries.get("URL")
            device_id = entries.get("Id")
            if not url or not isinstance(device_id, int):
                logger.warning(f"Skipping incomplete slave group '{key}'")
                continue

            callback(SlaveConfig(
                key=key,
                device_id=device_id,
                name=str(entries.get("Name") or url),
                url=str(url),
            ))
            count += 1
        return count

    def foreach_source(
        self,
        callback: Callable[[int, dict[str, Any]], None],
    ) -> int:
        """
        Call back once per persisted source group as (address, entries).

        Group names are addresses formatted as "0x%04x"; others are skipped.

        Returns:
            Number of sources handed to the callback
        """
        count = 0
        for group, entries in list(self._data.items()):
            address = parse_address_group(group)
            if address is None:
                logger.warning(f"Skipping source group with bad address '{group}'")
                continue

            callback(address, dict(entries))
            count += 1
        return count

    def _write_key(self, group: str, key: str, value: Any) -> None:
        self._data.setdefault(group, {})[key] = value
        self._flush()

    def _flush(self) -> None:
        if self._closed:
            raise StorageError(f"store is closed: {self.path}", path=str(self.path))

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.path.with_suffix(".tmp")
            with open(temp_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(self._data, f, allow_unicode=True, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            temp_path.replace(self.path)
        except OSError as e:
            raise StorageError(f"cannot write {self.path}: {e}", path=str(self.path))


def format_address_group(address: int) -> str:
    return f"0x{address:04x}"


def parse_address_group(group: str) -> int | None:
    """Parse "0x%04x" group names, None if malformed."""
    if not group.lower().startswith("0x"):
        return None
    try:
        address = int(group, 16)
    except ValueError:
        return None
    if not 0 <= address < UNSET_ADDRESS:
        return None
    return address


def unit_to_hex(symbol: str) -> str:
    """Key used by the units vocabulary for a symbol."""
    return symbol.encode("utf-8").hex().upper()
