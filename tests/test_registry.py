"""
Unit tests for SlaveRegistry: startup, AddSlave/RemoveSlave and restart
round trips.
"""
import pytest
import pytest_asyncio

from modgate.common.exceptions import (
    InvalidArgumentsError,
    SlaveNotFoundError,
    StorageError,
)
from modgate.services.bus.object_bus import MANAGER_IFACE, SLAVE_IFACE, ObjectBus
from modgate.services.slave.registry import MANAGER_PATH, SlaveRegistry, parse_slave_args
from modgate.storage.kv_store import GroupStore

from conftest import source_args, wait_for


@pytest_asyncio.fixture
async def registry(gateway_config, bus, driver_factory):
    registry = SlaveRegistry(gateway_config, bus, driver_factory)
    yield registry
    registry.stop()


class TestParseSlaveArgs:
    """Test AddSlave dictionary validation."""

    def test_valid(self):
        assert parse_slave_args({"Id": 3, "URL": "tcp://10.0.0.2"}) == (3, None, "tcp://10.0.0.2")

    @pytest.mark.parametrize("args", [
        {"URL": "tcp://10.0.0.2"},
        {"Id": 256, "URL": "tcp://10.0.0.2"},
        {"Id": -1, "URL": "tcp://10.0.0.2"},
        {"Id": True, "URL": "tcp://10.0.0.2"},
        {"Id": 1},
        {"Id": 1, "URL": "http://10.0.0.2"},
        {"Id": 1, "URL": "tcp://10.0.0.2", "Name": ""},
        {"Id": 1, "URL": "tcp://10.0.0.2", "Port": 502},
        "tcp://10.0.0.2",
    ])
    def test_invalid(self, args):
        with pytest.raises(InvalidArgumentsError):
            parse_slave_args(args)


class TestStart:
    """Test registry startup."""

    @pytest.mark.asyncio
    async def test_empty_storage(self, registry, bus):
        assert registry.start() == []
        assert bus.has_object(MANAGER_PATH)
        assert bus.get_property(MANAGER_PATH, MANAGER_IFACE, "Slaves") == []

    @pytest.mark.asyncio
    async def test_unreadable_slaves_store(self, registry, storage_dir):
        (storage_dir / "slaves.yaml").write_text("k: [broken\n")
        with pytest.raises(StorageError):
            registry.start()

    @pytest.mark.asyncio
    async def test_missing_units_file(self, registry, tmp_path):
        with pytest.raises(StorageError):
            registry.start(tmp_path / "no-units.yaml")

    @pytest.mark.asyncio
    async def test_restores_persisted_slaves(self, registry, bus, storage_dir):
        (storage_dir / "slaves.yaml").write_text(
            "a1:\n  Id: 1\n  Name: Meter\n  URL: tcp://127.0.0.1:1502\n"
            "b2:\n  Id: 2\n  URL: serial://dev/ttyUSB0\n"
        )

        slaves = registry.start()

        assert sorted(s.key for s in slaves) == ["a1", "b2"]
        assert bus.get_property("/slave_a1", SLAVE_IFACE, "Name") == "Meter"
        assert bus.get_property("/slave_b2", SLAVE_IFACE, "Name") == "serial://dev/ttyUSB0"

    @pytest.mark.asyncio
    async def test_bad_slave_skipped(self, registry, storage_dir):
        (storage_dir / "slaves.yaml").write_text(
            "good:\n  Id: 1\n  URL: tcp://127.0.0.1:1502\n"
            "bad:\n  Id: 1\n  URL: ftp://127.0.0.1\n"
        )

        slaves = registry.start()

        assert [s.key for s in slaves] == ["good"]

    @pytest.mark.asyncio
    async def test_out_of_range_id_skipped(self, registry, bus, storage_dir, driver_factory):
        (storage_dir / "slaves.yaml").write_text(
            "good:\n  Id: 1\n  URL: tcp://127.0.0.1:1502\n"
            "big:\n  Id: 300\n  URL: tcp://127.0.0.1:1503\n"
            "neg:\n  Id: -1\n  URL: tcp://127.0.0.1:1504\n"
        )

        slaves = registry.start()
        await wait_for(lambda: slaves[0].online)

        assert [s.key for s in slaves] == ["good"]
        assert not bus.has_object("/slave_big")
        assert not bus.has_object("/slave_neg")
        assert [d.url for d in driver_factory.drivers] == ["tcp://127.0.0.1:1502"]

    @pytest.mark.asyncio
    async def test_slaves_connect(self, registry, storage_dir):
        (storage_dir / "slaves.yaml").write_text("a1:\n  Id: 1\n  URL: tcp://127.0.0.1:1502\n")

        slave = registry.start()[0]

        await wait_for(lambda: slave.online)
        assert registry.get_stats()["online"] == 1


class TestManager:
    """Test AddSlave / RemoveSlave."""

    @pytest.mark.asyncio
    async def test_add_slave(self, registry, bus, storage_dir, changes):
        registry.start()

        path = await bus.call_method(
            MANAGER_PATH, MANAGER_IFACE, "AddSlave",
            {"Id": 5, "Name": "Inverter", "URL": "tcp://127.0.0.1:1502"},
        )

        assert path.startswith("/slave_")
        assert bus.has_object(path)
        assert bus.get_property(MANAGER_PATH, MANAGER_IFACE, "Slaves") == [path]
        assert any(c.name == "Slaves" for c in changes)

        key = path[len("/slave_"):]
        store = GroupStore.open(storage_dir / "slaves.yaml")
        assert store.get_group(key) == {"Id": 5, "Name": "Inverter", "URL": "tcp://127.0.0.1:1502"}

    @pytest.mark.asyncio
    async def test_add_slave_invalid(self, registry, bus):
        registry.start()
        with pytest.raises(InvalidArgumentsError):
            await bus.call_method(
                MANAGER_PATH, MANAGER_IFACE, "AddSlave", {"Id": 1, "URL": "bogus"}
            )
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_keys_are_unique(self, registry):
        registry.start()
        paths = {
            registry.add_slave({"Id": 1, "URL": "tcp://127.0.0.1:1502"})
            for _ in range(5)
        }
        assert len(paths) == 5

    @pytest.mark.asyncio
    async def test_remove_slave_purges(self, registry, bus, storage_dir):
        registry.start()
        path = registry.add_slave({"Id": 1, "URL": "tcp://127.0.0.1:1502"})
        await bus.call_method(path, SLAVE_IFACE, "AddSource", source_args(1))
        key = path[len("/slave_"):]

        await bus.call_method(MANAGER_PATH, MANAGER_IFACE, "RemoveSlave", path)

        assert not bus.has_object(path)
        assert not (storage_dir / key).exists()
        assert not GroupStore.open(storage_dir / "slaves.yaml").has_group(key)
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_remove_unknown_slave(self, registry):
        registry.start()
        with pytest.raises(SlaveNotFoundError):
            registry.remove_slave("/slave_nope")


class TestStop:
    """Test shutdown and restart."""

    @pytest.mark.asyncio
    async def test_stop_releases_slaves(self, registry, bus, driver_factory):
        registry.start()
        path = registry.add_slave({"Id": 1, "URL": "tcp://127.0.0.1:1502"})
        slave = registry.get_slave(path)
        await wait_for(lambda: slave.online)

        registry.stop()

        assert slave.released
        assert driver_factory.last.closed
        assert bus.objects() == {}

    @pytest.mark.asyncio
    async def test_restart_round_trip(self, gateway_config, driver_factory):
        first = SlaveRegistry(gateway_config, ObjectBus(), driver_factory)
        first.start()
        path = first.add_slave({"Id": 9, "Name": "Boiler", "URL": "tcp://127.0.0.1:1502"})
        first.get_slave(path).add_source(source_args(0x20, Type="t", Unit="°C", PollingInterval=2000))
        first.stop()

        bus = ObjectBus()
        second = SlaveRegistry(gateway_config, bus, driver_factory)
        try:
            slaves = second.start()

            assert [s.path for s in slaves] == [path]
            restored = slaves[0]
            assert restored.device_id == 9
            assert restored.name == "Boiler"
            source = restored.sources.find_by_address(0x20)
            assert source.unit == "°C"
            assert source.interval_ms == 2000
            assert bus.has_object(source.path)
        finally:
            second.stop()
