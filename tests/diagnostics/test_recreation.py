"""
Tests for the device recreation detector.

The clock is injected so recreation times are exact; real sleeps are kept to
a few milliseconds.
"""

import asyncio

import pytest

from homesync.diagnostics import recreation
from homesync.diagnostics.recreation import RecreationMonitor
from homesync.fallback import LocalFallbackCache
from homesync.models import DeviceRecord


LAMP = {"id": "lamp", "name": "Lamp", "type": "light", "room": "Den", "state": False}


@pytest.fixture
def seeded(store):
    asyncio.run(store.set("devices/lamp", LAMP))
    return store


def _populated_cache(tmp_path) -> LocalFallbackCache:
    cache = LocalFallbackCache(tmp_path / "fallback.json")
    cache.save([DeviceRecord.from_store("lamp", LAMP)])
    return cache


class TestDeletionTest:
    def test_device_not_recreated(self, seeded, clock):
        monitor = RecreationMonitor(seeded, clock=clock)

        result = asyncio.run(monitor.test_device_deletion("lamp", duration_ms=10))

        assert result.success is True
        assert result.was_recreated is False
        assert result.original_data == LAMP
        assert asyncio.run(seeded.get("devices/lamp")) is None
        assert not monitor.is_monitoring

    def test_device_recreated_by_other_writer(self, seeded, clock):
        monitor = RecreationMonitor(seeded, clock=clock)

        async def scenario():
            async def rewrite():
                await asyncio.sleep(0.005)
                clock.advance(250)
                await seeded.set("devices/lamp", LAMP)

            writer = asyncio.create_task(rewrite())
            result = await monitor.test_device_deletion("lamp", duration_ms=50)
            await writer
            return result

        result = asyncio.run(scenario())

        assert result.success is True
        assert result.was_recreated is True
        assert result.recreation_time_ms == 250
        assert result.original_data == LAMP
        assert result.recreated_data == LAMP

    def test_missing_device(self, store, clock):
        result = asyncio.run(RecreationMonitor(store, clock=clock).test_device_deletion("ghost", duration_ms=10))
        assert (result.success, result.was_recreated) == (False, False)


class TestMonitoring:
    def test_additions_are_not_recreations(self, seeded, clock):
        monitor = RecreationMonitor(seeded, clock=clock)

        async def scenario():
            session = asyncio.create_task(monitor.monitor_device_recreation(duration_ms=30))
            await asyncio.sleep(0)
            assert monitor.is_monitoring
            await seeded.set("devices/fan", {"name": "Fan"})
            await seeded.remove("devices/lamp")
            return await session

        report = asyncio.run(scenario())

        assert report.success is True
        assert report.recreations == []
        assert report.additions == {"fan": {"name": "Fan"}}
        assert report.summary["devices_added"] == ["fan"]
        assert report.summary["total_recreations"] == 0
        assert not monitor.is_monitoring

    def test_recreation_summary(self, seeded, clock):
        monitor = RecreationMonitor(seeded, clock=clock)

        async def scenario():
            session = asyncio.create_task(monitor.monitor_device_recreation(duration_ms=30))
            await asyncio.sleep(0)
            await seeded.remove("devices/lamp")
            clock.advance(100)
            await seeded.set("devices/lamp", LAMP)
            return await session

        report = asyncio.run(scenario())

        assert [e.device_id for e in report.recreations] == ["lamp"]
        assert report.summary["average_recreation_time_ms"] == 100
        assert report.summary["devices_recreated"] == ["lamp"]

    def test_module_level_stop(self, seeded, clock):
        monitor = RecreationMonitor(seeded, clock=clock)

        async def scenario():
            session = asyncio.create_task(monitor.monitor_device_recreation(duration_ms=20))
            await asyncio.sleep(0)
            recreation.stop_monitoring()
            assert not monitor.is_monitoring
            assert seeded.watch_count("devices") == 0
            return await session

        assert asyncio.run(scenario()).success is True


class TestSources:
    def test_no_sources(self, store):
        sources = asyncio.run(RecreationMonitor(store).identify_recreation_sources())
        assert sources.potential_sources == []
        assert sources.recommendations == []

    def test_all_sources(self, registry, store, tmp_path):
        store.watch("devices", lambda value: None)
        asyncio.run(store.set("logs/deviceCreationAttempts/1", {"caller": "add_device"}))
        monitor = RecreationMonitor(store, registry, _populated_cache(tmp_path))

        sources = asyncio.run(monitor.identify_recreation_sources())

        assert len(sources.potential_sources) == 4
        assert len(sources.recommendations) == 4
        assert sources.potential_sources[0] == "Device registry remote listener"

    def test_failing_check_is_skipped(self, registry, store, monkeypatch):
        async def broken_get(path):
            raise RuntimeError("store offline")

        monkeypatch.setattr(store, "get", broken_get)

        sources = asyncio.run(RecreationMonitor(store, registry).identify_recreation_sources())
        assert sources.potential_sources == ["Device registry remote listener"]


class TestPrevention:
    def test_prevent_recreation_pauses_registry_and_clears_cache(self, registry, seeded, tmp_path, clock):
        cache = _populated_cache(tmp_path)
        monitor = RecreationMonitor(seeded, registry, cache, clock=clock)

        result = asyncio.run(monitor.prevent_recreation("lamp", duration_ms=10))

        assert result["success"] is True
        assert result["steps"][0] == "1. Paused the device registry listener"
        assert result["steps"][1] == "2. Cleared 1 devices from the local fallback cache"
        assert not cache.is_populated()
        assert registry.is_watching
        assert registry.get_device("lamp") is None

    def test_prevent_recreation_missing_device(self, store, clock):
        result = asyncio.run(RecreationMonitor(store, clock=clock).prevent_recreation("ghost", duration_ms=10))
        assert result["success"] is False
