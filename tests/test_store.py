"""
Tests for the RemoteStore contract, exercised through the in-memory store.
"""

import asyncio

import pytest

from homesync.errors import StoreError
from homesync.store.memory import InMemoryRemoteStore
from homesync.store.tree import is_related, split_path


class TestPaths:
    def test_split_ignores_outer_and_double_slashes(self):
        assert split_path("/devices//abc/") == ["devices", "abc"]
        assert split_path("") == []

    def test_split_rejects_relative_segments(self):
        with pytest.raises(ValueError):
            split_path("devices/../logs")

    def test_related_paths(self):
        assert is_related(["devices"], ["devices", "a"])
        assert is_related(["devices", "a"], ["devices"])
        assert not is_related(["devices", "a"], ["devices", "b"])
        assert is_related([], ["logs"])


class TestReadWrite:
    def test_set_get_remove(self, store):
        async def scenario():
            await store.set("devices/a", {"name": "Lamp"})
            assert await store.get("devices/a/name") == "Lamp"
            await store.remove("devices/a")
            assert await store.get("devices/a") is None
            await store.remove("devices/never")

        asyncio.run(scenario())
        assert store.dump() == {"devices": {}}

    def test_get_returns_copy(self, store):
        async def scenario():
            await store.set("devices/a", {"name": "Lamp"})
            value = await store.get("devices/a")
            value["name"] = "Changed"
            return await store.get("devices/a/name")

        assert asyncio.run(scenario()) == "Lamp"

    def test_update_merges_sub_paths_and_deletes_none(self, store):
        async def scenario():
            await store.set("devices/a", {"name": "Lamp", "room": "Office", "toggle": {"state": False}})
            await store.update("devices/a", {"room": None, "toggle/state": True, "toggle/history/5": {"state": True}})

        asyncio.run(scenario())
        assert store.dump()["devices"]["a"] == {
            "name": "Lamp",
            "toggle": {"state": True, "history": {"5": {"state": True}}},
        }

    def test_update_rejects_empty_key(self, store):
        with pytest.raises(StoreError):
            asyncio.run(store.update("devices/a", {"/": 1}))
        assert store.dump() == {}

    def test_root_must_be_mapping(self, store):
        with pytest.raises(StoreError):
            asyncio.run(store.set("", 5))

    def test_initial_tree_is_copied(self):
        initial = {"devices": {"a": {"name": "Lamp"}}}
        store = InMemoryRemoteStore("seeded", initial=initial)
        initial["devices"]["a"]["name"] = "Changed"
        assert asyncio.run(store.get("devices/a/name")) == "Lamp"

    def test_failed_persist_leaves_mirror_untouched(self, flaky_store):
        seen = []
        flaky_store.watch("devices", seen.append)
        flaky_store.fail_paths.add("devices/a")

        with pytest.raises(StoreError) as exc:
            asyncio.run(flaky_store.set("devices/a", {"name": "Lamp"}))

        assert exc.value.path == "devices/a"
        assert flaky_store.dump() == {}
        assert seen == [None]


class TestWatch:
    def test_immediate_delivery_of_absent_path(self, store):
        seen = []
        store.watch("devices", seen.append)
        assert seen == [None]

    def test_watchers_see_overlapping_writes_only(self, store):
        devices, one, logs = [], [], []
        store.watch("devices", devices.append)
        store.watch("devices/a/name", one.append)
        store.watch("logs", logs.append)

        async def scenario():
            await store.set("devices/a", {"name": "Lamp"})
            await store.set("devices/b", {"name": "Fan"})
            await store.update("devices/a", {"name": "Desk Lamp"})

        asyncio.run(scenario())

        assert devices[-1] == {"a": {"name": "Desk Lamp"}, "b": {"name": "Fan"}}
        assert len(devices) == 4
        assert one == [None, "Lamp", "Desk Lamp"]
        assert logs == [None]

    def test_unchanged_value_is_not_redelivered(self, store):
        seen = []
        store.watch("devices", seen.append)

        async def scenario():
            await store.set("devices/a", {"name": "Lamp"})
            await store.set("devices/a", {"name": "Lamp"})

        asyncio.run(scenario())
        assert len(seen) == 2

    def test_unsubscribe_is_idempotent(self, store):
        seen = []
        unsubscribe = store.watch("devices", seen.append)
        assert store.watch_count("devices") == 1

        unsubscribe()
        unsubscribe()
        asyncio.run(store.set("devices/a", {"name": "Lamp"}))

        assert seen == [None]
        assert store.watch_count() == 0

    def test_callback_error_does_not_block_other_watchers(self, store):
        def boom(value):
            raise RuntimeError("watcher bug")

        seen = []
        store.watch("devices", boom)
        store.watch("devices", seen.append)

        asyncio.run(store.set("devices/a", {"name": "Lamp"}))
        assert seen[-1] == {"a": {"name": "Lamp"}}

    def test_delivered_values_are_copies(self, store):
        seen = []
        store.watch("devices", seen.append)
        asyncio.run(store.set("devices/a", {"name": "Lamp"}))

        seen[-1]["a"]["name"] = "Changed"
        assert store.dump()["devices"]["a"]["name"] == "Lamp"
