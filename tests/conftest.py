from __future__ import annotations

import asyncio
from typing import Iterator

import pytest

from homesync.config import RegistryConfig
from homesync.errors import StoreError
from homesync.registry import DeviceRegistry
from homesync.store.memory import InMemoryRemoteStore


class FakeClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryRemoteStore:
    return InMemoryRemoteStore("test")


@pytest.fixture
def registry(store: InMemoryRemoteStore, clock: FakeClock) -> Iterator[DeviceRegistry]:
    reg = DeviceRegistry(
        store,
        RegistryConfig(settle_delay_s=0.0, history_limit=100, audit_creation=False),
        clock=clock,
    )
    reg.start()
    yield reg
    reg.stop()


class FlakyStore(InMemoryRemoteStore):
    """In-memory store whose writes fail for chosen paths."""

    def __init__(self, name: str = "flaky") -> None:
        super().__init__(name)
        self.fail_paths: set[str] = set()

    async def _persist(self, parts, before, after) -> None:
        path = "/".join(parts)
        if path in self.fail_paths:
            raise StoreError("write", path, "permission denied")


@pytest.fixture
def flaky_store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def flaky_registry(flaky_store: FlakyStore, clock: FakeClock) -> Iterator[DeviceRegistry]:
    reg = DeviceRegistry(
        flaky_store,
        RegistryConfig(settle_delay_s=0.0, history_limit=100, audit_creation=False),
        clock=clock,
    )
    reg.start()
    yield reg
    reg.stop()


class YieldingStore(InMemoryRemoteStore):
    """In-memory store whose writes give other tasks a turn before committing."""

    async def _persist(self, parts, before, after) -> None:
        await asyncio.sleep(0)


@pytest.fixture
def yielding_store() -> YieldingStore:
    return YieldingStore("yielding")
