"""
Remote store implementations.

The registry only depends on the RemoteStore contract; pick an
implementation with build_store().
"""

from dataclasses import asdict

from homesync.config import SyncConfig
from homesync.store.base import RemoteStore, WatchCallback
from homesync.store.memory import InMemoryRemoteStore


def build_store(config: SyncConfig, name: str = "devices") -> RemoteStore:
    """Create the store selected by HOMESYNC_STORE. The caller starts it."""
    if config.store == "mqtt":
        from homesync.store.mqtt import MqttRemoteStore

        return MqttRemoteStore(name, asdict(config.mqtt))
    return InMemoryRemoteStore(name)


__all__ = [
    "RemoteStore",
    "WatchCallback",
    "InMemoryRemoteStore",
    "build_store",
]
