from __future__ import annotations

import pytest

from homesync.config import load_registry_config, load_sync_config
from homesync.store import InMemoryRemoteStore, build_store
from homesync.store.mqtt import MqttRemoteStore

_ENV = [
    "HOMESYNC_STORE",
    "HOMESYNC_MQTT_HOST",
    "HOMESYNC_MQTT_PORT",
    "HOMESYNC_MQTT_USERNAME",
    "HOMESYNC_MQTT_ROOT_TOPIC",
    "HOMESYNC_MQTT_CONNECT_TIMEOUT_S",
    "HOMESYNC_MQTT_PUBLISH_TIMEOUT_S",
    "HOMESYNC_MQTT_SYNC_GRACE_S",
    "HOMESYNC_SETTLE_DELAY_S",
    "HOMESYNC_HISTORY_LIMIT",
    "HOMESYNC_AUDIT_CREATION",
    "HOMESYNC_FALLBACK_CACHE_PATH",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    config = load_sync_config()

    assert config.store == "memory"
    assert config.mqtt.host == "localhost"
    assert config.mqtt.port == 1883
    assert config.mqtt.username is None
    assert config.registry.settle_delay_s == 1.0
    assert config.registry.history_limit == 100
    assert config.registry.audit_creation is True
    assert isinstance(build_store(config), InMemoryRemoteStore)


def test_mqtt_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOMESYNC_STORE", "MQTT")
    monkeypatch.setenv("HOMESYNC_MQTT_HOST", "broker.lan")
    monkeypatch.setenv("HOMESYNC_MQTT_PORT", "8883")
    monkeypatch.setenv("HOMESYNC_MQTT_USERNAME", "  ")
    monkeypatch.setenv("HOMESYNC_MQTT_ROOT_TOPIC", "/home/sync/")

    config = load_sync_config()
    store = build_store(config)

    assert config.mqtt.username is None
    assert isinstance(store, MqttRemoteStore)
    assert (store.host, store.port, store.root_topic) == ("broker.lan", 8883, "home/sync")


def test_mqtt_timeouts_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOMESYNC_STORE", "mqtt")
    monkeypatch.setenv("HOMESYNC_MQTT_CONNECT_TIMEOUT_S", "3")
    monkeypatch.setenv("HOMESYNC_MQTT_PUBLISH_TIMEOUT_S", "2.5")
    monkeypatch.setenv("HOMESYNC_MQTT_SYNC_GRACE_S", "-1")

    store = build_store(load_sync_config())

    assert isinstance(store, MqttRemoteStore)
    assert (store.connect_timeout_s, store.publish_timeout_s, store.sync_grace_s) == (3.0, 2.5, 0.0)


def test_mqtt_timeout_defaults() -> None:
    config = load_sync_config()

    assert config.mqtt.connect_timeout_s == 10.0
    assert config.mqtt.publish_timeout_s == 5.0
    assert config.mqtt.sync_grace_s == 0.5


def test_registry_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOMESYNC_SETTLE_DELAY_S", "-3")
    monkeypatch.setenv("HOMESYNC_HISTORY_LIMIT", "25")
    monkeypatch.setenv("HOMESYNC_AUDIT_CREATION", "off")

    config = load_registry_config()

    assert config.settle_delay_s == 0.0
    assert config.history_limit == 25
    assert config.audit_creation is False


def test_history_limit_must_be_positive(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOMESYNC_HISTORY_LIMIT", "0")
    with pytest.raises(ValueError):
        load_registry_config()


def test_unknown_store_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOMESYNC_STORE", "firebase")
    with pytest.raises(ValueError, match="HOMESYNC_STORE"):
        load_sync_config()
