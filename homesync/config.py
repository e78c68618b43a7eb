from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal


@dataclass(frozen=True, slots=True)
class MqttStoreConfig:
    host: str = "localhost"
    port: int = 1883
    username: str | None = None
    password: str | None = None
    root_topic: str = "homesync"
    qos: int = 1
    connect_timeout_s: float = 10.0
    publish_timeout_s: float = 5.0
    sync_grace_s: float = 0.5


@dataclass(frozen=True, slots=True)
class RegistryConfig:
    settle_delay_s: float = 1.0
    history_limit: int = 100
    audit_creation: bool = True


@dataclass(frozen=True, slots=True)
class SyncConfig:
    store: Literal["memory", "mqtt"]
    mqtt: MqttStoreConfig
    registry: RegistryConfig
    fallback_cache_path: str = "/tmp/homesync_devices.json"


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def _opt_str(name: str) -> str | None:
    v = os.environ.get(name)
    if v is None or v.strip() == "":
        return None
    return v


def load_mqtt_config() -> MqttStoreConfig:
    return MqttStoreConfig(
        host=os.environ.get("HOMESYNC_MQTT_HOST", "localhost"),
        port=int(os.environ.get("HOMESYNC_MQTT_PORT", "1883")),
        username=_opt_str("HOMESYNC_MQTT_USERNAME"),
        password=_opt_str("HOMESYNC_MQTT_PASSWORD"),
        root_topic=os.environ.get("HOMESYNC_MQTT_ROOT_TOPIC", "homesync").strip("/") or "homesync",
        qos=int(os.environ.get("HOMESYNC_MQTT_QOS", "1")),
        connect_timeout_s=float(os.environ.get("HOMESYNC_MQTT_CONNECT_TIMEOUT_S", "10")),
        publish_timeout_s=float(os.environ.get("HOMESYNC_MQTT_PUBLISH_TIMEOUT_S", "5")),
        sync_grace_s=max(0.0, float(os.environ.get("HOMESYNC_MQTT_SYNC_GRACE_S", "0.5"))),
    )


def load_registry_config() -> RegistryConfig:
    history_limit = int(os.environ.get("HOMESYNC_HISTORY_LIMIT", "100"))
    if history_limit < 1:
        raise ValueError(f"HOMESYNC_HISTORY_LIMIT must be >= 1, got {history_limit}")

    return RegistryConfig(
        settle_delay_s=max(0.0, float(os.environ.get("HOMESYNC_SETTLE_DELAY_S", "1.0"))),
        history_limit=history_limit,
        audit_creation=_flag("HOMESYNC_AUDIT_CREATION", "1"),
    )


def load_sync_config() -> SyncConfig:
    store = os.environ.get("HOMESYNC_STORE", "memory").strip().lower()
    if store not in ("memory", "mqtt"):
        raise ValueError(f"Unsupported HOMESYNC_STORE: {store!r}")

    return SyncConfig(
        store=store,  # type: ignore[arg-type]
        mqtt=load_mqtt_config(),
        registry=load_registry_config(),
        fallback_cache_path=os.environ.get("HOMESYNC_FALLBACK_CACHE_PATH", "/tmp/homesync_devices.json"),
    )
