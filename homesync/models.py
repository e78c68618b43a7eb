"""
Data models for the device registry.

These are the Python-side views of the records kept in the remote store.
The store keeps its own wire names (lastUpdated, power_logs, toggle/...);
conversion happens only in from_store()/to_store().
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

DEFAULT_ROOM = "Default Room"


class DeviceType(str, Enum):
    """Known device types. Legacy records may still carry other strings."""

    AC = "ac"
    FAN = "fan"
    LIGHT = "light"
    REFRIGERATOR = "refrigerator"
    THERMOSTAT = "thermostat"
    ENERGY_METER = "energy-meter"
    SECURITY_CAMERA = "security-camera"
    SMART_PLUG = "smart-plug"

    @property
    def label(self) -> str:
        return DEVICE_TYPE_LABELS[self]

    @classmethod
    def is_known(cls, value: str) -> bool:
        return value in cls._value2member_map_


DEVICE_TYPE_LABELS: Dict[DeviceType, str] = {
    DeviceType.AC: "Air Conditioner",
    DeviceType.FAN: "Fan",
    DeviceType.LIGHT: "Light",
    DeviceType.REFRIGERATOR: "Refrigerator",
    DeviceType.THERMOSTAT: "Smart Thermostat",
    DeviceType.ENERGY_METER: "Energy Meter",
    DeviceType.SECURITY_CAMERA: "Security Camera",
    DeviceType.SMART_PLUG: "Smart Plug",
}


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def minute_key(timestamp_ms: int) -> str:
    """
    Power log key for a timestamp: UTC date plus minute-of-day.

    Example: 2024-05-01 13:07 UTC -> "2024-05-01_0787"
    """
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    minute_of_day = (timestamp_ms // 60000) % 1440
    return f"{dt.strftime('%Y-%m-%d')}_{minute_of_day:04d}"


@dataclass
class ToggleEvent:
    """One entry of a device's toggle history."""

    state: bool
    timestamp: int  # epoch ms
    action: str  # "ON" or "OFF"

    @classmethod
    def for_state(cls, state: bool, timestamp: int) -> "ToggleEvent":
        return cls(state=state, timestamp=timestamp, action="ON" if state else "OFF")

    @classmethod
    def from_store(cls, key: str, raw: Any) -> "ToggleEvent":
        raw = raw if isinstance(raw, dict) else {}
        state = bool(raw.get("state", False))
        try:
            fallback_ts = int(key)
        except (TypeError, ValueError):
            fallback_ts = 0
        return cls(
            state=state,
            timestamp=int(raw.get("timestamp", fallback_ts) or 0),
            action=str(raw.get("action") or ("ON" if state else "OFF")),
        )

    def to_store(self) -> Dict[str, Any]:
        return {"state": self.state, "timestamp": self.timestamp, "action": self.action}


@dataclass
class ToggleMeta:
    """Toggle bookkeeping kept under devices/{id}/toggle."""

    state: bool = False
    last_toggle: int = 0
    toggle_count: int = 0
    history: Dict[str, ToggleEvent] = field(default_factory=dict)  # ts key -> event

    @classmethod
    def from_store(cls, raw: Any) -> "ToggleMeta":
        if not isinstance(raw, dict):
            return cls()
        history_raw = raw.get("history") or {}
        if not isinstance(history_raw, dict):
            history_raw = {}
        return cls(
            state=bool(raw.get("state", False)),
            last_toggle=int(raw.get("lastToggle", 0) or 0),
            toggle_count=int(raw.get("toggleCount", 0) or 0),
            history={str(k): ToggleEvent.from_store(str(k), v) for k, v in history_raw.items()},
        )

    def to_store(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "lastToggle": self.last_toggle,
            "toggleCount": self.toggle_count,
            "history": {k: v.to_store() for k, v in self.history.items()},
        }


@dataclass
class DeviceRecord:
    """
    A device as seen through the registry.

    `room` is never None here: legacy records without a room read as
    DEFAULT_ROOM.
    """

    id: str  # Immutable, assigned at creation
    name: str
    type: str  # Usually a DeviceType value
    room: str
    state: bool  # On/off
    status: str  # "online" | "offline", independent of state
    last_updated: int  # epoch ms of last mutation
    power_log: Dict[str, float] = field(default_factory=dict)  # minute key -> watts
    toggle_meta: ToggleMeta = field(default_factory=ToggleMeta)

    @classmethod
    def from_store(cls, device_id: str, raw: Any) -> "DeviceRecord":
        raw = raw if isinstance(raw, dict) else {}
        power_raw = raw.get("power_logs") or {}
        if not isinstance(power_raw, dict):
            power_raw = {}
        return cls(
            id=device_id,
            name=str(raw.get("name") or ""),
            type=str(raw.get("type") or ""),
            room=raw.get("room") or DEFAULT_ROOM,
            state=bool(raw.get("state", False)),
            status=str(raw.get("status") or DeviceStatus.ONLINE.value),
            last_updated=int(raw.get("lastUpdated", 0) or 0),
            power_log=dict(power_raw),
            toggle_meta=ToggleMeta.from_store(raw.get("toggle")),
        )

    def to_store(self) -> Dict[str, Any]:
        """Full wire representation, including sub-trees."""
        data = self.base_fields()
        data["power_logs"] = dict(self.power_log)
        data["toggle"] = self.toggle_meta.to_store()
        return data

    def base_fields(self) -> Dict[str, Any]:
        """Wire representation without the power_logs and toggle sub-trees."""
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "room": self.room,
            "state": self.state,
            "lastUpdated": self.last_updated,
            "status": self.status,
        }


@dataclass
class RemovalOutcome:
    device_id: str
    success: bool
    error: Optional[str] = None


@dataclass
class BulkRemovalResult:
    """success is True only when every individual removal succeeded."""

    success: bool
    results: List[RemovalOutcome]

    @property
    def failed_ids(self) -> List[str]:
        return [r.device_id for r in self.results if not r.success]


@dataclass
class RemoveAllResult:
    success: bool
    message: str
    count: int


@dataclass
class RenameResult:
    success: bool
    updated_count: int


@dataclass
class RoomStats:
    total_devices: int
    online_devices: int
    active_devices: int
