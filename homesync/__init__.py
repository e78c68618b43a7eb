"""
homesync

Keeps a local, subscribable mirror of a device registry whose authoritative
state lives in a remote hierarchical key-value store.
"""

from homesync.errors import HomeSyncError, StoreError, ValidationError, WriteFailure
from homesync.models import DeviceRecord, DeviceStatus, DeviceType, ToggleEvent, ToggleMeta
from homesync.registry import DeviceRegistry

__all__ = [
    "DeviceRecord",
    "DeviceRegistry",
    "DeviceStatus",
    "DeviceType",
    "HomeSyncError",
    "StoreError",
    "ToggleEvent",
    "ToggleMeta",
    "ValidationError",
    "WriteFailure",
]
