"""
Diagnostics for the device registry.

Recreation detection, emergency removal and the end-to-end sync check.
"""

from homesync.diagnostics.emergency import force_remove_all_devices, prevent_device_reappearance
from homesync.diagnostics.recreation import (
    DeletionTestResult,
    RecreationEvent,
    RecreationMonitor,
    RecreationReport,
    RecreationSources,
    stop_monitoring,
)
from homesync.diagnostics.sync_check import DeviceSyncTester, probe_store

__all__ = [
    "DeletionTestResult",
    "DeviceSyncTester",
    "RecreationEvent",
    "RecreationMonitor",
    "RecreationReport",
    "RecreationSources",
    "force_remove_all_devices",
    "prevent_device_reappearance",
    "probe_store",
    "stop_monitoring",
]
