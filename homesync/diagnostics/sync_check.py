"""
End-to-end synchronization check.

Adds a throwaway device through the registry and verifies that it comes back
through the watch, that toggling it is reflected, and that subscribers see
it, then removes it. Also provides a read/write/delete probe for the store.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from homesync.errors import HomeSyncError, StoreError
from homesync.models import DeviceRecord, DeviceType, now_ms
from homesync.registry import DeviceRegistry
from homesync.store.base import RemoteStore

logger = logging.getLogger(__name__)

PROBE_PATH = "debug_test"


def _result(success: bool, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"success": success, "message": message}
    if details is not None:
        out["details"] = details
    return out


class DeviceSyncTester:
    """Runs the add / retrieve / toggle / realtime / cleanup sequence."""

    def __init__(self, registry: DeviceRegistry, timeout_s: float = 3.0):
        self.registry = registry
        self.timeout_s = timeout_s
        self.test_device_name = f"Sync Check Device {now_ms()}"
        self.test_device_id: Optional[str] = None

    async def run_full_test(self) -> Dict[str, Any]:
        logger.info("Starting device synchronization check...")
        steps = [
            ("addition", self._check_addition),
            ("retrieval", self._check_retrieval),
            ("state_changes", self._check_state_changes),
            ("realtime_updates", self._check_realtime_updates),
        ]
        try:
            for _, step in steps:
                result = await step()
                if not result["success"]:
                    return result
        finally:
            await self._cleanup()

        return _result(True, "All device synchronization checks passed", {
            "test_device_id": self.test_device_id,
            "test_device_name": self.test_device_name,
            "tests": [name for name, _ in steps],
        })

    async def _wait_for(self, predicate: Callable[[List[DeviceRecord]], bool]) -> bool:
        """Wait until a published snapshot satisfies `predicate`."""
        matched = asyncio.Event()

        def on_snapshot(devices: List[DeviceRecord]) -> None:
            if predicate(devices):
                matched.set()

        unsubscribe = self.registry.subscribe(on_snapshot)
        try:
            await asyncio.wait_for(matched.wait(), timeout=self.timeout_s)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            unsubscribe()

    def _find(self, devices: List[DeviceRecord]) -> Optional[DeviceRecord]:
        return next((d for d in devices if d.id == self.test_device_id), None)

    async def _check_addition(self) -> Dict[str, Any]:
        try:
            device = await self.registry.add_device(self.test_device_name, DeviceType.LIGHT, "Test Room")
        except HomeSyncError as e:
            return _result(False, f"Device addition check failed: {e}")
        self.test_device_id = device.id
        return _result(True, "Device addition check passed", {"device_id": device.id})

    async def _check_retrieval(self) -> Dict[str, Any]:
        if not await self._wait_for(lambda devices: self._find(devices) is not None):
            return _result(False, "Device retrieval check failed - test device not found")
        return _result(True, "Device retrieval check passed")

    async def _check_state_changes(self) -> Dict[str, Any]:
        try:
            await self.registry.toggle_device(self.test_device_id, True)
        except HomeSyncError as e:
            return _result(False, f"Device state check failed: {e}")

        def is_on(devices: List[DeviceRecord]) -> bool:
            device = self._find(devices)
            return device is not None and device.state

        if not await self._wait_for(is_on):
            return _result(False, "Device state check failed - state not updated")
        return _result(True, "Device state check passed")

    async def _check_realtime_updates(self) -> Dict[str, Any]:
        try:
            await self.registry.update_device_name(self.test_device_id, f"{self.test_device_name} (renamed)")
        except HomeSyncError as e:
            return _result(False, f"Realtime update check failed: {e}")

        def renamed(devices: List[DeviceRecord]) -> bool:
            device = self._find(devices)
            return device is not None and device.name.endswith("(renamed)")

        if not await self._wait_for(renamed):
            return _result(False, "Realtime update check failed - update not received")
        return _result(True, "Realtime update check passed")

    async def _cleanup(self) -> None:
        if self.test_device_id is None:
            return
        try:
            await self.registry.remove_device(self.test_device_id)
            logger.info("Sync check device cleaned up")
        except HomeSyncError as e:
            logger.error(f"Error cleaning up sync check device {self.test_device_id}: {e}")


async def probe_store(store: RemoteStore, test_path: str = PROBE_PATH) -> Dict[str, Any]:
    """Check connection and read / write / delete permissions on `test_path`."""
    result: Dict[str, Any] = {
        "connected": store.is_connected,
        "permissions": {"read": False, "write": False, "delete": False},
        "test_path": test_path,
    }

    try:
        await store.get(test_path)
        result["permissions"]["read"] = True
        await store.set(f"{test_path}/write_test", {"timestamp": now_ms(), "test": True})
        result["permissions"]["write"] = True
        await store.remove(test_path)
        result["permissions"]["delete"] = True
    except StoreError as e:
        result["error"] = str(e)
        logger.warning(f"Store probe failed: {e}")

    return result
