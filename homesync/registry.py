"""
Device registry.

Keeps a local mirror of the remote `devices` collection and fans every new
snapshot out to subscribers. The single watch on `devices` is the only thing
that replaces the cache; mutation calls write to the remote store and wait
for the watch to bring the change back. The exception is the guarded bulk
removals, which patch the cache themselves while the watch is muted.

The bulk guard is local to this registry instance. It does not coordinate
with other processes writing to the same store.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from homesync.config import RegistryConfig
from homesync.errors import StoreError, ValidationError, WriteFailure
from homesync.fallback import LocalFallbackCache
from homesync.history import HistoryTrimmer, next_history_timestamp, sorted_history_keys
from homesync.models import (
    DEFAULT_ROOM,
    BulkRemovalResult,
    DeviceRecord,
    DeviceStatus,
    DeviceType,
    RemovalOutcome,
    RemoveAllResult,
    RenameResult,
    RoomStats,
    ToggleEvent,
    ToggleMeta,
    minute_key,
    now_ms,
)
from homesync.rooms import RoomRenamer, all_rooms, devices_in_room, room_stats
from homesync.store.base import RemoteStore
from homesync.sync_logging import get_logger

logger = logging.getLogger(__name__)
log = get_logger("HOMESYNC.Registry")

DEVICES_PATH = "devices"
CREATION_LOG_PATH = "logs/deviceCreationAttempts"

Listener = Callable[[List[DeviceRecord]], None]


def _new_device_id(now: int) -> str:
    return f"device_{now}_{uuid4().hex[:9]}"


def _device_path(device_id: str) -> str:
    if not device_id or "/" in device_id:
        raise ValidationError("id", f"invalid device id {device_id!r}")
    return f"{DEVICES_PATH}/{device_id}"


@dataclass(eq=False)
class _Subscription:
    listener: Listener


class DeviceRegistry:
    """
    Local mirror of the remote device collection.

    Lifecycle:
    - start(): attach the watch on `devices` (the cache fills immediately)
    - stop(): detach the watch, optionally save the fallback snapshot
    - health(): report cache and watch status
    """

    def __init__(
        self,
        store: RemoteStore,
        config: Optional[RegistryConfig] = None,
        *,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[int], str] = _new_device_id,
        fallback_cache: Optional[LocalFallbackCache] = None,
    ):
        """
        Args:
            store: Remote store holding the `devices` collection
            config: Settle delay, history cap, creation audit flag
            clock: Epoch-millisecond clock (injectable for tests)
            id_factory: Builds a device id from the creation timestamp
            fallback_cache: Where stop() saves the last snapshot, if anywhere
        """
        self.store = store
        self.config = config or RegistryConfig()
        self.fallback_cache = fallback_cache

        self._clock = clock
        self._id_factory = id_factory
        self._devices: List[DeviceRecord] = []
        self._subscriptions: List[_Subscription] = []
        self._unwatch: Optional[Callable[[], None]] = None
        self._bulk_operation = False

        self._snapshots_applied = 0
        self._snapshots_skipped = 0

        self.history = HistoryTrimmer(store, limit=self.config.history_limit)
        self.renamer = RoomRenamer(self.update_device_room)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Attach the watch on `devices`. Idempotent."""
        if self._unwatch is not None:
            return
        logger.info("Initializing device listener...")
        self._unwatch = self.store.watch(DEVICES_PATH, self._on_remote_snapshot)
        log.info("HOMESYNC.Registry.Started", extra={"fields": {
            "store": self.store.name,
            "device_count": len(self._devices),
        }})

    def stop(self) -> None:
        """Detach the watch. Idempotent."""
        if self._unwatch is None:
            return
        self._unwatch()
        self._unwatch = None
        if self.fallback_cache is not None:
            self.fallback_cache.save(self._devices)
        log.info("HOMESYNC.Registry.Stopped", extra={"fields": {"store": self.store.name}})

    @property
    def is_watching(self) -> bool:
        return self._unwatch is not None

    @property
    def is_bulk_operation(self) -> bool:
        return self._bulk_operation

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def health(self) -> Dict[str, Any]:
        if not self.is_watching:
            status, message = "unhealthy", "Registry is not watching the remote store"
        elif not self.store.is_connected:
            status, message = "degraded", "Remote store disconnected; cache may be stale"
        else:
            status, message = "healthy", f"{len(self._devices)} devices cached"

        return {
            "status": status,
            "message": message,
            "details": {
                "device_count": len(self._devices),
                "subscriber_count": len(self._subscriptions),
                "bulk_operation": self._bulk_operation,
                "snapshots_applied": self._snapshots_applied,
                "snapshots_skipped": self._snapshots_skipped,
            },
        }

    # ------------------------------------------------------------------
    # Cache and fan-out
    # ------------------------------------------------------------------

    def _on_remote_snapshot(self, data: Any) -> None:
        if self._bulk_operation:
            self._snapshots_skipped += 1
            logger.debug("Skipping remote snapshot during bulk operation")
            return
        self._apply_snapshot(data)

    def _apply_snapshot(self, data: Any) -> None:
        if isinstance(data, dict):
            devices = [DeviceRecord.from_store(str(device_id), raw) for device_id, raw in data.items()]
        else:
            devices = []

        if len(devices) > len(self._devices):
            known = {d.id for d in self._devices}
            new_ids = [d.id for d in devices if d.id not in known]
            log.warning("HOMESYNC.Registry.DeviceCountIncreased", extra={"fields": {
                "previous": len(self._devices),
                "current": len(devices),
                "new_ids": new_ids,
            }})

        self._devices = devices
        self._snapshots_applied += 1
        logger.debug(f"Current device count: {len(devices)}")
        self._notify_listeners()

    def _notify_listeners(self) -> None:
        for subscription in list(self._subscriptions):
            self._call_listener(subscription.listener)

    def _call_listener(self, listener: Listener) -> None:
        try:
            listener(self.get_devices())
        except Exception as e:
            log.error("HOMESYNC.Registry.ListenerError", extra={"fields": {"error": repr(e)}})

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register `listener` and call it right away with the current snapshot.

        Returns:
            A function that removes this subscription (safe to call twice)
        """
        subscription = _Subscription(listener)
        self._subscriptions.append(subscription)
        self._call_listener(listener)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    def get_devices(self) -> List[DeviceRecord]:
        """Copy of the cached devices."""
        return copy.deepcopy(self._devices)

    def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        for device in self._devices:
            if device.id == device_id:
                return copy.deepcopy(device)
        return None

    def get_devices_by_type(self, device_type: str | DeviceType) -> List[DeviceRecord]:
        wanted = device_type.value if isinstance(device_type, DeviceType) else device_type
        return copy.deepcopy([d for d in self._devices if d.type == wanted])

    def get_devices_by_room(self, room: str) -> List[DeviceRecord]:
        return copy.deepcopy(devices_in_room(self._devices, room))

    def get_all_rooms(self) -> List[str]:
        return all_rooms(self._devices)

    def get_room_stats(self, room: str) -> RoomStats:
        return room_stats(self._devices, room)

    # ------------------------------------------------------------------
    # Single-device mutations
    # ------------------------------------------------------------------

    async def add_device(
        self,
        name: str,
        device_type: str | DeviceType,
        room: Optional[str] = None,
        toggle_path_hint: Optional[str] = None,
    ) -> DeviceRecord:
        """
        Create a device with empty power_logs and zeroed toggle sub-trees.

        The record and its sub-trees are separate writes, in order. A failure
        raises WriteFailure naming the failed step; earlier steps stay written.

        Raises:
            ValidationError: Empty name or unknown type (nothing written)
            WriteFailure: A remote write failed
        """
        if not name or not name.strip():
            raise ValidationError("name", "must not be empty")
        type_value = device_type.value if isinstance(device_type, DeviceType) else str(device_type or "")
        if not DeviceType.is_known(type_value):
            raise ValidationError("type", f"unknown device type {type_value!r}")

        now = self._clock()
        device_id = self._id_factory(now)
        record = DeviceRecord(
            id=device_id,
            name=name,
            type=type_value,
            room=room or DEFAULT_ROOM,
            state=False,
            status=DeviceStatus.ONLINE.value,
            last_updated=now,
            power_log={},
            toggle_meta=ToggleMeta(state=False, last_toggle=now, toggle_count=0, history={}),
        )

        logger.info(f"Adding new device: {name} ({DeviceType(type_value).label}) to room: {record.room}")
        if self.config.audit_creation:
            await self._audit_creation("add_device", {
                "id": device_id,
                "name": name,
                "type": type_value,
                "room": record.room,
                "togglePathHint": toggle_path_hint,
            })

        path = _device_path(device_id)
        steps = [
            ("record", path, record.base_fields()),
            ("power_logs", f"{path}/power_logs", {}),
            ("toggle", f"{path}/toggle", {"state": False, "lastToggle": now, "toggleCount": 0}),
            ("toggle/history", f"{path}/toggle/history", {}),
        ]
        for step, step_path, value in steps:
            try:
                await self.store.set(step_path, value)
            except StoreError as e:
                log.error("HOMESYNC.Registry.AddFailed", extra={"fields": {
                    "device_id": device_id,
                    "step": step,
                    "error": str(e),
                }})
                raise WriteFailure(step, str(e), device_id=device_id) from e

        log.info("HOMESYNC.Registry.DeviceAdded", extra={"fields": {
            "device_id": device_id,
            "name": name,
            "type": type_value,
            "room": record.room,
        }})
        return copy.deepcopy(record)

    async def _audit_creation(self, caller: str, data: Dict[str, Any]) -> None:
        """Record who created a device, for recreation forensics. Never fails the add."""
        now = self._clock()
        entry = {
            "timestamp": datetime.fromtimestamp(now / 1000, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "caller": caller,
            "data": data,
            "stack": "".join(traceback.format_stack(limit=6)[:-1]),
        }
        try:
            await self.store.set(f"{CREATION_LOG_PATH}/{now}", entry)
        except StoreError as e:
            log.warning("HOMESYNC.Registry.AuditFailed", extra={"fields": {"caller": caller, "error": str(e)}})

    async def toggle_device(self, device_id: str, new_state: bool) -> bool:
        """
        Set on/off state and append a toggle history entry.

        State, lastUpdated, toggle state/lastToggle/toggleCount and the new
        history entry go out in one combined update; history entries over
        the cap are then removed one write each. Toggling to the current
        state still counts and still appends.

        Returns:
            False if the device does not exist

        Raises:
            WriteFailure: A remote call failed
        """
        path = _device_path(device_id)
        try:
            current = await self.store.get(path)
        except StoreError as e:
            raise WriteFailure("read", str(e), device_id=device_id) from e

        if not isinstance(current, dict):
            logger.warning(f"Toggle ignored, device {device_id} does not exist")
            return False

        meta = ToggleMeta.from_store(current.get("toggle"))
        previous = max(int(current.get("lastUpdated", 0) or 0), meta.last_toggle)
        timestamp = next_history_timestamp(meta.history.keys(), max(self._clock(), previous))

        fields = self.history.build_toggle_update(meta.toggle_count, bool(new_state), timestamp)
        try:
            await self.store.update(path, fields)
        except StoreError as e:
            raise WriteFailure("toggle", str(e), device_id=device_id) from e

        try:
            await self.history.trim(device_id)
        except StoreError as e:
            raise WriteFailure("toggle/history", str(e), device_id=device_id) from e

        logger.info(f"Device {device_id} toggled to {'ON' if new_state else 'OFF'}")
        return True

    async def remove_device(self, device_id: str) -> bool:
        """
        Delete a device and all its sub-trees.

        Returns:
            True if removed, False if it did not exist (including an empty id)

        Raises:
            ValidationError: The id contains a path separator
            WriteFailure: A remote call failed
        """
        if not device_id:
            logger.warning("Remove ignored, empty device id")
            return False
        path = _device_path(device_id)
        try:
            existing = await self.store.get(path)
            if existing is None:
                logger.warning(f"Device {device_id} does not exist in the remote store")
                return False
            await self.store.remove(path)
        except StoreError as e:
            log.error("HOMESYNC.Registry.RemoveFailed", extra={"fields": {
                "device_id": device_id,
                "error": str(e),
            }})
            raise WriteFailure("remove", str(e), device_id=device_id) from e

        log.info("HOMESYNC.Registry.DeviceRemoved", extra={"fields": {"device_id": device_id}})
        return True

    async def update_device(
        self,
        device_id: str,
        name: Optional[str] = None,
        room: Optional[str] = None,
    ) -> bool:
        """
        Update name and/or room; only the given fields plus lastUpdated change.

        Returns:
            False if the device does not exist or the write failed
        """
        if name is not None and not name.strip():
            raise ValidationError("name", "must not be empty")
        fields: Dict[str, Any] = {}
        if name is not None:
            fields["name"] = name
        if room is not None:
            fields["room"] = room
        return await self._patch(device_id, fields)

    async def update_device_name(self, device_id: str, new_name: str) -> bool:
        return await self.update_device(device_id, name=new_name)

    async def update_device_room(self, device_id: str, new_room: str) -> bool:
        return await self.update_device(device_id, room=new_room)

    async def update_device_status(self, device_id: str, status: str | DeviceStatus) -> bool:
        value = status.value if isinstance(status, DeviceStatus) else str(status)
        if value not in (s.value for s in DeviceStatus):
            raise ValidationError("status", f"unknown status {value!r}")
        return await self._patch(device_id, {"status": value})

    async def _patch(self, device_id: str, fields: Dict[str, Any]) -> bool:
        path = _device_path(device_id)
        try:
            current = await self.store.get(path)
            if not isinstance(current, dict):
                logger.warning(f"Update ignored, device {device_id} does not exist")
                return False
            previous = int(current.get("lastUpdated", 0) or 0)
            await self.store.update(path, {**fields, "lastUpdated": max(self._clock(), previous)})
        except StoreError as e:
            log.error("HOMESYNC.Registry.UpdateFailed", extra={"fields": {
                "device_id": device_id,
                "fields": sorted(fields),
                "error": str(e),
            }})
            return False
        return True

    async def rename_room(self, old_name: str, new_name: str) -> RenameResult:
        """Move every device in `old_name` to `new_name`."""
        return await self.renamer.rename(list(self._devices), old_name, new_name)

    # ------------------------------------------------------------------
    # Bulk mutations (guarded)
    # ------------------------------------------------------------------

    async def remove_multiple_devices(self, device_ids: Iterable[str]) -> BulkRemovalResult:
        """
        Remove devices one after another with the remote watch muted.

        Individual failures are reported in `results`, never raised. After a
        settle delay the cache is pruned by hand and republished.
        """
        ids = list(device_ids)
        logger.info(f"Starting bulk removal of {len(ids)} devices")
        self._bulk_operation = True
        results: List[RemovalOutcome] = []
        failed: set[str] = set()
        try:
            for device_id in ids:
                try:
                    removed = await self.remove_device(device_id)
                    results.append(RemovalOutcome(device_id, removed, None if removed else "not found"))
                except (WriteFailure, ValidationError) as e:
                    failed.add(device_id)
                    results.append(RemovalOutcome(device_id, False, str(e)))

            await asyncio.sleep(self.config.settle_delay_s)

            # Devices whose removal failed are still in the store; keep them.
            gone = set(ids) - failed
            self._devices = [d for d in self._devices if d.id not in gone]
            self._notify_listeners()

            success = all(r.success for r in results)
            log.info("HOMESYNC.Registry.BulkRemovalCompleted", extra={"fields": {
                "requested": len(ids),
                "removed": sum(1 for r in results if r.success),
                "success": success,
            }})
            return BulkRemovalResult(success=success, results=results)
        finally:
            self._bulk_operation = False

    async def remove_all_devices(self) -> RemoveAllResult:
        """Delete the whole `devices` collection in one remote call."""
        logger.warning("Removing ALL devices")
        self._bulk_operation = True
        try:
            existing = await self.store.get(DEVICES_PATH)
            count = len(existing) if isinstance(existing, dict) else 0
            if count == 0:
                if self._devices:
                    self._devices = []
                    self._notify_listeners()
                return RemoveAllResult(success=True, message="No devices to remove", count=0)

            await self.store.remove(DEVICES_PATH)
            await asyncio.sleep(self.config.settle_delay_s)

            self._devices = []
            self._notify_listeners()

            log.info("HOMESYNC.Registry.AllDevicesRemoved", extra={"fields": {"count": count}})
            return RemoveAllResult(success=True, message=f"Successfully removed all {count} devices", count=count)
        except StoreError as e:
            log.error("HOMESYNC.Registry.RemoveAllFailed", extra={"fields": {"error": str(e)}})
            return RemoveAllResult(success=False, message=f"Failed to remove all devices: {e}", count=0)
        finally:
            self._bulk_operation = False

    async def cleanup_duplicate_devices(self) -> Dict[str, Any]:
        """
        Remove devices whose name repeats an earlier one (case and
        surrounding whitespace ignored). The first occurrence is kept.
        """
        seen = set()
        duplicates: List[str] = []
        to_remove: List[str] = []
        for device in self._devices:
            normalized = device.name.strip().lower()
            if normalized in seen:
                duplicates.append(device.name)
                to_remove.append(device.id)
            else:
                seen.add(normalized)

        if to_remove:
            logger.info(f"Removing {len(to_remove)} duplicate devices: {duplicates}")
            await self.remove_multiple_devices(to_remove)

        return {"removed": len(to_remove), "duplicates": duplicates}

    # ------------------------------------------------------------------
    # Sub-trees
    # ------------------------------------------------------------------

    async def log_power_consumption(self, device_id: str, watts: float) -> bool:
        """Store one wattage sample under the current minute key."""
        path = _device_path(device_id)
        key = minute_key(self._clock())
        try:
            if await self.store.get(path) is None:
                logger.warning(f"Power sample dropped, device {device_id} does not exist")
                return False
            await self.store.set(f"{path}/power_logs/{key}", watts)
        except StoreError as e:
            logger.error(f"Error logging power for device {device_id}: {e}")
            return False
        logger.debug(f"Power logged for device {device_id}: {watts}W at {key}")
        return True

    async def get_device_power_logs(self, device_id: str) -> Dict[str, float]:
        try:
            logs = await self.store.get(f"{_device_path(device_id)}/power_logs")
        except StoreError as e:
            logger.error(f"Error getting power logs for device {device_id}: {e}")
            return {}
        return logs if isinstance(logs, dict) else {}

    async def get_device_toggle_history(self, device_id: str) -> List[ToggleEvent]:
        """Toggle history, oldest first."""
        try:
            history = await self.store.get(f"{_device_path(device_id)}/toggle/history")
        except StoreError as e:
            logger.error(f"Error getting toggle history for device {device_id}: {e}")
            return []
        if not isinstance(history, dict):
            return []
        return [ToggleEvent.from_store(key, history[key]) for key in sorted_history_keys(history)]

    async def initialize_device_sub_nodes(self, device_id: str) -> bool:
        """
        Backfill power_logs / toggle / toggle.history on legacy records.

        Returns:
            False if the device does not exist or a write failed
        """
        path = _device_path(device_id)
        try:
            device = await self.store.get(path)
            if not isinstance(device, dict):
                logger.warning(f"Device {device_id} does not exist")
                return False

            initialized = []
            if device.get("power_logs") is None:
                await self.store.set(f"{path}/power_logs", {})
                initialized.append("power_logs")

            toggle = device.get("toggle")
            if not isinstance(toggle, dict):
                await self.store.set(f"{path}/toggle", {
                    "state": bool(device.get("state", False)),
                    "lastToggle": int(device.get("lastUpdated") or self._clock()),
                    "toggleCount": 0,
                    "history": {},
                })
                initialized.append("toggle")
            elif toggle.get("history") is None:
                await self.store.set(f"{path}/toggle/history", {})
                initialized.append("toggle/history")
        except StoreError as e:
            logger.error(f"Error initializing sub-nodes for device {device_id}: {e}")
            return False

        if initialized:
            logger.info(f"Initialized {', '.join(initialized)} for device {device_id}")
        return True

    async def initialize_all_device_sub_nodes(self) -> Dict[str, Any]:
        devices = list(self._devices)
        initialized = 0
        for device in devices:
            if await self.initialize_device_sub_nodes(device.id):
                initialized += 1
        logger.info(f"Initialized sub-nodes for {initialized}/{len(devices)} devices")
        return {"success": initialized == len(devices), "initialized": initialized}
