"""
Device recreation detector.

Finds devices that come back under the same id after being deleted, which
means something else is still writing to the store. Monitoring diffs every
snapshot of `devices` against the first one it saw:

- id in the first snapshot, later missing, later present again -> recreation
- id never in the first snapshot -> addition (logged, not a recreation)

Everything here is advisory. identify_recreation_sources() lists plausible
causes, not proven ones.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import weakref
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from homesync.errors import StoreError
from homesync.fallback import LocalFallbackCache
from homesync.models import now_ms
from homesync.store.base import RemoteStore
from homesync.sync_logging import get_logger

if TYPE_CHECKING:
    from homesync.registry import DeviceRegistry

logger = logging.getLogger(__name__)
log = get_logger("HOMESYNC.Recreation")

DEFAULT_MONITOR_MS = 30000
DEFAULT_DELETION_TEST_MS = 10000

_active_monitors: "weakref.WeakSet[RecreationMonitor]" = weakref.WeakSet()


@dataclass
class RecreationEvent:
    device_id: str
    original_data: Any
    recreated_data: Any
    time_to_recreate_ms: int
    timestamp: int


@dataclass
class RecreationReport:
    success: bool
    recreations: List[RecreationEvent] = field(default_factory=list)
    additions: Dict[str, Any] = field(default_factory=dict)  # id -> data when first seen

    @property
    def summary(self) -> Dict[str, Any]:
        total = len(self.recreations)
        return {
            "total_recreations": total,
            "average_recreation_time_ms": (
                sum(r.time_to_recreate_ms for r in self.recreations) / total if total else 0
            ),
            "devices_recreated": [r.device_id for r in self.recreations],
            "devices_added": sorted(self.additions),
        }


@dataclass
class DeletionTestResult:
    success: bool
    was_recreated: bool
    recreation_time_ms: Optional[int] = None
    original_data: Any = None
    recreated_data: Any = None


@dataclass
class RecreationSources:
    potential_sources: List[str]
    recommendations: List[str]


class _MonitorSession:
    """Snapshot diffing state for one monitoring run."""

    def __init__(self, clock: Callable[[], int]):
        self._clock = clock
        self.active = True
        self.initial: Optional[Dict[str, Any]] = None
        self.deleted_at: Dict[str, int] = {}
        self.recreations: List[RecreationEvent] = []
        self.additions: Dict[str, Any] = {}

    def observe(self, data: Any) -> None:
        if not self.active:
            return
        current = data if isinstance(data, dict) else {}

        if self.initial is None:
            self.initial = copy.deepcopy(current)
            logger.info(f"Initial state: {len(current)} devices")
            return

        now = self._clock()
        for device_id in self.initial:
            if device_id not in current and device_id not in self.deleted_at:
                logger.info(f"Device deleted: {device_id}")
                self.deleted_at[device_id] = now

        for device_id in current:
            if device_id in self.deleted_at:
                event = RecreationEvent(
                    device_id=device_id,
                    original_data=self.initial[device_id],
                    recreated_data=copy.deepcopy(current[device_id]),
                    time_to_recreate_ms=now - self.deleted_at.pop(device_id),
                    timestamp=now,
                )
                self.recreations.append(event)
                log.warning("HOMESYNC.Recreation.DeviceRecreated", extra={"fields": {
                    "device_id": device_id,
                    "time_to_recreate_ms": event.time_to_recreate_ms,
                }})
            elif device_id not in self.initial and device_id not in self.additions:
                self.additions[device_id] = copy.deepcopy(current[device_id])
                log.info("HOMESYNC.Recreation.DeviceAdded", extra={"fields": {"device_id": device_id}})

    def report(self) -> RecreationReport:
        return RecreationReport(success=True, recreations=list(self.recreations), additions=dict(self.additions))


class RecreationMonitor:
    """
    Watches `devices` for deletion-then-reappearance.

    One monitoring session at a time per monitor; starting a new one stops
    the previous session, which then returns what it had collected.
    """

    def __init__(
        self,
        store: RemoteStore,
        registry: Optional["DeviceRegistry"] = None,
        fallback_cache: Optional[LocalFallbackCache] = None,
        *,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.registry = registry
        self.fallback_cache = fallback_cache
        self._clock = clock
        self._session: Optional[_MonitorSession] = None
        self._unwatch: Optional[Callable[[], None]] = None

    @property
    def is_monitoring(self) -> bool:
        return self._unwatch is not None

    def _begin(self) -> _MonitorSession:
        if self.is_monitoring:
            logger.info("Already monitoring, stopping previous session")
            self.stop_monitoring()

        session = _MonitorSession(self._clock)
        self._session = session
        self._unwatch = self.store.watch("devices", session.observe)
        _active_monitors.add(self)
        return session

    def stop_monitoring(self) -> None:
        """Tear down the active watch, if any."""
        if self._session is not None:
            self._session.active = False
            self._session = None
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None
            logger.info("Stopped device recreation monitoring")
        _active_monitors.discard(self)

    async def _run(self, session: _MonitorSession, duration_ms: int) -> RecreationReport:
        try:
            await asyncio.sleep(max(0, duration_ms) / 1000)
        finally:
            if self._session is session:
                self.stop_monitoring()
        report = session.report()
        log.info("HOMESYNC.Recreation.Summary", extra={"fields": report.summary})
        return report

    async def monitor_device_recreation(self, duration_ms: int = DEFAULT_MONITOR_MS) -> RecreationReport:
        """
        Watch for `duration_ms` and return every recreation seen.

        Never raises; a session that could not start returns success=False.
        """
        logger.info(f"Starting device recreation monitoring for {duration_ms}ms")
        try:
            session = self._begin()
        except Exception as e:
            log.error("HOMESYNC.Recreation.MonitorFailed", extra={"fields": {"error": str(e)}})
            return RecreationReport(success=False)
        return await self._run(session, duration_ms)

    async def test_device_deletion(
        self,
        device_id: str,
        duration_ms: int = DEFAULT_DELETION_TEST_MS,
    ) -> DeletionTestResult:
        """Delete one device straight from the store and see whether it comes back."""
        path = f"devices/{device_id}"
        logger.info(f"Testing deletion of device: {device_id}")
        try:
            original = await self.store.get(path)
        except StoreError as e:
            log.error("HOMESYNC.Recreation.TestFailed", extra={"fields": {"device_id": device_id, "error": str(e)}})
            return DeletionTestResult(success=False, was_recreated=False)

        if original is None:
            logger.warning(f"Device {device_id} does not exist, nothing to test")
            return DeletionTestResult(success=False, was_recreated=False)

        try:
            session = self._begin()
            await self.store.remove(path)
        except Exception as e:
            self.stop_monitoring()
            log.error("HOMESYNC.Recreation.TestFailed", extra={"fields": {"device_id": device_id, "error": str(e)}})
            return DeletionTestResult(success=False, was_recreated=False)
        logger.info(f"Deleted device: {device_id}")

        report = await self._run(session, duration_ms)
        for event in report.recreations:
            if event.device_id == device_id:
                logger.warning(f"Device {device_id} was recreated after {event.time_to_recreate_ms}ms")
                return DeletionTestResult(
                    success=True,
                    was_recreated=True,
                    recreation_time_ms=event.time_to_recreate_ms,
                    original_data=event.original_data,
                    recreated_data=event.recreated_data,
                )

        logger.info(f"Device {device_id} was not recreated")
        return DeletionTestResult(success=True, was_recreated=False, original_data=original)

    async def identify_recreation_sources(self) -> RecreationSources:
        """
        Run the independent heuristic checks. A check that errors is logged
        and contributes nothing.
        """
        checks = [
            (
                self._check_registry_listener,
                "Device registry remote listener",
                "Stop the device registry listener while deleting",
            ),
            (
                self._check_multiple_clients,
                "Multiple independent clients watching devices",
                "Close other sessions connected to the store before deleting",
            ),
            (
                self._check_fallback_cache,
                "Local fallback cache",
                "Clear the local fallback cache",
            ),
            (
                self._check_automation_logs,
                "Automation or audit writers (logs subtree present)",
                "Disable automation writers while deleting",
            ),
        ]

        sources: List[str] = []
        recommendations: List[str] = []
        for check, source, recommendation in checks:
            try:
                hit = await check()
            except Exception as e:
                logger.warning(f"Recreation source check {check.__name__} failed: {e}")
                continue
            if hit:
                sources.append(source)
                recommendations.append(recommendation)

        log.info("HOMESYNC.Recreation.Sources", extra={"fields": {"potential_sources": sources}})
        return RecreationSources(potential_sources=sources, recommendations=recommendations)

    async def _check_registry_listener(self) -> bool:
        return self.registry is not None and self.registry.is_watching

    async def _check_multiple_clients(self) -> bool:
        own = 1 if self.is_monitoring else 0
        watchers = self.store.watch_count("devices") - own
        subscribers = self.registry.subscriber_count if self.registry is not None else 0
        return watchers > 1 or subscribers > 1

    async def _check_fallback_cache(self) -> bool:
        return self.fallback_cache is not None and self.fallback_cache.is_populated()

    async def _check_automation_logs(self) -> bool:
        return await self.store.get("logs") is not None

    async def prevent_recreation(
        self,
        device_id: str,
        duration_ms: int = DEFAULT_DELETION_TEST_MS,
    ) -> Dict[str, Any]:
        """Clear local fallback data, then delete the device under monitoring."""
        logger.info(f"Attempting to prevent recreation of device: {device_id}")
        steps: List[str] = []

        paused = self.registry is not None and self.registry.is_watching
        if paused:
            self.registry.stop()
            steps.append("1. Paused the device registry listener")
        else:
            steps.append("1. Device registry listener not running")

        if self.fallback_cache is not None:
            cleared = self.fallback_cache.clear()
            steps.append(f"2. Cleared {cleared} devices from the local fallback cache")
        else:
            steps.append("2. No local fallback cache configured")

        try:
            result = await self.test_device_deletion(device_id, duration_ms)
        finally:
            if paused:
                self.registry.start()

        if not result.success:
            steps.append("3. Deletion test could not run")
            return {"success": False, "message": f"Could not test deletion of {device_id}", "steps": steps}

        if result.was_recreated:
            steps.append(f"3. Device was still recreated after {result.recreation_time_ms}ms")
            return {
                "success": False,
                "message": f"Device recreation could not be prevented. Recreated after {result.recreation_time_ms}ms",
                "steps": steps,
            }

        steps.append("3. Device deletion successful - no recreation detected")
        return {"success": True, "message": "Device recreation prevented successfully", "steps": steps}


def stop_monitoring() -> None:
    """Stop every active recreation monitor in this process."""
    for monitor in list(_active_monitors):
        monitor.stop_monitoring()
