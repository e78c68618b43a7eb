"""
Local fallback cache.

A JSON file holding the last device snapshot a registry saw before it
stopped. It is never written back to the remote store; its only readers are
the recreation diagnostics, which treat a populated file as a possible
source of devices that come back after deletion (older clients restored
from it).
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Sequence

from homesync.models import DeviceRecord, now_ms
from homesync.sync_logging import get_logger

logger = logging.getLogger(__name__)


class LocalFallbackCache:
    """Read/write the fallback snapshot file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def save(self, devices: Sequence[DeviceRecord]) -> bool:
        """Write the snapshot. Returns False (and logs) on I/O failure."""
        data = {
            "devices": {d.id: d.to_store() for d in devices},
            "saved_at": now_ms(),
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(data, f, indent=2)
            logger.info(f"Saved {len(devices)} devices to fallback cache: {self.path}")
            return True
        except OSError as e:
            log = get_logger("HOMESYNC.Fallback")
            log.error("HOMESYNC.Fallback.SaveError", extra={"fields": {
                "cache_path": str(self.path),
                "error": str(e)
            }})
            return False

    def load(self) -> List[DeviceRecord]:
        """Devices in the file; empty if missing or unreadable."""
        raw = self._read()
        devices = raw.get("devices") or {}
        if not isinstance(devices, dict):
            return []
        return [DeviceRecord.from_store(str(k), v) for k, v in devices.items()]

    def device_ids(self) -> List[str]:
        return sorted(d.id for d in self.load())

    def is_populated(self) -> bool:
        return bool(self.device_ids())

    def clear(self) -> int:
        """Delete the file. Returns how many devices it held."""
        count = len(self.device_ids())
        try:
            self.path.unlink()
        except FileNotFoundError:
            return 0
        logger.info(f"Cleared fallback cache {self.path} ({count} devices)")
        return count

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            log = get_logger("HOMESYNC.Fallback")
            log.error("HOMESYNC.Fallback.LoadError", extra={"fields": {
                "cache_path": str(self.path),
                "error": str(e)
            }})
            return {}
        return data if isinstance(data, dict) else {}
