"""
Emergency device removal.

These helpers go straight to the remote store and bypass any registry, for
when the registry itself is suspected of writing devices back.
"""

import asyncio
import logging
from typing import Any, Dict

from homesync.errors import StoreError
from homesync.store.base import RemoteStore
from homesync.sync_logging import get_logger

logger = logging.getLogger(__name__)
log = get_logger("HOMESYNC.Emergency")


async def force_remove_all_devices(store: RemoteStore, settle_delay_s: float = 2.0) -> Dict[str, Any]:
    """
    Delete the whole `devices` collection and verify it is gone.

    Returns:
        {"success": bool, "message": str, "count": int}
    """
    logger.warning("FORCE REMOVAL: removing ALL devices directly from the store")
    try:
        existing = await store.get("devices")
        count = len(existing) if isinstance(existing, dict) else 0
        if count == 0:
            return {"success": True, "message": "No devices to remove", "count": 0}

        logger.info(f"Found {count} devices to remove")
        await store.remove("devices")
        await asyncio.sleep(settle_delay_s)

        if await store.get("devices"):
            log.error("HOMESYNC.Emergency.DevicesStillPresent", extra={"fields": {"count": count}})
            return {"success": False, "message": "Devices still exist after force removal", "count": count}

    except StoreError as e:
        log.error("HOMESYNC.Emergency.ForceRemovalFailed", extra={"fields": {"error": str(e)}})
        return {"success": False, "message": f"Force removal failed: {e}", "count": 0}

    log.info("HOMESYNC.Emergency.ForceRemoved", extra={"fields": {"count": count}})
    return {"success": True, "message": f"Force removed {count} devices", "count": count}


async def prevent_device_reappearance(
    store: RemoteStore,
    settle_delay_s: float = 2.0,
    recheck_delay_s: float = 3.0,
) -> Dict[str, Any]:
    """
    Force-remove everything, wait, and check whether devices came back.

    Devices that reappear are removed once more and reported as a failure:
    something else is writing them.
    """
    removal = await force_remove_all_devices(store, settle_delay_s)
    if not removal["success"]:
        return {"success": False, "message": "Failed to remove devices initially"}

    await asyncio.sleep(recheck_delay_s)

    try:
        current = await store.get("devices")
        if isinstance(current, dict) and current:
            reappeared = len(current)
            log.warning("HOMESYNC.Emergency.DevicesReappeared", extra={"fields": {
                "count": reappeared,
                "device_ids": sorted(current),
            }})
            await store.remove("devices")
            return {
                "success": False,
                "message": f"{reappeared} devices reappeared after removal. Check for other sources adding devices.",
            }
    except StoreError as e:
        log.error("HOMESYNC.Emergency.RecheckFailed", extra={"fields": {"error": str(e)}})
        return {"success": False, "message": f"Prevention check failed: {e}"}

    return {"success": True, "message": "Devices successfully removed and not reappearing"}
