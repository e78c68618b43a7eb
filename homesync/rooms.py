"""
Room queries and room rename fan-out.

Rooms are not stored on their own: a room exists as long as at least one
device carries its name.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Sequence

from homesync.errors import ValidationError
from homesync.models import DeviceRecord, DeviceStatus, RenameResult, RoomStats

logger = logging.getLogger(__name__)


def devices_in_room(devices: Sequence[DeviceRecord], room: str) -> List[DeviceRecord]:
    return [d for d in devices if d.room == room]


def all_rooms(devices: Sequence[DeviceRecord]) -> List[str]:
    """Unique room names, sorted."""
    return sorted({d.room for d in devices})


def room_stats(devices: Sequence[DeviceRecord], room: str) -> RoomStats:
    in_room = devices_in_room(devices, room)
    return RoomStats(
        total_devices=len(in_room),
        online_devices=sum(1 for d in in_room if d.status == DeviceStatus.ONLINE.value),
        active_devices=sum(1 for d in in_room if d.state),
    )


class RoomRenamer:
    """
    Renames a room by rewriting `room` on every device that has it.

    Updates run in parallel. The result is successful only if every device
    was updated; updated_count is the number that were.
    """

    def __init__(self, update_room: Callable[[str, str], Awaitable[bool]]):
        self._update_room = update_room

    async def rename(self, devices: Sequence[DeviceRecord], old_name: str, new_name: str) -> RenameResult:
        if not new_name or not new_name.strip():
            raise ValidationError("room", "new room name must not be empty")

        matches = devices_in_room(devices, old_name)
        if not matches:
            logger.info(f"Rename '{old_name}' -> '{new_name}': no devices in room")
            return RenameResult(success=True, updated_count=0)

        results = await asyncio.gather(
            *(self._update_room(device.id, new_name) for device in matches),
            return_exceptions=True,
        )

        updated = 0
        for device, result in zip(matches, results):
            if isinstance(result, BaseException):
                logger.error(f"Rename '{old_name}' -> '{new_name}' failed for {device.id}: {result}")
            elif result is True:
                updated += 1
            else:
                logger.warning(f"Rename '{old_name}' -> '{new_name}' skipped {device.id}")

        logger.info(f"Renamed room '{old_name}' -> '{new_name}' on {updated}/{len(matches)} devices")
        return RenameResult(success=updated == len(matches), updated_count=updated)
