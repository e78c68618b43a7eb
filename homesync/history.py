"""
Bounded toggle history.

Every toggle appends one entry under devices/{id}/toggle/history/{ts}.
The history is capped (100 entries by default); when an append would go
over the cap, the oldest entries by timestamp key are removed with
separate writes after the combined toggle update.
"""

import logging
from typing import Any, Dict, Iterable, List, Tuple

from homesync.models import ToggleEvent
from homesync.store.base import RemoteStore

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 100


def _key_order(key: str) -> Tuple[int, Any]:
    # Non-numeric keys only exist on hand-edited records; they sort oldest.
    try:
        return (1, int(key))
    except (TypeError, ValueError):
        return (0, key)


def sorted_history_keys(keys: Iterable[str]) -> List[str]:
    """History keys oldest first."""
    return sorted((str(k) for k in keys), key=_key_order)


def next_history_timestamp(existing_keys: Iterable[str], now: int) -> int:
    """
    Timestamp for a new entry that is unique and newest.

    Two toggles inside the same millisecond would otherwise share a key and
    the second would overwrite the first.
    """
    numeric = [k for _, k in (_key_order(key) for key in existing_keys) if isinstance(k, int)]
    if numeric and now <= max(numeric):
        return max(numeric) + 1
    return now


class HistoryTrimmer:
    """Builds toggle writes and keeps a device's history under the cap."""

    def __init__(self, store: RemoteStore, limit: int = DEFAULT_HISTORY_LIMIT):
        if limit < 1:
            raise ValueError(f"History limit must be >= 1, got {limit}")
        self.store = store
        self.limit = limit

    def build_toggle_update(
        self,
        toggle_count: int,
        new_state: bool,
        timestamp: int,
    ) -> Dict[str, Any]:
        """Fields for the single combined update on devices/{id}."""
        event = ToggleEvent.for_state(new_state, timestamp)
        return {
            "state": new_state,
            "lastUpdated": timestamp,
            "toggle/state": new_state,
            "toggle/lastToggle": timestamp,
            "toggle/toggleCount": toggle_count + 1,
            f"toggle/history/{timestamp}": event.to_store(),
        }

    def keys_over_limit(self, keys: Iterable[str]) -> List[str]:
        """Oldest keys beyond the cap; empty when `keys` already fit."""
        ordered = sorted_history_keys(keys)
        excess = len(ordered) - self.limit
        if excess <= 0:
            return []
        return ordered[:excess]

    async def trim(self, device_id: str) -> List[str]:
        """
        Re-read the stored history and remove the entries over the cap, one
        write each.

        Runs after the combined toggle update, so entries appended by toggles
        that overlapped this one are counted too.

        Returns:
            The evicted keys
        """
        path = f"devices/{device_id}/toggle/history"
        history = await self.store.get(path)
        evicted = self.keys_over_limit(history.keys() if isinstance(history, dict) else [])
        for key in evicted:
            await self.store.remove(f"{path}/{key}")
        if evicted:
            logger.debug(f"Evicted {len(evicted)} toggle history entries for {device_id}")
        return evicted
