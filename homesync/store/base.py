"""
Base interface for remote stores.

A RemoteStore is the authoritative hierarchical key-value database the
registry mirrors. The contract is deliberately narrow:

    get(path) / set(path, value) / update(path, fields) / remove(path)
    watch(path, on_change) -> unsubscribe

Implementations keep a local mirror of the tree. Reads are served from the
mirror; writes are first persisted remotely (`_persist`) and then committed
to the mirror, which notifies every watcher whose path overlaps the write.
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Sequence

from homesync.errors import StoreError
from homesync.store.tree import Tree, get_at, is_related, remove_at, set_at, split_path, update_at

logger = logging.getLogger(__name__)

WatchCallback = Callable[[Any], None]


@dataclass
class _Watch:
    path: List[str]
    callback: WatchCallback
    active: bool = True


class RemoteStore(ABC):
    """
    Base class for remote stores.

    Stores are responsible for:
    - Connecting to the backing service (start/stop)
    - Persisting writes remotely
    - Keeping the local mirror current with changes made by other clients
    - Delivering the full current value at a watched path on every change
    """

    def __init__(self, name: str, config: Dict[str, Any] | None = None):
        """
        Initialize store.

        Args:
            name: Store identifier (used in logs)
            config: Store-specific configuration
        """
        self.name = name
        self.config = config or {}
        self._tree: Tree = {}
        self._watches: List[_Watch] = []

    @abstractmethod
    async def start(self) -> None:
        """
        Start the store.

        Should establish connections and populate the mirror with the
        current remote content before returning.
        """

    @abstractmethod
    async def stop(self) -> None:
        """Stop the store and release connections. Watches stay registered."""

    @abstractmethod
    async def _persist(self, parts: List[str], before: Tree, after: Tree) -> None:
        """
        Make the remote side match `after` for everything under `parts`.

        Raises:
            StoreError: If the remote side rejected or never received the write
        """

    @property
    def is_connected(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def get(self, path: str) -> Any:
        """Current value at `path` (a deep copy), or None if absent."""
        value = get_at(self._tree, split_path(path))
        return copy.deepcopy(value)

    async def set(self, path: str, value: Any) -> None:
        """Replace the subtree at `path`."""
        parts = split_path(path)
        await self._write("set", parts, lambda tree: set_at(tree, parts, value))

    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        """Merge `fields` (keys may be sub-paths; None deletes) into `path`."""
        if not fields:
            return
        parts = split_path(path)
        for key in fields:
            if not split_path(str(key)):
                raise StoreError("update", path, "empty update key")
        await self._write("update", parts, lambda tree: update_at(tree, parts, fields))

    async def remove(self, path: str) -> None:
        """Delete the subtree at `path`. Removing an absent path is a no-op."""
        parts = split_path(path)
        await self._write("remove", parts, lambda tree: remove_at(tree, parts))

    def watch(self, path: str, on_change: WatchCallback) -> Callable[[], None]:
        """
        Watch `path`.

        `on_change` is called immediately with the current value, then with
        the full new value every time it changes. Returns a handle that
        stops the watch; calling it twice is harmless.
        """
        entry = _Watch(path=split_path(path), callback=on_change)
        self._watches.append(entry)
        logger.debug(f"[{self.name}] watch registered on '{path}' ({len(self._watches)} active)")
        self._deliver(entry, get_at(self._tree, entry.path))

        def unsubscribe() -> None:
            if not entry.active:
                return
            entry.active = False
            if entry in self._watches:
                self._watches.remove(entry)
            logger.debug(f"[{self.name}] watch removed from '{path}' ({len(self._watches)} active)")

        return unsubscribe

    def watch_count(self, path: str | None = None) -> int:
        """Number of active watches, optionally only those exactly on `path`."""
        if path is None:
            return len(self._watches)
        parts = split_path(path)
        return sum(1 for w in self._watches if w.path == parts)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _write(self, operation: str, parts: List[str], mutate: Callable[[Tree], None]) -> None:
        path = "/".join(parts)
        after = copy.deepcopy(self._tree)
        try:
            mutate(after)
            await self._persist(parts, self._tree, after)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(operation, path, str(e)) from e

        # Other writes may have landed while _persist was suspended;
        # replay this one on top of the mirror as it is now.
        final = copy.deepcopy(self._tree)
        mutate(final)
        self._commit(parts, final)

    def _commit(self, parts: Sequence[str], after: Tree) -> None:
        """Swap in a new mirror and notify watchers whose value changed."""
        affected = [w for w in self._watches if is_related(w.path, parts)]
        before = {id(w): get_at(self._tree, w.path) for w in affected}
        self._tree = after

        for entry in affected:
            if not entry.active:
                continue
            value = get_at(self._tree, entry.path)
            if value != before[id(entry)]:
                self._deliver(entry, value)

    def _deliver(self, entry: _Watch, value: Any) -> None:
        try:
            entry.callback(copy.deepcopy(value))
        except Exception as e:
            logger.error(f"[{self.name}] watch callback on '{'/'.join(entry.path)}' failed: {e}")
