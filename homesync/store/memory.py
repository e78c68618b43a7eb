"""
In-process remote store.

Holds the tree in memory and notifies watchers before the write call
returns, the way a realtime database raises local events for its own
writes. Used for local runs, diagnostics dry-runs and the test suite.
"""

import copy
import logging
from typing import Any, Dict, List

from homesync.store.base import RemoteStore
from homesync.store.tree import Tree

logger = logging.getLogger(__name__)


class InMemoryRemoteStore(RemoteStore):
    """RemoteStore backed by a plain nested dict."""

    def __init__(self, name: str = "memory", config: Dict[str, Any] | None = None, initial: Tree | None = None):
        super().__init__(name, config)
        if initial:
            self._tree = copy.deepcopy(initial)
        self._started = False

    async def start(self) -> None:
        self._started = True
        logger.info(f"In-memory store '{self.name}' ready")

    async def stop(self) -> None:
        self._started = False
        logger.info(f"In-memory store '{self.name}' stopped")

    async def _persist(self, parts: List[str], before: Tree, after: Tree) -> None:
        # Nothing to persist: the mirror is the store.
        return None

    def dump(self) -> Tree:
        """Copy of the whole tree, for debugging and tests."""
        return copy.deepcopy(self._tree)
