"""
Path and tree helpers shared by the RemoteStore implementations.

The store content is a nested dict. Paths are slash-separated
("devices/abc/toggle/history"); the empty path addresses the root.
"""

import copy
from typing import Any, Dict, List, Sequence

Tree = Dict[str, Any]


def split_path(path: str) -> List[str]:
    """Split a store path into segments, ignoring leading/trailing slashes."""
    parts = [p for p in path.strip("/").split("/") if p]
    for part in parts:
        if part in (".", ".."):
            raise ValueError(f"Invalid path segment {part!r} in {path!r}")
    return parts


def is_related(a: Sequence[str], b: Sequence[str]) -> bool:
    """True when one path is a prefix of (or equal to) the other."""
    n = min(len(a), len(b))
    return list(a[:n]) == list(b[:n])


def get_at(tree: Tree, parts: Sequence[str]) -> Any:
    node: Any = tree
    for part in parts:
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def set_at(tree: Tree, parts: Sequence[str], value: Any) -> None:
    """
    Replace the subtree at `parts` with `value` (None removes it).

    Intermediate nodes are created as dicts; a scalar sitting where a dict is
    needed is replaced.
    """
    if value is None:
        remove_at(tree, parts)
        return

    if not parts:
        if not isinstance(value, dict):
            raise ValueError("Root value must be a mapping")
        tree.clear()
        tree.update(copy.deepcopy(value))
        return

    node = tree
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = copy.deepcopy(value)


def update_at(tree: Tree, parts: Sequence[str], fields: Dict[str, Any]) -> None:
    """
    Merge `fields` into the node at `parts`.

    Keys may be relative sub-paths ("toggle/state"); a None value removes
    that child.
    """
    for key, value in fields.items():
        sub = split_path(str(key))
        if not sub:
            raise ValueError(f"Empty update key under {'/'.join(parts)!r}")
        set_at(tree, list(parts) + sub, value)


def remove_at(tree: Tree, parts: Sequence[str]) -> None:
    if not parts:
        tree.clear()
        return

    parent = get_at(tree, parts[:-1])
    if isinstance(parent, dict):
        parent.pop(parts[-1], None)
