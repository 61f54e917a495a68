"""Copy-on-write helpers for JSON trees shared by the store implementations.

Nodes are dicts, leaves are scalars.  Empty dicts and ``None`` both mean
"absent", as in the realtime store itself.  Writes never mutate an existing
node, so a reference to an old root is a consistent snapshot that can be
diffed against the new one.
"""

from __future__ import annotations

import copy
from typing import Any

from confession.store.base import SERVER_TIMESTAMP, ChildEvent, ChildEventType


def normalize(value: Any) -> Any:
    """Drop ``None`` children and collapse empty dicts to ``None``."""
    if isinstance(value, dict):
        cleaned = {}
        for key, child in value.items():
            child = normalize(child)
            if child is not None:
                cleaned[str(key)] = child
        return cleaned or None
    if isinstance(value, (list, tuple)):
        # Arrays are stored as index-keyed objects
        return normalize({str(i): v for i, v in enumerate(value)})
    return value


def resolve_server_values(value: Any, now_ms: int) -> Any:
    """Replace every ``SERVER_TIMESTAMP`` placeholder with ``now_ms``."""
    if value == SERVER_TIMESTAMP:
        return now_ms
    if isinstance(value, dict):
        return {k: resolve_server_values(v, now_ms) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_server_values(v, now_ms) for v in value]
    return value


def read(node: Any, segments: list[str]) -> Any:
    for seg in segments:
        if not isinstance(node, dict):
            return None
        node = node.get(seg)
        if node is None:
            return None
    return node


def write(node: Any, segments: list[str], value: Any) -> Any:
    """Return a new tree with ``value`` at ``segments``.  Shares untouched nodes."""
    if not segments:
        return normalize(copy.deepcopy(value))
    head, rest = segments[0], segments[1:]
    children = dict(node) if isinstance(node, dict) else {}
    child = write(children.get(head), rest, value)
    if child is None:
        children.pop(head, None)
    else:
        children[head] = child
    return children or None


def is_related(a: list[str], b: list[str]) -> bool:
    """True when one path is a prefix of the other."""
    n = min(len(a), len(b))
    return a[:n] == b[:n]


def _sort_rank(value: Any) -> tuple:
    # null < false < true < numbers < strings < objects
    if value is None:
        return (0,)
    if isinstance(value, bool):
        return (1, value)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    return (4,)


def ordered_children(node: Any, order_by: str | None = None) -> list[tuple[str, Any]]:
    """Children of ``node`` sorted by ``child[order_by]`` then key."""
    if not isinstance(node, dict):
        return []
    if order_by is None:
        return sorted(node.items(), key=lambda kv: kv[0])

    def sort_key(kv: tuple[str, Any]) -> tuple:
        key, child = kv
        field = child.get(order_by) if isinstance(child, dict) else None
        return (_sort_rank(field), key)

    return sorted(node.items(), key=sort_key)


def diff_children(before: Any, after: Any) -> list[ChildEvent]:
    """Child-level events turning ``before`` into ``after``.

    Removals come first, then additions and changes in key order.
    """
    old = before if isinstance(before, dict) else {}
    new = after if isinstance(after, dict) else {}

    events = [
        ChildEvent(ChildEventType.REMOVED, key, copy.deepcopy(old[key]))
        for key in sorted(old.keys() - new.keys())
    ]
    for key in sorted(new):
        if key not in old:
            events.append(ChildEvent(ChildEventType.ADDED, key, copy.deepcopy(new[key])))
        elif old[key] != new[key]:
            events.append(ChildEvent(ChildEventType.CHANGED, key, copy.deepcopy(new[key])))
    return events
