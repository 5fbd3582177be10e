"""Shared helpers for walking plain attribute trees."""

from __future__ import annotations

import copy
import re
from typing import Any

_SEGMENT_RE = re.compile(r"^(?P<name>[^\[\]]+)(?:\[(?P<key>[^\]]*)\])?$")


def _split(path: str) -> list[tuple[str, str | None]]:
    segments: list[tuple[str, str | None]] = []
    for raw in path.split("."):
        match = _SEGMENT_RE.match(raw)
        if not match:
            msg = f"Invalid attribute path segment {raw!r} in {path!r}"
            raise ValueError(msg)
        segments.append((match.group("name"), match.group("key")))
    return segments


def _keyed_entry(items: list[dict[str, Any]], key: str, key_field: str = "name") -> dict[str, Any] | None:
    for item in items:
        if isinstance(item, dict) and item.get(key_field) == key:
            return item
    return None


def get_path(tree: dict[str, Any] | None, path: str, default: Any = None) -> Any:
    """Read a dotted path such as ``node_pools[gpu].vm_size`` from a nested dict."""
    node: Any = tree
    for name, key in _split(path):
        if not isinstance(node, dict) or name not in node:
            return default
        node = node[name]
        if key is not None:
            if not isinstance(node, list):
                return default
            node = _keyed_entry(node, key)
            if node is None:
                return default
    return node


def set_path(tree: dict[str, Any], path: str, value: Any) -> None:
    """Write ``value`` at a dotted path, creating intermediate blocks and keyed entries."""
    segments = _split(path)
    node: Any = tree
    for index, (name, key) in enumerate(segments):
        last = index == len(segments) - 1
        if key is None:
            if last:
                node[name] = value
                return
            if not isinstance(node.get(name), dict):
                node[name] = {}
            node = node[name]
            continue
        items = node.setdefault(name, [])
        entry = _keyed_entry(items, key)
        if last:
            if entry is None:
                items.append(value)
            else:
                items[items.index(entry)] = value
            return
        if entry is None:
            entry = {"name": key}
            items.append(entry)
        node = entry


def delete_path(tree: dict[str, Any], path: str) -> None:
    """Remove the value at a dotted path; keyed entries are dropped from their list."""
    segments = _split(path)
    node: Any = tree
    for index, (name, key) in enumerate(segments):
        last = index == len(segments) - 1
        if not isinstance(node, dict) or name not in node:
            return
        if key is None:
            if last:
                node[name] = None
                return
            node = node[name]
            continue
        items = node[name] or []
        entry = _keyed_entry(items, key)
        if entry is None:
            return
        if last:
            items.remove(entry)
            return
        node = entry


def deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict with ``overlay`` merged recursively over ``base``."""
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged
