"""Dot-path access into JSON-like trees (dicts, lists and scalars).

Paths are dot separated. List elements are addressed either as a numeric
segment (``items.0.name``) or with an index suffix (``items[0].name``).
"""

import re
from typing import Any, List, Union

INDEX_SUFFIX = re.compile(r'^(.*?)((?:\[\d+\])+)$')


class _Missing:
    """Sentinel for a path that does not resolve (distinct from ``None``)."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


def split_path(path: str) -> List[Union[str, int]]:
    """Split ``a.items[0].b`` into ``['a', 'items', 0, 'b']``."""
    parts: List[Union[str, int]] = []
    for segment in path.split('.'):
        match = INDEX_SUFFIX.match(segment)
        if match:
            key, indexes = match.groups()
            if key:
                parts.append(key)
            parts.extend(int(i) for i in re.findall(r'\[(\d+)\]', indexes))
        else:
            parts.append(segment)
    return parts


def get_path(data: Any, path: str, default: Any = MISSING) -> Any:
    """Get a nested value. Any missing or non-container step yields ``default``.

    Examples:
        >>> get_path({"result": {"status": "ok"}}, "result.status")
        'ok'
        >>> get_path({"items": [{"name": "a"}]}, "items.0.name")
        'a'
    """
    if not path:
        return default

    current = data
    for part in split_path(path):
        if isinstance(current, dict):
            key = str(part)
            if key not in current:
                return default
            current = current[key]
        elif isinstance(current, (list, tuple)):
            try:
                index = int(part)
            except (TypeError, ValueError):
                return default
            if not 0 <= index < len(current):
                return default
            current = current[index]
        else:
            return default
    return current


def set_path(data: dict, path: str, value: Any) -> dict:
    """Set a nested value, creating intermediate dicts as needed.

    Non-dict intermediates are replaced by dicts.
    """
    parts = [str(p) for p in path.split('.')]
    current = data
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value
    return data
