"""Helpers for picking values out of vendor CLI JSON output."""
from __future__ import annotations

from collections.abc import Mapping


def dig(data: object | None, *path: str | int) -> object | None:
    """Follow *path* through nested mappings/lists, returning ``None`` on any miss."""
    current = data
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or not -len(current) <= key < len(current):
                return None
            current = current[key]
            continue
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def dig_str(data: object | None, *path: str | int) -> str | None:
    """Like :func:`dig` but returns a non-empty string or ``None``."""
    value = dig(data, *path)
    if value is None:
        return None
    text = str(value).strip()
    if not text or text == "None":
        return None
    return text


def as_list(data: object | None, *path: str | int) -> list[object]:
    """Return the list found at *path*, or an empty list."""
    value = dig(data, *path) if path else data
    if isinstance(value, list):
        return value
    return []


def mappings(data: object | None, *path: str | int) -> list[Mapping[str, object]]:
    """Return only the mapping entries of the list at *path*."""
    return [item for item in as_list(data, *path) if isinstance(item, Mapping)]


__all__ = ["as_list", "dig", "dig_str", "mappings"]
