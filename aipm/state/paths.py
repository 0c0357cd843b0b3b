"""Addressing values inside the state document.

A path is either a dotted string (``"repositorySnapshot.currentBranch"``) or
a sequence of keys. Use the sequence form for keys that themselves contain
dots or slashes, such as branch names::

    ("repositorySnapshot", "branches", "AIPM_feature/v1.2")
"""

from __future__ import annotations

from typing import Any, Sequence

from aipm.errors import StateValidationError

PathLike = str | Sequence[str]

_MISSING = object()


def parse_path(path: PathLike) -> tuple[str, ...]:
    if isinstance(path, str):
        return tuple(part for part in path.split(".") if part)
    return tuple(str(part) for part in path)


def format_path(path: PathLike) -> str:
    return ".".join(parse_path(path))


def get_path(doc: Any, path: PathLike, default: Any = _MISSING) -> Any:
    """Return the value at ``path``.

    Raises KeyError when the path does not exist and no default was given.
    """
    node = doc
    for key in parse_path(path):
        if isinstance(node, dict) and key in node:
            node = node[key]
        elif isinstance(node, list) and key.lstrip("-").isdigit() and -len(node) <= int(key) < len(node):
            node = node[int(key)]
        else:
            if default is _MISSING:
                raise KeyError(format_path(path))
            return default
    return node


def has_path(doc: Any, path: PathLike) -> bool:
    try:
        get_path(doc, path)
    except KeyError:
        return False
    return True


def set_path(doc: dict, path: PathLike, value: Any) -> None:
    """Set ``value`` at ``path``, creating intermediate objects as needed."""
    keys = parse_path(path)
    if not keys:
        raise StateValidationError("Cannot replace the whole document through a path")

    node = doc
    for i, key in enumerate(keys[:-1]):
        child = node.get(key)
        if child is None:
            child = node[key] = {}
        elif not isinstance(child, dict):
            where = ".".join(keys[: i + 1])
            raise StateValidationError(f"Cannot descend into non-object at {where}")
        node = child
    node[keys[-1]] = value


def remove_path(doc: dict, path: PathLike) -> bool:
    """Delete the value at ``path``. Returns False when nothing was there."""
    keys = parse_path(path)
    if not keys:
        raise StateValidationError("Cannot remove the whole document")
    parent = get_path(doc, keys[:-1], None)
    if not isinstance(parent, dict) or keys[-1] not in parent:
        return False
    del parent[keys[-1]]
    return True
