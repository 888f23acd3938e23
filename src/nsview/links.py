"""Helpers for turning id cross-references into object references."""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

logger = logging.getLogger(__name__)


class MalformedSnapshotError(ValueError):
    """The snapshot does not have the shape of a discovery snapshot."""


def as_id(value: Any) -> int | None:
    """Coerce a JSON id (number or numeric string) into an int.

    Zero, missing and non-numeric values count as "no reference".
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        ident = int(value)
    except (TypeError, ValueError):
        return None
    return ident or None


def list_field(entry: Mapping[str, Any], key: str) -> list[Any]:
    """Return a list field of a snapshot entry; absent means empty."""
    value = entry.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedSnapshotError(f"{key!r} is not a list: {value!r}")
    return value


def mapping_field(entry: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    """Return an object field of a snapshot entry; absent means empty."""
    value = entry.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise MalformedSnapshotError(f"{key!r} is not an object: {value!r}")
    return value


def lookup(pool: Mapping[int, Any], ref: Any) -> Any:
    """Resolve a single id, returning None if it dangles."""
    ident = as_id(ref)
    return pool.get(ident) if ident is not None else None


def lookup_all(pool: Mapping[int, Any], refs: Any) -> list[Any]:
    """Resolve a list of ids, dropping ids absent from the pool."""
    if not isinstance(refs, list):
        return []
    return [obj for obj in (lookup(pool, ref) for ref in refs) if obj is not None]


def break_cycles(nodes: Iterable[Any]) -> None:
    """Cut parent links that close a cycle in a parent/children forest.

    Works on any objects with `parent` and `children` attributes; walks
    iteratively so that arbitrarily deep chains are fine.
    """
    done: set[int] = set()
    for node in nodes:
        path: list[Any] = []
        onpath: set[int] = set()
        current = node
        while current is not None and id(current) not in done:
            if id(current) in onpath:
                last = path[-1]
                logger.debug("breaking parent cycle at %r", last)
                last.parent.children.remove(last)
                last.parent = None
                break
            onpath.add(id(current))
            path.append(current)
            current = current.parent
        done |= onpath
