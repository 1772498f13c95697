"""Listing large collections by splitting queries on ID prefixes."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import TypeVar

T = TypeVar("T")

Filters = Mapping[str, Sequence[str]]

MAX_LIST_PAGE_SIZE = 1000
MAX_ID_PREFIX_DEPTH = 2
ID_PREFIX_CHARACTERS = "0123456789abcdefghijklmnopqrstuvwxyz"


def paginate_by_id_prefix(
    base: Filters,
    list_fn: Callable[[dict[str, list[str]]], Sequence[T]],
    id_fn: Callable[[T], str],
) -> list[T]:
    """List all items by querying one ID prefix at a time, deduplicated by ID.

    A prefix that still returns more than a page is split further, up to a
    fixed depth. Items with an empty ID are dropped.
    """
    results: list[T] = []
    seen: set[str] = set()
    for ch in ID_PREFIX_CHARACTERS:
        _append_unique(results, _paginate_depth(base, ch, 1, list_fn, id_fn), seen, id_fn)
    return results


def _with_id_prefix(base: Filters, prefix: str) -> dict[str, list[str]]:
    query = {key: list(values) for key, values in base.items()}
    query.setdefault("id", []).append(prefix)
    return query


def _paginate_depth(
    base: Filters,
    prefix: str,
    depth: int,
    list_fn: Callable[[dict[str, list[str]]], Sequence[T]],
    id_fn: Callable[[T], str],
) -> list[T]:
    items = list(list_fn(_with_id_prefix(base, prefix)))
    if len(items) <= MAX_LIST_PAGE_SIZE or depth >= MAX_ID_PREFIX_DEPTH:
        return items

    results: list[T] = []
    seen: set[str] = set()
    for ch in ID_PREFIX_CHARACTERS:
        child = _paginate_depth(base, prefix + ch, depth + 1, list_fn, id_fn)
        _append_unique(results, child, seen, id_fn)
    return results


def _append_unique(
    dst: list[T], items: Iterable[T], seen: set[str], id_fn: Callable[[T], str]
) -> None:
    for item in items:
        item_id = id_fn(item)
        if not item_id or item_id in seen:
            continue
        seen.add(item_id)
        dst.append(item)