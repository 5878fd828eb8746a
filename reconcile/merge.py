"""Merge policies for results arriving through callbacks.

Audio sections have a natural alignment key (their time-range label), so they
are upserted and replays are harmless. Stock media search results have no key
that survives a dispatcher retry, so batches are appended as they come.
"""

from __future__ import annotations

from typing import Any, Iterable

from core.errors import ValidationError

Item = dict[str, Any]

IMAGE_CALLBACK_CAP = 100
VIDEO_CALLBACK_CAP = 50


def upsert_by_key(existing: Iterable[Item], incoming: Iterable[Item], key: str, order: str) -> list[Item]:
    """Replace items sharing ``key``, append new ones, then sort by ``order``.

    The sort is stable, so items with equal ``order`` keep their arrival order.
    Items missing ``key`` are kept untouched.
    """
    keyed: dict[Any, Item] = {}
    loose: list[Item] = []
    for item in existing:
        if item.get(key) is None:
            loose.append(dict(item))
        else:
            keyed[item[key]] = dict(item)
    for item in incoming:
        keyed[item[key]] = dict(item)

    merged = loose + list(keyed.values())
    return sorted(merged, key=lambda item: (item.get(order) is None, item.get(order) or 0))


def remove_by_key(existing: Iterable[Item], key: str, value: Any) -> list[Item]:
    return [dict(item) for item in existing if item.get(key) != value]


def check_batch_size(incoming: list[Item], cap: int) -> None:
    if len(incoming) > cap:
        raise ValidationError(f"callback carries {len(incoming)} items, at most {cap} allowed")


def append_items(existing: Iterable[Item], incoming: Iterable[Item]) -> list[Item]:
    return [dict(item) for item in existing] + [dict(item) for item in incoming]
