"""Keyed in-memory store with per-key atomic insert and compare-and-swap."""

from __future__ import annotations

import threading
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class KeyedStore(Generic[K, V]):
    def __init__(self) -> None:
        self._items: dict[K, V] = {}
        self._locks: dict[K, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: K) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(key, threading.Lock())
        return lock

    def insert_if_absent(self, key: K, value: V) -> bool:
        with self._lock_for(key):
            if key in self._items:
                return False
            self._items[key] = value
            return True

    def compare_and_swap(self, key: K, predicate: Callable[[V], bool], update: Callable[[V], V]) -> tuple[bool, V | None]:
        """Replace the stored value with ``update(current)`` when ``predicate(current)`` holds.

        Returns ``(swapped, value)`` where ``value`` is the new value on
        success and the untouched current value otherwise.
        """
        with self._lock_for(key):
            current = self._items.get(key)
            if current is None or not predicate(current):
                return False, current
            updated = update(current)
            self._items[key] = updated
            return True, updated

    def apply(self, key: K, fn: Callable[[V | None], V]) -> V:
        """Store ``fn(current)`` under the key's lock; ``fn`` raising leaves the entry untouched."""
        with self._lock_for(key):
            updated = fn(self._items.get(key))
            self._items[key] = updated
            return updated

    def get(self, key: K) -> V | None:
        return self._items.get(key)

    def values(self) -> list[V]:
        return list(self._items.values())

    def keys(self) -> list[K]:
        return list(self._items.keys())

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)
