"""Bounded least-recently-used cache for model clients.

Building a model client is cheap but not free, and identical generation
parameters recur constantly. Clients are cached by the parameter tuple from
``ModelConfig.cache_key`` and evicted least-recently-used first.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Callable, Generic, Hashable, TypeVar

from media_pipeline.metrics import MODEL_CACHE_TOTAL

V = TypeVar("V")


class ModelCache(Generic[V]):
    """LRU mapping of parameter tuples to model clients.

    Example:
        >>> cache = ModelCache(maxsize=2)
        >>> cache.get_or_create(("a",), lambda: 1)
        1
        >>> cache.get_or_create(("a",), lambda: 2)  # hit
        1
    """

    def __init__(self, maxsize: int = 10) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.maxsize = maxsize
        self._items: "OrderedDict[Hashable, V]" = OrderedDict()
        self._lock = threading.Lock()

    def get_or_create(self, key: Hashable, factory: Callable[[], V]) -> V:
        with self._lock:
            if key in self._items:
                self._items.move_to_end(key)
                MODEL_CACHE_TOTAL.labels(result="hit").inc()
                return self._items[key]
        value = factory()
        with self._lock:
            MODEL_CACHE_TOTAL.labels(result="miss").inc()
            self._items[key] = value
            self._items.move_to_end(key)
            while len(self._items) > self.maxsize:
                self._items.popitem(last=False)
            return self._items[key]

    def keys(self) -> list[Hashable]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._items.keys())

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
