"""Bounded classification cache."""

from __future__ import annotations

import hashlib
import threading
from collections import OrderedDict

from mailtriage.categories import Category


def make_cache_key(subject: str, body: str) -> str:
    """Build the cache key for a subject/body pair.

    The key is a digest of the trimmed, lowercased subject and body joined by
    a space, so messages differing only in case or outer whitespace share it.
    """
    content = f"{(subject or '').lower().strip()} {(body or '').lower().strip()}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class CategoryCache:
    """Insertion-ordered cache holding at most ``max_size`` entries.

    When full, inserting a new key evicts the oldest inserted key. Updating an
    existing key keeps its position.
    """

    def __init__(self, max_size: int = 1000):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._entries: OrderedDict[str, Category] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Category | None:
        return self._entries.get(key)

    def put(self, key: str, category: Category) -> None:
        with self._lock:
            if key in self._entries:
                self._entries[key] = category
                return
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
            self._entries[key] = category

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
