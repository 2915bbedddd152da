"""Bounded LRU snapshot cache with per-entry TTL."""

import hashlib
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from .types import CaptureOptions, Snapshot


def cache_key(url: str, options: CaptureOptions, namespace: str = "") -> str:
    payload = f"{namespace}|{url}|{options.cache_fingerprint()}"
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


class SnapshotCache:
    """LRU cache of successful captures.

    Entries older than ``ttl_seconds`` are treated as misses and dropped on
    access. All operations hold a lock, so concurrent writers can at worst
    replace each other's entry.
    """

    def __init__(
        self,
        max_entries: int = 100,
        ttl_seconds: float = 300.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: OrderedDict[str, tuple[float, Snapshot]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Snapshot]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            stored_at, snapshot = entry
            if now - stored_at > self.ttl_seconds:
                del self._entries[key]
                self.misses += 1
                return None

            self._entries.move_to_end(key)
            self.hits += 1
            return snapshot

    def put(self, key: str, snapshot: Snapshot) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), snapshot)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries
