import threading
from collections import OrderedDict
from typing import Hashable


class DedupCache:
    """Fixed-capacity LRU set of recently handled (tx_hash, asset_key) keys"""

    def __init__(self, capacity: int = 1000):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._entries: "OrderedDict[Hashable, None]" = OrderedDict()
        self._lock = threading.Lock()

    def seen(self, key: Hashable) -> bool:
        """True if ``key`` is cached; a hit refreshes its position"""
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                return True
            return False

    def add(self, key: Hashable):
        with self._lock:
            self._entries[key] = None
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)

    def discard(self, key: Hashable):
        with self._lock:
            self._entries.pop(key, None)

    def __contains__(self, key: Hashable) -> bool:
        return self.seen(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
