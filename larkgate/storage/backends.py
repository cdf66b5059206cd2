"""Key-value backends for volatile gateway state (sessions, processed events)."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable

_MISSING = object()


class KeyValueBackend(ABC):
    """Minimal store interface so persistence can be swapped without touching callers."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        pass

    @abstractmethod
    def put(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    def add_if_absent(self, key: str, value: Any) -> bool:
        """Atomically store ``value`` unless ``key`` is present. Returns True if stored."""

    @abstractmethod
    def __len__(self) -> int:
        pass

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING


class MemoryBackend(KeyValueBackend):
    """In-process store bounded by entry count (LRU) and optionally by age (TTL).

    ``max_entries=0`` and ``ttl_seconds=0`` disable the respective bound.
    """

    def __init__(
        self,
        max_entries: int = 0,
        ttl_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._data: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._lock = threading.Lock()

    def _expired(self, stored_at: float) -> bool:
        return bool(self.ttl_seconds) and self._clock() - stored_at > self.ttl_seconds

    def _lookup(self, key: str) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return _MISSING
        stored_at, value = entry
        if self._expired(stored_at):
            del self._data[key]
            return _MISSING
        self._data.move_to_end(key)
        return value

    def _store(self, key: str, value: Any) -> None:
        self._data[key] = (self._clock(), value)
        self._data.move_to_end(key)
        self._evict()

    def _evict(self) -> None:
        if self.ttl_seconds:
            # Oldest-touched entries sit at the front.
            while self._data:
                key, (stored_at, _) = next(iter(self._data.items()))
                if not self._expired(stored_at):
                    break
                del self._data[key]
        if self.max_entries:
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            value = self._lookup(key)
            if value is _MISSING:
                return default
            # Refresh the timestamp so TTL measures idle time.
            self._data[key] = (self._clock(), value)
            return value

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._store(key, value)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def add_if_absent(self, key: str, value: Any) -> bool:
        with self._lock:
            if self._lookup(key) is not _MISSING:
                return False
            self._store(key, value)
            return True

    def __len__(self) -> int:
        with self._lock:
            self._evict()
            return len(self._data)
