from __future__ import annotations

from collections.abc import Hashable
from threading import Lock
from typing import Any

from cachetools import TTLCache

_MISSING = object()


class ApiResponseCache:
    """Short-lived in-process cache for YouTube listing responses.

    Keys are `(user_id, *parts)` tuples so a single user's entries can be
    dropped before a destructive resync.
    """

    def __init__(self, *, ttl_seconds: float, max_entries: int = 1024) -> None:
        self._enabled = ttl_seconds > 0
        self._cache: TTLCache[tuple[Hashable, ...], Any] = TTLCache(
            maxsize=max(1, max_entries),
            ttl=max(ttl_seconds, 0.001),
        )
        self._lock = Lock()

    def get(self, user_id: str, *parts: Hashable) -> Any | None:
        if not self._enabled:
            return None
        with self._lock:
            value = self._cache.get((user_id, *parts), _MISSING)
        return None if value is _MISSING else value

    def set(self, user_id: str, *parts: Hashable, value: Any) -> None:
        if not self._enabled:
            return
        with self._lock:
            self._cache[(user_id, *parts)] = value

    def invalidate_user(self, user_id: str) -> int:
        with self._lock:
            keys = [key for key in list(self._cache.keys()) if key and key[0] == user_id]
            for key in keys:
                self._cache.pop(key, None)
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
