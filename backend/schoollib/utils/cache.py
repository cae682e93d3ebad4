"""In-memory TTL cache used for cache-aside reads of loans, books and rules."""

from __future__ import annotations

import copy
import logging
import threading
import time
from typing import Any, Optional

_LOGGER = logging.getLogger("schoollib.cache")


class CacheKeys:
    """Key builders, one per entity kind, so modules cannot collide."""

    LOAN = "loan"
    BOOK = "book"
    RULE = "rule"

    @staticmethod
    def loan(loan_id: int) -> str:
        return f"{CacheKeys.LOAN}:{int(loan_id)}"

    @staticmethod
    def book(book_id: int) -> str:
        return f"{CacheKeys.BOOK}:{int(book_id)}"

    @staticmethod
    def rule(rule_id: int) -> str:
        return f"{CacheKeys.RULE}:{int(rule_id)}"


class TTLCache:
    """Process-local key/value store with per-entry expiry.

    Values are deep-copied on the way in and out so callers never share
    mutable state with the cache.
    """

    def __init__(self, default_ttl: int = 600, max_entries: int = 10_000):
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._default_ttl = default_ttl
        self._max_entries = max_entries

    def get(self, key: str) -> Optional[Any]:
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= now:
                self._entries.pop(key, None)
                return None
            return copy.deepcopy(value)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        if ttl <= 0:
            return
        with self._lock:
            self._entries[key] = (time.monotonic() + ttl, copy.deepcopy(value))
            if len(self._entries) > self._max_entries:
                self._purge_expired()
            if len(self._entries) > self._max_entries:
                # drop the entries closest to expiry first
                overflow = len(self._entries) - self._max_entries
                for old in sorted(self._entries, key=lambda k: self._entries[k][0])[:overflow]:
                    self._entries.pop(old, None)

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        if removed:
            _LOGGER.debug("cache_invalidate keys=%s removed=%d", ",".join(keys), removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._entries)

    def _purge_expired(self) -> None:
        now = time.monotonic()
        for key in [k for k, (exp, _) in self._entries.items() if exp <= now]:
            self._entries.pop(key, None)
