"""TTL cache for fetched web content, shareable across sibling threads."""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: str
    expires_at: float


class WebCache:
    """Asyncio-safe cache of URL -> text with per-entry expiry.

    Concurrent misses for the same key share one fetch: the first
    caller fetches while the others wait on that key's lock, then read
    the stored value.
    """

    def __init__(self, ttl_seconds: float = 900.0, max_entries: int = 256) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._entries: dict[str, _Entry] = {}
        self._key_locks: dict[str, asyncio.Lock] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at < time.monotonic():
            self._entries.pop(key, None)
            return None
        return entry.value

    def put(self, key: str, value: str) -> None:
        if key not in self._entries and len(self._entries) >= self._max_entries:
            # Evict the entry closest to expiry
            oldest = min(self._entries, key=lambda k: self._entries[k].expires_at)
            self._entries.pop(oldest, None)
        self._entries[key] = _Entry(value, time.monotonic() + self._ttl)

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[str]],
    ) -> str:
        cached = self.get(key)
        if cached is not None:
            self.hits += 1
            return cached

        lock = self._key_locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self.get(key)
            if cached is not None:
                self.hits += 1
                return cached
            self.misses += 1
            logger.debug("WebCache miss: %s", key)
            value = await fetch()
            self.put(key, value)
            return value

    def clear(self) -> None:
        self._entries.clear()
