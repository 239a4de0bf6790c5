"""
TTL cache of the last successful result per operation key.

Serves degraded reads while a provider is failing or its circuit is open.
Expired entries are evicted lazily on read, swept on every put, and swept
periodically by an optional background task.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from feedguard.config import CacheConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """A cached payload and when it was stored."""

    key: str
    payload: Any
    stored_at: int
    ttl_ms: int

    def is_fresh(self, now_ms: int) -> bool:
        return now_ms - self.stored_at <= self.ttl_ms

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.stored_at


class FallbackCache:
    """
    Key -> CacheEntry with per-entry TTL and a size bound.

    When max_entries is reached the entry with the oldest stored_at is
    evicted. Overwriting a key refreshes its position.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        time_fn: Callable[[], int] | None = None,
    ) -> None:
        self._config = config or CacheConfig()
        self._time_fn = time_fn
        # Insertion order == stored_at order
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

        self._sweep_task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def put(self, key: str, payload: Any, ttl_ms: int | None = None) -> None:
        """Store payload under key, replacing any previous entry."""
        with self._lock:
            now_ms = self._now_ms()
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(
                key=key,
                payload=payload,
                stored_at=now_ms,
                ttl_ms=self._config.ttl_ms if ttl_ms is None else ttl_ms,
            )
            self._sweep_locked(now_ms)
            while len(self._entries) > self._config.max_entries:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
                logger.debug("Cache entry evicted (size bound)", extra={"key": oldest})

    def lookup(self, key: str) -> CacheEntry | None:
        """
        Fresh entry for key, or None.

        Unlike get(), a cached None payload is distinguishable from a miss.
        """
        with self._lock:
            now_ms = self._now_ms()
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if not entry.is_fresh(now_ms):
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry

    def get(self, key: str, default: Any = None) -> Any:
        """Payload for key if fresh, else default."""
        entry = self.lookup(key)
        return default if entry is None else entry.payload

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def _sweep_locked(self, now_ms: int) -> int:
        expired = [k for k, entry in self._entries.items() if not entry.is_fresh(now_ms)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def sweep(self) -> int:
        """Remove expired entries. Returns how many were removed."""
        with self._lock:
            return self._sweep_locked(self._now_ms())

    def get_status(self) -> dict[str, int]:
        return {
            "size": len(self._entries),
            "max_entries": self._config.max_entries,
            "hits": self.hits,
            "misses": self.misses,
        }

    async def _sweep_loop(self, stop_event: asyncio.Event) -> None:
        interval_s = self._config.sweep_interval_ms / 1000
        while not stop_event.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
            if stop_event.is_set():
                break
            removed = self.sweep()
            if removed:
                logger.debug("Cache sweep", extra={"removed": removed, "size": len(self)})

    async def start(self) -> None:
        """Start the periodic sweep. No-op if already running."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._stop_event = asyncio.Event()
        self._sweep_task = asyncio.create_task(self._sweep_loop(self._stop_event))

    async def stop(self) -> None:
        if self._sweep_task is None or self._stop_event is None:
            return
        self._stop_event.set()
        await self._sweep_task
        self._sweep_task = None
        self._stop_event = None
