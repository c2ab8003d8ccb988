"""Per-task context cache owned by the engine."""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..conditions import WaypointModel
from ..config import CacheConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

CacheKey = tuple[str, str]


class CacheStats(WaypointModel):
    entries: int = 0
    hits: int = 0
    misses: int = 0
    bypasses: int = 0
    invalidations: int = 0


class ContextCache:
    """Cache context slices keyed by ``(task_id, slice_type)``.

    Volatile slices are never stored: every read goes to the fetcher.
    Stored values are deep-copied on the way in and out, and population of
    a missing key happens under a per-key lock so concurrent readers fetch
    it once.
    """

    def __init__(self, config: Optional[CacheConfig] = None) -> None:
        self.config = config or CacheConfig()
        self._entries: dict[CacheKey, Any] = {}
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._stats = CacheStats()

    def is_volatile(self, slice_type: str) -> bool:
        if slice_type in self.config.volatile_slices:
            return True
        return any(slice_type.startswith(p) for p in self.config.volatile_prefixes)

    def get(self, task_id: str, slice_type: str) -> Any:
        if self.is_volatile(slice_type):
            self._stats.bypasses += 1
            return None
        key = (task_id, slice_type)
        if key not in self._entries:
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        logger.debug(f"Context cache hit for {task_id}/{slice_type}")
        return copy.deepcopy(self._entries[key])

    def set(self, task_id: str, slice_type: str, value: Any) -> bool:
        """Store ``value``; returns False when the slice is volatile."""
        if self.is_volatile(slice_type):
            self._stats.bypasses += 1
            return False
        self._entries[(task_id, slice_type)] = copy.deepcopy(value)
        return True

    async def get_or_fetch(
        self, task_id: str, slice_type: str, fetcher: Callable[[], Awaitable[T]]
    ) -> T:
        if self.is_volatile(slice_type):
            self._stats.bypasses += 1
            return await fetcher()
        key = (task_id, slice_type)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            if key in self._entries:
                self._stats.hits += 1
                return copy.deepcopy(self._entries[key])
            self._stats.misses += 1
            value = await fetcher()
            self._entries[key] = copy.deepcopy(value)
            return value

    def invalidate(self, task_id: str, slice_type: Optional[str] = None) -> int:
        """Drop one slice, or every slice of the task when ``slice_type`` is None."""
        keys = [
            key
            for key in self._entries
            if key[0] == task_id and (slice_type is None or key[1] == slice_type)
        ]
        for key in keys:
            del self._entries[key]
            self._locks.pop(key, None)
        if keys:
            self._stats.invalidations += len(keys)
            logger.debug(f"Invalidated {len(keys)} cached slices for task {task_id}")
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()
        self._locks.clear()

    def stats(self) -> CacheStats:
        return self._stats.model_copy(update={"entries": len(self._entries)})
