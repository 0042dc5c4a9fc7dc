"""
Per-key serialization of deployment work.

Each game id gets its own FIFO: a job waits for every job queued before it
under the same key, while jobs for different keys run independently.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")

_log = logging.getLogger(__name__)


class KeyedWorkQueue:
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiting: dict[str, int] = {}

    def pending(self, key: str) -> int:
        """Jobs queued or running under ``key``."""
        return self._waiting.get(key, 0)

    async def run(self, key: str, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiting[key] = self._waiting.get(key, 0) + 1
        if lock.locked():
            _log.debug("Queued %s for %s behind running work", getattr(func, "__name__", func), key)
        try:
            async with lock:
                return await func(*args, **kwargs)
        finally:
            self._waiting[key] -= 1
            if not self._waiting[key]:
                del self._waiting[key]
