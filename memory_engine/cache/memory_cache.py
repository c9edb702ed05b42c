from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger("memory_engine.cache")

DEFAULT_TTL_SECONDS = 86400
CLEANUP_INTERVAL_SECONDS = 60.0


@dataclass
class _Entry:
    value: Any
    expires_at: float


def _pattern_regex(pattern: str) -> re.Pattern[str]:
    # Only '*' is a wildcard; everything else matches literally.
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")))


class MemoryCache:
    """In-process TTL cache for embeddings and per-project derived values.

    Expired entries are dropped on read and by a periodic sweep task.
    """

    def __init__(self, cleanup_interval: float = CLEANUP_INTERVAL_SECONDS):
        self._data: Dict[str, _Entry] = {}
        self._cleanup_interval = cleanup_interval
        self._cleanup_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._data)

    async def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at < time.monotonic():
            self._data.pop(key, None)
            return None
        return entry.value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds else DEFAULT_TTL_SECONDS
        self._data[key] = _Entry(value=value, expires_at=time.monotonic() + ttl)
        self._ensure_cleanup()

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def invalidate_pattern(self, pattern: str) -> int:
        regex = _pattern_regex(pattern)
        doomed = [k for k in self._data if regex.fullmatch(k)]
        for key in doomed:
            del self._data[key]
        return len(doomed)

    def cleanup(self) -> int:
        now = time.monotonic()
        expired = [k for k, e in self._data.items() if e.expires_at < now]
        for key in expired:
            del self._data[key]
        return len(expired)

    def _ensure_cleanup(self) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cleanup_task = loop.create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            removed = self.cleanup()
            if removed:
                logger.debug("Cache sweep removed %d expired entries", removed)

    def destroy(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        self._data.clear()
