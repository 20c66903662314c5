"""Short-lived in-memory cache for quick and batch query responses."""

import logging
import threading
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class ResponseCache:
    """Key/value cache where each entry carries its own TTL.

    Expired entries are dropped when read. There is no background eviction.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, stored_at, ttl = entry
            if now - stored_at >= ttl:
                del self._entries[key]
                logger.info(f"[ResponseCache] Expired {key}")
                return None
        logger.info(f"[ResponseCache] HIT {key} (age: {round(now - stored_at)}s)")
        return value

    def set(self, key: str, value: Any, ttl_seconds: float):
        with self._lock:
            self._entries[key] = (value, self._clock(), ttl_seconds)

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._entries)
            self._entries.clear()
        logger.info(f"[ResponseCache] Cleared {cleared} entries")
        return cleared

    def count_prefix(self, prefix: str) -> int:
        with self._lock:
            return sum(1 for k in self._entries if k.startswith(prefix))

    def clear_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for key in keys:
                del self._entries[key]
        logger.info(f"[ResponseCache] Cleared {len(keys)} entries under {prefix}")
        return len(keys)

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        return {"entriesCount": len(self)}
