"""
Per-address sliding minute buckets for the webhook circuit breaker.

The counter store is injected so a multi-instance deployment can back it with
a shared store; InMemoryCounterStore only limits within one process.
"""

import logging
import threading
import time
from typing import Protocol

logger = logging.getLogger(__name__)

BUCKET_SECONDS = 60


class CounterStore(Protocol):
    def increment(self, key: str, bucket: int) -> int: ...

    def reset(self, key: str) -> None: ...

    def sweep(self, oldest_bucket: int) -> int: ...


class InMemoryCounterStore:
    def __init__(self):
        self._counts = {}
        self._lock = threading.Lock()

    def increment(self, key: str, bucket: int) -> int:
        with self._lock:
            count = self._counts.get((key, bucket), 0) + 1
            self._counts[(key, bucket)] = count
            return count

    def reset(self, key: str) -> None:
        with self._lock:
            for entry in [k for k in self._counts if k[0] == key]:
                del self._counts[entry]

    def sweep(self, oldest_bucket: int) -> int:
        """Drop buckets older than *oldest_bucket*; returns how many were removed."""
        with self._lock:
            stale = [k for k in self._counts if k[1] < oldest_bucket]
            for entry in stale:
                del self._counts[entry]
            return len(stale)

    def __len__(self):
        return len(self._counts)


class RateLimiter:
    def __init__(self, store: CounterStore, limit: int = 10, clock=time.time):
        self.store = store
        self.limit = limit
        self.clock = clock

    def allow(self, key: str) -> bool:
        """Count one hit for *key*; False once the current minute exceeds the limit."""
        bucket = int(self.clock() // BUCKET_SECONDS)
        # keep the current and previous bucket only
        self.store.sweep(bucket - 1)
        count = self.store.increment(key, bucket)
        if count > self.limit:
            logger.warning("Rate limit exceeded for %s (count=%d, bucket=%d)", key, count, bucket)
            return False
        return True
