from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from dubbing.background import PeriodicSweeper


logger = logging.getLogger(__name__)

_SWEEP_INTERVAL_SECONDS = 5 * 60
_STALE_AFTER_SECONDS = 60 * 60


@dataclass
class TokenBucket:
    tokens: int
    last_refill: float
    retired: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


class RateLimiter:
    """Per-identifier token bucket measured in requests per minute.

    Buckets start full and refill lazily on each check. Each bucket has its own
    lock; the registry lock is held to look up, insert or sweep buckets. A
    swept bucket is marked retired so a caller that already holds it retries.
    """

    def __init__(
        self,
        requests_per_minute: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        stale_after_seconds: float = _STALE_AFTER_SECONDS,
        sweep_interval_seconds: float = _SWEEP_INTERVAL_SECONDS,
    ):
        self.capacity = max(1, int(requests_per_minute))
        self._tokens_per_second = self.capacity / 60.0
        self._clock = clock
        self._stale_after_seconds = float(stale_after_seconds)
        self._buckets: dict[str, TokenBucket] = {}
        self._registry_lock = threading.Lock()
        self._sweeper = PeriodicSweeper("rate-limiter-sweeper", sweep_interval_seconds, self.cleanup)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._buckets)

    def _bucket_for(self, identifier: str, now: float) -> TokenBucket:
        with self._registry_lock:
            bucket = self._buckets.get(identifier)
            if bucket is None:
                bucket = TokenBucket(tokens=self.capacity, last_refill=now)
                self._buckets[identifier] = bucket
            return bucket

    def allow(self, identifier: str) -> bool:
        now = self._clock()
        key = str(identifier or "")
        while True:
            bucket = self._bucket_for(key, now)
            with bucket.lock:
                # A swept bucket is no longer registered; retry with the live one.
                if not bucket.retired:
                    return self._take(bucket, now)

    def _take(self, bucket: TokenBucket, now: float) -> bool:
        elapsed = max(0.0, now - bucket.last_refill)
        refill = int(elapsed * self._tokens_per_second)
        if refill > 0:
            bucket.tokens = min(self.capacity, bucket.tokens + refill)
            bucket.last_refill = now
        if bucket.tokens > 0:
            bucket.tokens -= 1
            return True
        return False

    def cleanup(self) -> int:
        cutoff = self._clock() - self._stale_after_seconds
        with self._registry_lock:
            items = list(self._buckets.items())
        stale: list[str] = []
        for identifier, bucket in items:
            with bucket.lock:
                last_refill = bucket.last_refill
            if last_refill < cutoff:
                stale.append(identifier)
        removed = 0
        with self._registry_lock:
            for identifier in stale:
                current = self._buckets.get(identifier)
                if current is None:
                    continue
                with current.lock:
                    if current.last_refill >= cutoff:
                        continue
                    current.retired = True
                    del self._buckets[identifier]
                removed += 1
        if removed:
            logger.debug("[DEBUG] rate limiter removed stale buckets count=%s", removed)
        return removed

    def start(self) -> bool:
        return self._sweeper.start()

    def stop(self) -> None:
        self._sweeper.stop()
