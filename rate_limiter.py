"""
rate_limiter.py — per-client sliding-window request limiter.

Each client id keeps a deque of request timestamps (time.monotonic).  Entries
older than the window are dropped on every check, so a bucket never holds
more than max_requests entries.  Buckets of clients that have gone quiet for
a whole window are swept out, so one-off client ids do not pile up.
In-memory and per-process only.
"""
from __future__ import annotations

import time
from collections import deque


class RateLimiter:

    def __init__(self, max_requests: int = 20, window_secs: float = 60.0):
        self.max_requests = max_requests
        self.window_secs  = window_secs
        self._buckets: dict[str, deque] = {}
        self._last_sweep  = time.monotonic()

    def is_allowed(self, client_id: str) -> bool:
        """Record a request for client_id; False if it is over the limit."""
        now = time.monotonic()
        if now - self._last_sweep > self.window_secs:
            self._sweep(now)

        bucket = self._buckets.get(client_id)
        if bucket is None:
            bucket = self._buckets[client_id] = deque()
        self._prune(bucket, now)
        if len(bucket) >= self.max_requests:
            return False
        bucket.append(now)
        return True

    def bucket_size(self, client_id: str) -> int:
        return len(self._buckets.get(client_id, ()))

    def client_count(self) -> int:
        return len(self._buckets)

    def reset(self) -> None:
        self._buckets.clear()

    def _prune(self, bucket: deque, now: float) -> None:
        while bucket and now - bucket[0] > self.window_secs:
            bucket.popleft()

    def _sweep(self, now: float) -> None:
        for client_id in list(self._buckets):
            bucket = self._buckets[client_id]
            self._prune(bucket, now)
            if not bucket:
                del self._buckets[client_id]
        self._last_sweep = now
