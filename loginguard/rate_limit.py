import math
import threading
import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    total_hits: int


class RateLimiter:
    """Sliding-window request limiter keyed by client (usually the remote address)."""

    def __init__(
        self,
        attempts: int,
        sliding_window: int,
        clock: Callable[[], float] | None = None,
        sweep_every: int = 100,
    ):
        self.attempts = attempts
        self.sliding_window = sliding_window
        self.clock = clock
        self.sweep_every = sweep_every
        self.buckets: dict[str, list[float]] = {}
        self._hits_since_sweep = 0
        self._lock = threading.Lock()

    def _now(self) -> float:
        return self.clock() if self.clock else time.time()

    def hit(self, key: str) -> RateLimitResult:
        now = self._now()
        window_start = now - self.sliding_window

        with self._lock:
            self._hits_since_sweep += 1
            if self._hits_since_sweep >= self.sweep_every:
                self._sweep(window_start)

            bucket = self.buckets.setdefault(key, [])
            while bucket and bucket[0] < window_start:
                bucket.pop(0)
            reset_at = (bucket[0] if bucket else now) + self.sliding_window
            if len(bucket) >= self.attempts:
                if not bucket:
                    del self.buckets[key]
                return RateLimitResult(False, 0, reset_at, len(bucket))
            bucket.append(now)
            return RateLimitResult(True, self.attempts - len(bucket), reset_at, len(bucket))

    def prune(self) -> None:
        """Drop clients with no hits left in the window."""
        with self._lock:
            self._sweep(self._now() - self.sliding_window)

    def _sweep(self, window_start: float) -> None:
        self._hits_since_sweep = 0
        stale = [key for key, bucket in self.buckets.items() if not bucket or bucket[-1] < window_start]
        for key in stale:
            del self.buckets[key]

    def check(self, key: str) -> bool:
        return self.hit(key).allowed

    def headers(self, result: RateLimitResult) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.attempts),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(math.ceil(result.reset_at)),
            "X-RateLimit-Window": str(self.sliding_window),
        }
        if not result.allowed:
            headers["Retry-After"] = str(max(1, math.ceil(result.reset_at - self._now())))
        return headers
