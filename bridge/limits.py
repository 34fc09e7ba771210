"""Per-client sliding-window rate limiting."""

from __future__ import annotations

import math
import threading
import time
import zlib
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from .errors import RateLimitExceeded


@dataclass(frozen=True)
class RateLimitDecision:
    limit: int
    remaining: int
    reset_at: float


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    clients: dict[str, deque[float]] = field(default_factory=dict)


class SlidingWindowRateLimiter:
    """Admit at most ``max_requests`` per client within a trailing ``window_s``.

    Clients are spread over independent shards, each with its own lock, so a
    check-and-record for one key is atomic without serialising unrelated
    clients. Timestamps older than the window are pruned before every
    admission decision. Idle clients are swept from every shard at most once
    per ``sweep_interval_s`` (one window by default), piggybacked on ``check``.
    """

    def __init__(
        self,
        *,
        window_s: float,
        max_requests: int,
        shards: int = 16,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval_s: float | None = None,
    ) -> None:
        self.window_s = window_s
        self.max_requests = max_requests
        self._clock = clock
        self._shards = [_Shard() for _ in range(max(1, shards))]
        self.sweep_interval_s = window_s if sweep_interval_s is None else sweep_interval_s
        self._sweep_lock = threading.Lock()
        self._next_sweep = clock() + self.sweep_interval_s

    def _shard(self, key: str) -> _Shard:
        return self._shards[zlib.crc32(key.encode("utf-8")) % len(self._shards)]

    def check(self, key: str) -> RateLimitDecision:
        if self.max_requests <= 0:
            return RateLimitDecision(limit=0, remaining=0, reset_at=0.0)

        self._maybe_sweep()
        shard = self._shard(key)
        with shard.lock:
            now = self._clock()
            window_start = now - self.window_s
            q = shard.clients.get(key)
            if q is None:
                q = deque()
                shard.clients[key] = q
            while q and q[0] <= window_start:
                q.popleft()

            if len(q) >= self.max_requests:
                retry_after = max(0.0, q[0] + self.window_s - now)
                raise RateLimitExceeded(
                    "Rate limit exceeded",
                    retry_after=retry_after,
                    limit=self.max_requests,
                )

            q.append(now)
            return RateLimitDecision(
                limit=self.max_requests,
                remaining=self.max_requests - len(q),
                reset_at=q[0] + self.window_s,
            )

    def _maybe_sweep(self) -> None:
        if self._clock() < self._next_sweep:
            return
        if not self._sweep_lock.acquire(blocking=False):
            return
        try:
            now = self._clock()
            if now >= self._next_sweep:
                self._next_sweep = now + self.sweep_interval_s
                self.cleanup()
        finally:
            self._sweep_lock.release()

    def cleanup(self) -> int:
        """Drop clients with no live timestamps; returns how many were removed."""
        removed = 0
        for shard in self._shards:
            with shard.lock:
                window_start = self._clock() - self.window_s
                for key in list(shard.clients):
                    q = shard.clients[key]
                    while q and q[0] <= window_start:
                        q.popleft()
                    if not q:
                        del shard.clients[key]
                        removed += 1
        return removed

    def live_count(self, key: str) -> int:
        shard = self._shard(key)
        with shard.lock:
            q = shard.clients.get(key)
            if not q:
                return 0
            window_start = self._clock() - self.window_s
            return sum(1 for ts in q if ts > window_start)

    def stats(self) -> dict[str, int]:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.clients)
        return {"tracked_clients": total, "shards": len(self._shards)}


def rate_limit_headers(decision: RateLimitDecision, *, wall_offset: float) -> dict[str, str]:
    """Render ``X-RateLimit-*`` headers; ``wall_offset`` converts clock time to epoch."""
    if decision.limit <= 0:
        return {}
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(math.ceil(decision.reset_at + wall_offset)),
    }
