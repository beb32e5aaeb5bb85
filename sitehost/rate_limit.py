import logging
import math
import threading
import time
import zlib
from collections import deque
from typing import Deque, Dict, List, Optional

logger = logging.getLogger("sitehost.ratelimit")

DEFAULT_SHARDS = 32


def _now_ms() -> float:
    return time.monotonic() * 1000.0


class RateLimitDecision:
    """Result of a single :meth:`SlidingWindowRateLimiter.admit` call."""

    __slots__ = ("allowed", "limit", "remaining", "reset_seconds", "retry_after")

    def __init__(
        self,
        allowed: bool,
        limit: int,
        remaining: int,
        reset_seconds: int,
        retry_after: Optional[int] = None,
    ) -> None:
        self.allowed = allowed
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds
        self.retry_after = retry_after

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }
        if not self.allowed and self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class _Shard:
    __slots__ = ("lock", "windows")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.windows: Dict[str, Deque[float]] = {}


class SlidingWindowRateLimiter:
    """Count requests per identity over a trailing window.

    Each identity keeps the timestamps of its admitted requests; rejected
    attempts are not recorded. Identities are spread over independent shards
    so callers with different keys rarely share a lock.
    """

    def __init__(self, max_requests: int, window_ms: int, shards: int = DEFAULT_SHARDS) -> None:
        if max_requests < 1 or window_ms < 1:
            raise ValueError("max_requests and window_ms must be positive")
        self.max_requests = int(max_requests)
        self.window_ms = int(window_ms)
        self._shards: List[_Shard] = [_Shard() for _ in range(max(1, int(shards)))]

    def _shard_for(self, key: str) -> _Shard:
        index = zlib.crc32(key.encode("utf-8")) % len(self._shards)
        return self._shards[index]

    def _prune(self, timestamps: Deque[float], now: float) -> None:
        while timestamps and now - timestamps[0] >= self.window_ms:
            timestamps.popleft()

    def _seconds_until_expiry(self, oldest: float, now: float) -> int:
        return max(1, math.ceil((oldest + self.window_ms - now) / 1000.0))

    def admit(self, key: str, now: Optional[float] = None) -> RateLimitDecision:
        now = _now_ms() if now is None else float(now)
        shard = self._shard_for(key)
        with shard.lock:
            timestamps = shard.windows.get(key)
            if timestamps is None:
                timestamps = deque()
                shard.windows[key] = timestamps
            self._prune(timestamps, now)

            if len(timestamps) >= self.max_requests:
                retry_after = self._seconds_until_expiry(timestamps[0], now)
                return RateLimitDecision(
                    False, self.max_requests, 0, retry_after, retry_after
                )

            timestamps.append(now)
            remaining = self.max_requests - len(timestamps)
            reset_seconds = self._seconds_until_expiry(timestamps[0], now)
            return RateLimitDecision(True, self.max_requests, remaining, reset_seconds)

    def compact(self, now: Optional[float] = None) -> int:
        """Drop identities whose whole window has aged out; returns how many."""

        now = _now_ms() if now is None else float(now)
        evicted = 0
        for shard in self._shards:
            with shard.lock:
                for key in list(shard.windows):
                    timestamps = shard.windows[key]
                    self._prune(timestamps, now)
                    if not timestamps:
                        del shard.windows[key]
                        evicted += 1
        if evicted:
            logger.debug("rate_limit_compacted evicted=%d", evicted)
        return evicted

    def stats(self) -> Dict[str, int]:
        keys = 0
        total_requests = 0
        for shard in self._shards:
            with shard.lock:
                keys += len(shard.windows)
                total_requests += sum(len(window) for window in shard.windows.values())
        return {"keys": keys, "total_requests": total_requests}

    def clear(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.windows.clear()
