from __future__ import annotations

import math
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional

from shopgate.logging import get_logger
from shopgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


def rate_limit_key(ip: str | None, route: str) -> str:
    return f"{ip or 'unknown'}:{route}"


class RateLimiter:
    """Per ``ip:route`` request limiter.

    With a Redis cache the check runs the shared token-bucket script. Without
    one it keeps a sliding window of request timestamps per key, bounded to
    ``max_keys`` entries with least-recently-used eviction so an address scan
    cannot grow memory without limit. Idle keys are swept on access at most
    once per ``prune_interval`` seconds.
    """

    def __init__(
        self,
        cache: Optional[RedisCache | SyncRedisCache] = None,
        *,
        max_keys: int = 10_000,
        prune_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.max_keys = max(1, max_keys)
        self.prune_interval = prune_interval
        self._clock = clock
        self._last_prune = clock()
        self._longest_window = 0
        self._windows: "OrderedDict[str, Deque[float]]" = OrderedDict()
        self._lock = threading.Lock()

    async def check(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> RateLimitDecision:
        if limit <= 0:
            return RateLimitDecision(True, limit, limit, 0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = 60
        if self.cache is not None:
            allowed, remaining, reset_seconds = await self.cache.check_rate_limit(
                key, limit, window_seconds, cost=cost
            )
            return RateLimitDecision(allowed, limit, remaining, reset_seconds)
        return self._check_local(key, limit, window_seconds, cost)

    def _check_local(
        self, key: str, limit: int, window_seconds: int, cost: int
    ) -> RateLimitDecision:
        now = self._clock()
        cutoff = now - window_seconds
        with self._lock:
            self._longest_window = max(self._longest_window, window_seconds)
            if now - self._last_prune >= self.prune_interval:
                self._last_prune = now
                dropped = self._drop_idle(now - self._longest_window)
                if dropped:
                    logger.debug("rate_limit_keys_pruned", dropped=dropped)
            hits = self._windows.get(key)
            if hits is None:
                hits = deque()
                self._windows[key] = hits
            else:
                self._windows.move_to_end(key)
            while hits and hits[0] <= cutoff:
                hits.popleft()
            allowed = len(hits) + cost <= limit
            if allowed:
                hits.extend([now] * cost)
            remaining = max(0, limit - len(hits))
            reset_seconds = (
                0 if allowed or not hits else max(1, math.ceil(hits[0] + window_seconds - now))
            )
            while len(self._windows) > self.max_keys:
                evicted, _ = self._windows.popitem(last=False)
                logger.debug("rate_limit_key_evicted", key=evicted)
        return RateLimitDecision(allowed, limit, remaining, reset_seconds)

    def _drop_idle(self, cutoff: float) -> int:
        stale = [k for k, hits in self._windows.items() if not hits or hits[-1] <= cutoff]
        for k in stale:
            self._windows.pop(k, None)
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)
