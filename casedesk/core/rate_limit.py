"""
Per-agent admission control - token buckets keyed by (agent, route).

Buckets live in memory for the lifetime of the registry and are never
persisted, so limits reset when the process restarts.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .config import get_rate_limit_per_minute

SECONDS_PER_MINUTE = 60.0


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after_seconds: Optional[int] = None


class _Bucket:
    __slots__ = ('tokens', 'last_refill_at', 'lock')

    def __init__(self, tokens: float, last_refill_at: float):
        self.tokens = tokens
        self.last_refill_at = last_refill_at
        self.lock = threading.Lock()


class RateLimiter:
    """Registry of token buckets, one per (agent, route).

    Capacity and refill rate are the same requests-per-minute value for every
    bucket. When per_minute is None it is read from config on every check so
    RATE_LIMIT_PER_MINUTE changes apply without a restart.
    """

    def __init__(self, per_minute: Optional[int] = None, clock: Callable[[], float] = time.monotonic):
        self._per_minute = per_minute
        self._clock = clock
        self._buckets: Dict[Tuple[str, str], _Bucket] = {}
        self._registry_lock = threading.Lock()

    @property
    def per_minute(self) -> int:
        return self._per_minute if self._per_minute is not None else get_rate_limit_per_minute()

    def admit(self, agent_id: str, route: str) -> RateDecision:
        """Check and consume one token for (agent_id, route). Never raises."""
        limit = self.per_minute
        key = (agent_id, route)

        with self._registry_lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                # First request creates the bucket and spends one token
                self._buckets[key] = _Bucket(limit - 1, self._clock())
                return RateDecision(allowed=True)

        with bucket.lock:
            now = self._clock()
            elapsed = max(0.0, now - bucket.last_refill_at)
            bucket.tokens = min(limit, bucket.tokens + elapsed * limit / SECONDS_PER_MINUTE)
            bucket.last_refill_at = now

            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return RateDecision(allowed=True)

            seconds_until_one_token = (1 - bucket.tokens) * SECONDS_PER_MINUTE / limit
            return RateDecision(allowed=False, retry_after_seconds=max(1, math.ceil(seconds_until_one_token)))

    def tokens(self, agent_id: str, route: str) -> Optional[float]:
        """Current (unrefreshed) token count for a key, None if never seen."""
        bucket = self._buckets.get((agent_id, route))
        if bucket is None:
            return None
        with bucket.lock:
            return bucket.tokens

    def reset(self):
        """Drop every bucket."""
        with self._registry_lock:
            self._buckets.clear()
