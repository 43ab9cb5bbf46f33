"""
rampsettle Core: Liquidity Cache

Short-TTL cache in front of ProviderMatcher.

- key: (network, amount rounded to 2 decimals)
- amounts above the large-order threshold always re-validate live
- only successful, non-degraded checks at or below the cacheable ceiling
  are stored
- on roster failure an expired entry for the same key, no older than the
  stale window, is served as a flagged fallback; otherwise the answer is a
  safe no-liquidity
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Tuple

from core.provider_matcher import ProviderMatch, ProviderMatcher
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, float]


@dataclass
class CacheEntry:
    match: ProviderMatch
    stored_at: float


class LiquidityCache:
    """Advisory cache; last writer wins."""

    def __init__(
        self,
        matcher: ProviderMatcher,
        ttl_seconds: float = 60.0,
        cacheable_ceiling: float = 1000.0,
        large_order_threshold: float = 1000.0,
        stale_window_seconds: float = 600.0,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.matcher = matcher
        self.ttl_seconds = ttl_seconds
        self.cacheable_ceiling = cacheable_ceiling
        self.large_order_threshold = large_order_threshold
        self.stale_window_seconds = max(stale_window_seconds, ttl_seconds)
        self.metrics = metrics or MetricsRecorder(enabled=False)
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key(network: str, amount: float) -> CacheKey:
        return (network.lower(), round(float(amount), 2))

    def get(self, network: str, amount: float) -> ProviderMatch:
        """Capability check for (network, amount), cached where allowed."""
        key = self.key(network, amount)

        if amount > self.large_order_threshold:
            self.metrics.record_cache_outcome("bypass")
            logger.debug("Large order %.2f on %s bypasses liquidity cache", amount, key[0])
            return self.matcher.check(key[0], amount)

        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
        if entry is not None and now - entry.stored_at < self.ttl_seconds:
            self.metrics.record_cache_outcome("hit")
            return replace(entry.match, from_cache=True)

        self.metrics.record_cache_outcome("miss")
        result = self.matcher.check(key[0], amount)

        if result.upstream_error:
            if entry is not None and now - entry.stored_at <= self.stale_window_seconds:
                self.metrics.record_cache_outcome("stale")
                logger.warning(
                    "Serving stale liquidity entry for %s (%.0fs old) after roster failure",
                    key, now - entry.stored_at,
                )
                return replace(entry.match, from_cache=True, stale=True, upstream_error=result.upstream_error)
            return result

        if result.has_liquidity and not result.degraded and amount <= self.cacheable_ceiling:
            self._store(key, result, now)
        return result

    def invalidate(self, network: Optional[str] = None) -> None:
        with self._lock:
            if network is None:
                self._entries.clear()
            else:
                for key in [k for k in self._entries if k[0] == network.lower()]:
                    del self._entries[key]

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def _store(self, key: CacheKey, match: ProviderMatch, now: float) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(match=match, stored_at=now)
            expired = [k for k, e in self._entries.items() if now - e.stored_at > self.stale_window_seconds]
            for k in expired:
                del self._entries[k]
