"""
rampsettle Core: Duplicate Guard

Prevents a second live order for the same (customer, token, network).

The order id is generated before reservation so check-and-set is a single
locked step: of two concurrent requests exactly one reserves, and the other
learns the winner's order id. Entries self-expire with the order window and
are released early when the order reaches a terminal status.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

GuardKey = Tuple[str, str, str]


@dataclass
class DuplicateGuardEntry:
    order_id: str
    reserved_at: float
    expires_at: float

    def remaining(self, now: float) -> float:
        return max(self.expires_at - now, 0.0)


class DuplicateGuard:
    """In-process check-and-set map; single-process deployments only."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: Dict[GuardKey, DuplicateGuardEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    @staticmethod
    def key(customer: str, token: str, network: str) -> GuardKey:
        return ((customer or "").strip().lower(), (token or "").strip().upper(), (network or "").strip().lower())

    def reserve(self, key: GuardKey, order_id: str, ttl_seconds: float) -> Optional[DuplicateGuardEntry]:
        """
        Reserve `key` for `order_id`.

        Returns None on success, or the live entry that blocks the request.
        """
        now = self._clock()
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None and existing.expires_at > now:
                return existing
            self._entries[key] = DuplicateGuardEntry(
                order_id=order_id,
                reserved_at=now,
                expires_at=now + ttl_seconds,
            )
        logger.debug("Duplicate guard reserved %s for %s", key, order_id)
        return None

    def now(self) -> float:
        return self._clock()

    def release(self, key: GuardKey, order_id: str) -> bool:
        """Drop the entry only if it still belongs to `order_id`."""
        with self._lock:
            existing = self._entries.get(key)
            if existing is None or existing.order_id != order_id:
                return False
            del self._entries[key]
        logger.debug("Duplicate guard released %s (order %s)", key, order_id)
        return True

    def lookup(self, key: GuardKey) -> Optional[DuplicateGuardEntry]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at <= now:
                del self._entries[key]
                return None
            return entry

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for k in expired:
                del self._entries[k]
        return len(expired)
