"""
rampsettle Infrastructure: Order Store

Thread-safe order persistence with optional JSON file backing.

Features:
- Atomic writes (temp file + rename)
- Lookup by order id and by payment reference
- Compare-and-set updates: the mutator runs under the store lock against
  the persisted record
"""

import copy
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from core.order_state import Order, OrderStatus

logger = logging.getLogger(__name__)


class OrderStore:
    """In-memory order map, optionally mirrored to a JSON file."""

    def __init__(self, store_file: Optional[str] = None):
        """
        Initialize order store.

        Args:
            store_file: Path to JSON file; None keeps orders in memory only
        """
        self._orders: Dict[str, Order] = {}
        self._by_reference: Dict[str, str] = {}
        self._lock = threading.RLock()
        self.store_file = Path(store_file) if store_file else None

        if self.store_file:
            self.store_file.parent.mkdir(parents=True, exist_ok=True)
            self._load()
        logger.info("Initialized OrderStore (%s, %d orders)", self.store_file or "memory", len(self._orders))

    def _load(self) -> None:
        if not self.store_file or not self.store_file.exists():
            return
        try:
            with open(self.store_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load order store: {e}")
            return

        for raw in (data.get("orders") or []) if isinstance(data, dict) else []:
            try:
                order = Order.from_dict(raw)
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable order record: {e}")
                continue
            self._orders[order.order_id] = order
            if order.payment_reference:
                self._by_reference[order.payment_reference] = order.order_id

    def _save(self) -> None:
        if not self.store_file:
            return
        payload = {"orders": [o.to_dict() for o in self._orders.values()]}
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.store_file.parent,
                prefix=".orders_",
                suffix=".json.tmp",
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(temp_path, self.store_file)
        except OSError as e:
            logger.error(f"Failed to save order store: {e}")

    def add(self, order: Order) -> None:
        with self._lock:
            if order.order_id in self._orders:
                raise ValueError(f"Order {order.order_id} already exists")
            self._orders[order.order_id] = copy.deepcopy(order)
            if order.payment_reference:
                self._by_reference[order.payment_reference] = order.order_id
            self._save()

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return copy.deepcopy(order) if order else None

    def find_by_reference(self, reference: str) -> Optional[Order]:
        with self._lock:
            order_id = self._by_reference.get(reference)
            if order_id is None and reference in self._orders:
                order_id = reference
            return self.get(order_id) if order_id else None

    def update(self, order_id: str, mutator: Callable[[Order], bool]) -> Tuple[bool, Order]:
        """
        Run `mutator` on a copy of the stored order under the lock.

        The copy replaces the stored order only when the mutator returns True.

        Raises:
            KeyError: unknown order id
        """
        with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                raise KeyError(order_id)
            candidate = copy.deepcopy(current)
            if not mutator(candidate):
                return False, copy.deepcopy(current)
            self._orders[order_id] = candidate
            if candidate.payment_reference:
                self._by_reference[candidate.payment_reference] = order_id
            self._save()
            return True, copy.deepcopy(candidate)

    def list(self, statuses: Optional[Iterable[OrderStatus]] = None) -> List[Order]:
        wanted = {s.value for s in statuses} if statuses is not None else None
        with self._lock:
            return [
                copy.deepcopy(o)
                for o in self._orders.values()
                if wanted is None or o.status in wanted
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._orders)
