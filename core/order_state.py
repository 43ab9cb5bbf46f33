"""
rampsettle Core: Order State Machine

Explicit order lifecycle with compare-and-set transitions.

States: INITIATED → PENDING → PROCESSING → (COMPLETED | FAILED | CANCELLED | EXPIRED)

- INITIATED is the only entry state; the four outcomes are terminal
- a transition applies only if it follows the currently persisted status,
  so duplicate or out-of-order webhook deliveries are no-ops
- estimated_token_amount is fixed at creation; actual_token_amount is only
  set when settlement is confirmed
"""

from enum import Enum
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, TYPE_CHECKING
import logging

from infra.metrics import MetricsRecorder

if TYPE_CHECKING:
    from core.audit_log import AuditLogger
    from infra.order_store import OrderStore

logger = logging.getLogger(__name__)


class OrderStatus(Enum):
    """Order lifecycle states"""
    INITIATED = "initiated"      # Persisted, awaiting payment
    PENDING = "pending"          # Payment confirmed
    PROCESSING = "processing"    # Settlement dispatched to executor
    COMPLETED = "completed"      # Settlement confirmed on-chain
    FAILED = "failed"            # Payment, settlement or validation failure
    CANCELLED = "cancelled"      # Cancelled before settlement
    EXPIRED = "expired"          # Unpaid past expires_at

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.FAILED,
    OrderStatus.CANCELLED,
    OrderStatus.EXPIRED,
})

_DATETIME_FIELDS = ("created_at", "updated_at", "expires_at", "completed_at")


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Order:
    """
    Persistent order record.

    fee_pct is a percentage (1.5 means 1.5%); net_amount is
    fiat_amount - round(fiat_amount * fee_pct / 100).
    """
    order_id: str
    business_id: Optional[str]
    customer_identity: str
    fiat_amount: float
    fee_pct: float
    fee_amount: float
    net_amount: float
    target_token: str
    target_network: str
    token_contract_address: str
    exchange_rate: float
    estimated_token_amount: float
    expires_at: datetime
    status: str = OrderStatus.INITIATED.value
    actual_token_amount: Optional[float] = None
    customer_wallet: Optional[str] = None
    webhook_url: Optional[str] = None
    payment_reference: Optional[str] = None
    checkout_url: Optional[str] = None
    paid_amount: Optional[float] = None
    tx_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def order_status(self) -> OrderStatus:
        return OrderStatus(self.status)

    def is_terminal(self) -> bool:
        return self.order_status.is_terminal

    def is_expired_at(self, now: datetime) -> bool:
        return self.status == OrderStatus.INITIATED.value and self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        for name in _DATETIME_FIELDS:
            if name in kwargs:
                kwargs[name] = _parse_dt(kwargs[name])
        return cls(**kwargs)


class OrderStateMachine:
    """
    Applies lifecycle transitions against the order store.

    Every transition is checked and written under the store lock, so two
    racing webhook deliveries cannot both move the same order.
    """

    VALID_TRANSITIONS = {
        OrderStatus.INITIATED: {OrderStatus.PENDING, OrderStatus.FAILED, OrderStatus.CANCELLED, OrderStatus.EXPIRED},
        OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.FAILED, OrderStatus.CANCELLED},
        OrderStatus.PROCESSING: {OrderStatus.COMPLETED, OrderStatus.FAILED},
        # Terminal states have no outbound transitions
        OrderStatus.COMPLETED: set(),
        OrderStatus.FAILED: set(),
        OrderStatus.CANCELLED: set(),
        OrderStatus.EXPIRED: set(),
    }

    # Fields a transition may set alongside the status
    MUTABLE_FIELDS = frozenset({
        "actual_token_amount",
        "tx_reference",
        "failure_reason",
        "paid_amount",
        "payment_reference",
        "checkout_url",
    })

    def __init__(
        self,
        store: "OrderStore",
        metrics: Optional[MetricsRecorder] = None,
        audit: Optional["AuditLogger"] = None,
    ):
        self.store = store
        self.metrics = metrics or MetricsRecorder(enabled=False)
        self.audit = audit

    @classmethod
    def can_transition(cls, current: OrderStatus, new: OrderStatus) -> bool:
        return new in cls.VALID_TRANSITIONS.get(current, set())

    def create(self, order: Order) -> Order:
        if order.status != OrderStatus.INITIATED.value:
            raise ValueError(f"Orders must enter in {OrderStatus.INITIATED.value}, got {order.status}")
        self.store.add(order)
        self.metrics.record_order_created(order.target_network)
        logger.info(
            "Created order %s: %.2f fiat -> %.6f %s on %s",
            order.order_id, order.fiat_amount, order.estimated_token_amount,
            order.target_token, order.target_network,
        )
        return order

    def transition(
        self,
        order_id: str,
        new_status: OrderStatus,
        expected_from: Optional[OrderStatus] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **updates: Any,
    ) -> bool:
        """
        Move an order to `new_status` if that follows its persisted status.

        Args:
            order_id: Order to move
            new_status: Target status
            expected_from: Only apply when the order is currently in this status
            reason: Failure/cancellation reason (stored as failure_reason)
            metadata: Keys merged into order metadata
            **updates: Values for MUTABLE_FIELDS

        Returns:
            True if the transition was applied, False if it was a no-op
        """
        illegal = set(updates) - self.MUTABLE_FIELDS
        if illegal:
            raise ValueError(f"Fields not writable by a transition: {sorted(illegal)}")

        previous: Dict[str, str] = {}

        def mutate(order: Order) -> bool:
            current = order.order_status
            if expected_from is not None and current != expected_from:
                logger.info(
                    "Skipping %s -> %s for %s: expected %s",
                    current.value, new_status.value, order_id, expected_from.value,
                )
                return False
            if not self.can_transition(current, new_status):
                logger.warning("Invalid transition for %s: %s → %s", order_id, current.value, new_status.value)
                return False

            now = datetime.now(timezone.utc)
            previous["status"] = current.value
            order.status = new_status.value
            order.updated_at = now
            if new_status.is_terminal:
                order.completed_at = now
            if reason:
                order.failure_reason = reason
            for name, value in updates.items():
                if value is not None:
                    setattr(order, name, value)
            if metadata:
                order.metadata.update(metadata)
            return True

        try:
            applied, _ = self.store.update(order_id, mutate)
        except KeyError:
            logger.error("Order %s not found", order_id)
            return False

        if applied:
            self.metrics.record_transition(new_status.value)
            logger.info("Order %s transitioned: %s → %s", order_id, previous["status"], new_status.value)
            if self.audit:
                self.audit.log_transition(order_id, previous["status"], new_status.value, reason)
        return applied

    def annotate(self, order_id: str, **updates: Any) -> bool:
        """Set MUTABLE_FIELDS on a live order without changing its status."""
        illegal = set(updates) - self.MUTABLE_FIELDS
        if illegal:
            raise ValueError(f"Fields not writable on an order: {sorted(illegal)}")

        def mutate(order: Order) -> bool:
            if order.is_terminal():
                return False
            for name, value in updates.items():
                setattr(order, name, value)
            order.updated_at = datetime.now(timezone.utc)
            return True

        try:
            applied, _ = self.store.update(order_id, mutate)
        except KeyError:
            logger.error("Order %s not found", order_id)
            return False
        return applied

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.store.get(order_id)

    def get_orders_by_status(self, status: OrderStatus) -> List[Order]:
        return self.store.list({status})

    def get_active_orders(self) -> List[Order]:
        return self.store.list({s for s in OrderStatus if not s.is_terminal})

    def due_for_expiry(self, now: Optional[datetime] = None) -> List[Order]:
        now = now or datetime.now(timezone.utc)
        return [o for o in self.get_orders_by_status(OrderStatus.INITIATED) if o.is_expired_at(now)]

    def get_summary(self) -> Dict[str, Any]:
        orders = self.store.list()
        counts = {status.value: 0 for status in OrderStatus}
        for order in orders:
            counts[order.status] = counts.get(order.status, 0) + 1
        active = sum(n for s, n in counts.items() if not OrderStatus(s).is_terminal)
        self.metrics.record_active_orders(active)
        return {
            "total_orders": len(orders),
            "active_orders": active,
            "terminal_orders": len(orders) - active,
            "status_breakdown": counts,
        }
