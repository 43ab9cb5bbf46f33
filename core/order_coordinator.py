"""
rampsettle Core: Order Coordinator

Single orchestration path for quote → order → payment → settlement.

Order creation (synchronous):
1. Reserve the duplicate guard for (customer, token, network)
2. Resolve the token and its fee; net = fiat - round(fiat * fee%)
3. Price the net amount via RateOracle + RouteFinder
4. Reject below the minimum settlement value
5. On liquidity-constrained networks, require one capable provider
6. Persist the order as INITIATED with the quote snapshot
7. Ask the payment gateway for a checkout link
8. Fire the best-effort business webhook

Any rejection in steps 2-5 releases the guard and persists nothing.
Inbound payment and settlement events only move an order when the implied
transition follows its persisted status.
"""

import json
import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Tuple, Union

from core.audit_log import AuditLogger
from core.duplicate_guard import DuplicateGuard
from core.exceptions import (
    DuplicateRequest,
    InvalidSignature,
    LiquidityError,
    OrderNotFound,
    RampError,
    UpstreamUnavailable,
    ValidationError,
)
from core.liquidity_cache import LiquidityCache
from core.order_state import Order, OrderStateMachine, OrderStatus
from core.rate_oracle import RateOracle
from core.route_finder import IDENTITY_ROUTE, RouteFinder
from core.token_registry import TokenRegistry
from infra.metrics import MetricsRecorder
from infra.payment_gateway import PaymentGatewayClient
from infra.settlement_client import SettlementExecutorClient, SettlementRequest
from infra.signing import verify_signature
from infra.webhook_notifier import WebhookNotifier

logger = logging.getLogger(__name__)

PAID_STATUSES = frozenset({"PAID", "OVERPAID"})
FAILED_PAYMENT_STATUSES = frozenset({"FAILED", "CANCELLED", "EXPIRED", "REVERSED", "ABANDONED"})
SETTLEMENT_COMPLETED = frozenset({"completed", "success", "confirmed"})
SETTLEMENT_FAILED = frozenset({"failed", "error", "reverted"})
SETTLEMENT_IN_FLIGHT = frozenset({"processing", "pending", "submitted"})


def compute_fee(fiat_amount: float, fee_pct: float) -> Tuple[float, float]:
    """Return (fee, net) with the fee rounded half-up to a whole fiat unit."""
    fee = (Decimal(str(fiat_amount)) * Decimal(str(fee_pct)) / Decimal(100)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return float(fee), float(Decimal(str(fiat_amount)) - fee)


@dataclass
class CoordinatorSettings:
    min_fiat_amount: float = 1_000.0
    max_fiat_amount: float = 10_000_000.0
    min_settlement_value: float = 1.0
    order_expiry_seconds: float = 1800.0
    quote_ttl_seconds: float = 300.0
    probe_amount: float = 1.0
    liquidity_safety_factor: float = 0.9
    suggested_wait_seconds: float = 900.0
    enable_liquidity_check: bool = True
    enable_duplicate_guard: bool = True
    verify_payments: bool = False

    @classmethod
    def from_config(cls, policy: Dict[str, Any], features: Optional[Dict[str, Any]] = None) -> "CoordinatorSettings":
        orders = policy.get("orders") or {}
        liquidity = policy.get("liquidity") or {}
        routing = policy.get("routing") or {}
        features = features or {}
        return cls(
            min_fiat_amount=float(orders.get("min_fiat_amount", 1_000.0)),
            max_fiat_amount=float(orders.get("max_fiat_amount", 10_000_000.0)),
            min_settlement_value=float(orders.get("min_settlement_value", 1.0)),
            order_expiry_seconds=float(orders.get("expiry_minutes", 30)) * 60.0,
            quote_ttl_seconds=float(orders.get("quote_ttl_seconds", 300.0)),
            probe_amount=float(routing.get("probe_amount", 1.0)),
            liquidity_safety_factor=float(liquidity.get("safety_factor", 0.9)),
            suggested_wait_seconds=float(liquidity.get("suggested_wait_seconds", 900.0)),
            enable_liquidity_check=bool(features.get("enable_liquidity_check", True)),
            enable_duplicate_guard=bool(features.get("enable_duplicate_guard", True)),
            verify_payments=bool(features.get("verify_payments", False)),
        )


@dataclass
class OrderRequest:
    customer_identity: str
    fiat_amount: float
    token: str
    network: str
    business_id: Optional[str] = None
    customer_wallet: Optional[str] = None
    webhook_url: Optional[str] = None
    payer_info: Dict[str, Any] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        return {
            "customer": self.customer_identity,
            "fiat_amount": self.fiat_amount,
            "token": self.token,
            "network": self.network,
            "business_id": self.business_id,
        }


@dataclass
class Quote:
    """Ephemeral price computation; only ever persisted inside an order's metadata"""
    token: str
    network: str
    fiat_amount: float
    fee_pct: float
    fee_amount: float
    net_amount: float
    exchange_rate: float
    rate_tier: str
    token_amount: float
    settlement_stable_amount: float
    price_per_unit: float
    route_id: str
    issued_at: datetime
    expires_at: datetime
    route: Dict[str, Any] = field(default_factory=dict)
    provider_candidate: Optional[str] = None
    liquidity_ratio: Optional[float] = None
    liquidity: Optional[Dict[str, Any]] = None
    business_id: Optional[str] = None
    rate_degraded: bool = False

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def matches(self, request: OrderRequest) -> bool:
        return (
            self.token.upper() == request.token.upper()
            and self.network.lower() == request.network.lower()
            and math.isclose(self.fiat_amount, float(request.fiat_amount))
            and self.business_id == request.business_id
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "network": self.network,
            "fiat_amount": self.fiat_amount,
            "fee_pct": self.fee_pct,
            "fee_amount": self.fee_amount,
            "net_amount": self.net_amount,
            "exchange_rate": self.exchange_rate,
            "rate_tier": self.rate_tier,
            "token_amount": self.token_amount,
            "settlement_stable_amount": self.settlement_stable_amount,
            "price_per_unit": self.price_per_unit,
            "route_id": self.route_id,
            "route": self.route,
            "provider_candidate": self.provider_candidate,
            "liquidity_ratio": self.liquidity_ratio,
            "liquidity": self.liquidity,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "valid_for_seconds": max((self.expires_at - datetime.now(timezone.utc)).total_seconds(), 0.0),
            "rate_degraded": self.rate_degraded,
        }


class OrderCoordinator:
    """Owns every order mutation; the only writer of order state."""

    def __init__(
        self,
        registry: TokenRegistry,
        rate_oracle: RateOracle,
        route_finder: RouteFinder,
        liquidity: LiquidityCache,
        state_machine: OrderStateMachine,
        guard: Optional[DuplicateGuard] = None,
        notifier: Optional[WebhookNotifier] = None,
        payment_gateway: Optional[PaymentGatewayClient] = None,
        settlement: Optional[SettlementExecutorClient] = None,
        settlement_secret: str = "",
        audit: Optional[AuditLogger] = None,
        settings: Optional[CoordinatorSettings] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.registry = registry
        self.rate_oracle = rate_oracle
        self.route_finder = route_finder
        self.liquidity = liquidity
        self.state_machine = state_machine
        self.guard = guard or DuplicateGuard()
        self.notifier = notifier
        self.payment_gateway = payment_gateway
        self.settlement = settlement
        self.settlement_secret = settlement_secret or (settlement.secret if settlement else "")
        self.audit = audit
        self.settings = settings or CoordinatorSettings()
        self.metrics = metrics or MetricsRecorder(enabled=False)

    # ------------------------------------------------------------------
    # Quotes

    def get_quote(
        self,
        token: str,
        network: str,
        fiat_amount: float,
        business_id: Optional[str] = None,
    ) -> Quote:
        """Price a purchase without persisting anything."""
        request = OrderRequest(customer_identity="", fiat_amount=fiat_amount, token=token,
                               network=network, business_id=business_id)
        try:
            quote = self._price(request)
            self._check_liquidity(quote)
            return quote
        except RampError as exc:
            self._reject(exc, request)
            raise

    def _price(self, request: OrderRequest) -> Quote:
        s = self.settings
        fiat = float(request.fiat_amount)
        if not math.isfinite(fiat) or fiat < s.min_fiat_amount or fiat > s.max_fiat_amount:
            raise ValidationError(
                f"Amount must be between {s.min_fiat_amount:,.0f} and {s.max_fiat_amount:,.0f}",
                code="INVALID_AMOUNT",
                amount=request.fiat_amount,
                min_amount=s.min_fiat_amount,
                max_amount=s.max_fiat_amount,
            )

        token_cfg = self.registry.resolve(request.token, request.network)
        fee_pct = self.registry.fee_pct(token_cfg, request.business_id)
        fee, net = compute_fee(fiat, fee_pct)

        rate = self.rate_oracle.resolve()
        stable_needed = net / rate.rate

        route = self.route_finder.quote(token_cfg.symbol, token_cfg.network, s.probe_amount)
        if route.route_id != IDENTITY_ROUTE:
            # Re-quote at the real size so price impact is reflected
            sized = stable_needed / route.price_per_unit
            route = self.route_finder.quote(token_cfg.symbol, token_cfg.network, sized)
        token_amount = round(stable_needed / route.price_per_unit, min(token_cfg.decimals, 8))

        if stable_needed < s.min_settlement_value:
            minimum_fiat = math.ceil(s.min_settlement_value * rate.rate / (1 - fee_pct / 100.0))
            raise ValidationError(
                f"Amount too small: minimum is {minimum_fiat:,} fiat",
                code="BELOW_MINIMUM_SETTLEMENT",
                settlement_value=round(stable_needed, 6),
                min_settlement_value=s.min_settlement_value,
                minimum_fiat_amount=minimum_fiat,
                exchange_rate=rate.rate,
            )

        issued = datetime.now(timezone.utc)
        return Quote(
            token=token_cfg.symbol,
            network=token_cfg.network,
            fiat_amount=fiat,
            fee_pct=fee_pct,
            fee_amount=fee,
            net_amount=net,
            exchange_rate=rate.rate,
            rate_tier=rate.tier.value,
            token_amount=token_amount,
            settlement_stable_amount=stable_needed,
            price_per_unit=route.price_per_unit,
            route_id=route.route_id,
            route=route.to_dict(),
            issued_at=issued,
            expires_at=issued + timedelta(seconds=s.quote_ttl_seconds),
            business_id=request.business_id,
            rate_degraded=rate.degraded,
        )

    def _check_liquidity(self, quote: Quote) -> None:
        net_cfg = self.registry.network(quote.network)
        if not (self.settings.enable_liquidity_check and net_cfg.liquidity_constrained):
            return

        match = self.liquidity.get(quote.network, quote.settlement_stable_amount)
        quote.liquidity = match.to_dict()
        quote.liquidity_ratio = match.liquidity_ratio
        if match.has_liquidity:
            quote.provider_candidate = match.provider.id if match.provider else None
            return

        max_stable = round(match.max_single_balance * self.settings.liquidity_safety_factor, 6)
        max_fiat = math.floor(max_stable * quote.exchange_rate)
        raise LiquidityError(
            f"Insufficient liquidity on {quote.network}; try again in 15-60 minutes",
            suggested_wait_seconds=self.settings.suggested_wait_seconds,
            max_fulfillable_fiat=max_fiat if max_fiat > 0 else None,
            max_fulfillable_stable=max_stable if max_stable > 0 else None,
            required_stable=round(quote.settlement_stable_amount, 6),
            network=quote.network,
            upstream_error=match.upstream_error,
        )

    # ------------------------------------------------------------------
    # Order creation

    def create_order(self, request: OrderRequest, quote: Optional[Quote] = None) -> Order:
        """
        Create an order, reusing `quote` only if it matches and is still valid.

        Raises:
            DuplicateRequest, ValidationError, LiquidityError: nothing persisted
            UpstreamUnavailable: checkout link failed; the order is FAILED
        """
        order_id = f"ord_{uuid.uuid4().hex}"
        guard_key = DuplicateGuard.key(request.customer_identity, request.token, request.network)

        try:
            if self.settings.enable_duplicate_guard:
                blocking = self.guard.reserve(guard_key, order_id, self.settings.order_expiry_seconds)
                if blocking is not None:
                    raise DuplicateRequest(
                        blocking.order_id,
                        retry_after_seconds=blocking.remaining(self.guard.now()),
                    )
        except RampError as exc:
            self._reject(exc, request)
            raise

        try:
            if quote is None or not quote.matches(request) or quote.is_expired():
                if quote is not None:
                    logger.info("Supplied quote for %s is stale or mismatched; recomputing", request.token)
                quote = self._price(request)
            self._check_liquidity(quote)
            token_cfg = self.registry.resolve(quote.token, quote.network)
        except RampError as exc:
            self.guard.release(guard_key, order_id)
            self._reject(exc, request)
            raise
        except Exception:
            self.guard.release(guard_key, order_id)
            raise

        now = datetime.now(timezone.utc)
        order = Order(
            order_id=order_id,
            business_id=request.business_id,
            customer_identity=request.customer_identity,
            fiat_amount=quote.fiat_amount,
            fee_pct=quote.fee_pct,
            fee_amount=quote.fee_amount,
            net_amount=quote.net_amount,
            target_token=quote.token,
            target_network=quote.network,
            token_contract_address=token_cfg.contract_address,
            exchange_rate=quote.exchange_rate,
            estimated_token_amount=quote.token_amount,
            expires_at=now + timedelta(seconds=self.settings.order_expiry_seconds),
            customer_wallet=request.customer_wallet,
            webhook_url=request.webhook_url,
            created_at=now,
            updated_at=now,
            metadata={
                "quote": quote.to_dict(),
                "rate_tier": quote.rate_tier,
                "route_id": quote.route_id,
                "provider_id": quote.provider_candidate,
                "liquidity_ratio": quote.liquidity_ratio,
            },
        )
        self.state_machine.create(order)
        if self.audit:
            self.audit.log_order_created(order, quote.to_dict())

        if self.payment_gateway is not None:
            try:
                link = self.payment_gateway.create_checkout(
                    amount=order.fiat_amount,
                    reference=order.order_id,
                    payer_info=request.payer_info,
                )
            except RampError as exc:
                logger.error("Checkout link failed for %s: %s", order.order_id, exc)
                self._apply(order.order_id, OrderStatus.FAILED, "order.failed",
                            expected_from=OrderStatus.INITIATED, reason="payment_link_failed")
                self.guard.release(guard_key, order_id)
                raise UpstreamUnavailable("payment_gateway", exc) from exc
            self.state_machine.annotate(
                order.order_id,
                payment_reference=link.payment_reference,
                checkout_url=link.checkout_url,
            )
        else:
            logger.warning("No payment gateway configured; order %s has no checkout link", order_id)

        created = self.state_machine.get_order(order_id)
        self._notify("order.created", created)
        return created

    # ------------------------------------------------------------------
    # Inbound events

    def handle_payment_event(self, event: Dict[str, Any]) -> Order:
        """Apply a `{reference, status, paidAmount}` payment confirmation."""
        reference = event.get("reference") or event.get("paymentReference")
        if not reference:
            raise ValidationError("Payment event has no reference", code="INVALID_EVENT")
        order = self.get_order(reference)

        status = str(event.get("status") or "").upper()
        try:
            paid = float(event.get("paidAmount") or 0.0)
        except (TypeError, ValueError):
            paid = 0.0

        if self.settings.verify_payments and self.payment_gateway is not None:
            verification = self.payment_gateway.verify_payment(order.payment_reference or reference)
            status, paid = verification.status.upper(), verification.paid_amount

        if order.status != OrderStatus.INITIATED.value:
            logger.info("Payment event for %s ignored in status %s", order.order_id, order.status)
            return order

        if status in PAID_STATUSES:
            if paid + 1e-9 < order.fiat_amount:
                logger.warning("Order %s underpaid: %.2f of %.2f", order.order_id, paid, order.fiat_amount)
                return self._apply(order.order_id, OrderStatus.FAILED, "order.failed",
                                   expected_from=OrderStatus.INITIATED, reason="underpaid",
                                   paid_amount=paid) or self.get_order(order.order_id)
            pending = self._apply(order.order_id, OrderStatus.PENDING, "payment.completed",
                                  expected_from=OrderStatus.INITIATED, paid_amount=paid)
            if pending is None:
                return self.get_order(order.order_id)
            return self._dispatch_settlement(pending)

        if status in FAILED_PAYMENT_STATUSES:
            return self._apply(order.order_id, OrderStatus.FAILED, "order.failed",
                               expected_from=OrderStatus.INITIATED,
                               reason=f"payment_{status.lower()}") or self.get_order(order.order_id)

        logger.info("Payment event status %s for %s needs no action", status, order.order_id)
        return order

    def _dispatch_settlement(self, order: Order) -> Order:
        if self.settlement is None:
            logger.warning("No settlement executor configured; order %s stays pending", order.order_id)
            return order

        processing = self._apply(order.order_id, OrderStatus.PROCESSING, "order.processing",
                                 expected_from=OrderStatus.PENDING)
        if processing is None:
            return self.get_order(order.order_id)

        net_cfg = self.registry.network(order.target_network)
        request = SettlementRequest(
            order_id=order.order_id,
            input_token=net_cfg.stable_address,
            output_token=order.token_contract_address,
            amount=order.estimated_token_amount,
            recipient=order.customer_wallet,
            chosen_provider=order.metadata.get("provider_id"),
            network=order.target_network,
        )
        try:
            self.settlement.submit(request)
        except RampError as exc:
            logger.error("Settlement dispatch failed for %s: %s", order.order_id, exc)
            return self._apply(order.order_id, OrderStatus.FAILED, "order.failed",
                               reason="settlement_dispatch_failed") or self.get_order(order.order_id)
        return processing

    def handle_settlement_event(self, body: Union[bytes, Dict[str, Any]], signature: Optional[str]) -> Order:
        """
        Apply a signed `{orderId, txReference, status, confirmations}` confirmation.

        Raises:
            InvalidSignature: signature missing or wrong; nothing is read
        """
        if not self.settlement_secret or not verify_signature(body, signature, self.settlement_secret):
            self.metrics.record_rejection(InvalidSignature.code)
            raise InvalidSignature("Settlement event signature verification failed")

        if isinstance(body, (bytes, bytearray)):
            try:
                payload = json.loads(body)
            except ValueError as exc:
                raise ValidationError("Settlement event is not valid JSON", code="INVALID_EVENT") from exc
        else:
            payload = body

        order = self.get_order(str(payload.get("orderId") or ""))
        status = str(payload.get("status") or "").lower()
        tx_reference = payload.get("txReference")
        details = {"confirmations": payload.get("confirmations")}

        if status in SETTLEMENT_COMPLETED:
            actual = payload.get("actualTokenAmount", payload.get("amount"))
            actual = float(actual) if actual is not None else order.estimated_token_amount
            result = self._apply(order.order_id, OrderStatus.COMPLETED, "order.completed",
                                 expected_from=OrderStatus.PROCESSING, metadata=details,
                                 actual_token_amount=actual, tx_reference=tx_reference)
        elif status in SETTLEMENT_FAILED:
            result = self._apply(order.order_id, OrderStatus.FAILED, "order.failed",
                                 reason=payload.get("reason") or "settlement_failed",
                                 metadata=details, tx_reference=tx_reference)
        elif status in SETTLEMENT_IN_FLIGHT:
            result = self._apply(order.order_id, OrderStatus.PROCESSING, "order.processing",
                                 expected_from=OrderStatus.PENDING, metadata=details,
                                 tx_reference=tx_reference)
        else:
            logger.warning("Unknown settlement status %r for %s", status, order.order_id)
            result = None

        return result or self.get_order(order.order_id)

    # ------------------------------------------------------------------
    # Cancellation, expiry, lookup

    def cancel_order(self, order_id: str, reason: str = "cancelled") -> Order:
        order = self.get_order(order_id)
        if order.status not in (OrderStatus.INITIATED.value, OrderStatus.PENDING.value):
            raise ValidationError(
                f"Order {order.order_id} cannot be cancelled in status {order.status}",
                code="ORDER_NOT_CANCELLABLE",
                status=order.status,
            )
        cancelled = self._apply(order.order_id, OrderStatus.CANCELLED, "order.cancelled",
                                expected_from=OrderStatus(order.status), reason=reason)
        if cancelled is None:
            current = self.get_order(order.order_id)
            raise ValidationError(
                f"Order {order.order_id} moved to {current.status} before it could be cancelled",
                code="ORDER_NOT_CANCELLABLE",
                status=current.status,
            )
        return cancelled

    def expire_orders(self, now: Optional[datetime] = None) -> int:
        """Sweep INITIATED orders past expires_at; safe to run concurrently."""
        expired = 0
        for order in self.state_machine.due_for_expiry(now):
            if self._apply(order.order_id, OrderStatus.EXPIRED, "order.expired",
                           expected_from=OrderStatus.INITIATED, reason="payment_window_elapsed"):
                expired += 1
        purged = self.guard.purge_expired()
        if expired or purged:
            logger.info("Expiry sweep: %d order(s) expired, %d guard entr(ies) purged", expired, purged)
        self.state_machine.get_summary()
        return expired

    def get_order(self, order_id_or_reference: str) -> Order:
        order = self.state_machine.get_order(order_id_or_reference)
        if order is None:
            order = self.state_machine.store.find_by_reference(order_id_or_reference)
        if order is None:
            raise OrderNotFound(f"Order {order_id_or_reference} not found", reference=order_id_or_reference)
        return order

    # ------------------------------------------------------------------
    # Helpers

    def _apply(
        self,
        order_id: str,
        status: OrderStatus,
        event: str,
        expected_from: Optional[OrderStatus] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **updates: Any,
    ) -> Optional[Order]:
        """Transition, then release the guard and notify. None when it was a no-op."""
        if not self.state_machine.transition(order_id, status, expected_from=expected_from,
                                             reason=reason, metadata=metadata, **updates):
            return None
        order = self.state_machine.get_order(order_id)
        if status.is_terminal:
            key = DuplicateGuard.key(order.customer_identity, order.target_token, order.target_network)
            self.guard.release(key, order.order_id)
        self._notify(event, order)
        return order

    def _notify(self, event: str, order: Order) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(event, self.order_payload(order), url=order.webhook_url)
        except Exception as exc:
            logger.warning("Webhook %s for %s not queued: %s", event, order.order_id, exc)

    @staticmethod
    def order_payload(order: Order) -> Dict[str, Any]:
        return {
            "orderId": order.order_id,
            "businessId": order.business_id,
            "status": order.status,
            "fiatAmount": order.fiat_amount,
            "feeAmount": order.fee_amount,
            "netAmount": order.net_amount,
            "token": order.target_token,
            "network": order.target_network,
            "exchangeRate": order.exchange_rate,
            "estimatedTokenAmount": order.estimated_token_amount,
            "actualTokenAmount": order.actual_token_amount,
            "txReference": order.tx_reference,
            "checkoutUrl": order.checkout_url,
            "failureReason": order.failure_reason,
        }

    def _reject(self, exc: RampError, request: OrderRequest) -> None:
        self.metrics.record_rejection(exc.code)
        logger.info("Rejected %s %s on %s: %s (%s)", request.fiat_amount, request.token,
                    request.network, exc.code, exc.message)
        if self.audit:
            self.audit.log_rejection(exc.code, exc.message, exc.context, request.summary())
