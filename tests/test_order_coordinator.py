"""
End-to-end tests for the order coordinator.

Uses in-memory collaborators from tests.helpers so every number below can be
checked by hand: TKN prices at 0.5 USDC per token and the stable/fiat rate is
1700 unless a test says otherwise.
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from core.exceptions import (
    DuplicateRequest,
    InvalidSignature,
    LiquidityError,
    NoRouteLiquidity,
    OrderNotFound,
    SettlementFailure,
    TokenNotSupported,
    UpstreamUnavailable,
    ValidationError,
)
from core.order_coordinator import CoordinatorSettings, OrderRequest, compute_fee
from core.order_state import OrderStatus
from infra.payment_gateway import CheckoutLink, PaymentVerification
from infra.signing import canonical_json, sign_payload
from tests.helpers.fakes import SETTLEMENT_SECRET, FakeRoster, build_coordinator, provider


def request(**overrides):
    params = dict(
        customer_identity="alice@example.com",
        fiat_amount=50_000,
        token="TKN",
        network="base",
        business_id="biz-1",
        customer_wallet="0xcustomer",
        webhook_url="https://biz.test/hooks",
    )
    params.update(overrides)
    return OrderRequest(**params)


def gateway():
    gw = Mock()
    gw.create_checkout.side_effect = lambda amount, reference, payer_info: CheckoutLink(
        checkout_url=f"https://pay.test/checkout/{reference}",
        payment_reference=f"pay-{reference}",
    )
    return gw


def signed(payload):
    body = canonical_json(payload)
    return body, sign_payload(body, SETTLEMENT_SECRET)


def notified_events(harness):
    return [c.args[0] for c in harness.notifier.notify.call_args_list]


class TestFeeMath:

    @pytest.mark.parametrize(
        "fiat,pct,fee,net",
        [
            (50_000, 1.5, 750.0, 49_250.0),
            (1_000, 1.5, 15.0, 985.0),
            (1_033, 1.5, 15.0, 1_018.0),   # 15.495 rounds down
            (1_100, 1.5, 17.0, 1_083.0),   # 16.5 rounds half-up
            (10_000, 0.0, 0.0, 10_000.0),
        ],
    )
    def test_fee_rounds_half_up_to_whole_unit(self, fiat, pct, fee, net):
        assert compute_fee(fiat, pct) == (fee, net)


class TestQuote:

    def test_reference_scenario(self):
        h = build_coordinator()

        quote = h.coordinator.get_quote("TKN", "base", 50_000)

        assert quote.fee_amount == 750.0
        assert quote.net_amount == 49_250.0
        assert quote.exchange_rate == 1700.0
        assert quote.rate_tier == "primary"
        assert quote.settlement_stable_amount == pytest.approx(28.970588, rel=1e-6)
        assert quote.token_amount == pytest.approx(57.94, abs=0.01)
        assert quote.route_id == "v3_direct_3000"
        assert quote.provider_candidate == "alpha"
        assert not quote.is_expired()
        assert h.store.list() == []

    def test_business_fee_override(self):
        h = build_coordinator()

        quote = h.coordinator.get_quote("TKN", "base", 50_000, business_id="biz-vip")

        assert quote.fee_pct == 0.5
        assert quote.fee_amount == 250.0

    def test_stable_token_is_priced_one_to_one(self):
        h = build_coordinator()

        quote = h.coordinator.get_quote("USDC", "base", 17_000)

        assert quote.route_id == "identity"
        assert quote.token_amount == pytest.approx((17_000 - 255) / 1700)
        assert h.reader.calls == []

    def test_quote_is_sized_after_probe(self):
        h = build_coordinator()

        h.coordinator.get_quote("TKN", "base", 50_000)

        # one unit probe, then a re-quote at the estimated size
        assert h.reader.calls.count(("v3", "0xtkn", "0xusdc", 3000)) == 2

    @pytest.mark.parametrize("amount", [999, 10_000_001, float("nan")])
    def test_amount_range(self, amount):
        h = build_coordinator()

        with pytest.raises(ValidationError) as exc_info:
            h.coordinator.get_quote("TKN", "base", amount)
        assert exc_info.value.code == "INVALID_AMOUNT"

    def test_unsupported_token(self):
        h = build_coordinator()

        with pytest.raises(TokenNotSupported) as exc_info:
            h.coordinator.get_quote("DOGE", "base", 50_000)
        assert "TKN" in exc_info.value.context["supported_tokens"]

    def test_below_minimum_settlement_reports_minimum(self):
        settings = CoordinatorSettings(min_fiat_amount=100, min_settlement_value=1.0)
        h = build_coordinator(settings=settings)

        with pytest.raises(ValidationError) as exc_info:
            h.coordinator.get_quote("TKN", "base", 1_500)

        err = exc_info.value
        assert err.code == "BELOW_MINIMUM_SETTLEMENT"
        # ceil(1.0 * 1700 / 0.985)
        assert err.context["minimum_fiat_amount"] == 1726

    def test_no_route(self):
        h = build_coordinator()
        h.reader.v3.clear()

        with pytest.raises(NoRouteLiquidity):
            h.coordinator.get_quote("TKN", "base", 50_000)

    def test_liquidity_error_reports_max_fulfillable(self):
        h = build_coordinator(providers=[provider("a", 10.0), provider("b", 10.0)])

        with pytest.raises(LiquidityError) as exc_info:
            h.coordinator.get_quote("TKN", "base", 50_000)

        err = exc_info.value
        assert err.retryable
        assert err.suggested_wait_seconds == 900.0
        assert err.max_fulfillable_stable == pytest.approx(9.0)
        assert err.max_fulfillable_fiat == 15_300

    def test_liquidity_check_skipped_when_disabled(self):
        settings = CoordinatorSettings(enable_liquidity_check=False)
        h = build_coordinator(providers=[], settings=settings)

        quote = h.coordinator.get_quote("TKN", "base", 50_000)

        assert quote.liquidity is None
        assert h.roster.fetches == 0

    def test_unconfigured_roster_allows_order_in_degraded_mode(self):
        h = build_coordinator(roster=FakeRoster(configured=False))

        quote = h.coordinator.get_quote("TKN", "base", 50_000)

        assert quote.liquidity["degraded"]
        assert quote.provider_candidate is None


class TestCreateOrder:

    def test_persists_initiated_order_with_quote_snapshot(self):
        h = build_coordinator(gateway=gateway())

        order = h.coordinator.create_order(request())

        assert order.status == "initiated"
        assert order.fiat_amount == 50_000
        assert order.net_amount == 49_250
        assert order.estimated_token_amount == pytest.approx(57.94, abs=0.01)
        assert order.actual_token_amount is None
        assert order.token_contract_address == "0xtkn"
        assert order.metadata["rate_tier"] == "primary"
        assert order.metadata["route_id"] == "v3_direct_3000"
        assert order.metadata["provider_id"] == "alpha"
        assert order.checkout_url.endswith(order.order_id)
        assert order.payment_reference == f"pay-{order.order_id}"
        assert order.expires_at - order.created_at == timedelta(minutes=30)
        h.notifier.notify.assert_called_once()
        assert notified_events(h) == ["order.created"]
        assert h.notifier.notify.call_args.kwargs["url"] == "https://biz.test/hooks"

    def test_reuses_matching_unexpired_quote(self):
        h = build_coordinator()
        quote = h.coordinator.get_quote("TKN", "base", 50_000, business_id="biz-1")
        calls_after_quote = len(h.reader.calls)

        order = h.coordinator.create_order(request(), quote=quote)

        assert len(h.reader.calls) == calls_after_quote
        assert order.estimated_token_amount == quote.token_amount

    def test_expired_quote_is_recomputed(self):
        h = build_coordinator()
        quote = h.coordinator.get_quote("TKN", "base", 50_000, business_id="biz-1")
        quote.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        calls_after_quote = len(h.reader.calls)

        h.coordinator.create_order(request(), quote=quote)

        assert len(h.reader.calls) > calls_after_quote

    def test_duplicate_request_reports_existing_order(self):
        h = build_coordinator()
        first = h.coordinator.create_order(request())

        with pytest.raises(DuplicateRequest) as exc_info:
            h.coordinator.create_order(request(customer_identity=" ALICE@example.com"))

        assert exc_info.value.existing_order_id == first.order_id
        assert 0 < exc_info.value.retry_after_seconds <= 1800
        assert len(h.store) == 1

    def test_token_delisted_after_quote_releases_guard(self):
        h = build_coordinator()
        quote = h.coordinator.get_quote("TKN", "base", 50_000, business_id="biz-1")
        resolve = h.coordinator.registry.resolve
        h.coordinator.registry.resolve = Mock(side_effect=TokenNotSupported("TKN delisted"))

        with pytest.raises(TokenNotSupported):
            h.coordinator.create_order(request(), quote=quote)

        h.coordinator.registry.resolve = resolve
        assert len(h.store) == 0
        assert h.coordinator.create_order(request()).status == "initiated"

    def test_concurrent_duplicates_create_exactly_one(self):
        h = build_coordinator()
        barrier = threading.Barrier(5)
        created, rejected = [], []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                order = h.coordinator.create_order(request())
                with lock:
                    created.append(order)
            except DuplicateRequest as exc:
                with lock:
                    rejected.append(exc)

        threads = [threading.Thread(target=attempt) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(created) == 1
        assert len(rejected) == 4
        assert {e.existing_order_id for e in rejected} == {created[0].order_id}
        assert len(h.store) == 1

    def test_rejection_releases_guard(self):
        h = build_coordinator(providers=[provider("tiny", 1.0)])

        with pytest.raises(LiquidityError):
            h.coordinator.create_order(request())

        h.roster.providers = [provider("alpha", 5000.0)]
        order = h.coordinator.create_order(request())
        assert order.status == "initiated"

    def test_other_token_is_not_a_duplicate(self):
        h = build_coordinator()
        h.coordinator.create_order(request())

        order = h.coordinator.create_order(request(token="USDC"))

        assert order.target_token == "USDC"

    def test_checkout_failure_fails_order_and_releases_guard(self):
        gw = Mock()
        gw.create_checkout.side_effect = UpstreamUnavailable("payment_gateway:init_transaction")
        h = build_coordinator(gateway=gw)

        with pytest.raises(UpstreamUnavailable):
            h.coordinator.create_order(request())

        [failed] = h.store.list()
        assert failed.status == "failed"
        assert failed.failure_reason == "payment_link_failed"
        gw.create_checkout.side_effect = None
        gw.create_checkout.return_value = CheckoutLink("https://pay.test/c", "pay-2")
        assert h.coordinator.create_order(request()).status == "initiated"

    def test_without_gateway_order_has_no_checkout(self):
        h = build_coordinator(gateway=None)

        order = h.coordinator.create_order(request())

        assert order.checkout_url is None


class TestPaymentEvents:

    def test_paid_moves_to_processing_and_dispatches_settlement(self):
        settlement = Mock()
        h = build_coordinator(gateway=gateway(), settlement=settlement)
        order = h.coordinator.create_order(request())

        updated = h.coordinator.handle_payment_event(
            {"reference": order.payment_reference, "status": "PAID", "paidAmount": 50_000},
        )

        assert updated.status == "processing"
        assert updated.paid_amount == 50_000
        sent = settlement.submit.call_args.args[0]
        assert sent.order_id == order.order_id
        assert sent.input_token == "0xusdc"
        assert sent.output_token == "0xtkn"
        assert sent.amount == order.estimated_token_amount
        assert sent.recipient == "0xcustomer"
        assert sent.chosen_provider == "alpha"
        assert notified_events(h) == ["order.created", "payment.completed", "order.processing"]

    def test_underpaid_fails_order(self):
        h = build_coordinator(gateway=gateway(), settlement=Mock())
        order = h.coordinator.create_order(request())

        updated = h.coordinator.handle_payment_event(
            {"reference": order.order_id, "status": "PAID", "paidAmount": 40_000},
        )

        assert updated.status == "failed"
        assert updated.failure_reason == "underpaid"
        h.settlement.submit.assert_not_called()

    def test_failed_payment(self):
        h = build_coordinator(gateway=gateway())
        order = h.coordinator.create_order(request())

        updated = h.coordinator.handle_payment_event({"reference": order.payment_reference, "status": "expired"})

        assert updated.status == "failed"
        assert updated.failure_reason == "payment_expired"

    def test_repeat_payment_event_is_ignored(self):
        settlement = Mock()
        h = build_coordinator(gateway=gateway(), settlement=settlement)
        order = h.coordinator.create_order(request())
        event = {"reference": order.payment_reference, "status": "PAID", "paidAmount": 50_000}

        h.coordinator.handle_payment_event(event)
        again = h.coordinator.handle_payment_event(event)

        assert again.status == "processing"
        assert settlement.submit.call_count == 1

    def test_settlement_dispatch_failure_fails_order(self):
        settlement = Mock()
        settlement.submit.side_effect = SettlementFailure("executor rejected")
        h = build_coordinator(gateway=gateway(), settlement=settlement)
        order = h.coordinator.create_order(request())

        updated = h.coordinator.handle_payment_event(
            {"reference": order.payment_reference, "status": "PAID", "paidAmount": 50_000},
        )

        assert updated.status == "failed"
        assert updated.failure_reason == "settlement_dispatch_failed"

    def test_without_executor_order_stays_pending(self):
        h = build_coordinator(gateway=gateway(), settlement=None)
        order = h.coordinator.create_order(request())

        updated = h.coordinator.handle_payment_event(
            {"reference": order.payment_reference, "status": "PAID", "paidAmount": 50_000},
        )

        assert updated.status == "pending"

    def test_verified_payment_overrides_event_body(self):
        gw = gateway()
        gw.verify_payment.return_value = PaymentVerification("ref", "PENDING", 0.0)
        h = build_coordinator(gateway=gw, settings=CoordinatorSettings(verify_payments=True))
        order = h.coordinator.create_order(request())

        updated = h.coordinator.handle_payment_event(
            {"reference": order.payment_reference, "status": "PAID", "paidAmount": 50_000},
        )

        assert updated.status == "initiated"

    def test_unknown_reference(self):
        h = build_coordinator()

        with pytest.raises(OrderNotFound):
            h.coordinator.handle_payment_event({"reference": "nope", "status": "PAID"})


class TestSettlementEvents:

    def _processing_order(self):
        settlement = Mock()
        h = build_coordinator(gateway=gateway(), settlement=settlement)
        order = h.coordinator.create_order(request())
        h.coordinator.handle_payment_event(
            {"reference": order.payment_reference, "status": "PAID", "paidAmount": 50_000},
        )
        return h, order

    def test_completion_records_actual_amount(self):
        h, order = self._processing_order()
        body, signature = signed({
            "orderId": order.order_id, "txReference": "0xfeed", "status": "completed",
            "confirmations": 3, "actualTokenAmount": 57.9,
        })

        updated = h.coordinator.handle_settlement_event(body, signature)

        assert updated.status == "completed"
        assert updated.actual_token_amount == 57.9
        assert updated.estimated_token_amount == order.estimated_token_amount
        assert updated.tx_reference == "0xfeed"
        assert updated.metadata["confirmations"] == 3

    def test_duplicate_completion_is_idempotent(self):
        h, order = self._processing_order()
        body, signature = signed({"orderId": order.order_id, "txReference": "0xfeed", "status": "completed"})

        h.coordinator.handle_settlement_event(body, signature)
        h.coordinator.handle_settlement_event(body, signature)

        assert notified_events(h).count("order.completed") == 1
        assert h.store.get(order.order_id).status == "completed"

    def test_completion_releases_duplicate_guard(self):
        h, order = self._processing_order()
        body, signature = signed({"orderId": order.order_id, "status": "completed"})
        h.coordinator.handle_settlement_event(body, signature)

        assert h.coordinator.create_order(request()).status == "initiated"

    def test_invalid_signature_rejected_before_reading(self):
        h, order = self._processing_order()
        body, _ = signed({"orderId": order.order_id, "status": "completed"})

        with pytest.raises(InvalidSignature):
            h.coordinator.handle_settlement_event(body, "sha256=" + "0" * 64)
        with pytest.raises(InvalidSignature):
            h.coordinator.handle_settlement_event(body, None)

        assert h.store.get(order.order_id).status == "processing"

    def test_settlement_failure(self):
        h, order = self._processing_order()
        body, signature = signed({"orderId": order.order_id, "status": "failed", "reason": "reverted"})

        updated = h.coordinator.handle_settlement_event(body, signature)

        assert updated.status == "failed"
        assert updated.failure_reason == "reverted"

    def test_completion_for_initiated_order_is_ignored(self):
        h = build_coordinator(gateway=gateway())
        order = h.coordinator.create_order(request())
        body, signature = signed({"orderId": order.order_id, "status": "completed"})

        updated = h.coordinator.handle_settlement_event(body, signature)

        assert updated.status == "initiated"


class TestCancellationAndExpiry:

    def test_cancel_initiated_order(self):
        h = build_coordinator()
        order = h.coordinator.create_order(request())

        cancelled = h.coordinator.cancel_order(order.order_id, reason="customer_request")

        assert cancelled.status == "cancelled"
        assert h.coordinator.create_order(request()).status == "initiated"

    def test_cannot_cancel_processing_order(self):
        h = build_coordinator(gateway=gateway(), settlement=Mock())
        order = h.coordinator.create_order(request())
        h.coordinator.handle_payment_event(
            {"reference": order.payment_reference, "status": "PAID", "paidAmount": 50_000},
        )

        with pytest.raises(ValidationError) as exc_info:
            h.coordinator.cancel_order(order.order_id)
        assert exc_info.value.code == "ORDER_NOT_CANCELLABLE"

    def test_cancel_loses_race_with_payment(self):
        h = build_coordinator()
        order = h.coordinator.create_order(request())
        get_order = h.coordinator.get_order
        paid = []

        def get_then_pay(order_id):
            snapshot = get_order(order_id)
            if not paid:
                paid.append(order_id)
                h.coordinator.state_machine.transition(
                    order_id, OrderStatus.PENDING, expected_from=OrderStatus.INITIATED,
                )
            return snapshot

        h.coordinator.get_order = get_then_pay

        with pytest.raises(ValidationError) as exc_info:
            h.coordinator.cancel_order(order.order_id)

        assert exc_info.value.code == "ORDER_NOT_CANCELLABLE"
        assert exc_info.value.context["status"] == "pending"
        assert h.store.get(order.order_id).status == "pending"
        assert "order.cancelled" not in notified_events(h)

    def test_expiry_sweep(self):
        h = build_coordinator()
        stale = h.coordinator.create_order(request())
        fresh = h.coordinator.create_order(request(customer_identity="bob"))

        later = datetime.now(timezone.utc) + timedelta(minutes=31)
        assert h.coordinator.expire_orders(later) == 2
        assert h.coordinator.expire_orders(later) == 0
        assert h.store.get(stale.order_id).status == "expired"
        assert h.store.get(fresh.order_id).failure_reason == "payment_window_elapsed"

    def test_expiry_ignores_paid_orders(self):
        h = build_coordinator(gateway=gateway())
        order = h.coordinator.create_order(request())
        h.coordinator.handle_payment_event(
            {"reference": order.payment_reference, "status": "PAID", "paidAmount": 50_000},
        )

        assert h.coordinator.expire_orders(datetime.now(timezone.utc) + timedelta(hours=1)) == 0

    def test_get_order_by_reference(self):
        h = build_coordinator(gateway=gateway())
        order = h.coordinator.create_order(request())

        assert h.coordinator.get_order(order.payment_reference).order_id == order.order_id
        with pytest.raises(OrderNotFound):
            h.coordinator.get_order("missing")
