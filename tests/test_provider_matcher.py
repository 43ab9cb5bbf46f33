"""
Tests for single-provider liquidity allocation.

Balances are never aggregated across providers: a settlement is funded by
exactly one provider whose own balance covers the full amount.
"""

import pytest

from core.provider_matcher import (
    HEALTH_CRITICAL,
    HEALTH_LIMITED,
    HEALTH_OPERATIONAL,
    ProviderMatcher,
    ScoringWeights,
)
from core.exceptions import UpstreamUnavailable
from tests.helpers.fakes import FakeRoster, provider


class TestSingleProviderRule:

    def test_two_small_balances_never_combine(self):
        matcher = ProviderMatcher(FakeRoster([provider("a", 60), provider("b", 60)]))

        match = matcher.check("base", 100)

        assert not match.has_liquidity
        assert match.provider is None
        assert match.max_single_balance == 60
        assert match.capable_count == 0
        assert match.liquidity_ratio == pytest.approx(0.6)

    def test_only_capable_provider_wins_over_verified_smaller_one(self):
        matcher = ProviderMatcher(FakeRoster([
            provider("small", 80, verified=True),
            provider("big", 150, verified=False),
        ]))

        match = matcher.check("base", 120)

        assert match.has_liquidity
        assert match.provider.id == "big"
        assert match.capable_count == 1
        assert match.score == pytest.approx(12.5)

    def test_exact_balance_is_capable(self):
        matcher = ProviderMatcher(FakeRoster([provider("exact", 100)]))

        match = matcher.check("base", 100)

        assert match.has_liquidity
        # ratio 1.0 -> 10, thin penalty -5
        assert match.score == pytest.approx(5.0)

    def test_inactive_providers_ignored(self):
        matcher = ProviderMatcher(FakeRoster([provider("sleepy", 10_000, active=False)]))

        assert not matcher.check("base", 10).has_liquidity

    def test_balance_on_other_network_does_not_count(self):
        matcher = ProviderMatcher(FakeRoster([provider("sol-only", 10_000, network="solana")]))

        assert matcher.find_capable_provider("base", 10) is None


class TestScoring:

    def test_verified_ample_provider_outscores_larger_unverified(self):
        matcher = ProviderMatcher(FakeRoster([
            provider("whale", 1000),           # min(10, 5)*10 + 10 = 60
            provider("trusted", 250, verified=True),  # 25 + 20 + 10 = 55
            provider("trusted-big", 600, verified=True),  # 50 + 20 + 10 = 80
        ]))

        match = matcher.check("base", 100)

        assert match.provider.id == "trusted-big"
        assert match.score == pytest.approx(80.0)
        assert match.capable_count == 3

    def test_ratio_term_is_capped(self):
        matcher = ProviderMatcher(FakeRoster([]))

        assert matcher.score(500, 100) == matcher.score(5000, 100)

    def test_tie_keeps_roster_order(self):
        matcher = ProviderMatcher(FakeRoster([provider("first", 300), provider("second", 300)]))

        assert matcher.check("base", 100).provider.id == "first"

    def test_weights_from_config(self):
        weights = ScoringWeights.from_config({"verified_bonus": 100, "thin_penalty": 0})
        matcher = ProviderMatcher(FakeRoster([]), weights=weights)

        assert weights.ratio_cap == 5.0
        assert matcher.score(100, 100, verified=True) == pytest.approx(110.0)


class TestRosterFailures:

    def test_unconfigured_roster_is_explicit_degraded_availability(self):
        roster = FakeRoster(configured=False)
        matcher = ProviderMatcher(roster)

        match = matcher.check("base", 5000)

        assert match.has_liquidity
        assert match.degraded
        assert match.provider is None
        assert roster.fetches == 0

    def test_roster_error_is_safe_no_liquidity(self):
        matcher = ProviderMatcher(FakeRoster(error=UpstreamUnavailable("provider_roster")))

        match = matcher.check("base", 50)

        assert not match.has_liquidity
        assert not match.degraded
        assert "provider_roster" in match.upstream_error


class TestNetworkStatus:

    @pytest.mark.parametrize(
        "balance,expected",
        [(75, HEALTH_OPERATIONAL), (50, HEALTH_OPERATIONAL), (20, HEALTH_LIMITED), (5, HEALTH_CRITICAL)],
    )
    def test_health_thresholds(self, balance, expected):
        matcher = ProviderMatcher(FakeRoster([provider("p", balance)]))

        assert matcher.network_status("base").health == expected

    def test_summary_lists_largest_first(self):
        matcher = ProviderMatcher(FakeRoster([provider("a", 30), provider("b", 90, verified=True), provider("c", 0)]))

        status = matcher.network_status("base")

        assert status.max_single_provider == 90
        assert status.total_liquidity == 120
        assert status.provider_count == 2
        assert [p["id"] for p in status.top_providers] == ["b", "a"]

    def test_roster_error_is_critical(self):
        matcher = ProviderMatcher(FakeRoster(error=RuntimeError("boom")))

        status = matcher.network_status("base")

        assert status.health == HEALTH_CRITICAL
        assert status.error == "boom"
