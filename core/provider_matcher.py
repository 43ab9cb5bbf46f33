"""
rampsettle Core: Provider Matcher

Single-owner allocation: one order's settlement is funded by exactly one
provider executing one atomic transfer. A provider is capable only when its
own balance on the network covers the full amount; balances are never summed
across providers.

Capable providers are scored by balance adequacy and trust:
- ratio term:      min(balance / required, ratio_cap) * ratio_weight
- verified bonus:  +verified_bonus
- ample bonus:     +ample_bonus when balance >= ample_multiple * required
- thin penalty:    -thin_penalty when balance < thin_multiple * required

Highest score wins; ties keep roster order.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from infra.metrics import MetricsRecorder
from infra.provider_roster import Provider, ProviderRosterClient

logger = logging.getLogger(__name__)

HEALTH_OPERATIONAL = "operational"
HEALTH_LIMITED = "limited"
HEALTH_CRITICAL = "critical"


@dataclass
class ScoringWeights:
    ratio_cap: float = 5.0
    ratio_weight: float = 10.0
    verified_bonus: float = 20.0
    ample_multiple: float = 2.0
    ample_bonus: float = 10.0
    thin_multiple: float = 1.2
    thin_penalty: float = 5.0

    @classmethod
    def from_config(cls, raw: Optional[Dict[str, Any]]) -> "ScoringWeights":
        raw = raw or {}
        defaults = cls()
        return cls(**{
            name: float(raw.get(name, getattr(defaults, name)))
            for name in defaults.__dataclass_fields__
        })


@dataclass
class ProviderMatch:
    """Outcome of one capability check"""
    has_liquidity: bool
    network: str
    required_amount: float
    provider: Optional[Provider] = None
    score: float = 0.0
    max_single_balance: float = 0.0
    capable_count: int = 0
    provider_count: int = 0
    liquidity_ratio: float = 0.0
    degraded: bool = False
    upstream_error: Optional[str] = None
    from_cache: bool = False
    stale: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_liquidity": self.has_liquidity,
            "network": self.network,
            "required_amount": self.required_amount,
            "provider_id": self.provider.id if self.provider else None,
            "provider_name": self.provider.name if self.provider else None,
            "score": round(self.score, 4),
            "max_single_balance": self.max_single_balance,
            "capable_count": self.capable_count,
            "provider_count": self.provider_count,
            "liquidity_ratio": round(self.liquidity_ratio, 4),
            "degraded": self.degraded,
            "upstream_error": self.upstream_error,
            "from_cache": self.from_cache,
            "stale": self.stale,
        }


@dataclass
class NetworkLiquidityStatus:
    network: str
    max_single_provider: float
    provider_count: int
    total_liquidity: float
    health: str
    degraded: bool = False
    error: Optional[str] = None
    top_providers: List[Dict[str, Any]] = field(default_factory=list)


class ProviderMatcher:
    """Picks the single best provider able to fund a settlement in full."""

    def __init__(
        self,
        roster: ProviderRosterClient,
        weights: Optional[ScoringWeights] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.roster = roster
        self.weights = weights or ScoringWeights()
        self.metrics = metrics or MetricsRecorder(enabled=False)

    def score(self, balance: float, required: float, verified: bool = False) -> float:
        w = self.weights
        score = min(balance / required, w.ratio_cap) * w.ratio_weight
        if verified:
            score += w.verified_bonus
        if balance >= required * w.ample_multiple:
            score += w.ample_bonus
        if balance < required * w.thin_multiple:
            score -= w.thin_penalty
        return score

    def find_capable_provider(self, network: str, required_amount: float) -> Optional[Provider]:
        return self.check(network, required_amount).provider

    def check(self, network: str, required_amount: float) -> ProviderMatch:
        """
        Evaluate the live roster for one (network, amount).

        Roster failures never propagate. With no roster credentials the
        feature is administratively off and the match is an explicit
        degraded "assume available"; any other failure is a safe
        no-liquidity answer.
        """
        network = network.lower()
        if not self.roster.is_configured:
            logger.warning("Provider roster not configured; assuming liquidity on %s (degraded mode)", network)
            return ProviderMatch(
                has_liquidity=True,
                network=network,
                required_amount=required_amount,
                degraded=True,
            )

        try:
            providers = self.roster.fetch_providers(network)
        except Exception as exc:
            logger.error("Provider roster fetch failed for %s: %s", network, exc)
            return ProviderMatch(
                has_liquidity=False,
                network=network,
                required_amount=required_amount,
                upstream_error=str(exc),
            )

        return self.select(providers, network, required_amount)

    def select(self, providers: List[Provider], network: str, required_amount: float) -> ProviderMatch:
        network = network.lower()
        best: Optional[Provider] = None
        best_score = 0.0
        capable = 0
        max_single = 0.0

        for provider in providers:
            if not provider.active:
                continue
            balance = provider.balance_on(network)
            max_single = max(max_single, balance)
            if required_amount <= 0 or balance < required_amount:
                continue
            capable += 1
            score = self.score(balance, required_amount, provider.verified)
            if best is None or score > best_score:
                best, best_score = provider, score

        ratio = (max_single / required_amount) if required_amount > 0 else 0.0
        match = ProviderMatch(
            has_liquidity=best is not None,
            network=network,
            required_amount=required_amount,
            provider=best,
            score=best_score,
            max_single_balance=max_single,
            capable_count=capable,
            provider_count=len(providers),
            liquidity_ratio=ratio,
        )

        if best is not None:
            logger.info(
                "Matched provider %s for %.2f on %s (score %.1f, %d capable of %d)",
                best.id, required_amount, network, best_score, capable, len(providers),
            )
        else:
            logger.warning(
                "No single provider can fund %.2f on %s (largest balance %.2f across %d providers)",
                required_amount, network, max_single, len(providers),
            )
        return match

    def network_status(self, network: str) -> NetworkLiquidityStatus:
        network = network.lower()
        if not self.roster.is_configured:
            return NetworkLiquidityStatus(
                network=network,
                max_single_provider=0.0,
                provider_count=0,
                total_liquidity=0.0,
                health=HEALTH_OPERATIONAL,
                degraded=True,
            )

        try:
            providers = self.roster.fetch_providers(network)
        except Exception as exc:
            logger.error("Provider roster fetch failed for %s: %s", network, exc)
            return NetworkLiquidityStatus(
                network=network,
                max_single_provider=0.0,
                provider_count=0,
                total_liquidity=0.0,
                health=HEALTH_CRITICAL,
                error=str(exc),
            )

        funded = sorted(
            (p for p in providers if p.active and p.balance_on(network) > 0),
            key=lambda p: p.balance_on(network),
            reverse=True,
        )
        max_single = funded[0].balance_on(network) if funded else 0.0
        if max_single >= 50:
            health = HEALTH_OPERATIONAL
        elif max_single >= 10:
            health = HEALTH_LIMITED
        else:
            health = HEALTH_CRITICAL

        return NetworkLiquidityStatus(
            network=network,
            max_single_provider=max_single,
            provider_count=len(funded),
            total_liquidity=sum(p.balance_on(network) for p in funded),
            health=health,
            top_providers=[
                {"id": p.id, "name": p.name, "balance": p.balance_on(network), "verified": p.verified}
                for p in funded[:5]
            ],
        )
