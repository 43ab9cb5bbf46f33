"""
Test helpers: in-memory collaborators.

Pools price linearly (output = amount * price) so expected values are easy
to compute by hand. Use these instead of patching internals to keep tests
pinned to the public contracts.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
from unittest.mock import Mock

from core.duplicate_guard import DuplicateGuard
from core.liquidity_cache import LiquidityCache
from core.order_coordinator import CoordinatorSettings, OrderCoordinator
from core.order_state import OrderStateMachine
from core.provider_matcher import ProviderMatcher
from core.rate_oracle import RateOracle
from core.route_finder import ChainReader, RouteFinder
from core.token_registry import TokenRegistry
from infra.order_store import OrderStore
from infra.provider_roster import Provider

USDC = "0xusdc"
WETH = "0xweth"
TKN = "0xtkn"
SOL_MINT = "sol_mint"
SOL_USDC = "usdc_mint"

NETWORKS_CONFIG = {
    "networks": {
        "base": {
            "kind": "onchain",
            "settlement_stable": {"symbol": "USDC", "address": USDC, "decimals": 6},
            "base_asset": WETH,
            "fee_tiers": [100, 500, 3000, 10000],
            "liquidity_constrained": True,
            "min_pool_liquidity": 100,
            "tokens": [
                {"symbol": "USDC", "contract_address": USDC, "decimals": 6, "fee_pct": 1.5},
                {"symbol": "WETH", "contract_address": WETH, "decimals": 18, "fee_pct": 1.5},
                {"symbol": "TKN", "contract_address": TKN, "decimals": 18, "fee_pct": 1.5},
                {"symbol": "OLD", "contract_address": "0xold", "decimals": 18, "active": False},
            ],
        },
        "solana": {
            "kind": "aggregator",
            "settlement_stable": {"symbol": "USDC", "address": SOL_USDC, "decimals": 6},
            "liquidity_constrained": False,
            "tokens": [
                {"symbol": "USDC", "contract_address": SOL_USDC, "decimals": 6, "fee_pct": 1.5},
                {"symbol": "SOL", "contract_address": SOL_MINT, "decimals": 9, "fee_pct": 1.5},
            ],
        },
    },
    "fee_overrides": {"biz-vip": {"base": {"TKN": 0.5}}},
}


def build_registry() -> TokenRegistry:
    return TokenRegistry.from_config(NETWORKS_CONFIG)


class FakeChainReader(ChainReader):
    """
    Linear pools keyed by addresses.

    v3: {(token_in, token_out, fee): price}
    v2: {(token_in, token_out): price}; multi-hop paths multiply pair prices
    """

    def __init__(
        self,
        v3: Optional[Dict[Tuple[str, str, int], float]] = None,
        v2: Optional[Dict[Tuple[str, str], float]] = None,
        supported: Sequence[str] = (USDC, WETH, TKN),
        delays: Optional[Dict[Tuple[str, str, int], float]] = None,
    ):
        self.v3 = {(a.lower(), b.lower(), f): p for (a, b, f), p in (v3 or {}).items()}
        self.v2 = {(a.lower(), b.lower()): p for (a, b), p in (v2 or {}).items()}
        self.supported = {s.lower() for s in supported}
        self.delays = {(a.lower(), b.lower(), f): d for (a, b, f), d in (delays or {}).items()}
        self.calls: List[Tuple] = []
        self._lock = threading.Lock()

    def quote_exact_input_single(self, token_in, token_out, fee, amount_in):
        key = (token_in.lower(), token_out.lower(), fee)
        with self._lock:
            self.calls.append(("v3",) + key)
        if key in self.delays:
            time.sleep(self.delays[key])
        if key not in self.v3:
            raise ValueError(f"no pool {key}")
        return amount_in * self.v3[key]

    def get_amounts_out(self, amount_in, path):
        with self._lock:
            self.calls.append(("v2",) + tuple(p.lower() for p in path))
        amounts = [amount_in]
        for a, b in zip(path, path[1:]):
            price = self.v2.get((a.lower(), b.lower()))
            if price is None:
                raise ValueError(f"no pair {a}/{b}")
            amounts.append(amounts[-1] * price)
        return amounts

    def is_token_supported(self, token):
        return token.lower() in self.supported


class FakeRoster:
    """Stands in for ProviderRosterClient."""

    def __init__(self, providers: Optional[List[Provider]] = None, configured: bool = True,
                 error: Optional[Exception] = None):
        self.providers = providers or []
        self.configured = configured
        self.error = error
        self.fetches = 0

    @property
    def is_configured(self) -> bool:
        return self.configured

    def fetch_providers(self, network=None):
        self.fetches += 1
        if self.error is not None:
            raise self.error
        return list(self.providers)


def provider(pid: str, balance: float, network: str = "base", verified: bool = False,
             active: bool = True) -> Provider:
    return Provider(id=pid, name=pid.title(), balances={network: balance}, verified=verified, active=active)


def rate_oracle(rate: float = 1700.0) -> RateOracle:
    client = Mock()
    client.get_unit_price.return_value = rate
    return RateOracle(primary_url="https://rates.test/usdc", secondary_url="https://rates2.test/usdc", client=client)


@dataclass
class Harness:
    coordinator: OrderCoordinator
    reader: FakeChainReader
    roster: FakeRoster
    store: OrderStore
    guard: DuplicateGuard
    notifier: Mock
    gateway: Optional[Mock]
    settlement: Optional[Mock]
    route_finder: RouteFinder
    extras: Dict[str, object] = field(default_factory=dict)


SETTLEMENT_SECRET = "settle-secret"


def build_coordinator(
    token_price: float = 0.5,
    rate: float = 1700.0,
    providers: Optional[List[Provider]] = None,
    gateway: Optional[Mock] = None,
    settlement: Optional[Mock] = None,
    settings: Optional[CoordinatorSettings] = None,
    roster: Optional[FakeRoster] = None,
) -> Harness:
    registry = build_registry()
    reader = FakeChainReader(v3={(TKN, USDC, 3000): token_price, (WETH, USDC, 500): 2500.0})
    route_finder = RouteFinder(registry, chain_readers={"base": reader}, probe_timeout=2.0)
    roster = roster or FakeRoster(providers if providers is not None else [provider("alpha", 5000.0, verified=True)])
    matcher = ProviderMatcher(roster)
    cache = LiquidityCache(matcher, cacheable_ceiling=500.0, large_order_threshold=1000.0)
    store = OrderStore()
    guard = DuplicateGuard()
    notifier = Mock()

    coordinator = OrderCoordinator(
        registry=registry,
        rate_oracle=rate_oracle(rate),
        route_finder=route_finder,
        liquidity=cache,
        state_machine=OrderStateMachine(store),
        guard=guard,
        notifier=notifier,
        payment_gateway=gateway,
        settlement=settlement,
        settlement_secret=SETTLEMENT_SECRET,
        settings=settings or CoordinatorSettings(),
    )
    return Harness(
        coordinator=coordinator,
        reader=reader,
        roster=roster,
        store=store,
        guard=guard,
        notifier=notifier,
        gateway=gateway,
        settlement=settlement,
        route_finder=route_finder,
    )
