"""
rampsettle Core: Route Finder

Prices a token against the network's settlement stable and returns the best
achievable output.

On-chain networks enumerate every strategy independently:
- direct concentrated-liquidity pool at each fee tier
- direct constant-product pool
- two hops via the base asset through concentrated-liquidity tiers
- two hops via the base asset through constant-product pools

All probes run concurrently and are awaited jointly, so total latency is
bounded by the slowest single probe. A failing probe means "no liquidity on
this path" and never aborts the search; the numerically largest output wins
regardless of enumeration order.

The aggregator-routed network makes one external quote call that is already
optimised. The settlement stable itself short-circuits to identity.
"""

import logging
import math
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple

from core.exceptions import NoRouteLiquidity, TokenNotSupported
from core.token_registry import (
    NETWORK_KIND_AGGREGATOR,
    NetworkConfig,
    TokenConfig,
    TokenRegistry,
)
from infra.aggregator_client import AggregatorClient
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

IDENTITY_ROUTE = "identity"


class ChainReader(ABC):
    """
    Read-only view of one network's pools and reserve contract.

    Amounts are whole-token floats; adapters own decimal conversion.
    """

    @abstractmethod
    def quote_exact_input_single(self, token_in: str, token_out: str, fee: int, amount_in: float) -> float:
        """Output of a single concentrated-liquidity pool hop at one fee tier."""

    @abstractmethod
    def get_amounts_out(self, amount_in: float, path: List[str]) -> List[float]:
        """Constant-product router amounts along path (last element is the output)."""

    @abstractmethod
    def is_token_supported(self, token: str) -> bool:
        """Whether the reserve contract allow-lists this token."""


@dataclass
class RouteQuote:
    """Common result shape; subclasses carry the network-specific detail"""
    network: str
    token: str
    amount_in: float
    total_output: float
    price_per_unit: float
    route_id: str
    pool_liquidity_adequate: bool

    kind: ClassVar[str] = "base"

    @property
    def success(self) -> bool:
        return self.total_output > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "network": self.network,
            "token": self.token,
            "amount_in": self.amount_in,
            "total_output": self.total_output,
            "price_per_unit": self.price_per_unit,
            "route_id": self.route_id,
            "pool_liquidity_adequate": self.pool_liquidity_adequate,
        }


@dataclass
class OnChainRouteQuote(RouteQuote):
    strategy_outputs: Dict[str, float] = field(default_factory=dict)
    strategies_attempted: int = 0

    kind: ClassVar[str] = "onchain"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["strategy_outputs"] = dict(self.strategy_outputs)
        data["strategies_attempted"] = self.strategies_attempted
        return data


@dataclass
class AggregatorRouteQuote(RouteQuote):
    price_impact_pct: float = 0.0
    route_steps: List[str] = field(default_factory=list)

    kind: ClassVar[str] = "aggregator"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["price_impact_pct"] = self.price_impact_pct
        data["route_steps"] = list(self.route_steps)
        return data


@dataclass
class IdentityRouteQuote(RouteQuote):
    kind: ClassVar[str] = "identity"


class RouteFinder:
    """Best-output search across pricing strategies, per network."""

    def __init__(
        self,
        registry: TokenRegistry,
        chain_readers: Optional[Dict[str, ChainReader]] = None,
        aggregator: Optional[AggregatorClient] = None,
        probe_timeout: float = 10.0,
        max_price_impact_pct: float = 5.0,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.registry = registry
        self.chain_readers = {k.lower(): v for k, v in (chain_readers or {}).items()}
        self.aggregator = aggregator
        self.probe_timeout = probe_timeout
        self.max_price_impact_pct = max_price_impact_pct
        self.metrics = metrics or MetricsRecorder(enabled=False)

    def quote(self, token: str, network: str, amount: float) -> RouteQuote:
        """
        Price `amount` of `token` in the settlement stable of `network`.

        Raises:
            TokenNotSupported: token not on the network's allow-list
            NoRouteLiquidity: every strategy came back empty
        """
        net = self.registry.network(network)
        token_cfg = self.registry.resolve(token, net.name)
        if amount <= 0 or not math.isfinite(amount):
            raise NoRouteLiquidity(f"Cannot price non-positive amount {amount}", token=token_cfg.symbol, amount=amount)

        if net.is_settlement_stable(token_cfg):
            return IdentityRouteQuote(
                network=net.name,
                token=token_cfg.symbol,
                amount_in=amount,
                total_output=amount,
                price_per_unit=1.0,
                route_id=IDENTITY_ROUTE,
                pool_liquidity_adequate=True,
            )

        if net.kind == NETWORK_KIND_AGGREGATOR:
            result = self._quote_aggregator(net, token_cfg, amount)
        else:
            result = self._quote_onchain(net, token_cfg, amount)

        self.metrics.record_route(net.name, result.route_id)
        return result

    # ------------------------------------------------------------------
    # On-chain search

    def _reader(self, net: NetworkConfig) -> ChainReader:
        reader = self.chain_readers.get(net.name)
        if reader is None:
            raise TokenNotSupported(f"No chain reader configured for {net.name}", network=net.name)
        return reader

    def _quote_onchain(self, net: NetworkConfig, token: TokenConfig, amount: float) -> OnChainRouteQuote:
        reader = self._reader(net)

        try:
            supported = bool(reader.is_token_supported(token.contract_address))
        except Exception as exc:
            logger.error("Reserve support check failed for %s on %s: %s", token.symbol, net.name, exc)
            supported = False
        if not supported:
            raise TokenNotSupported(
                f"Token {token.symbol} is not supported by the {net.name} reserve contract",
                token=token.symbol,
                network=net.name,
                contract_address=token.contract_address,
            )

        strategies = self._strategies(reader, net, token.contract_address, amount)
        outputs = self._run_probes(strategies)

        best_route: Optional[str] = None
        best_output = 0.0
        for route_id, _ in strategies:
            value = outputs.get(route_id)
            if value is not None and value > best_output:
                best_route, best_output = route_id, value

        if best_route is None:
            raise NoRouteLiquidity(
                f"No liquidity found for {token.symbol} on {net.name}",
                token=token.symbol,
                network=net.name,
                amount=amount,
                strategies_attempted=len(strategies),
            )

        logger.info(
            "Best route for %s %s on %s: %s -> %.6f %s (%d/%d strategies priced)",
            amount, token.symbol, net.name, best_route, best_output, net.stable_symbol,
            len(outputs), len(strategies),
        )
        return OnChainRouteQuote(
            network=net.name,
            token=token.symbol,
            amount_in=amount,
            total_output=best_output,
            price_per_unit=best_output / amount,
            route_id=best_route,
            pool_liquidity_adequate=best_output >= net.min_pool_liquidity,
            strategy_outputs=outputs,
            strategies_attempted=len(strategies),
        )

    def _strategies(
        self,
        reader: ChainReader,
        net: NetworkConfig,
        token_in: str,
        amount: float,
    ) -> List[Tuple[str, Callable[[], float]]]:
        stable = net.stable_address
        base = net.base_asset_address
        strategies: List[Tuple[str, Callable[[], float]]] = []

        for fee in net.fee_tiers:
            strategies.append((f"v3_direct_{fee}", partial(reader.quote_exact_input_single, token_in, stable, fee, amount)))
        strategies.append(("v2_direct", partial(self._amounts_out_last, reader, amount, [token_in, stable])))

        if base and base.lower() != token_in.lower():
            for fee in net.fee_tiers:
                strategies.append((f"v3_via_base_{fee}", partial(self._two_hop_v3, reader, net, token_in, fee, amount)))
            strategies.append(("v2_via_base", partial(self._amounts_out_last, reader, amount, [token_in, base, stable])))

        return strategies

    @staticmethod
    def _amounts_out_last(reader: ChainReader, amount: float, path: List[str]) -> float:
        amounts = reader.get_amounts_out(amount, path)
        return amounts[-1]

    @staticmethod
    def _two_hop_v3(reader: ChainReader, net: NetworkConfig, token_in: str, fee: int, amount: float) -> float:
        base = net.base_asset_address
        mid = reader.quote_exact_input_single(token_in, base, fee, amount)
        if not mid or mid <= 0:
            raise ValueError(f"no {fee} pool into base asset")

        # Second leg: best base -> stable pool across all tiers and the v2 pair
        best = 0.0
        for fee_out in net.fee_tiers:
            try:
                best = max(best, reader.quote_exact_input_single(base, net.stable_address, fee_out, mid))
            except Exception:
                continue
        try:
            best = max(best, reader.get_amounts_out(mid, [base, net.stable_address])[-1])
        except Exception:
            pass
        if best <= 0:
            raise ValueError("no base asset -> stable liquidity")
        return best

    def _run_probes(self, strategies: List[Tuple[str, Callable[[], float]]]) -> Dict[str, float]:
        # One worker per strategy so the timeout never covers queueing behind other quotes
        executor = ThreadPoolExecutor(max_workers=max(len(strategies), 1), thread_name_prefix="route-probe")
        try:
            futures = [(route_id, executor.submit(fn)) for route_id, fn in strategies]
            done, _ = wait([f for _, f in futures], timeout=self.probe_timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        outputs: Dict[str, float] = {}
        for route_id, future in futures:
            if future not in done:
                future.cancel()
                logger.warning("Route probe %s timed out after %.1fs", route_id, self.probe_timeout)
                continue
            try:
                value = float(future.result())
            except Exception as exc:
                logger.debug("Route probe %s: no liquidity (%s)", route_id, exc)
                continue
            if math.isfinite(value) and value > 0:
                outputs[route_id] = value
        return outputs

    # ------------------------------------------------------------------
    # Aggregator

    def _quote_aggregator(self, net: NetworkConfig, token: TokenConfig, amount: float) -> AggregatorRouteQuote:
        if self.aggregator is None:
            raise TokenNotSupported(f"No aggregator configured for {net.name}", network=net.name)

        try:
            quote = self.aggregator.quote(
                token.contract_address,
                net.stable_address,
                amount,
                input_decimals=token.decimals,
                output_decimals=net.stable_decimals,
            )
        except Exception as exc:
            logger.warning("Aggregator quote failed for %s on %s: %s", token.symbol, net.name, exc)
            raise NoRouteLiquidity(
                f"No liquidity found for {token.symbol} on {net.name}",
                token=token.symbol,
                network=net.name,
                amount=amount,
                upstream_error=str(exc),
            ) from exc

        if quote.output_amount <= 0:
            raise NoRouteLiquidity(
                f"No liquidity found for {token.symbol} on {net.name}",
                token=token.symbol,
                network=net.name,
                amount=amount,
            )

        route_id = "aggregator:" + ("+".join(quote.route_steps) if quote.route_steps else "direct")
        return AggregatorRouteQuote(
            network=net.name,
            token=token.symbol,
            amount_in=amount,
            total_output=quote.output_amount,
            price_per_unit=quote.output_amount / amount,
            route_id=route_id,
            pool_liquidity_adequate=quote.price_impact_pct <= self.max_price_impact_pct,
            price_impact_pct=quote.price_impact_pct,
            route_steps=quote.route_steps,
        )
