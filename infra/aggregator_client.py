"""Client for the off-chain swap aggregator (Jupiter v6 style /quote API)."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.exceptions import UpstreamUnavailable
from infra.http_client import JsonHttpClient
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)


@dataclass
class AggregatorQuote:
    """Optimised output for one input amount, already routed by the aggregator"""
    input_amount: float
    output_amount: float
    price_impact_pct: float
    route_steps: List[str] = field(default_factory=list)


class AggregatorClient(JsonHttpClient):
    """
    Quotes token -> stable conversions on the aggregator-routed network.

    Amounts cross the wire in smallest units; callers deal in whole tokens.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        slippage_bps: int = 50,
        metrics: Optional[MetricsRecorder] = None,
    ):
        super().__init__("aggregator", metrics)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.slippage_bps = slippage_bps

    def quote(
        self,
        input_token: str,
        output_token: str,
        amount: float,
        input_decimals: int,
        output_decimals: int,
    ) -> AggregatorQuote:
        raw_amount = int(amount * (10 ** input_decimals))
        if raw_amount <= 0:
            raise ValueError(f"amount {amount} is below one smallest unit")

        payload = self.request_json(
            "GET",
            f"{self.base_url}/quote",
            timeout=self.timeout,
            endpoint="quote",
            params={
                "inputMint": input_token,
                "outputMint": output_token,
                "amount": raw_amount,
                "slippageBps": self.slippage_bps,
                "onlyDirectRoutes": "false",
            },
        )
        return self._parse(payload, amount, output_decimals)

    @staticmethod
    def _parse(payload: Dict[str, Any], amount: float, output_decimals: int) -> AggregatorQuote:
        out_raw = payload.get("outAmount")
        if out_raw is None:
            raise UpstreamUnavailable("aggregator:quote", ValueError(payload.get("error", "no outAmount in quote")))
        try:
            output_amount = int(out_raw) / (10 ** output_decimals)
            impact = float(payload.get("priceImpactPct") or 0.0)
        except (TypeError, ValueError) as exc:
            raise UpstreamUnavailable("aggregator:quote", exc) from exc

        steps = []
        for step in payload.get("routePlan") or []:
            info = step.get("swapInfo") or {}
            steps.append(info.get("label") or info.get("ammKey") or "unknown")

        return AggregatorQuote(
            input_amount=amount,
            output_amount=output_amount,
            price_impact_pct=impact,
            route_steps=steps,
        )
