"""Client for the settlement-stable to fiat rate endpoints."""

import logging
import math
from typing import Any, Dict, Optional

from core.exceptions import UpstreamUnavailable
from infra.http_client import JsonHttpClient
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)


class RateSourceClient(JsonHttpClient):
    """Fetches one unit price of the settlement stable, in fiat."""

    def __init__(self, metrics: Optional[MetricsRecorder] = None):
        super().__init__("rate_source", metrics)

    def get_unit_price(self, url: str, timeout: float, endpoint: str = "rate") -> float:
        payload = self.request_json("GET", url, timeout=timeout, endpoint=endpoint)
        return self._parse_rate(payload, endpoint)

    @staticmethod
    def _parse_rate(payload: Dict[str, Any], endpoint: str) -> float:
        if payload.get("success") is False:
            raise UpstreamUnavailable(f"rate_source:{endpoint}", ValueError(payload.get("message", "unsuccessful")))

        raw = payload.get("unitPriceInFiat")
        if raw is None:
            data = payload.get("data") or {}
            raw = data.get("unitPriceInFiat", data.get("rate"))
        try:
            rate = float(raw)
        except (TypeError, ValueError) as exc:
            raise UpstreamUnavailable(f"rate_source:{endpoint}", exc) from exc

        if not math.isfinite(rate) or rate <= 0:
            raise UpstreamUnavailable(f"rate_source:{endpoint}", ValueError(f"invalid rate {raw!r}"))
        return rate
