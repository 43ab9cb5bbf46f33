"""Client for the settlement executor that broadcasts the on-chain transfer."""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.exceptions import SettlementFailure
from infra.http_client import JsonHttpClient
from infra.metrics import MetricsRecorder
from infra.signing import canonical_json, signed_headers

logger = logging.getLogger(__name__)


@dataclass
class SettlementRequest:
    order_id: str
    input_token: str
    output_token: str
    amount: float
    recipient: Optional[str]
    chosen_provider: Optional[str]
    network: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "inputToken": self.input_token,
            "outputToken": self.output_token,
            "amount": self.amount,
            "recipient": self.recipient,
            "chosenProvider": self.chosen_provider,
            "network": self.network,
        }


class SettlementExecutorClient(JsonHttpClient):
    """
    Hands a settlement off to the executor.

    The executor answers asynchronously via a settlement webhook signed with
    the same secret; this call only confirms the request was accepted.
    """

    def __init__(
        self,
        base_url: Optional[str],
        secret: Optional[str] = None,
        secret_env: str = "SETTLEMENT_SECRET",
        timeout: float = 15.0,
        metrics: Optional[MetricsRecorder] = None,
    ):
        super().__init__("settlement_executor", metrics)
        self.base_url = (base_url or "").rstrip("/")
        self.secret = secret if secret is not None else os.getenv(secret_env, "")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.secret)

    def submit(self, request: SettlementRequest) -> Dict[str, Any]:
        if not self.is_configured:
            raise SettlementFailure("Settlement executor URL or secret not configured")

        payload = request.to_payload()
        response = self.request_json(
            "POST",
            f"{self.base_url}/settlements",
            timeout=self.timeout,
            endpoint="settlements",
            headers=signed_headers(payload, self.secret),
            data=canonical_json(payload),
        )
        logger.info("Settlement for order %s accepted by executor", request.order_id)
        return response
