"""Client for the liquidity-provider roster service."""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from infra.http_client import JsonHttpClient
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)


@dataclass
class Provider:
    """Read model of one liquidity provider; owned by the roster service"""
    id: str
    name: str
    balances: Dict[str, float] = field(default_factory=dict)
    verified: bool = False
    active: bool = True
    wallets: Dict[str, str] = field(default_factory=dict)

    def balance_on(self, network: str) -> float:
        return float(self.balances.get(network.lower(), 0.0) or 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "balances": dict(self.balances),
            "verified": self.verified,
            "active": self.active,
        }


class ProviderRosterClient(JsonHttpClient):
    """
    Fetches the active provider roster.

    Accepts the flat shape {id, name, perNetworkBalance, verified, active}
    and the older nested {id, user:{name}, balances:{...}, status:{isActive,
    isVerified}, wallets:{...}} shape.
    """

    def __init__(
        self,
        base_url: Optional[str],
        token: Optional[str] = None,
        token_env: str = "ROSTER_API_TOKEN",
        timeout: float = 15.0,
        metrics: Optional[MetricsRecorder] = None,
    ):
        super().__init__("provider_roster", metrics)
        self.base_url = (base_url or "").rstrip("/")
        self.token = token if token is not None else os.getenv(token_env, "")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.token)

    def fetch_providers(self, network: Optional[str] = None) -> List[Provider]:
        params: Dict[str, Any] = {"active": "true"}
        if network:
            params["network"] = network.lower()

        payload = self.request_json(
            "GET",
            f"{self.base_url}/providers",
            timeout=self.timeout,
            endpoint="providers",
            headers={"Authorization": f"Bearer {self.token}"},
            params=params,
        )

        raw_list = payload.get("data", payload.get("providers"))
        if isinstance(raw_list, dict):
            raw_list = raw_list.get("providers") or raw_list.get("items")
        providers = []
        for raw in raw_list or []:
            provider = self.parse_provider(raw)
            if provider is not None and provider.active:
                providers.append(provider)
        logger.debug("Roster returned %d active provider(s)", len(providers))
        return providers

    @staticmethod
    def parse_provider(raw: Dict[str, Any]) -> Optional[Provider]:
        provider_id = raw.get("id") or raw.get("_id")
        if not provider_id:
            logger.warning("Skipping roster entry without id: %s", raw)
            return None

        if "perNetworkBalance" in raw:
            balances = raw.get("perNetworkBalance") or {}
            name = raw.get("name") or str(provider_id)
            verified = bool(raw.get("verified", False))
            active = bool(raw.get("active", True))
        else:
            balances = {k: v for k, v in (raw.get("balances") or {}).items() if k != "total"}
            name = (raw.get("user") or {}).get("name") or raw.get("name") or str(provider_id)
            status = raw.get("status") or {}
            verified = bool(status.get("isVerified", False))
            active = bool(status.get("isActive", True))

        parsed: Dict[str, float] = {}
        for network, value in balances.items():
            try:
                parsed[str(network).lower()] = float(value or 0.0)
            except (TypeError, ValueError):
                logger.warning("Provider %s has non-numeric %s balance %r", provider_id, network, value)
                parsed[str(network).lower()] = 0.0

        return Provider(
            id=str(provider_id),
            name=name,
            balances=parsed,
            verified=verified,
            active=active,
            wallets={str(k).lower(): str(v) for k, v in (raw.get("wallets") or {}).items() if v},
        )
