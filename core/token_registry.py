"""
rampsettle Core: Token Registry

Resolves (token, network) pairs against networks.yaml and supplies the
per-network routing parameters (settlement stable, base asset, fee tiers).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.exceptions import TokenNotSupported, ValidationError

logger = logging.getLogger(__name__)

NETWORK_KIND_ONCHAIN = "onchain"
NETWORK_KIND_AGGREGATOR = "aggregator"


@dataclass
class TokenConfig:
    """One token a network can deliver"""
    symbol: str
    network: str
    contract_address: str
    decimals: int = 18
    fee_pct: float = 0.0
    is_active: bool = True
    trading_enabled: bool = True

    def is_tradeable(self) -> bool:
        return self.is_active and self.trading_enabled


@dataclass
class NetworkConfig:
    """Routing parameters for one settlement network"""
    name: str
    kind: str
    stable_symbol: str
    stable_address: str
    stable_decimals: int = 6
    base_asset_address: Optional[str] = None
    fee_tiers: List[int] = field(default_factory=lambda: [100, 500, 3000, 10000])
    liquidity_constrained: bool = True
    min_pool_liquidity: float = 100.0
    tokens: Dict[str, TokenConfig] = field(default_factory=dict)

    def is_settlement_stable(self, token: TokenConfig) -> bool:
        return (
            token.symbol.upper() == self.stable_symbol.upper()
            or token.contract_address.lower() == self.stable_address.lower()
        )


class TokenRegistry:
    """
    Lookup of configured networks and their token allow-lists.

    Fee percentages default to the token's configured value; a per-business
    override (business_id -> network -> symbol -> pct) wins when present.
    """

    def __init__(
        self,
        networks: Dict[str, NetworkConfig],
        fee_overrides: Optional[Dict[str, Dict[str, Dict[str, float]]]] = None,
    ):
        self._networks = {name.lower(): cfg for name, cfg in networks.items()}
        self._fee_overrides = fee_overrides or {}
        logger.info(
            "TokenRegistry loaded %d network(s): %s",
            len(self._networks),
            ", ".join(sorted(self._networks)),
        )

    @classmethod
    def from_config(cls, raw: Dict[str, Any]) -> "TokenRegistry":
        networks: Dict[str, NetworkConfig] = {}
        for name, net in (raw.get("networks") or {}).items():
            stable = net.get("settlement_stable") or {}
            tokens: Dict[str, TokenConfig] = {}
            for tok in net.get("tokens") or []:
                cfg = TokenConfig(
                    symbol=str(tok["symbol"]).upper(),
                    network=name.lower(),
                    contract_address=str(tok["contract_address"]),
                    decimals=int(tok.get("decimals", 18)),
                    fee_pct=float(tok.get("fee_pct", 0.0)),
                    is_active=bool(tok.get("active", True)),
                    trading_enabled=bool(tok.get("trading_enabled", True)),
                )
                tokens[cfg.symbol] = cfg
            networks[name.lower()] = NetworkConfig(
                name=name.lower(),
                kind=net.get("kind", NETWORK_KIND_ONCHAIN),
                stable_symbol=str(stable.get("symbol", "USDC")).upper(),
                stable_address=str(stable.get("address", "")),
                stable_decimals=int(stable.get("decimals", 6)),
                base_asset_address=net.get("base_asset"),
                fee_tiers=[int(f) for f in net.get("fee_tiers", [100, 500, 3000, 10000])],
                liquidity_constrained=bool(net.get("liquidity_constrained", True)),
                min_pool_liquidity=float(net.get("min_pool_liquidity", 100.0)),
                tokens=tokens,
            )
        return cls(networks, fee_overrides=raw.get("fee_overrides") or {})

    def networks(self) -> List[str]:
        return sorted(self._networks)

    def network(self, network: str) -> NetworkConfig:
        cfg = self._networks.get((network or "").lower())
        if cfg is None:
            raise ValidationError(
                f"{network} network is not configured",
                code="NETWORK_NOT_CONFIGURED",
                available_networks=self.networks(),
            )
        return cfg

    def resolve(self, token: str, network: str) -> TokenConfig:
        net = self.network(network)
        cfg = net.tokens.get((token or "").upper())
        if cfg is None or not cfg.is_tradeable():
            raise TokenNotSupported(
                f"Token {token} on {network} is not supported or not active",
                token=token,
                network=net.name,
                supported_tokens=sorted(t.symbol for t in net.tokens.values() if t.is_tradeable()),
            )
        return cfg

    def fee_pct(self, token: TokenConfig, business_id: Optional[str] = None) -> float:
        if business_id:
            override = (
                self._fee_overrides.get(str(business_id), {})
                .get(token.network, {})
                .get(token.symbol)
            )
            if override is not None:
                return float(override)
        return token.fee_pct
