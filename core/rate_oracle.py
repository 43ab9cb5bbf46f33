"""
rampsettle Core: Rate Oracle

Resolves the settlement-stable -> fiat rate through a cascading chain:

    primary endpoint (10s) -> secondary endpoint (5s) -> static env value
    -> hardcoded emergency constant

The oracle never raises. A stale rate is preferable to blocking order
creation, so every failure is logged and the next tier is tried. The tier
that answered is returned alongside the rate for the audit trail.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from infra.metrics import MetricsRecorder
from infra.rate_source import RateSourceClient

logger = logging.getLogger(__name__)

EMERGENCY_RATE = 1650.0


class RateTier(Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    STATIC = "static"
    EMERGENCY = "emergency"


@dataclass
class RateResult:
    """A resolved rate plus the tier that produced it"""
    rate: float
    tier: RateTier
    resolved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    failures: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.tier in (RateTier.STATIC, RateTier.EMERGENCY)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rate": self.rate,
            "tier": self.tier.value,
            "resolved_at": self.resolved_at.isoformat(),
            "failures": list(self.failures),
        }


class RateOracle:
    """Cascading stable-to-fiat rate lookup."""

    def __init__(
        self,
        primary_url: Optional[str] = None,
        secondary_url: Optional[str] = None,
        primary_timeout: float = 10.0,
        secondary_timeout: float = 5.0,
        static_rate_env: str = "FALLBACK_USDC_NGN_RATE",
        emergency_rate: float = EMERGENCY_RATE,
        client: Optional[RateSourceClient] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.primary_url = primary_url
        self.secondary_url = secondary_url
        self.primary_timeout = primary_timeout
        self.secondary_timeout = secondary_timeout
        self.static_rate_env = static_rate_env
        self.emergency_rate = emergency_rate
        self.metrics = metrics or MetricsRecorder(enabled=False)
        self.client = client or RateSourceClient(metrics=self.metrics)

    @classmethod
    def from_config(
        cls,
        endpoints: Dict[str, Any],
        policy: Dict[str, Any],
        metrics: Optional[MetricsRecorder] = None,
    ) -> "RateOracle":
        rate_cfg = policy.get("rate_oracle") or {}
        return cls(
            primary_url=endpoints.get("rate_primary_url"),
            secondary_url=endpoints.get("rate_secondary_url"),
            primary_timeout=float(rate_cfg.get("primary_timeout_seconds", 10.0)),
            secondary_timeout=float(rate_cfg.get("secondary_timeout_seconds", 5.0)),
            static_rate_env=rate_cfg.get("static_rate_env", "FALLBACK_USDC_NGN_RATE"),
            emergency_rate=float(rate_cfg.get("emergency_rate", EMERGENCY_RATE)),
            metrics=metrics,
        )

    def get_stable_to_fiat_rate(self) -> float:
        return self.resolve().rate

    def resolve(self) -> RateResult:
        failures: List[str] = []

        for tier, url, timeout in (
            (RateTier.PRIMARY, self.primary_url, self.primary_timeout),
            (RateTier.SECONDARY, self.secondary_url, self.secondary_timeout),
        ):
            if not url:
                failures.append(f"{tier.value}: not configured")
                continue
            try:
                rate = self.client.get_unit_price(url, timeout=timeout, endpoint=tier.value)
                return self._result(rate, tier, failures)
            except Exception as exc:
                logger.warning("Rate tier %s failed: %s", tier.value, exc)
                failures.append(f"{tier.value}: {exc}")

        static = self._static_rate()
        if static is not None:
            logger.warning("Rate endpoints unavailable; using static rate %.4f from %s", static, self.static_rate_env)
            return self._result(static, RateTier.STATIC, failures)

        failures.append(f"static: {self.static_rate_env} unset or invalid")
        logger.error("All rate sources failed; using emergency rate %.4f", self.emergency_rate)
        return self._result(self.emergency_rate, RateTier.EMERGENCY, failures)

    def _static_rate(self) -> Optional[float]:
        raw = os.getenv(self.static_rate_env, "").strip()
        if not raw:
            return None
        try:
            value = float(raw)
        except ValueError:
            logger.error("Ignoring non-numeric %s=%r", self.static_rate_env, raw)
            return None
        if not math.isfinite(value) or value <= 0:
            logger.error("Ignoring non-positive %s=%r", self.static_rate_env, raw)
            return None
        return value

    def _result(self, rate: float, tier: RateTier, failures: List[str]) -> RateResult:
        self.metrics.record_rate_tier(tier.value)
        if tier is not RateTier.PRIMARY:
            logger.info("Resolved stable/fiat rate %.4f via %s tier", rate, tier.value)
        return RateResult(rate=rate, tier=tier, failures=failures)
