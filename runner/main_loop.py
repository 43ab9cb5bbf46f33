"""
rampsettle Runner: Settlement Service

Wires the settlement routing engine from config and runs the periodic
expiry sweep.

Flow:
1. Validate config (refuse to start on any error)
2. Configure logging, acquire the single-instance lock
3. Build collaborator clients, RateOracle, RouteFinder, ProviderMatcher,
   LiquidityCache, order store/state machine and the OrderCoordinator
4. Sweep expired orders every sweep_interval_seconds until SIGINT/SIGTERM

HTTP routing lives outside this package: a web layer calls the
coordinator's create_order / get_quote / handle_*_event methods.
"""

import os
import time
import signal
import logging
from pathlib import Path
from typing import Dict, Optional

import yaml

from core.audit_log import AuditLogger
from core.duplicate_guard import DuplicateGuard
from core.liquidity_cache import LiquidityCache
from core.order_coordinator import CoordinatorSettings, OrderCoordinator
from core.order_state import OrderStateMachine
from core.provider_matcher import ProviderMatcher, ScoringWeights
from core.rate_oracle import RateOracle
from core.route_finder import ChainReader, RouteFinder
from core.token_registry import TokenRegistry
from infra.aggregator_client import AggregatorClient
from infra.instance_lock import SingleInstanceLock
from infra.metrics import MetricsRecorder
from infra.order_store import OrderStore
from infra.payment_gateway import PaymentGatewayClient
from infra.provider_roster import ProviderRosterClient
from infra.settlement_client import SettlementExecutorClient
from infra.webhook_notifier import WebhookNotifier

logger = logging.getLogger(__name__)


def _expand(value: Optional[str]) -> Optional[str]:
    """Expand ${VAR} references; an unresolved reference means unset."""
    if not value:
        return None
    if "${" in value:
        value = os.path.expandvars(value)
        if "${" in value:
            return None
    return value


class SettlementService:
    """
    Service orchestrator.

    Responsibilities:
    - Load and validate config
    - Build every component exactly once
    - Run the expiry sweep
    - Shut down cleanly on signals
    """

    def __init__(
        self,
        config_dir: str = "config",
        chain_readers: Optional[Dict[str, ChainReader]] = None,
        install_signal_handlers: bool = True,
        acquire_lock: bool = True,
    ):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if lines:
                    logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.policy_config = self._load_yaml("policy.yaml")
        self.networks_config = self._load_yaml("networks.yaml")

        self._configure_logging()
        self.mode = self.app_config.get("mode", "development")
        logger.info(f"Starting rampsettle in mode={self.mode}")

        self.instance_lock: Optional[SingleInstanceLock] = None
        if acquire_lock:
            self.instance_lock = SingleInstanceLock("rampsettle", lock_dir="data")
            if not self.instance_lock.acquire():
                raise RuntimeError("Another rampsettle instance is running")

        monitoring = self.app_config.get("monitoring") or {}
        self.metrics = MetricsRecorder(
            enabled=bool(monitoring.get("metrics_enabled", False)),
            port=int(monitoring.get("metrics_port", 9100)),
        )

        self.coordinator = self._build(chain_readers or {})
        self.sweep_interval = float((self.policy_config.get("orders") or {}).get("sweep_interval_seconds", 60.0))

        self._running = True
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info("Initialized SettlementService")

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _configure_logging(self) -> None:
        log_cfg = self.app_config.get("logging", {}) or {}
        log_file = log_cfg.get("file") or "logs/rampsettle.log"
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, log_cfg.get("level", "INFO").upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

    def _build(self, chain_readers: Dict[str, ChainReader]) -> OrderCoordinator:
        app, policy = self.app_config, self.policy_config
        endpoints = {k: _expand(v) for k, v in (app.get("endpoints") or {}).items()}
        secrets = app.get("secrets") or {}
        routing = policy.get("routing") or {}
        liquidity_cfg = policy.get("liquidity") or {}
        storage = app.get("storage") or {}

        self.registry = TokenRegistry.from_config(self.networks_config)
        self.rate_oracle = RateOracle.from_config(endpoints, policy, metrics=self.metrics)

        aggregator = None
        if endpoints.get("aggregator_url"):
            aggregator = AggregatorClient(
                endpoints["aggregator_url"],
                timeout=float(routing.get("probe_timeout_seconds", 10.0)),
                slippage_bps=int(routing.get("aggregator_slippage_bps", 50)),
                metrics=self.metrics,
            )
        self.route_finder = RouteFinder(
            self.registry,
            chain_readers=chain_readers,
            aggregator=aggregator,
            probe_timeout=float(routing.get("probe_timeout_seconds", 10.0)),
            max_price_impact_pct=float(routing.get("max_price_impact_pct", 5.0)),
            metrics=self.metrics,
        )

        roster = ProviderRosterClient(
            endpoints.get("roster_url"),
            token_env=secrets.get("roster_token_env", "ROSTER_API_TOKEN"),
            timeout=float(liquidity_cfg.get("roster_timeout_seconds", 15.0)),
            metrics=self.metrics,
        )
        self.matcher = ProviderMatcher(
            roster,
            weights=ScoringWeights.from_config(liquidity_cfg.get("scoring")),
            metrics=self.metrics,
        )
        self.liquidity_cache = LiquidityCache(
            self.matcher,
            ttl_seconds=float(liquidity_cfg.get("cache_ttl_seconds", 60.0)),
            cacheable_ceiling=float(liquidity_cfg.get("cacheable_ceiling", 500.0)),
            large_order_threshold=float(liquidity_cfg.get("large_order_threshold", 1000.0)),
            metrics=self.metrics,
        )

        self.audit = AuditLogger(storage.get("audit_file"))
        self.store = OrderStore(storage.get("order_store_file"))
        self.state_machine = OrderStateMachine(self.store, metrics=self.metrics, audit=self.audit)

        webhooks_cfg = dict(app.get("webhooks") or {})
        webhooks_cfg.setdefault("secret_env", secrets.get("webhook_secret_env", "WEBHOOK_SECRET"))
        self.notifier = WebhookNotifier.from_config(webhooks_cfg, metrics=self.metrics)

        gateway = PaymentGatewayClient.from_config(app.get("payment_gateway") or {}, metrics=self.metrics)
        if not gateway.is_configured:
            logger.warning("Payment gateway credentials missing; orders will have no checkout link")
            gateway = None

        settlement = SettlementExecutorClient(
            endpoints.get("settlement_url"),
            secret_env=secrets.get("settlement_secret_env", "SETTLEMENT_SECRET"),
            metrics=self.metrics,
        )
        if not settlement.is_configured:
            logger.warning("Settlement executor not configured; paid orders will stay pending")

        return OrderCoordinator(
            registry=self.registry,
            rate_oracle=self.rate_oracle,
            route_finder=self.route_finder,
            liquidity=self.liquidity_cache,
            state_machine=self.state_machine,
            guard=DuplicateGuard(),
            notifier=self.notifier,
            payment_gateway=gateway,
            settlement=settlement if settlement.is_configured else None,
            settlement_secret=settlement.secret,
            audit=self.audit,
            settings=CoordinatorSettings.from_config(policy, app.get("features")),
            metrics=self.metrics,
        )

    def _handle_stop(self, *_):
        logger.info("Stop signal received; finishing current sweep")
        self._running = False

    def run_once(self) -> int:
        try:
            return self.coordinator.expire_orders()
        except Exception as e:
            logger.exception(f"Expiry sweep failed: {e}")
            return 0

    def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        interval = max(float(interval_seconds or self.sweep_interval), 1.0)
        self.metrics.start()
        logger.info(f"Starting expiry sweep loop (interval={interval}s)")

        while self._running:
            start = time.monotonic()
            self.run_once()
            elapsed = time.monotonic() - start
            deadline = time.monotonic() + max(interval - elapsed, 0.0)
            while self._running and time.monotonic() < deadline:
                time.sleep(min(1.0, deadline - time.monotonic()))

        self.shutdown()

    def shutdown(self) -> None:
        self.notifier.close()
        if self.instance_lock:
            self.instance_lock.release()
        logger.info("SettlementService stopped")


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="rampsettle settlement routing service")
    parser.add_argument("--once", action="store_true", help="Run one expiry sweep and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between sweeps")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    service = SettlementService(config_dir=args.config_dir)

    if args.once:
        expired = service.run_once()
        logger.info(f"Sweep complete: {expired} order(s) expired")
        service.shutdown()
    else:
        service.run_forever(interval_seconds=args.interval)


if __name__ == "__main__":
    main()
