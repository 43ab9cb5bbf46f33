"""Prometheus-backed metrics hooks for quoting, allocation and the order lifecycle."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

_METRIC_PREFIXES = ("ramp_", "collaborator_")


class MetricsRecorder:
    """
    Expose settlement routing stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    Recording is always safe to call; when disabled only the in-memory
    snapshots are updated.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_rate_tier: Optional[str] = None
        self._last_route: Dict[str, str] = {}
        self._cache_outcomes: Dict[str, int] = {}
        self._last_api_event: Optional[Dict[str, str]] = None

        if not self._enabled:
            self._orders_counter = None
            self._rejections_counter = None
            self._transitions_counter = None
            self._rate_tier_counter = None
            self._route_counter = None
            self._cache_counter = None
            self._webhook_counter = None
            self._api_latency_summary = None
            self._active_orders_gauge = None
            return

        self._orders_counter = Counter(
            "ramp_orders_created_total",
            "Orders persisted in INITIATED state",
            labelnames=("network",),
        )
        self._rejections_counter = Counter(
            "ramp_order_rejections_total",
            "Order or quote requests rejected, by error code",
            labelnames=("code",),
        )
        self._transitions_counter = Counter(
            "ramp_order_transitions_total",
            "Applied order state transitions, by target status",
            labelnames=("status",),
        )
        self._rate_tier_counter = Counter(
            "ramp_rate_tier_total",
            "Stable-to-fiat rate lookups by tier that answered",
            labelnames=("tier",),
        )
        self._route_counter = Counter(
            "ramp_route_selected_total",
            "Winning pricing strategy per network",
            labelnames=("network", "route"),
        )
        self._cache_counter = Counter(
            "ramp_liquidity_cache_total",
            "Liquidity cache outcomes (hit, miss, bypass, stale)",
            labelnames=("outcome",),
        )
        self._webhook_counter = Counter(
            "ramp_webhook_deliveries_total",
            "Outbound business webhook deliveries",
            labelnames=("event", "outcome"),
        )
        self._api_latency_summary = Summary(
            "collaborator_api_latency_seconds",
            "Latency of collaborator API calls",
            labelnames=("endpoint", "status"),
        )
        self._active_orders_gauge = Gauge(
            "ramp_active_orders",
            "Orders in a non-terminal status",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            collectors_to_remove = []
            for collector, names in list(REGISTRY._collector_to_names.items()):
                if any(name.startswith(_METRIC_PREFIXES) for name in names):
                    collectors_to_remove.append(collector)
            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        ports_to_try = [self._port, self._port + 1, self._port + 2]
        last_error = None
        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning("Port %s in use, bound metrics to %s instead", self._port, port)
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                continue

        self._enabled = False
        logger.error("Failed to start metrics exporter after trying ports %s: %s", ports_to_try, last_error)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_order_created(self, network: str) -> None:
        if self._enabled and self._orders_counter:
            self._orders_counter.labels(network=network).inc()

    def record_rejection(self, code: str) -> None:
        if self._enabled and self._rejections_counter:
            self._rejections_counter.labels(code=code).inc()

    def record_transition(self, status: str) -> None:
        if self._enabled and self._transitions_counter:
            self._transitions_counter.labels(status=status).inc()

    def record_rate_tier(self, tier: str) -> None:
        self._last_rate_tier = tier
        if self._enabled and self._rate_tier_counter:
            self._rate_tier_counter.labels(tier=tier).inc()

    def record_route(self, network: str, route_id: str) -> None:
        self._last_route[network] = route_id
        if self._enabled and self._route_counter:
            self._route_counter.labels(network=network, route=route_id).inc()

    def record_cache_outcome(self, outcome: str) -> None:
        self._cache_outcomes[outcome] = self._cache_outcomes.get(outcome, 0) + 1
        if self._enabled and self._cache_counter:
            self._cache_counter.labels(outcome=outcome).inc()

    def record_webhook(self, event: str, outcome: str) -> None:
        if self._enabled and self._webhook_counter:
            self._webhook_counter.labels(event=event, outcome=outcome).inc()

    def record_api_call(self, endpoint: str, duration: float, status: str) -> None:
        self._last_api_event = {
            "endpoint": endpoint,
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self._enabled and self._api_latency_summary:
            self._api_latency_summary.labels(endpoint=endpoint, status=status).observe(duration)

    def record_active_orders(self, count: int) -> None:
        if self._enabled and self._active_orders_gauge:
            self._active_orders_gauge.set(max(count, 0))

    def last_rate_tier(self) -> Optional[str]:
        return self._last_rate_tier

    def route_snapshot(self) -> Dict[str, str]:
        return dict(self._last_route)

    def cache_snapshot(self) -> Dict[str, int]:
        return dict(self._cache_outcomes)

    def last_api_event(self) -> Optional[Dict[str, str]]:
        return dict(self._last_api_event) if self._last_api_event else None


__all__ = ["MetricsRecorder"]
